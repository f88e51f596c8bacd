from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TimeoutsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    default: float = Field(default=120.0, gt=0)
    dump: float = Field(default=3600.0, gt=0)
    archive: float = Field(default=7200.0, gt=0)
    image_save: float = Field(default=7200.0, gt=0)


class BackupConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    backup_dir: str = "/home/ftpbackup"
    name_prefix: str = "vps_backup"
    logs_dir: str = "/var/log/hostbackup"
    require_root: bool = True

    # SpaceGuard
    safety_margin_mb: int = Field(default=500, ge=0)
    default_phase_estimate_mb: int = Field(default=100, ge=0)

    # Docker
    docker_root: str = "/var/lib/docker"
    volume_root: str = "/var/lib/docker/volumes"
    compose_roots: List[str] = Field(default_factory=lambda: ["/opt", "/home", "/root"])
    compose_filenames: List[str] = Field(
        default_factory=lambda: ["docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml"]
    )
    compose_max_depth: int = Field(default=4, ge=0, le=32)
    database_patterns: Dict[str, str] = Field(
        default_factory=lambda: {
            "mysql": r"(mysql|mariadb)",
            "postgres": r"(postgres|postgresql)",
        }
    )

    # Filesystem trees
    config_paths: List[str] = Field(
        default_factory=lambda: [
            "/etc/nginx",
            "/etc/apache2",
            "/etc/ssl",
            "/etc/letsencrypt",
            "/etc/cron.d",
            "/etc/crontab",
            "/etc/fstab",
            "/etc/ssh",
            "/etc/systemd/system",
            "/etc/environment",
            "/etc/profile.d",
        ]
    )
    easypanel_dirs: List[str] = Field(default_factory=lambda: ["/etc/easypanel", "/opt/easypanel", "/var/lib/easypanel"])
    easypanel_db_password: Optional[str] = None
    home_root: str = "/home"
    min_user_uid: int = Field(default=1000, ge=0)
    readable_mode: str = "755"

    # Finalize
    delete_staging_after_archive: Optional[bool] = None  # None = ask on the CLI
    hash_artifacts: bool = True
    timeouts_seconds: TimeoutsConfig = Field(default_factory=TimeoutsConfig)

    @field_validator("readable_mode")
    @classmethod
    def _octal_mode(cls, v: str) -> str:
        v = str(v).strip()
        try:
            mode = int(v, 8)
        except ValueError as e:
            raise ValueError(f"readable_mode must be octal, got {v!r}") from e
        if not 0 <= mode <= 0o7777:
            raise ValueError("readable_mode out of range")
        return v

    @field_validator("database_patterns")
    @classmethod
    def _known_engines(cls, v: Dict[str, str]) -> Dict[str, str]:
        unknown = set(v) - {"mysql", "postgres"}
        if unknown:
            raise ValueError(f"unsupported database engines: {sorted(unknown)}")
        return v

    def readable_mode_int(self) -> int:
        return int(self.readable_mode, 8)

    def mb(self, value: int) -> int:
        return int(value) * 1024 * 1024
