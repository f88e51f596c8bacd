from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from hostbackup.core.errors import StateTransitionError


class ArtifactCategory(str, Enum):
    system = "system"
    docker = "docker"
    configs = "configs"
    packages = "packages"
    services = "services"


class ArtifactKind(str, Enum):
    system_info = "system_info"
    network = "network"
    package_list = "package_list"
    apt_manual = "apt_manual"
    apt_sources = "apt_sources"
    service_list = "service_list"
    docker_info = "docker_info"
    docker_volumes = "docker_volumes"
    docker_images = "docker_images"
    compose = "compose"
    container_db_dump = "container_db_dump"
    easypanel_tree = "easypanel_tree"
    easypanel_db = "easypanel_db"
    config_tree = "config_tree"
    user_home = "user_home"
    host_db_dump = "host_db_dump"


class Artifact(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    category: ArtifactCategory
    kind: ArtifactKind
    relative_path: str  # under the staging root, "/"-separated
    size_bytes: int = 0
    sha256: Optional[str] = None
    meta: Dict[str, str] = Field(default_factory=dict)


class Omission(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: ArtifactCategory
    collector: str
    item: str
    reason: str


class SpaceEstimate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phase: str
    occupied_bytes: int
    projected_additional_bytes: int
    safety_margin_bytes: int
    available_bytes: int

    @property
    def projected_total_bytes(self) -> int:
        return int(self.occupied_bytes + self.projected_additional_bytes + self.safety_margin_bytes)

    @property
    def fits(self) -> bool:
        return self.projected_total_bytes <= self.available_bytes


class PhaseOutcome(str, Enum):
    succeeded = "succeeded"
    partial = "partial"
    failed = "failed"
    skipped = "skipped"


class PhaseResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phase: str
    collector: str
    category: ArtifactCategory
    outcome: PhaseOutcome
    artifacts: List[Artifact] = Field(default_factory=list)
    omissions: List[Omission] = Field(default_factory=list)
    space: Optional[SpaceEstimate] = None
    duration_s: float = 0.0


class RunStatus(str, Enum):
    running = "running"
    succeeded = "succeeded"
    aborted = "aborted"


@dataclass
class BackupRun:
    run_id: str
    name: str
    staging_path: str
    archive_path: str
    started_at: float = field(default_factory=time.time)
    status: RunStatus = RunStatus.running
    completed_phases: List[PhaseResult] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    finished_at: Optional[float] = None
    archive_sha256: Optional[str] = None
    archive_size_bytes: Optional[int] = None
    staging_deleted: bool = False
    permission_errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status != RunStatus.running

    def _require_running(self, action: str) -> None:
        if self.terminal:
            raise StateTransitionError(f"Cannot {action}: run already {self.status.value}.", run_id=self.run_id)

    def record_phase(self, result: PhaseResult) -> None:
        self._require_running("record phase")
        self.completed_phases.append(result)

    def record_archive(self, *, sha256: str, size_bytes: int) -> None:
        self._require_running("record archive")
        self.archive_sha256 = sha256
        self.archive_size_bytes = int(size_bytes)

    def succeed(self) -> None:
        self._require_running("succeed")
        self.status = RunStatus.succeeded
        self.finished_at = time.time()

    def abort(self, error: Dict[str, Any]) -> None:
        self._require_running("abort")
        self.status = RunStatus.aborted
        self.error = dict(error)
        self.finished_at = time.time()

    def artifacts(self) -> List[Artifact]:
        return [a for ph in self.completed_phases for a in ph.artifacts]

    def omissions(self) -> List[Omission]:
        return [o for ph in self.completed_phases for o in ph.omissions]


class HostFacts(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hostname: str = ""
    os_name: str = ""
    kernel: str = ""
    architecture: str = ""


class PhaseSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phase: str
    collector: str
    outcome: PhaseOutcome


class BackupManifest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    name: str
    created_at: float = Field(default_factory=lambda: time.time())
    backup_location: str = ""
    backup_type: str = "LIVE BACKUP (No Docker downtime)"
    host: HostFacts = Field(default_factory=HostFacts)

    artifacts: List[Artifact] = Field(default_factory=list)
    omissions: List[Omission] = Field(default_factory=list)
    phases: List[PhaseSummary] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)
    staging_size_bytes: int = 0

    def kinds(self) -> List[ArtifactKind]:
        out: List[ArtifactKind] = []
        for a in self.artifacts:
            if a.kind not in out:
                out.append(a.kind)
        return out

    def by_kind(self, kind: ArtifactKind) -> List[Artifact]:
        return [a for a in self.artifacts if a.kind == kind]

    def captured_categories(self) -> List[ArtifactCategory]:
        return sorted({a.category for a in self.artifacts}, key=lambda c: c.value)

