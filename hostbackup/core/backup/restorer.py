from __future__ import annotations

import os
import shlex
import time
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Any, Dict, List

from hostbackup.core.backup.archiver import RESTORE_SCRIPT
from hostbackup.core.backup.models import Artifact, ArtifactKind, BackupManifest
from hostbackup.core.config.io import write_json_file

RESTORE_PLAN = "restore_plan.json"


class RestoreStage(IntEnum):
    preflight = 0
    packages = 10
    configs = 20
    users = 30
    engine_install = 40
    engine_stop = 50
    volumes = 60
    engine_start = 70
    images = 80
    compose = 85
    container_databases = 90
    host_databases = 95
    finalize = 100


DOCKER_KINDS = {
    ArtifactKind.docker_volumes,
    ArtifactKind.docker_images,
    ArtifactKind.compose,
    ArtifactKind.container_db_dump,
    ArtifactKind.easypanel_db,
}


@dataclass(frozen=True)
class RestoreStep:
    step_id: str
    stage: RestoreStage
    title: str
    commands: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RestoreProcedure:
    run_id: str
    generated_at: float
    steps: List[RestoreStep]

    def stages(self) -> List[RestoreStage]:
        return [s.stage for s in self.steps]

    def index_of(self, stage: RestoreStage) -> int:
        for i, s in enumerate(self.steps):
            if s.stage == stage:
                return i
        return -1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "generated_at": self.generated_at,
            "steps": [asdict(s) | {"stage": s.stage.name} for s in self.steps],
        }


def _src(a: Artifact) -> str:
    return f'"$RESTORE_DIR"/{shlex.quote(a.relative_path)}'


class RestoreScriptEmitter:
    """
    Builds the inverse of the capture as an ordered list of steps.

    Volumes are extracted while the engine is stopped; images and database
    replay only run once the engine is up again.
    """

    def __init__(self, *, volume_root: str = "/var/lib/docker/volumes"):
        self.volume_root = volume_root

    def emit(self, manifest: BackupManifest) -> RestoreProcedure:
        kinds = set(manifest.kinds())
        steps: List[RestoreStep] = [
            RestoreStep("preflight", RestoreStage.preflight, "Preflight", ['log "Restore directory: $RESTORE_DIR"'])
        ]

        manual = manifest.by_kind(ArtifactKind.apt_manual)
        if manual:
            steps.append(
                RestoreStep(
                    "packages",
                    RestoreStage.packages,
                    "Installing packages",
                    [
                        "apt-get update || warn \"apt-get update failed\"",
                        f"while read -r pkg; do",
                        '    [ -z "$pkg" ] && continue',
                        '    dpkg -s "$pkg" >/dev/null 2>&1 && continue',
                        '    DEBIAN_FRONTEND=noninteractive apt-get install -y "$pkg" >/dev/null 2>&1 || warn "Could not install $pkg"',
                        f"done < {_src(manual[0])}",
                    ],
                )
            )

        trees = manifest.by_kind(ArtifactKind.config_tree) + manifest.by_kind(ArtifactKind.easypanel_tree)
        if trees:
            cmds = [f'tar -xzf {_src(a)} -C / || warn "Could not restore {a.name}"' for a in trees]
            steps.append(RestoreStep("configs", RestoreStage.configs, "Restoring configurations", cmds))

        homes = manifest.by_kind(ArtifactKind.user_home)
        if homes:
            cmds = []
            for a in homes:
                root = shlex.quote(a.meta.get("home_root", "/home"))
                cmds.append(f"mkdir -p {root}")
                cmds.append(f'tar -xzf {_src(a)} -C {root} || warn "Could not restore user {a.meta.get("user", a.name)}"')
            steps.append(RestoreStep("users", RestoreStage.users, "Restoring user data", cmds))

        if kinds & DOCKER_KINDS:
            steps.append(
                RestoreStep(
                    "engine_install",
                    RestoreStage.engine_install,
                    "Ensuring Docker is installed",
                    [
                        "if ! command -v docker >/dev/null 2>&1; then",
                        "    curl -fsSL https://get.docker.com -o /tmp/get-docker.sh && sh /tmp/get-docker.sh && rm -f /tmp/get-docker.sh",
                        "fi",
                    ],
                )
            )
            volumes = manifest.by_kind(ArtifactKind.docker_volumes)
            if volumes:
                steps.append(
                    RestoreStep(
                        "engine_stop",
                        RestoreStage.engine_stop,
                        "Stopping Docker",
                        ["systemctl stop docker.socket docker 2>/dev/null || true"],
                    )
                )
                cmds = []
                for a in volumes:
                    root = shlex.quote(a.meta.get("volume_root", self.volume_root))
                    cmds.append(f"mkdir -p {root}")
                    cmds.append(f'tar -xzf {_src(a)} -C {root} || warn "Could not restore Docker volumes"')
                steps.append(RestoreStep("volumes", RestoreStage.volumes, "Restoring Docker volumes", cmds))
            steps.append(
                RestoreStep(
                    "engine_start",
                    RestoreStage.engine_start,
                    "Starting Docker",
                    [
                        "systemctl start docker",
                        "for _ in $(seq 1 30); do docker info >/dev/null 2>&1 && break; sleep 1; done",
                    ],
                )
            )

        for a in manifest.by_kind(ArtifactKind.docker_images):
            steps.append(
                RestoreStep(
                    "images",
                    RestoreStage.images,
                    "Loading Docker images",
                    [f'docker load -i {_src(a)} || warn "Could not restore Docker images"'],
                )
            )

        compose = manifest.by_kind(ArtifactKind.compose)
        if compose:
            cmds = []
            for a in compose:
                target = shlex.quote(a.meta.get("source_dir", ""))
                if not a.meta.get("source_dir"):
                    continue
                cmds.append(f"mkdir -p {target}")
                names = [n for n in a.meta.get("files", "").split(",") if n]
                if a.meta.get("env") == "yes":
                    names.append(".env")
                for n in names:
                    src = f'"$RESTORE_DIR"/{shlex.quote(a.relative_path + "/" + n)}'
                    dst = shlex.quote(os.path.join(a.meta["source_dir"], n))
                    cmds.append(f"[ -e {dst} ] || cp {src} {dst}")
            steps.append(RestoreStep("compose", RestoreStage.compose, "Restoring Docker Compose files", cmds))

        dumps = manifest.by_kind(ArtifactKind.container_db_dump) + manifest.by_kind(ArtifactKind.easypanel_db)
        if dumps:
            cmds = []
            for a in dumps:
                container = a.meta.get("container", "")
                c = shlex.quote(container)
                if a.kind == ArtifactKind.easypanel_db:
                    # the password is never written into the backup; supply it at restore time
                    client = f'-e MYSQL_PWD="${{EASYPANEL_DB_PASSWORD:-}}" {c} mysql -u root'
                elif a.meta.get("engine") == "mysql":
                    client = f"{c} mysql"
                else:
                    client = f"{c} psql -U postgres"
                cmds += [
                    f"if docker ps --format '{{{{.Names}}}}' | grep -qx {c}; then",
                    f'    log "Restoring {a.meta.get("engine")} dump to {container}"',
                    f'    docker exec -i {client} < {_src(a)} || warn "Could not restore dump to {container}"',
                    "else",
                    f'    warn "Container {container} is not running; skipping its dump"',
                    "fi",
                ]
            steps.append(RestoreStep("container_databases", RestoreStage.container_databases, "Restoring database dumps to containers", cmds))

        host_dumps = manifest.by_kind(ArtifactKind.host_db_dump)
        if host_dumps:
            cmds = []
            for a in host_dumps:
                if a.meta.get("engine") == "mysql":
                    cmds.append(f'command -v mysql >/dev/null 2>&1 && {{ mysql < {_src(a)} || warn "Could not restore system MySQL databases"; }}')
                else:
                    cmds.append(
                        f'command -v psql >/dev/null 2>&1 && {{ runuser -l postgres -c psql < {_src(a)} || warn "Could not restore system PostgreSQL databases"; }}'
                    )
            steps.append(RestoreStep("host_databases", RestoreStage.host_databases, "Restoring system databases", cmds))

        final = ["systemctl daemon-reload"]
        if kinds & DOCKER_KINDS:
            final.append("systemctl restart docker 2>/dev/null || true")
        steps.append(RestoreStep("finalize", RestoreStage.finalize, "Performing final configuration", final))

        steps.sort(key=lambda s: int(s.stage))
        return RestoreProcedure(run_id=manifest.run_id, generated_at=time.time(), steps=steps)

    def render_script(self, procedure: RestoreProcedure) -> str:
        generated = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(procedure.generated_at))
        lines = [
            "#!/bin/bash",
            "#",
            "# VPS Restoration Script",
            f"# Generated: {generated} (run {procedure.run_id})",
            "# Run as root on the target system, from inside the extracted backup.",
            "#",
            "set -uo pipefail",
            "",
            'RESTORE_DIR="$(dirname "$(readlink -f "$0")")"',
            "RED='\\033[0;31m'",
            "GREEN='\\033[0;32m'",
            "YELLOW='\\033[1;33m'",
            "NC='\\033[0m'",
            "",
            'log() { echo -e "${GREEN}[$(date \'+%Y-%m-%d %H:%M:%S\')]${NC} $1"; }',
            'warn() { echo -e "${YELLOW}[WARNING]${NC} $1"; }',
            'error() { echo -e "${RED}[ERROR]${NC} $1"; }',
            "",
            'if [[ $EUID -ne 0 ]]; then',
            '   error "This script must be run as root"',
            "   exit 1",
            "fi",
            "",
            'log "Starting VPS restoration process..."',
        ]
        for step in procedure.steps:
            lines += ["", f"# [{step.stage.value:03d}] {step.step_id}", f'log "{step.title}..."']
            lines += step.commands
        lines += [
            "",
            'log "Restoration completed! Please reboot the system and verify all services."',
            'log "Check system/system_info.txt for the original system configuration."',
            "",
        ]
        return "\n".join(lines)

    def write(self, procedure: RestoreProcedure, staging_path: str) -> str:
        script = os.path.join(staging_path, RESTORE_SCRIPT)
        with open(script, "w", encoding="utf-8") as f:
            f.write(self.render_script(procedure))
        os.chmod(script, 0o755)
        write_json_file(os.path.join(staging_path, RESTORE_PLAN), procedure.to_dict())
        return script
