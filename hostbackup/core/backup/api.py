from __future__ import annotations

import os
import time
import uuid
from typing import Callable, List, Optional

from hostbackup.core.backup.archiver import ArchiveBuilder, sha256_file
from hostbackup.core.backup.collector import (
    Collector,
    CollectorContext,
    ConfigTreesCollector,
    EasypanelCollector,
    HostDatabaseCollector,
    NetworkCollector,
    PackagesCollector,
    ServicesCollector,
    SystemInfoCollector,
    UserHomesCollector,
    host_facts,
)
from hostbackup.core.backup.docker_collector import (
    ComposeFilesCollector,
    ContainerDatabaseCollector,
    DockerImagesCollector,
    DockerInfoCollector,
    DockerVolumesCollector,
)
from hostbackup.core.backup.ledger import PermissionLedger
from hostbackup.core.backup.models import (
    Artifact,
    ArtifactKind,
    BackupManifest,
    BackupRun,
    Omission,
    PhaseOutcome,
    PhaseResult,
    PhaseSummary,
    RunStatus,
)
from hostbackup.core.backup.restorer import RestoreScriptEmitter
from hostbackup.core.backup.space import PHASE_COMPRESSION, SpaceGuard
from hostbackup.core.config.models import BackupConfigFile
from hostbackup.core.config.paths import BackupFsPaths
from hostbackup.core.errors import HostBackupError, InsufficientSpace, UnrecoverableSetupError
from hostbackup.core.host.disk import DiskProbe, format_size
from hostbackup.core.host.docker import DockerEngine
from hostbackup.core.host.runner import CommandRunner
from hostbackup.core.logger import get_logger
from hostbackup.core.ops_log import OpsLogger

PHASE_INITIAL = "initial"


def default_collectors() -> List[Collector]:
    """Collectors in the order they run."""
    return [
        SystemInfoCollector(),
        PackagesCollector(),
        ServicesCollector(),
        NetworkCollector(),
        DockerInfoCollector(),
        DockerVolumesCollector(),
        DockerImagesCollector(),
        ComposeFilesCollector(),
        ContainerDatabaseCollector(),
        EasypanelCollector(),
        ConfigTreesCollector(),
        UserHomesCollector(),
        HostDatabaseCollector(),
    ]


def backup_name(prefix: str, ts: float) -> str:
    return f"{prefix}_{time.strftime('%Y%m%d_%H%M%S', time.localtime(ts))}"


def phase_outcome(artifacts: List[Artifact], omissions: List[Omission]) -> PhaseOutcome:
    if not omissions:
        return PhaseOutcome.succeeded
    return PhaseOutcome.partial if artifacts else PhaseOutcome.failed


class BackupOrchestrator:
    """
    Runs one backup: setup, guarded collectors, manifest, restore procedure,
    archive. Permissions taken for reading are restored exactly once, whatever
    happens.
    """

    def __init__(
        self,
        cfg: BackupConfigFile,
        *,
        collectors: Optional[List[Collector]] = None,
        runner: Optional[CommandRunner] = None,
        disk: Optional[DiskProbe] = None,
        docker: Optional[DockerEngine] = None,
        ledger: Optional[PermissionLedger] = None,
        guard: Optional[SpaceGuard] = None,
        archiver: Optional[ArchiveBuilder] = None,
        emitter: Optional[RestoreScriptEmitter] = None,
        ops: Optional[OpsLogger] = None,
        clock: Callable[[], float] = time.time,
        logger=None,
        **ctx_overrides,
    ):
        self.cfg = cfg
        self.collectors = collectors if collectors is not None else default_collectors()
        self.runner = runner or CommandRunner(default_timeout=cfg.timeouts_seconds.default)
        self.disk = disk or DiskProbe()
        self.docker = docker or DockerEngine(self.runner)
        self.logger = logger or get_logger()
        self.ops = ops or OpsLogger(path=os.path.join(cfg.logs_dir, "ops.jsonl"))
        self.archiver = archiver or ArchiveBuilder(logger=self.logger)
        self.emitter = emitter or RestoreScriptEmitter(volume_root=cfg.volume_root)
        self.clock = clock
        self._ledger = ledger
        self._guard = guard
        self._ctx_overrides = ctx_overrides

    # ---- setup ----
    def new_run(self) -> BackupRun:
        now = float(self.clock())
        paths = BackupFsPaths(self.cfg.backup_dir, backup_name(self.cfg.name_prefix, now))
        return BackupRun(
            run_id=uuid.uuid4().hex,
            name=paths.name,
            staging_path=paths.staging_path,
            archive_path=paths.archive_path,
            started_at=now,
        )

    def _setup(self, paths: BackupFsPaths) -> None:
        if self.cfg.require_root and hasattr(os, "geteuid") and os.geteuid() != 0:
            raise UnrecoverableSetupError("This script must be run as root.")
        try:
            os.makedirs(self.cfg.backup_dir, exist_ok=True)
            for d in paths.category_dirs().values():
                os.makedirs(d, exist_ok=True)
        except OSError as e:
            raise UnrecoverableSetupError(f"Cannot create staging directory: {e}", staging=paths.staging_path) from e

    def _make_guard(self, run: BackupRun) -> SpaceGuard:
        if self._guard is not None:
            return self._guard
        return SpaceGuard(
            disk=self.disk,
            fallback_dir=self.cfg.backup_dir,
            safety_margin_bytes=self.cfg.mb(self.cfg.safety_margin_mb),
            default_estimate_bytes=self.cfg.mb(self.cfg.default_phase_estimate_mb),
            volume_root=self.cfg.volume_root,
            image_usage=self.docker.image_disk_usage_bytes,
            logger=self.logger,
            ops=self.ops,
            run_id=run.run_id,
        )

    # ---- phases ----
    def _run_collector(self, collector: Collector, ctx: CollectorContext, guard: SpaceGuard, staging: str) -> PhaseResult:
        ctx.begin(collector.name)
        t0 = time.monotonic()
        if not collector.is_applicable(ctx):
            self.logger.info(f"Skipping {collector.name}: not applicable on this host.")
            return PhaseResult(phase=collector.phase, collector=collector.name, category=collector.category, outcome=PhaseOutcome.skipped)

        for path, mode in collector.permission_paths(ctx):
            ctx.ledger.acquire(path, mode)
        space = guard.check(collector.phase, staging)

        artifacts: List[Artifact] = []
        try:
            artifacts = list(collector.produce(ctx))
        except (InsufficientSpace, UnrecoverableSetupError):
            raise
        except Exception as e:  # noqa: BLE001
            reason = e.user_message if isinstance(e, HostBackupError) else f"{type(e).__name__}: {e}"
            ctx.omit(collector.category, collector.name, reason)
        omissions = ctx.take_omissions()
        return PhaseResult(
            phase=collector.phase,
            collector=collector.name,
            category=collector.category,
            outcome=phase_outcome(artifacts, omissions),
            artifacts=artifacts,
            omissions=omissions,
            space=space,
            duration_s=round(time.monotonic() - t0, 3),
        )

    def build_manifest(self, run: BackupRun) -> BackupManifest:
        artifacts = run.artifacts()
        if self.cfg.hash_artifacts:
            hashed: List[Artifact] = []
            for a in artifacts:
                p = os.path.join(run.staging_path, a.relative_path)
                hashed.append(a.model_copy(update={"sha256": sha256_file(p)}) if os.path.isfile(p) else a)
            artifacts = hashed

        kinds = {a.kind for a in artifacts}
        notes = ["Docker containers were NOT stopped during backup."]
        if ArtifactKind.docker_volumes in kinds:
            notes.append(
                "Docker volumes were archived live: the copy is crash-consistent (like after a power loss), "
                "not transactionally consistent."
            )
        if ArtifactKind.container_db_dump in kinds:
            notes.append("Database dumps were taken from running containers; prefer them over raw volume files for database state.")
        if ArtifactKind.docker_volumes in kinds or ArtifactKind.docker_images in kinds:
            notes.append("The restore script restores Docker volumes before starting containers.")
        omissions = run.omissions()
        if omissions:
            notes.append(f"{len(omissions)} item(s) could not be captured; see OMITTED.")

        return BackupManifest(
            run_id=run.run_id,
            name=run.name,
            created_at=float(self.clock()),
            backup_location=run.staging_path,
            host=host_facts(),
            artifacts=artifacts,
            omissions=omissions,
            phases=[PhaseSummary(phase=ph.phase, collector=ph.collector, outcome=ph.outcome) for ph in run.completed_phases],
            notes=notes,
            staging_size_bytes=int(self.disk.tree_size_bytes(run.staging_path)),
        )

    # ---- run ----
    def run(self) -> BackupRun:
        run = self.new_run()
        paths = BackupFsPaths(self.cfg.backup_dir, run.name)
        ledger = self._ledger or PermissionLedger(logger=self.logger, ops=self.ops, run_id=run.run_id)
        guard = self._make_guard(run)
        ctx = CollectorContext(
            cfg=self.cfg,
            paths=paths,
            ledger=ledger,
            runner=self.runner,
            disk=self.disk,
            docker=self.docker,
            logger=self.logger,
            **self._ctx_overrides,
        )

        self.logger.info("Starting VPS backup process (live backup mode - no Docker downtime)...")
        self.ops.log(run_id=run.run_id, event="backup.begin", outcome="ok", details={"name": run.name, "backup_dir": self.cfg.backup_dir})
        try:
            self._setup(paths)
            guard.check(PHASE_INITIAL, run.staging_path)
            for collector in self.collectors:
                result = self._run_collector(collector, ctx, guard, run.staging_path)
                run.record_phase(result)
                self.ops.log(
                    run_id=run.run_id,
                    event="phase.complete",
                    outcome=result.outcome.value,
                    details={"phase": result.phase, "collector": result.collector, "artifacts": len(result.artifacts), "omissions": len(result.omissions)},
                )

            manifest = self.build_manifest(run)
            procedure = self.emitter.emit(manifest)
            self.emitter.write(procedure, run.staging_path)

            guard.check(PHASE_COMPRESSION, run.staging_path)
            archive = self.archiver.finalize(run.staging_path, manifest, run.archive_path)
            run.record_archive(sha256=archive.sha256, size_bytes=archive.size_bytes)

            if self.cfg.delete_staging_after_archive:
                self.logger.info("Removing uncompressed backup directory...")
                run.staging_deleted = self.archiver.discard_staging(run.staging_path)
            run.succeed()
        except (InsufficientSpace, UnrecoverableSetupError) as e:
            self._abort(run, e)
        except Exception as e:  # noqa: BLE001
            self._abort(run, UnrecoverableSetupError(f"Backup failed unexpectedly: {type(e).__name__}: {e}"))
        finally:
            errors = ledger.restore_all()
            run.permission_errors = [err.to_dict() for err in errors]

        if run.status == RunStatus.succeeded:
            self.logger.info(f"Backup completed: {run.archive_path} ({format_size(run.archive_size_bytes or 0)})")
            self.ops.log(
                run_id=run.run_id,
                event="backup.complete",
                outcome="ok" if not run.omissions() else "partial",
                details={"archive": run.archive_path, "sha256": run.archive_sha256, "omissions": len(run.omissions())},
            )
        return run

    def _abort(self, run: BackupRun, err: HostBackupError) -> None:
        self.logger.error(err.user_message)
        self.archiver.discard_archive(run.archive_path)
        if self.archiver.discard_staging(run.staging_path):
            self.logger.info(f"Removed staging directory {run.staging_path}")
        run.abort(err.to_dict())
        self.ops.log(run_id=run.run_id, event="backup.abort", outcome="aborted", details=err.to_dict())
