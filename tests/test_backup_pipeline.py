from __future__ import annotations

import json
import os
import stat

import pytest

from hostbackup.core.backup.api import BackupOrchestrator, backup_name
from hostbackup.core.backup.archiver import ArchiveBuilder
from hostbackup.core.backup.collector import Collector, ConfigTreesCollector
from hostbackup.core.backup.docker_collector import ComposeFilesCollector, ContainerDatabaseCollector, DockerVolumesCollector
from hostbackup.core.backup.ledger import PermissionLedger
from hostbackup.core.backup.models import ArtifactCategory, ArtifactKind, PhaseOutcome, RunStatus
from hostbackup.core.backup.verifier import verify_archive
from hostbackup.core.errors import StateTransitionError
from tests.helpers.fakes import FakeClock, FakeDisk, docker_runner, reply
from tests.helpers.log_assertions import events

GiB = 1024**3


def _mode(p) -> int:
    return stat.S_IMODE(os.stat(p).st_mode)


class ModeProbe(Collector):
    """Records the mode of a path while the run holds it open for reading."""

    name = "mode_probe"
    category = ArtifactCategory.system
    phase = "probe"

    def __init__(self, path: str):
        self.path = path
        self.seen = None

    def permission_paths(self, ctx):
        return [(self.path, 0o755)]

    def produce(self, ctx):
        self.seen = _mode(self.path)
        p = ctx.write_text(self.category, "probe.txt", "ok\n")
        return [ctx.artifact(p, name="probe", category=self.category, kind=ArtifactKind.system_info)]


class Exploding(Collector):
    name = "exploding"
    category = ArtifactCategory.services
    phase = "services"

    def produce(self, ctx):
        raise RuntimeError("systemctl crashed")


def _orchestrator(cfg, ops, collectors, *, runner=None, disk=None, clock=None, **kw):
    return BackupOrchestrator(
        cfg,
        collectors=collectors,
        runner=runner or docker_runner(),
        disk=disk or FakeDisk(),
        ops=ops,
        clock=(clock or FakeClock()).time,
        **kw,
    )


def test_live_backup_produces_archive_with_manifest_and_restore_script(cfg, ops, host_root):
    nginx = host_root / "etc/nginx"
    docker_root = host_root / "var/lib/docker"
    os.chmod(nginx, 0o700)
    os.chmod(docker_root, 0o711)
    app = host_root / "opt/app"
    app.mkdir()
    (app / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    (app / ".env").write_text("MYSQL_ROOT_PASSWORD=x\n", encoding="utf-8")

    runner = docker_runner(running=["app_mysql"])
    runner.on("docker", "exec", "app_mysql", handler=reply(0, "-- MySQL dump\n"))
    probe = ModeProbe(str(nginx))
    collectors = [probe, DockerVolumesCollector(), ComposeFilesCollector(), ContainerDatabaseCollector(), ConfigTreesCollector()]

    clock = FakeClock()
    run = _orchestrator(cfg, ops, collectors, runner=runner, clock=clock).run()

    assert run.status == RunStatus.succeeded, run.error
    assert run.name == backup_name("vps_backup", clock.time())
    assert os.path.isfile(run.archive_path)
    assert run.archive_sha256 and run.archive_size_bytes > 0

    # permissions were opened during the run and restored afterwards
    assert probe.seen == 0o755
    assert _mode(nginx) == 0o700
    assert _mode(docker_root) == 0o711
    assert run.permission_errors == []

    staging = run.staging_path
    for name in ("system", "docker", "configs", "packages", "services"):
        assert os.path.isdir(os.path.join(staging, name))
    for name in ("MANIFEST.txt", "manifest.json", "manifest.sha256", "restore.sh", "restore_plan.json"):
        assert os.path.isfile(os.path.join(staging, name))
    assert _mode(os.path.join(staging, "restore.sh")) == 0o755

    man = json.loads(open(os.path.join(staging, "manifest.json"), "r", encoding="utf-8").read())
    kinds = {a["kind"] for a in man["artifacts"]}
    assert {"docker_volumes", "compose", "container_db_dump", "config_tree"} <= kinds
    assert any("crash-consistent" in n for n in man["notes"])
    assert man["omissions"] == []

    # the volume tree was archived in place, containers untouched
    assert runner.ran("tar", "--create", "--gzip", "--file", os.path.join(staging, "docker", "docker_volumes.tar.gz"))
    assert not runner.ran("docker", "stop")
    assert not runner.ran("docker", "pause")

    assert verify_archive(run.archive_path).ok is True
    assert [e["event"] for e in events(ops.path, "backup.complete")] == ["backup.complete"]


def test_compression_abort_cleans_up_and_restores_permissions(cfg, ops, host_root):
    nginx = host_root / "etc/nginx"
    os.chmod(nginx, 0o700)
    probe = ModeProbe(str(nginx))
    ledger = PermissionLedger()
    disk = FakeDisk(free=15 * GiB, staging_bytes=10 * GiB)

    run = _orchestrator(cfg, ops, [probe], disk=disk, ledger=ledger).run()

    assert run.status == RunStatus.aborted
    assert run.error["code"] == "insufficient_space"
    assert run.error["context"]["phase"] == "compression"
    assert not os.path.exists(run.staging_path)
    assert not os.path.exists(run.archive_path)
    assert probe.seen == 0o755
    assert _mode(nginx) == 0o700
    assert ledger.restore_calls == 1
    assert len(events(ops.path, "backup.abort")) == 1
    assert events(ops.path, "backup.complete") == []


def test_initial_space_check_aborts_before_any_collector(cfg, ops, host_root):
    probe = ModeProbe(str(host_root / "etc/nginx"))
    run = _orchestrator(cfg, ops, [probe], disk=FakeDisk(free=100 * 1024 * 1024)).run()
    assert run.status == RunStatus.aborted
    assert run.error["context"]["phase"] == "initial"
    assert probe.seen is None
    assert run.completed_phases == []


def test_collector_failure_is_an_omission_not_an_abort(cfg, ops, host_root):
    probe = ModeProbe(str(host_root / "etc/nginx"))
    run = _orchestrator(cfg, ops, [probe, Exploding(), ConfigTreesCollector()]).run()

    assert run.status == RunStatus.succeeded
    outcomes = {ph.collector: ph.outcome for ph in run.completed_phases}
    assert outcomes == {"mode_probe": PhaseOutcome.succeeded, "exploding": PhaseOutcome.failed, "configs": PhaseOutcome.succeeded}

    omitted = run.omissions()
    assert len(omitted) == 1
    assert omitted[0].collector == "exploding"
    assert "systemctl crashed" in omitted[0].reason

    # artifacts of the other collectors are intact
    assert os.path.isfile(os.path.join(run.staging_path, "system", "probe.txt"))
    assert any(a.kind == ArtifactKind.config_tree for a in run.artifacts())
    text = open(os.path.join(run.staging_path, "MANIFEST.txt"), "r", encoding="utf-8").read()
    assert "exploding" in text and "systemctl crashed" in text


def test_inapplicable_collector_is_skipped(cfg, ops):
    cfg = cfg.model_copy(update={"volume_root": "/nonexistent/volumes"})
    run = _orchestrator(cfg, ops, [DockerVolumesCollector()]).run()
    assert run.status == RunStatus.succeeded
    assert run.completed_phases[0].outcome == PhaseOutcome.skipped


def test_uncreatable_staging_is_unrecoverable(cfg, ops, tmp_path):
    (tmp_path / "backups").write_text("not a directory", encoding="utf-8")
    ledger = PermissionLedger()
    run = _orchestrator(cfg, ops, [], ledger=ledger).run()
    assert run.status == RunStatus.aborted
    assert run.error["code"] == "unrecoverable_setup"
    assert ledger.restore_calls == 1


def test_non_root_is_refused_when_root_required(cfg, ops, monkeypatch):
    monkeypatch.setattr(os, "geteuid", lambda: 1000)
    run = _orchestrator(cfg.model_copy(update={"require_root": True}), ops, []).run()
    assert run.status == RunStatus.aborted
    assert "root" in run.error["user_message"]


def test_unexpected_crash_is_wrapped_and_cleaned_up(cfg, ops, host_root):
    class BrokenArchiver(ArchiveBuilder):
        def finalize(self, staging_path, manifest, archive_path):
            with open(archive_path, "wb") as f:
                f.write(b"partial")
            raise ValueError("zlib exploded")

    nginx = host_root / "etc/nginx"
    os.chmod(nginx, 0o700)
    ledger = PermissionLedger()
    run = _orchestrator(cfg, ops, [ModeProbe(str(nginx))], archiver=BrokenArchiver(), ledger=ledger).run()

    assert run.status == RunStatus.aborted
    assert run.error["code"] == "unrecoverable_setup"
    assert "zlib exploded" in run.error["user_message"]
    assert not os.path.exists(run.archive_path)
    assert not os.path.exists(run.staging_path)
    assert _mode(nginx) == 0o700
    assert ledger.restore_calls == 1


def test_staging_deleted_after_archive_when_configured(cfg, ops, host_root):
    cfg = cfg.model_copy(update={"delete_staging_after_archive": True})
    run = _orchestrator(cfg, ops, [ModeProbe(str(host_root / "etc/nginx"))]).run()
    assert run.status == RunStatus.succeeded
    assert run.staging_deleted is True
    assert not os.path.exists(run.staging_path)
    assert os.path.isfile(run.archive_path)


def test_terminal_run_rejects_mutation(cfg, ops, host_root):
    run = _orchestrator(cfg, ops, [ModeProbe(str(host_root / "etc/nginx"))]).run()
    with pytest.raises(StateTransitionError):
        run.succeed()
    with pytest.raises(StateTransitionError):
        run.record_phase(run.completed_phases[0])
