from __future__ import annotations

import json
import os
import sys

import pytest

from hostbackup.core.backup.collector import (
    CollectorContext,
    ConfigTreesCollector,
    EasypanelCollector,
    HostDatabaseCollector,
    NetworkCollector,
    PackagesCollector,
    ServicesCollector,
    SystemInfoCollector,
    UserHomesCollector,
)
from hostbackup.core.backup.docker_collector import (
    ComposeFilesCollector,
    ContainerDatabaseCollector,
    DockerImagesCollector,
    DockerInfoCollector,
    compose_staging_names,
    discover_compose_files,
)
from hostbackup.core.backup.ledger import PermissionLedger
from hostbackup.core.backup.api import BackupOrchestrator
from hostbackup.core.backup.models import ArtifactCategory, ArtifactKind, PhaseOutcome, RunStatus
from hostbackup.core.config.paths import BackupFsPaths
from hostbackup.core.errors import CollectorError
from hostbackup.core.host.docker import dump_command, match_engines
from hostbackup.core.host.runner import CommandRunner
from hostbackup.core.host.tar import TreeArchiver, flatten_path
from tests.helpers.fakes import FakeDisk, FakeRunner, docker_runner, reply, writes_file


def _ctx(cfg, runner):
    paths = BackupFsPaths(cfg.backup_dir, "vps_backup_test")
    return CollectorContext(cfg=cfg, paths=paths, ledger=PermissionLedger(), runner=runner, disk=FakeDisk())


def _run(collector, ctx):
    ctx.begin(collector.name)
    arts = collector.produce(ctx)
    return arts, ctx.take_omissions()


# ---- compose ----
def test_three_compose_projects_map_to_distinct_staging_dirs(cfg, tmp_path, host_root):
    opt = host_root / "opt"
    for rel in ("a", "b/c", "d"):
        d = opt / rel
        d.mkdir(parents=True)
        (d / "docker-compose.yml").write_text(f"# {rel}\n", encoding="utf-8")
    (opt / "b/c/.env").write_text("TOKEN=1\n", encoding="utf-8")

    ctx = _ctx(cfg, docker_runner())
    arts, omissions = _run(ComposeFilesCollector(), ctx)

    assert omissions == []
    assert len(arts) == 3
    dirs = {a.relative_path for a in arts}
    assert len(dirs) == 3
    by_src = {a.meta["source_dir"]: a for a in arts}
    c = by_src[str(opt / "b/c")]
    assert c.relative_path == "docker/compose" + str(opt / "b/c").replace("/", "_")
    assert c.meta["env"] == "yes"
    assert os.path.isfile(os.path.join(ctx.paths.staging_path, c.relative_path, ".env"))
    assert by_src[str(opt / "a")].meta["env"] == "no"
    for a in arts:
        assert os.path.isfile(os.path.join(ctx.paths.staging_path, a.relative_path, "docker-compose.yml"))


def test_flattened_name_collisions_get_suffixes():
    names = compose_staging_names(["/opt/a_b", "/opt/a/b", "/opt/x"])
    assert names["/opt/a_b"] == "compose_opt_a_b"
    assert names["/opt/a/b"] == "compose_opt_a_b-2"
    assert len(set(names.values())) == 3


def test_compose_search_is_depth_bounded_and_skips_noise(tmp_path):
    root = tmp_path / "opt"
    deep = root / "1/2/3/4/5"
    deep.mkdir(parents=True)
    (root / "1/docker-compose.yml").write_text("x", encoding="utf-8")
    (deep / "docker-compose.yml").write_text("x", encoding="utf-8")
    nm = root / "node_modules/pkg"
    nm.mkdir(parents=True)
    (nm / "docker-compose.yml").write_text("x", encoding="utf-8")
    backups = root / "backups"
    backups.mkdir()
    (backups / "compose.yaml").write_text("x", encoding="utf-8")

    found = discover_compose_files([str(root)], ["docker-compose.yml", "compose.yaml"], max_depth=4, exclude=[str(backups)])
    assert found == [str(root / "1/docker-compose.yml")]


# ---- container databases ----
def test_failed_container_dump_is_partial_and_leaves_no_file(cfg, tmp_path):
    runner = docker_runner(running=["app_mysql", "shop-postgres", "web"])
    runner.on("docker", "exec", "app_mysql", handler=reply(0, "-- MySQL dump\n"))
    runner.on("docker", "exec", "shop-postgres", handler=reply(1, "partial output", "pg_dumpall: connection refused"))

    ctx = _ctx(cfg, runner)
    arts, omissions = _run(ContainerDatabaseCollector(), ctx)

    assert [a.meta["container"] for a in arts] == ["app_mysql"]
    assert arts[0].relative_path == "docker/database_dumps/app_mysql_mysql_dump.sql"
    assert arts[0].meta["engine"] == "mysql"
    assert len(omissions) == 1
    assert "shop-postgres" in omissions[0].item
    assert "connection refused" in omissions[0].reason
    dumps = os.path.join(ctx.paths.staging_path, "docker", "database_dumps")
    assert sorted(os.listdir(dumps)) == ["app_mysql_mysql_dump.sql"]
    assert runner.ran("docker", "exec", "app_mysql", "mysqldump", "--all-databases", "--single-transaction", "--routines", "--triggers")
    assert runner.ran("docker", "exec", "shop-postgres", "pg_dumpall", "-U", "postgres")


def test_engine_patterns_match_container_names():
    patterns = {"mysql": r"(mysql|mariadb)", "postgres": r"(postgres|postgresql)"}
    assert match_engines(["db-MariaDB-1", "redis", "pg_postgres"], patterns) == [("db-MariaDB-1", "mysql"), ("pg_postgres", "postgres")]


def test_dump_command_carries_credentials_only_when_given():
    assert dump_command("mysql")[:2] == ["mysqldump", "--all-databases"]
    assert dump_command("mysql", user="root", password="s3cret")[:4] == ["mysqldump", "-u", "root", "-ps3cret"]
    with pytest.raises(ValueError):
        dump_command("mongodb")


# ---- docker info / images ----
def test_docker_info_failures_are_omissions(cfg, tmp_path):
    runner = docker_runner()
    runner.on("docker", "network", handler=reply(1, "", "permission denied"))
    ctx = _ctx(cfg, runner)
    arts, omissions = _run(DockerInfoCollector(), ctx)
    names = {a.name for a in arts}
    assert {"docker_version", "docker_info", "containers", "images", "volumes"} <= names
    assert [o.item for o in omissions] == ["networks.txt"]


def test_images_are_saved_by_tag_so_load_restores_names(cfg):
    runner = docker_runner(
        images=[
            "nginx:1.25 sha256:aaa",
            "nginx:latest sha256:aaa",
            "<none>:<none> sha256:aaa",
            "<none>:<none> sha256:bbb",
            "app/web:2 sha256:ccc",
        ]
    )
    ctx = _ctx(cfg, runner)
    arts, omissions = _run(DockerImagesCollector(), ctx)
    out = ctx.staging_file(ArtifactCategory.docker, "docker_images.tar")
    save = [c for c in runner.calls if c[:2] == ["docker", "save"]]
    assert save == [["docker", "save", "-o", out, "nginx:1.25", "nginx:latest", "app/web:2", "sha256:bbb"]]
    assert omissions == []
    assert arts[0].meta["count"] == "4"


def test_image_save_failure_raises_collector_error(cfg, tmp_path):
    runner = docker_runner(images=["nginx:1.25 sha256:aaa"])
    runner.on("docker", "save", handler=reply(1, "", "no space left on device"))
    ctx = _ctx(cfg, runner)
    with pytest.raises(CollectorError):
        _run(DockerImagesCollector(), ctx)
    assert runner.ran("docker", "save", "-o", ctx.staging_file(ArtifactCategory.docker, "docker_images.tar"), "nginx:1.25")


def _daemon_down():
    runner = docker_runner()
    down = reply(1, "", "Cannot connect to the Docker daemon at unix:///var/run/docker.sock")
    runner.on("docker", "ps", "--format", "{{.Names}}", handler=down)
    runner.on("docker", "images", "--format", "{{.Repository}}:{{.Tag}} {{.ID}}", handler=down)
    return runner


def test_unreachable_daemon_fails_image_and_database_collectors(cfg):
    ctx = _ctx(cfg, _daemon_down())
    with pytest.raises(CollectorError, match="Cannot connect to the Docker daemon"):
        _run(DockerImagesCollector(), ctx)
    with pytest.raises(CollectorError, match="Cannot connect to the Docker daemon"):
        _run(ContainerDatabaseCollector(), ctx)


def test_unreachable_daemon_is_an_omission_in_the_run(cfg, ops):
    run = BackupOrchestrator(
        cfg,
        collectors=[DockerImagesCollector(), ContainerDatabaseCollector()],
        runner=_daemon_down(),
        disk=FakeDisk(),
        ops=ops,
    ).run()
    assert run.status == RunStatus.succeeded
    assert {ph.collector: ph.outcome for ph in run.completed_phases} == {
        "docker_images": PhaseOutcome.failed,
        "container_databases": PhaseOutcome.failed,
    }
    assert sorted(o.collector for o in run.omissions()) == ["container_databases", "docker_images"]


def test_easypanel_db_omitted_when_daemon_unreachable(cfg, host_root):
    ep = host_root / "etc/easypanel"
    ep.mkdir()
    cfg = cfg.model_copy(update={"easypanel_dirs": [str(ep)]})
    ctx = _ctx(cfg, _daemon_down())
    arts, omissions = _run(EasypanelCollector(), ctx)
    assert [a.kind for a in arts] == [ArtifactKind.easypanel_tree]
    assert [o.item for o in omissions] == ["easypanel_db"]
    assert "Cannot connect to the Docker daemon" in omissions[0].reason


# ---- host trees ----
def test_config_trees_are_root_relative(cfg, tmp_path, host_root):
    runner = FakeRunner().on("tar", handler=writes_file("--file"))
    ctx = _ctx(cfg, runner)
    arts, omissions = _run(ConfigTreesCollector(), ctx)
    src = str(host_root / "etc/nginx")
    assert omissions == []
    assert arts[0].relative_path == f"configs/{flatten_path(src)}.tar.gz"
    assert runner.ran("tar", "--create", "--gzip", "--file", os.path.join(ctx.paths.staging_path, arts[0].relative_path))
    call = [c for c in runner.calls if c[0] == "tar"][0]
    assert call[-3:] == ["-C", "/", src.lstrip("/")]


def test_tar_exit_one_is_crash_consistent_and_exit_two_is_fatal(tmp_path):
    out = str(tmp_path / "t.tar.gz")
    r1 = FakeRunner().on("tar", handler=writes_file("--file", returncode=1))
    res = TreeArchiver(r1).create(out, base_dir=str(tmp_path), members=["."])
    assert res.ok and res.changed_during_read
    assert os.path.exists(out)

    r2 = FakeRunner().on("tar", handler=writes_file("--file", returncode=2))
    res = TreeArchiver(r2).create(out, base_dir=str(tmp_path), members=["."])
    assert not res.ok
    assert not os.path.exists(out)


def test_host_database_collector_fails_only_when_every_dump_fails(cfg, tmp_path):
    runner = FakeRunner(available={"mysql", "mysqldump", "pg_dumpall", "runuser"})
    runner.on("mysqldump", handler=reply(2, "", "Access denied"))
    runner.on("runuser", handler=reply(0, "-- PostgreSQL database cluster dump\n"))
    ctx = _ctx(cfg, runner)
    arts, omissions = _run(HostDatabaseCollector(), ctx)
    assert [a.kind for a in arts] == [ArtifactKind.host_db_dump]
    assert arts[0].meta["engine"] == "postgres"
    assert [o.item for o in omissions] == ["mysql_all_databases.sql"]

    runner.on("runuser", handler=reply(1, "", "role does not exist"))
    with pytest.raises(CollectorError):
        _run(HostDatabaseCollector(), ctx)


# ---- packages / services ----
def test_missing_package_tools_are_skipped_silently(cfg, tmp_path, monkeypatch):
    runner = FakeRunner(available={"dpkg", "apt-mark"})
    runner.on("dpkg", "-l", handler=reply(0, "ii  curl  8.5.0  amd64  cli\n"))
    runner.on("apt-mark", "showmanual", handler=reply(0, "vim\ncurl\ncurl\n"))
    monkeypatch.setattr(os.path, "isdir", lambda p, _real=os.path.isdir: False if p == "/etc/apt" else _real(p))
    ctx = _ctx(cfg, runner)
    arts, omissions = _run(PackagesCollector(), ctx)
    assert omissions == []
    assert [a.relative_path for a in arts] == ["packages/dpkg_packages.txt", "packages/apt_manual_packages.txt"]
    manual = open(os.path.join(ctx.paths.staging_path, "packages/apt_manual_packages.txt"), encoding="utf-8").read()
    assert manual.split() == ["curl", "vim"]


def test_services_are_captured_as_typed_rows(cfg, tmp_path):
    runner = FakeRunner(available={"systemctl"})
    runner.on(
        "systemctl",
        "list-units",
        handler=reply(0, "nginx.service loaded active running A high performance web server\ncron.service loaded active running Regular background program\n"),
    )
    runner.on("systemctl", "list-unit-files", handler=reply(0, "nginx.service enabled enabled\n"))
    ctx = _ctx(cfg, runner)
    assert ServicesCollector().is_applicable(ctx)
    arts, omissions = _run(ServicesCollector(), ctx)
    assert omissions == []
    assert {a.name for a in arts} == {"active_services.txt", "enabled_services.txt", "failed_services.txt", "services.json"}
    snap = json.loads(open(os.path.join(ctx.paths.staging_path, "services/services.json"), encoding="utf-8").read())
    assert snap["active"][0] == {
        "name": "nginx.service",
        "load": "loaded",
        "active": "active",
        "sub": "running",
        "description": "A high performance web server",
    }
    assert snap["enabled"] == [{"name": "nginx.service", "load": "enabled", "active": "", "sub": "", "description": ""}]


# ---- command runner ----
def test_runner_reports_missing_binary_and_timeout(tmp_path):
    r = CommandRunner(default_timeout=5)
    assert r.run(["definitely-not-a-real-binary-xyz"]).returncode == 127

    res = r.run([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)
    assert res.timed_out and not res.ok
    assert res.describe() == "timed out"

    out = tmp_path / "out.txt"
    res = r.run([sys.executable, "-c", "print('hello')"], stdout_path=str(out))
    assert res.ok
    assert out.read_text(encoding="utf-8").strip() == "hello"


# ---- users / easypanel ----
def test_user_homes_are_archived_relative_to_home_root(cfg, host_root, monkeypatch):
    import pwd as _pwd

    from hostbackup.core.backup import collector as collector_mod

    home = host_root / "home"
    for user in ("alice", "svc", "ftpbackup"):
        (home / user).mkdir()
    uids = {"alice": 1000, "svc": 998, "ftpbackup": 1001}

    def getpwnam(name):
        if name not in uids:
            raise KeyError(name)
        return _pwd.struct_passwd((name, "x", uids[name], uids[name], "", f"/home/{name}", "/bin/bash"))

    monkeypatch.setattr(collector_mod.pwd, "getpwnam", getpwnam)
    cfg = cfg.model_copy(update={"backup_dir": str(home / "ftpbackup")})
    runner = FakeRunner().on("tar", handler=writes_file("--file"))
    ctx = _ctx(cfg, runner)

    c = UserHomesCollector()
    assert [p for p, _ in c.permission_paths(ctx)] == [str(home), str(home / "alice")]
    arts, omissions = _run(c, ctx)
    assert [a.relative_path for a in arts] == ["system/user_alice.tar.gz"]
    assert arts[0].meta == {"user": "alice", "home_root": str(home)}
    call = [x for x in runner.calls if x[0] == "tar"][0]
    assert call[-3:] == ["-C", str(home), "alice"]


def test_easypanel_db_dump_uses_configured_password(cfg, host_root):
    ep = host_root / "etc/easypanel"
    ep.mkdir()
    cfg = cfg.model_copy(update={"easypanel_dirs": [str(ep)], "easypanel_db_password": "hunter2"})
    runner = docker_runner(running=["easypanel_mysql", "web"])
    runner.on("docker", "exec", "easypanel_mysql", handler=reply(0, "-- dump\n"))
    ctx = _ctx(cfg, runner)

    c = EasypanelCollector()
    assert c.is_applicable(ctx)
    arts, omissions = _run(c, ctx)
    assert omissions == []
    assert [a.kind for a in arts] == [ArtifactKind.easypanel_tree, ArtifactKind.easypanel_db]
    assert arts[0].relative_path == "configs/easypanel_easypanel.tar.gz"
    assert runner.ran("docker", "exec", "easypanel_mysql", "mysqldump", "-u", "root", "-phunter2")


# ---- system ----
def test_system_info_reports_host_facts(cfg):
    runner = FakeRunner(available={"ip"})
    runner.on("ip", "route", "get", handler=reply(0, "8.8.8.8 via 10.0.0.1 dev eth0 src 10.0.0.5 uid 0\n"))
    ctx = _ctx(cfg, runner)
    arts, _ = _run(SystemInfoCollector(), ctx)
    text = open(os.path.join(ctx.paths.staging_path, arts[0].relative_path), encoding="utf-8").read()
    assert text.startswith("=== SYSTEM INFORMATION ===")
    assert "IP Address: 10.0.0.5" in text
    assert "Memory: " in text and "CPU Cores: " in text


def test_network_command_failure_is_partial(cfg):
    runner = FakeRunner(available={"ip"})
    runner.on("ip", "addr", handler=reply(0, "1: lo: <LOOPBACK,UP>\n"))
    runner.on("ip", "route", "show", handler=reply(1, "", "RTNETLINK answers: Operation not permitted"))
    ctx = _ctx(cfg, runner)
    arts, omissions = _run(NetworkCollector(), ctx)
    assert "network_interfaces.txt" in {a.name for a in arts}
    assert [o.item for o in omissions] == ["routes.txt"]
    assert not os.path.exists(os.path.join(ctx.paths.staging_path, "system", "routes.txt"))
