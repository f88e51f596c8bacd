from __future__ import annotations

import json
import os
import platform
import pwd
import shutil
import socket
import time
from typing import List, Optional, Sequence, Tuple

import psutil

from hostbackup.core.backup.models import Artifact, ArtifactCategory, ArtifactKind, HostFacts, Omission
from hostbackup.core.config.models import BackupConfigFile
from hostbackup.core.config.paths import BackupFsPaths
from hostbackup.core.errors import CollectorError
from hostbackup.core.host.disk import DiskProbe, apparent_size_bytes, format_size
from hostbackup.core.host.docker import DockerEngine, dump_command
from hostbackup.core.host.packages import LISTINGS, PackageQuery
from hostbackup.core.host.runner import CommandResult, CommandRunner
from hostbackup.core.host.services import ServiceQuery
from hostbackup.core.host.tar import TreeArchiver, flatten_path
from hostbackup.core.logger import get_logger


class CollectorContext:
    """
    Everything a collector may touch during one run: its staging area, the
    permission ledger and the host capability interfaces.
    """

    def __init__(
        self,
        *,
        cfg: BackupConfigFile,
        paths: BackupFsPaths,
        ledger,
        runner: CommandRunner,
        disk: Optional[DiskProbe] = None,
        docker: Optional[DockerEngine] = None,
        packages: Optional[PackageQuery] = None,
        services: Optional[ServiceQuery] = None,
        tree_archiver: Optional[TreeArchiver] = None,
        logger=None,
    ):
        self.cfg = cfg
        self.paths = paths
        self.ledger = ledger
        self.runner = runner
        self.disk = disk or DiskProbe()
        self.docker = docker or DockerEngine(runner)
        self.packages = packages or PackageQuery(runner)
        self.services = services or ServiceQuery(runner)
        self.tree_archiver = tree_archiver or TreeArchiver(runner, timeout=cfg.timeouts_seconds.archive)
        self.logger = logger or get_logger()
        self._collector = ""
        self._omissions: List[Omission] = []

    # ---- per-collector bookkeeping ----
    def begin(self, collector: str) -> None:
        self._collector = collector
        self._omissions = []

    def take_omissions(self) -> List[Omission]:
        out, self._omissions = self._omissions, []
        return out

    def omit(self, category: ArtifactCategory, item: str, reason: str) -> None:
        self.logger.warning(f"[{self._collector}] skipped {item}: {reason}")
        self._omissions.append(Omission(category=category, collector=self._collector, item=item, reason=reason))

    # ---- staging helpers ----
    def category_dir(self, category: ArtifactCategory) -> str:
        d = self.paths.category_dir(category.value)
        os.makedirs(d, exist_ok=True)
        return d

    def staging_file(self, category: ArtifactCategory, *parts: str) -> str:
        p = os.path.join(self.category_dir(category), *parts)
        os.makedirs(os.path.dirname(p), exist_ok=True)
        return p

    def artifact(self, path: str, *, name: str, category: ArtifactCategory, kind: ArtifactKind, **meta: str) -> Artifact:
        rel = os.path.relpath(path, self.paths.staging_path).replace(os.sep, "/")
        return Artifact(
            name=name,
            category=category,
            kind=kind,
            relative_path=rel,
            size_bytes=apparent_size_bytes(path),
            meta={k: str(v) for k, v in meta.items()},
        )

    def write_text(self, category: ArtifactCategory, filename: str, text: str) -> str:
        p = self.staging_file(category, filename)
        with open(p, "w", encoding="utf-8") as f:
            f.write(text)
        return p

    def run_to_file(self, argv: Sequence[str], out_path: str, *, timeout: Optional[float] = None) -> CommandResult:
        """Stream a command's stdout into out_path; the file is removed when the command fails."""
        res = self.runner.run(list(argv), stdout_path=out_path, timeout=timeout)
        if not res.ok:
            discard(out_path)
        return res

    def timeout(self, kind: str) -> float:
        return float(getattr(self.cfg.timeouts_seconds, kind))


def discard(path: str) -> None:
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path, ignore_errors=True)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError:
        pass


class Collector:
    """One independent capture unit. Writes only under its own category directory."""

    name = "collector"
    category = ArtifactCategory.system
    phase = "default"

    def is_applicable(self, ctx: CollectorContext) -> bool:
        return True

    def permission_paths(self, ctx: CollectorContext) -> List[Tuple[str, int]]:
        return []

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        raise NotImplementedError


# ---- host facts ----
def read_os_pretty_name(path: str = "/etc/os-release") -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("PRETTY_NAME="):
                    return line.split("=", 1)[1].strip().strip('"')
    except OSError:
        pass
    return platform.system()


def read_cpu_model(path: str = "/proc/cpuinfo") -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if line.lower().startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor() or "unknown"


def host_facts() -> HostFacts:
    return HostFacts(
        hostname=socket.gethostname(),
        os_name=read_os_pretty_name(),
        kernel=platform.release(),
        architecture=platform.machine(),
    )


def primary_ip(runner: CommandRunner) -> str:
    res = runner.run(["ip", "route", "get", "8.8.8.8"], timeout=10)
    if not res.ok:
        return "unknown"
    parts = res.stdout.split()
    if "src" in parts:
        i = parts.index("src")
        if i + 1 < len(parts):
            return parts[i + 1]
    return "unknown"


# ---- collectors ----
class SystemInfoCollector(Collector):
    name = "system_info"
    category = ArtifactCategory.system
    phase = "system"

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        facts = host_facts()
        lines = [
            "=== SYSTEM INFORMATION ===",
            f"Hostname: {facts.hostname}",
            f"OS: {facts.os_name}",
            f"Kernel: {facts.kernel}",
            f"Architecture: {facts.architecture}",
            f"CPU: {read_cpu_model()}",
            f"CPU Cores: {psutil.cpu_count(logical=True)}",
            f"Memory: {format_size(psutil.virtual_memory().total)}",
            f"Disk: {format_size(psutil.disk_usage('/').total)}",
            f"IP Address: {primary_ip(ctx.runner)}",
            f"Backup Date: {time.strftime('%a %b %d %H:%M:%S %Z %Y')}",
            "",
        ]
        p = ctx.write_text(self.category, "system_info.txt", "\n".join(lines))
        return [ctx.artifact(p, name="system_info", category=self.category, kind=ArtifactKind.system_info)]


class PackagesCollector(Collector):
    name = "packages"
    category = ArtifactCategory.packages
    phase = "packages"

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        out: List[Artifact] = []
        for listing in LISTINGS:
            if not ctx.packages.available(listing):
                ctx.logger.debug(f"{listing.tool} not installed; skipping")
                continue
            p = ctx.staging_file(self.category, listing.filename)
            res = ctx.run_to_file(listing.argv, p, timeout=ctx.timeout("default"))
            if not res.ok:
                ctx.omit(self.category, listing.filename, res.describe())
                continue
            out.append(ctx.artifact(p, name=listing.filename, category=self.category, kind=ArtifactKind.package_list, tool=listing.tool))

        manual = ctx.packages.manually_installed()
        if manual:
            p = ctx.write_text(self.category, "apt_manual_packages.txt", "\n".join(manual) + "\n")
            out.append(ctx.artifact(p, name="apt_manual_packages", category=self.category, kind=ArtifactKind.apt_manual, count=str(len(manual))))

        apt_dir = "/etc/apt"
        if os.path.isdir(apt_dir):
            dst = os.path.join(ctx.category_dir(self.category), "apt")
            try:
                shutil.copytree(apt_dir, dst, symlinks=True, dirs_exist_ok=True)
                out.append(ctx.artifact(dst, name="apt_sources", category=self.category, kind=ArtifactKind.apt_sources))
            except (OSError, shutil.Error) as e:
                ctx.omit(self.category, apt_dir, str(e))
        return out


class ServicesCollector(Collector):
    name = "services"
    category = ArtifactCategory.services
    phase = "services"

    def is_applicable(self, ctx: CollectorContext) -> bool:
        return ctx.services.available()

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        out: List[Artifact] = []
        snapshot = {}
        for state, fetch in (
            ("active", lambda: ctx.services.list_units("active")),
            ("enabled", ctx.services.list_enabled),
            ("failed", lambda: ctx.services.list_units("failed")),
        ):
            units = fetch()
            fname = f"{state}_services.txt"
            if units is None:
                ctx.omit(self.category, fname, "systemctl query failed")
                continue
            snapshot[state] = [u.to_dict() for u in units]
            table = "\n".join(f"{u.name:<50} {u.load:<10} {u.active:<10} {u.sub:<10} {u.description}".rstrip() for u in units)
            p = ctx.write_text(self.category, fname, table + "\n")
            out.append(ctx.artifact(p, name=fname, category=self.category, kind=ArtifactKind.service_list, state=state, count=str(len(units))))
        if snapshot:
            p = ctx.write_text(self.category, "services.json", json.dumps(snapshot, indent=2, sort_keys=True) + "\n")
            out.append(ctx.artifact(p, name="services.json", category=self.category, kind=ArtifactKind.service_list, state="all"))
        return out


class NetworkCollector(Collector):
    name = "network"
    category = ArtifactCategory.system
    phase = "network"

    COMMANDS = (
        ("network_interfaces.txt", ["ip", "addr", "show"]),
        ("routes.txt", ["ip", "route", "show"]),
    )
    FILES = (("hosts.txt", "/etc/hosts"), ("resolv.conf", "/etc/resolv.conf"))

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        out: List[Artifact] = []
        for fname, argv in self.COMMANDS:
            p = ctx.staging_file(self.category, fname)
            res = ctx.run_to_file(argv, p, timeout=ctx.timeout("default"))
            if not res.ok:
                ctx.omit(self.category, fname, res.describe())
                continue
            out.append(ctx.artifact(p, name=fname, category=self.category, kind=ArtifactKind.network))
        for fname, src in self.FILES:
            if not os.path.exists(src):
                continue
            p = ctx.staging_file(self.category, fname)
            try:
                shutil.copyfile(src, p)
            except OSError as e:
                ctx.omit(self.category, src, str(e))
                continue
            out.append(ctx.artifact(p, name=fname, category=self.category, kind=ArtifactKind.network, source=src))
        return out


class ConfigTreesCollector(Collector):
    name = "configs"
    category = ArtifactCategory.configs
    phase = "configs"

    def _existing(self, ctx: CollectorContext) -> List[str]:
        return [p for p in ctx.cfg.config_paths if os.path.lexists(p)]

    def permission_paths(self, ctx: CollectorContext) -> List[Tuple[str, int]]:
        return [(p, ctx.cfg.readable_mode_int()) for p in self._existing(ctx)]

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        out: List[Artifact] = []
        for path in self._existing(ctx):
            name = flatten_path(path)
            dst = ctx.staging_file(self.category, f"{name}.tar.gz")
            res = ctx.tree_archiver.create_from_path(dst, path, root_relative=True)
            if not res.ok:
                ctx.omit(self.category, path, res.detail)
                continue
            out.append(ctx.artifact(dst, name=name, category=self.category, kind=ArtifactKind.config_tree, source=path))
        return out


class EasypanelCollector(Collector):
    name = "easypanel"
    category = ArtifactCategory.configs
    phase = "easypanel"

    def _dirs(self, ctx: CollectorContext) -> List[str]:
        return [d for d in ctx.cfg.easypanel_dirs if os.path.isdir(d)]

    def is_applicable(self, ctx: CollectorContext) -> bool:
        return bool(self._dirs(ctx)) or ctx.runner.which("easypanel") is not None

    def permission_paths(self, ctx: CollectorContext) -> List[Tuple[str, int]]:
        return [(d, ctx.cfg.readable_mode_int()) for d in self._dirs(ctx)]

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        out: List[Artifact] = []
        for d in self._dirs(ctx):
            name = f"easypanel_{os.path.basename(d.rstrip('/'))}"
            dst = ctx.staging_file(self.category, f"{name}.tar.gz")
            res = ctx.tree_archiver.create_from_path(dst, d, root_relative=True)
            if not res.ok:
                ctx.omit(self.category, d, res.detail)
                continue
            out.append(ctx.artifact(dst, name=name, category=self.category, kind=ArtifactKind.easypanel_tree, source=d))

        if not ctx.docker.is_installed():
            return out
        running = ctx.docker.running_container_names()
        if running is None:
            ctx.omit(self.category, "easypanel_db", f"could not list running containers: {ctx.docker.last_error()}")
            return out
        if not any("easypanel" in n.lower() for n in running):
            return out
        candidates = [n for n in running if "easypanel" in n.lower() and any(t in n.lower() for t in ("mysql", "mariadb", "db"))]
        if not candidates:
            ctx.logger.warning("Could not find Easypanel DB container")
            return out
        container = candidates[0]
        dst = ctx.staging_file(self.category, "easypanel_db.sql")
        cmd = dump_command("mysql", user="root", password=ctx.cfg.easypanel_db_password)
        res = ctx.docker.exec_to_file(container, cmd, dst, timeout=ctx.timeout("dump"))
        if not res.ok:
            discard(dst)
            ctx.omit(self.category, f"easypanel_db ({container})", res.describe())
            return out
        out.append(ctx.artifact(dst, name="easypanel_db", category=self.category, kind=ArtifactKind.easypanel_db, container=container, engine="mysql"))
        return out


class UserHomesCollector(Collector):
    name = "users"
    category = ArtifactCategory.system
    phase = "users"

    def _users(self, ctx: CollectorContext) -> List[str]:
        root = ctx.cfg.home_root
        if not os.path.isdir(root):
            return []
        backup_dir = os.path.abspath(ctx.cfg.backup_dir)
        out: List[str] = []
        for name in sorted(os.listdir(root)):
            home = os.path.join(root, name)
            if not os.path.isdir(home) or os.path.islink(home) or os.path.abspath(home) == backup_dir:
                continue
            try:
                uid = pwd.getpwnam(name).pw_uid
            except KeyError:
                continue
            if uid >= ctx.cfg.min_user_uid:
                out.append(name)
        return out

    def is_applicable(self, ctx: CollectorContext) -> bool:
        return os.path.isdir(ctx.cfg.home_root)

    def permission_paths(self, ctx: CollectorContext) -> List[Tuple[str, int]]:
        mode = ctx.cfg.readable_mode_int()
        root = ctx.cfg.home_root
        return [(root, mode)] + [(os.path.join(root, u), mode) for u in self._users(ctx)]

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        out: List[Artifact] = []
        root = ctx.cfg.home_root
        for user in self._users(ctx):
            dst = ctx.staging_file(self.category, f"user_{user}.tar.gz")
            res = ctx.tree_archiver.create_from_path(dst, os.path.join(root, user), root_relative=False)
            if not res.ok:
                ctx.omit(self.category, f"user {user}", res.detail)
                continue
            out.append(ctx.artifact(dst, name=f"user_{user}", category=self.category, kind=ArtifactKind.user_home, user=user, home_root=root))
        return out


class HostDatabaseCollector(Collector):
    name = "host_databases"
    category = ArtifactCategory.configs
    phase = "databases"

    def _mysql(self, ctx: CollectorContext) -> bool:
        return (ctx.runner.which("mysql") is not None or ctx.runner.which("mariadb") is not None) and ctx.runner.which("mysqldump") is not None

    def _postgres(self, ctx: CollectorContext) -> bool:
        return ctx.runner.which("pg_dumpall") is not None

    def is_applicable(self, ctx: CollectorContext) -> bool:
        return self._mysql(ctx) or self._postgres(ctx)

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        out: List[Artifact] = []
        jobs = []
        if self._mysql(ctx):
            jobs.append(("mysql", "mysql_all_databases.sql", dump_command("mysql")))
        if self._postgres(ctx):
            jobs.append(("postgres", "postgresql_all_databases.sql", ["runuser", "-l", "postgres", "-c", "pg_dumpall"]))
        for engine, fname, argv in jobs:
            ctx.logger.info(f"Backing up system {engine} databases...")
            dst = ctx.staging_file(self.category, fname)
            res = ctx.run_to_file(argv, dst, timeout=ctx.timeout("dump"))
            if not res.ok:
                ctx.omit(self.category, fname, res.describe())
                continue
            out.append(ctx.artifact(dst, name=fname, category=self.category, kind=ArtifactKind.host_db_dump, engine=engine))
        if jobs and not out:
            raise CollectorError("All host database dumps failed.", collector=self.name)
        return out
