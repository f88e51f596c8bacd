from __future__ import annotations

import os
import re
import shutil
from typing import Dict, Iterable, List, Tuple

from hostbackup.core.backup.collector import Collector, CollectorContext, discard
from hostbackup.core.backup.models import Artifact, ArtifactCategory, ArtifactKind
from hostbackup.core.errors import CollectorError
from hostbackup.core.host.docker import dump_command, match_engines

_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".cache"}
_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]")


class _DockerCollector(Collector):
    category = ArtifactCategory.docker

    def is_applicable(self, ctx: CollectorContext) -> bool:
        return ctx.docker.is_installed()


class DockerInfoCollector(_DockerCollector):
    name = "docker_info"
    phase = "docker"

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        out: List[Artifact] = []
        version = ctx.docker.version()
        if version:
            p = ctx.write_text(self.category, "docker_version.txt", version + "\n")
            out.append(ctx.artifact(p, name="docker_version", category=self.category, kind=ArtifactKind.docker_info))
        else:
            ctx.omit(self.category, "docker_version.txt", "docker --version failed")

        listings = [("docker_info.txt", ctx.docker.info_text)]
        listings += [(f"{kind}.txt", lambda k=kind: ctx.docker.listing(k)) for kind in ("containers", "images", "networks", "volumes")]
        for fname, fetch in listings:
            res = fetch()
            if not res.ok:
                ctx.omit(self.category, fname, res.describe())
                continue
            p = ctx.write_text(self.category, fname, res.stdout)
            out.append(ctx.artifact(p, name=fname[:-4], category=self.category, kind=ArtifactKind.docker_info))
        return out


class DockerVolumesCollector(_DockerCollector):
    """
    Live tar of the volume store while containers keep running.

    The result is crash-consistent (as after a power loss), not transactionally
    consistent: a database writing into a volume may be caught mid-write. Dumps
    from ContainerDatabaseCollector cover that case.
    """

    name = "docker_volumes"
    phase = "docker_volumes"

    def is_applicable(self, ctx: CollectorContext) -> bool:
        return super().is_applicable(ctx) and os.path.isdir(ctx.cfg.volume_root)

    def permission_paths(self, ctx: CollectorContext) -> List[Tuple[str, int]]:
        return [(ctx.cfg.docker_root, ctx.cfg.readable_mode_int())]

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        ctx.logger.info("Backing up Docker volumes (live backup - containers remain running)...")
        dst = ctx.staging_file(self.category, "docker_volumes.tar.gz")
        res = ctx.tree_archiver.create(dst, base_dir=ctx.cfg.volume_root, members=["."])
        if not res.ok:
            raise CollectorError(f"Could not backup Docker volumes: {res.detail}", collector=self.name)
        if res.changed_during_read:
            ctx.logger.info("Some volume files changed while being read (crash-consistent capture).")
        return [
            ctx.artifact(
                dst,
                name="docker_volumes",
                category=self.category,
                kind=ArtifactKind.docker_volumes,
                volume_root=ctx.cfg.volume_root,
                consistency="crash-consistent",
                changed_during_read="yes" if res.changed_during_read else "no",
            )
        ]


class DockerImagesCollector(_DockerCollector):
    name = "docker_images"
    phase = "docker_images"

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        refs = ctx.docker.image_refs()
        if refs is None:
            raise CollectorError(f"Could not list Docker images: {ctx.docker.last_error()}", collector=self.name)
        if not refs:
            ctx.logger.info("No local Docker images to save.")
            return []
        ctx.logger.info(f"Backing up {len(refs)} Docker images...")
        dst = ctx.staging_file(self.category, "docker_images.tar")
        res = ctx.docker.save_images(refs, dst, timeout=ctx.timeout("image_save"))
        if not res.ok:
            discard(dst)
            raise CollectorError(f"Could not backup Docker images: {res.describe()}", collector=self.name)
        return [ctx.artifact(dst, name="docker_images", category=self.category, kind=ArtifactKind.docker_images, count=str(len(refs)))]


def discover_compose_files(roots: Iterable[str], filenames: Iterable[str], *, max_depth: int, exclude: Iterable[str] = ()) -> List[str]:
    """
    Compose files under roots, at most max_depth directories below each root.
    Symlinked directories are not followed.
    """
    wanted = set(filenames)
    excluded = {os.path.abspath(e) for e in exclude}
    found: List[str] = []
    for root in roots:
        root = os.path.abspath(root)
        if not os.path.isdir(root):
            continue
        base_depth = root.rstrip(os.sep).count(os.sep)
        for dirpath, dirnames, files in os.walk(root, onerror=lambda e: None):
            depth = dirpath.rstrip(os.sep).count(os.sep) - base_depth
            dirnames[:] = sorted(
                d for d in dirnames if d not in _SKIP_DIRS and os.path.join(dirpath, d) not in excluded
            )
            if depth >= max_depth:
                dirnames[:] = []
            for fn in sorted(files):
                p = os.path.join(dirpath, fn)
                if fn in wanted and os.path.isfile(p) and p not in found:
                    found.append(p)
    return found


def compose_staging_names(directories: Iterable[str]) -> Dict[str, str]:
    """
    Map each source directory to a flat staging name: /opt/a -> compose_opt_a.
    Flattening can collide (/opt/a_b vs /opt/a/b); later ones get -2, -3...
    """
    out: Dict[str, str] = {}
    used = set()
    for d in directories:
        if d in out:
            continue
        base = "compose" + _UNSAFE_NAME_RE.sub("-", os.path.abspath(d).replace(os.sep, "_"))
        name, n = base, 1
        while name in used:
            n += 1
            name = f"{base}-{n}"
        used.add(name)
        out[d] = name
    return out


class ComposeFilesCollector(_DockerCollector):
    name = "compose_files"
    phase = "compose"

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        ctx.logger.info("Searching for Docker Compose files...")
        files = discover_compose_files(
            ctx.cfg.compose_roots,
            ctx.cfg.compose_filenames,
            max_depth=ctx.cfg.compose_max_depth,
            exclude=[ctx.cfg.backup_dir],
        )
        by_dir: Dict[str, List[str]] = {}
        for f in files:
            by_dir.setdefault(os.path.dirname(f), []).append(f)
        names = compose_staging_names(by_dir.keys())

        out: List[Artifact] = []
        for src_dir, compose_files in by_dir.items():
            dst_dir = os.path.join(ctx.category_dir(self.category), names[src_dir])
            try:
                os.makedirs(dst_dir, exist_ok=True)
                for f in compose_files:
                    shutil.copy2(f, dst_dir)
                env = os.path.join(src_dir, ".env")
                has_env = os.path.isfile(env)
                if has_env:
                    shutil.copy2(env, dst_dir)
            except OSError as e:
                discard(dst_dir)
                ctx.omit(self.category, src_dir, str(e))
                continue
            out.append(
                ctx.artifact(
                    dst_dir,
                    name=names[src_dir],
                    category=self.category,
                    kind=ArtifactKind.compose,
                    source_dir=src_dir,
                    files=",".join(os.path.basename(f) for f in compose_files),
                    env="yes" if has_env else "no",
                )
            )
        return out


class ContainerDatabaseCollector(_DockerCollector):
    """
    Live dumps from running database containers. Best-effort: a failed dump is
    an omission, never an abort.
    """

    name = "container_databases"
    phase = "container_databases"

    def produce(self, ctx: CollectorContext) -> List[Artifact]:
        ctx.logger.info("Creating database dumps from running containers...")
        running = ctx.docker.running_container_names()
        if running is None:
            raise CollectorError(f"Could not list running containers: {ctx.docker.last_error()}", collector=self.name)
        targets = match_engines(running, ctx.cfg.database_patterns)
        out: List[Artifact] = []
        for container, engine in targets:
            fname = f"{_UNSAFE_NAME_RE.sub('_', container)}_{engine}_dump.sql"
            dst = ctx.staging_file(self.category, "database_dumps", fname)
            ctx.logger.info(f"Creating {engine} dump from container: {container}")
            res = ctx.docker.exec_to_file(container, dump_command(engine), dst, timeout=ctx.timeout("dump"))
            if not res.ok:
                discard(dst)
                ctx.omit(self.category, f"{container} ({engine})", res.describe())
                continue
            out.append(
                ctx.artifact(dst, name=fname[:-4], category=self.category, kind=ArtifactKind.container_db_dump, container=container, engine=engine)
            )
        return out
