from __future__ import annotations

import hashlib
import json
import os
import shutil
import tarfile
import time
from dataclasses import dataclass
from typing import List

from hostbackup.core.backup.models import BackupManifest
from hostbackup.core.errors import UnrecoverableSetupError
from hostbackup.core.host.disk import format_size
from hostbackup.core.logger import get_logger

MANIFEST_TEXT = "MANIFEST.txt"
MANIFEST_JSON = "manifest.json"
MANIFEST_SHA256 = "manifest.sha256"
RESTORE_SCRIPT = "restore.sh"


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def manifest_json_bytes(manifest: BackupManifest) -> bytes:
    return json.dumps(manifest.model_dump(mode="json"), ensure_ascii=False, indent=2, sort_keys=True).encode("utf-8")


def render_manifest_text(manifest: BackupManifest) -> str:
    created = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(manifest.created_at))
    lines: List[str] = [
        "=== VPS BACKUP SUMMARY ===",
        f"Backup Date: {created}",
        f"Backup Location: {manifest.backup_location}",
        f"Original System: {manifest.host.os_name}",
        f"Hostname: {manifest.host.hostname}",
        f"Kernel: {manifest.host.kernel} ({manifest.host.architecture})",
        f"Backup Type: {manifest.backup_type}",
        "",
        "=== BACKUP CONTENTS ===",
    ]
    for cat in manifest.captured_categories():
        lines.append(f"[{cat.value}]")
        for a in manifest.artifacts:
            if a.category == cat:
                lines.append(f"  - {a.relative_path} ({format_size(a.size_bytes)})")
    if not manifest.artifacts:
        lines.append("- nothing captured")

    lines += ["", "=== OMITTED ==="]
    if manifest.omissions:
        for o in manifest.omissions:
            lines.append(f"- [{o.category.value}] {o.collector}: {o.item}: {o.reason}")
    else:
        lines.append("- none")

    lines += ["", "=== PHASES ==="]
    for ph in manifest.phases:
        lines.append(f"- {ph.phase} ({ph.collector}): {ph.outcome.value}")

    lines += ["", "=== IMPORTANT NOTES ==="]
    lines += [f"- {n}" for n in manifest.notes]

    lines += [
        "",
        "=== RESTORATION ===",
        "To restore on a new Ubuntu VPS:",
        "1. Copy this backup archive to the new server and extract it",
        f"2. Run: bash {RESTORE_SCRIPT}",
        "3. Reboot the system",
        "4. Verify all services are running",
        "",
        f"Backup Size: {format_size(manifest.staging_size_bytes)}",
        "",
    ]
    return "\n".join(lines)


@dataclass(frozen=True)
class ArchiveResult:
    archive_path: str
    sha256: str
    size_bytes: int


class ArchiveBuilder:
    """Turns the staging tree into one .tar.gz with the manifest inside."""

    def __init__(self, *, logger=None, archive_mode: int = 0o644):
        self.logger = logger or get_logger()
        self.archive_mode = archive_mode

    def write_manifest(self, staging_path: str, manifest: BackupManifest) -> None:
        data = manifest_json_bytes(manifest)
        with open(os.path.join(staging_path, MANIFEST_JSON), "wb") as f:
            f.write(data)
        with open(os.path.join(staging_path, MANIFEST_SHA256), "w", encoding="utf-8") as f:
            f.write(sha256_bytes(data) + "\n")
        with open(os.path.join(staging_path, MANIFEST_TEXT), "w", encoding="utf-8") as f:
            f.write(render_manifest_text(manifest))

    def make_shareable(self, staging_path: str) -> None:
        """Directories 0755, files 0644, restore script 0755 (for FTP pickup)."""
        os.chmod(staging_path, 0o755)
        for dirpath, dirnames, filenames in os.walk(staging_path):
            for d in dirnames:
                p = os.path.join(dirpath, d)
                if not os.path.islink(p):
                    os.chmod(p, 0o755)
            for fn in filenames:
                p = os.path.join(dirpath, fn)
                if not os.path.islink(p):
                    os.chmod(p, 0o644)
        script = os.path.join(staging_path, RESTORE_SCRIPT)
        if os.path.isfile(script):
            os.chmod(script, 0o755)

    def finalize(self, staging_path: str, manifest: BackupManifest, archive_path: str) -> ArchiveResult:
        try:
            self.write_manifest(staging_path, manifest)
            self.make_shareable(staging_path)
            self.logger.info("Creating compressed backup archive...")
            os.makedirs(os.path.dirname(archive_path) or ".", exist_ok=True)
            with tarfile.open(archive_path, mode="w:gz") as tf:
                tf.add(staging_path, arcname=os.path.basename(staging_path.rstrip(os.sep)))
            os.chmod(archive_path, self.archive_mode)
            digest = sha256_file(archive_path)
            size = os.path.getsize(archive_path)
        except (OSError, tarfile.TarError) as e:
            self.discard_archive(archive_path)
            raise UnrecoverableSetupError(f"Archive finalize failed: {e}", archive=archive_path) from e
        self.logger.info(f"Backup archive: {archive_path} ({format_size(size)})")
        return ArchiveResult(archive_path=archive_path, sha256=digest, size_bytes=int(size))

    def discard_archive(self, archive_path: str) -> None:
        try:
            if os.path.exists(archive_path):
                os.remove(archive_path)
        except OSError as e:
            self.logger.warning(f"Could not remove partial archive {archive_path}: {e}")

    def discard_staging(self, staging_path: str) -> bool:
        if not os.path.isdir(staging_path):
            return False
        shutil.rmtree(staging_path, ignore_errors=True)
        return not os.path.exists(staging_path)

