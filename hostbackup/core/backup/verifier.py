from __future__ import annotations

import hashlib
import json
import tarfile
from dataclasses import dataclass
from typing import Dict, List

from hostbackup.core.backup.archiver import MANIFEST_JSON, MANIFEST_SHA256, sha256_bytes


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    errors: List[str]
    checked_files: int


def _sha256_member(tf: tarfile.TarFile, member: tarfile.TarInfo) -> str:
    h = hashlib.sha256()
    fp = tf.extractfile(member)
    if fp is None:
        return ""
    with fp:
        for chunk in iter(lambda: fp.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_archive(archive_path: str) -> VerifyResult:
    """Check a finished archive against the manifest embedded in it."""
    errors: List[str] = []
    checked = 0
    try:
        tf = tarfile.open(archive_path, mode="r:gz")
    except (OSError, tarfile.TarError) as e:
        return VerifyResult(ok=False, errors=[f"unreadable archive: {e}"], checked_files=0)
    with tf:
        members: Dict[str, tarfile.TarInfo] = {m.name: m for m in tf.getmembers()}
        tops = sorted({name.split("/", 1)[0] for name in members})
        if len(tops) != 1:
            return VerifyResult(ok=False, errors=[f"expected one top-level directory, found {len(tops)}"], checked_files=0)
        top = tops[0]

        man_member = members.get(f"{top}/{MANIFEST_JSON}")
        if man_member is None:
            return VerifyResult(ok=False, errors=[f"missing {MANIFEST_JSON}"], checked_files=0)
        fp = tf.extractfile(man_member)
        manifest_bytes = fp.read() if fp is not None else b""
        try:
            man = json.loads(manifest_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return VerifyResult(ok=False, errors=[f"invalid {MANIFEST_JSON}: {e}"], checked_files=0)

        sig_member = members.get(f"{top}/{MANIFEST_SHA256}")
        if sig_member is None:
            errors.append(f"missing {MANIFEST_SHA256}")
        else:
            sfp = tf.extractfile(sig_member)
            sig = (sfp.read() if sfp is not None else b"").decode("utf-8", errors="replace").strip()
            if sig != sha256_bytes(manifest_bytes):
                errors.append(f"{MANIFEST_SHA256} mismatch")

        for ent in man.get("artifacts") or []:
            rel = str(ent.get("relative_path") or "")
            if not rel:
                continue
            m = members.get(f"{top}/{rel}")
            if m is None:
                errors.append(f"missing artifact: {rel}")
                continue
            if not m.isfile():
                continue
            if int(m.size) != int(ent.get("size_bytes") or 0):
                errors.append(f"size mismatch: {rel}")
            exp = ent.get("sha256")
            if exp and _sha256_member(tf, m) != exp:
                errors.append(f"hash mismatch: {rel}")
            checked += 1

    return VerifyResult(ok=(len(errors) == 0), errors=errors, checked_files=checked)
