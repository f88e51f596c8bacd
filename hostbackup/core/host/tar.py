from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional

from hostbackup.core.host.runner import CommandRunner


@dataclass(frozen=True)
class TreeArchiveResult:
    ok: bool
    changed_during_read: bool
    detail: str = ""


class TreeArchiver:
    """
    GNU tar over live trees.

    tar exits 1 when a file changed or vanished while being read; the archive is
    still complete and is treated as a crash-consistent capture. Exit 2 is fatal.
    """

    def __init__(self, runner: CommandRunner, *, timeout: Optional[float] = None):
        self.runner = runner
        self.timeout = timeout

    def create(self, out_path: str, *, base_dir: str, members: List[str]) -> TreeArchiveResult:
        os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
        argv = [
            "tar",
            "--create",
            "--gzip",
            "--file",
            out_path,
            "--ignore-failed-read",
            "--warning=no-file-changed",
            "--warning=no-file-removed",
            "-C",
            base_dir,
            *members,
        ]
        res = self.runner.run(argv, timeout=self.timeout)
        if res.ok:
            return TreeArchiveResult(ok=True, changed_during_read=False)
        if res.returncode == 1 and not res.timed_out:
            return TreeArchiveResult(ok=True, changed_during_read=True, detail=res.describe())
        _discard(out_path)
        return TreeArchiveResult(ok=False, changed_during_read=False, detail=res.describe())

    def create_from_path(self, out_path: str, path: str, *, root_relative: bool = True) -> TreeArchiveResult:
        """Archive one path; root_relative keeps the full path (etc/nginx/...) so restore extracts into /."""
        path = os.path.abspath(path)
        if root_relative:
            return self.create(out_path, base_dir=os.sep, members=[path.lstrip(os.sep)])
        return self.create(out_path, base_dir=os.path.dirname(path), members=[os.path.basename(path)])


def _discard(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError:
        pass


def flatten_path(path: str) -> str:
    """/etc/systemd/system -> etc_systemd_system"""
    cleaned = path.strip().strip(os.sep)
    return cleaned.replace(os.sep, "_") or "root"

