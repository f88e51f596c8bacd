from __future__ import annotations

import os
import shutil


class DiskProbe:
    """Free-space and tree-size queries, in bytes."""

    def free_bytes(self, path: str) -> int:
        probe = path
        while probe and not os.path.exists(probe):
            parent = os.path.dirname(probe.rstrip(os.sep))
            if parent == probe:
                break
            probe = parent
        usage = shutil.disk_usage(probe or os.sep)
        return int(usage.free)

    def tree_size_bytes(self, path: str) -> int:
        """Allocated size of a tree, like `du -s`. Unreadable or vanishing entries count as 0."""
        if not os.path.lexists(path):
            return 0
        total = 0
        seen = set()
        try:
            st = os.lstat(path)
        except OSError:
            return 0
        if not os.path.isdir(path) or os.path.islink(path):
            return _allocated(st)
        total += _allocated(st)
        for dirpath, dirnames, filenames in os.walk(path, onerror=lambda e: None):
            for name in dirnames + filenames:
                p = os.path.join(dirpath, name)
                try:
                    st = os.lstat(p)
                except OSError:
                    continue
                key = (st.st_dev, st.st_ino)
                if st.st_nlink > 1:
                    if key in seen:
                        continue
                    seen.add(key)
                total += _allocated(st)
        return total


def _allocated(st: os.stat_result) -> int:
    blocks = getattr(st, "st_blocks", None)
    if blocks is None:
        return int(st.st_size)
    return max(int(blocks) * 512, 0)


def apparent_size_bytes(path: str) -> int:
    """Sum of file sizes under path (what ends up in an archive)."""
    if os.path.isfile(path):
        return int(os.path.getsize(path))
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for fn in filenames:
            try:
                total += int(os.lstat(os.path.join(dirpath, fn)).st_size)
            except OSError:
                continue
    return total


def format_size(num_bytes: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(num_bytes)
    for unit in units:
        if size < 1024 or unit == units[-1]:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
