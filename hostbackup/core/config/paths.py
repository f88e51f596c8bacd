from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict

CATEGORIES = ("system", "docker", "configs", "packages", "services")


@dataclass(frozen=True)
class BackupFsPaths:
    backup_dir: str
    name: str

    @property
    def staging_path(self) -> str:
        return os.path.join(self.backup_dir, self.name)

    @property
    def archive_path(self) -> str:
        return os.path.join(self.backup_dir, f"{self.name}.tar.gz")

    def category_dir(self, category: str) -> str:
        return os.path.join(self.staging_path, category)

    def category_dirs(self) -> Dict[str, str]:
        return {c: self.category_dir(c) for c in CATEGORIES}

