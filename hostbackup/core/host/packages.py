from __future__ import annotations

from dataclasses import dataclass
from typing import List

from hostbackup.core.host.runner import CommandRunner


@dataclass(frozen=True)
class PackageListing:
    tool: str
    filename: str
    argv: List[str]


LISTINGS: List[PackageListing] = [
    PackageListing("dpkg", "dpkg_packages.txt", ["dpkg", "-l"]),
    PackageListing("apt", "apt_packages.txt", ["apt", "list", "--installed"]),
    PackageListing("snap", "snap_packages.txt", ["snap", "list"]),
    PackageListing("pip", "pip_packages.txt", ["pip", "list"]),
    PackageListing("pip3", "pip3_packages.txt", ["pip3", "list"]),
]


class PackageQuery:
    """Package-manager query interface."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def available(self, listing: PackageListing) -> bool:
        return self.runner.which(listing.tool) is not None

    def manually_installed(self) -> List[str]:
        """Names of apt packages marked manual, the reinstall set for a fresh host."""
        if self.runner.which("apt-mark") is None:
            return []
        res = self.runner.run(["apt-mark", "showmanual"])
        if not res.ok:
            return []
        return sorted({line.strip() for line in res.stdout.splitlines() if line.strip()})
