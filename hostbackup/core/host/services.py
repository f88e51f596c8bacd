from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from hostbackup.core.host.runner import CommandRunner


@dataclass(frozen=True)
class ServiceUnit:
    name: str
    load: str = ""
    active: str = ""
    sub: str = ""
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ServiceQuery:
    """Service-manager query interface (systemd)."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def available(self) -> bool:
        return self.runner.which("systemctl") is not None

    def list_units(self, state: str) -> Optional[List[ServiceUnit]]:
        res = self.runner.run(["systemctl", "list-units", "--type=service", f"--state={state}", "--no-legend", "--plain", "--no-pager"])
        if not res.ok:
            return None
        out: List[ServiceUnit] = []
        for line in res.stdout.splitlines():
            parts = line.split(None, 4)
            if not parts:
                continue
            parts += [""] * (5 - len(parts))
            out.append(ServiceUnit(name=parts[0], load=parts[1], active=parts[2], sub=parts[3], description=parts[4].strip()))
        return out

    def list_enabled(self) -> Optional[List[ServiceUnit]]:
        res = self.runner.run(["systemctl", "list-unit-files", "--type=service", "--state=enabled", "--no-legend", "--no-pager"])
        if not res.ok:
            return None
        out: List[ServiceUnit] = []
        for line in res.stdout.splitlines():
            parts = line.split()
            if not parts:
                continue
            out.append(ServiceUnit(name=parts[0], load="enabled"))
        return out
