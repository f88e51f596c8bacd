from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

from hostbackup.core.logger import get_logger
from hostbackup.core.redaction import redact_text


@dataclass(frozen=True)
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def describe(self) -> str:
        if self.timed_out:
            return "timed out"
        err = (self.stderr or "").strip().splitlines()
        tail = err[-1] if err else ""
        return f"exit {self.returncode}" + (f": {tail[:200]}" if tail else "")


@dataclass
class CommandRunner:
    """
    Blocking subprocess calls with a bounded timeout.

    A missing binary yields returncode 127, a timeout kills the child and
    yields timed_out=True. Neither raises.
    """

    default_timeout: float = 120.0
    env: Optional[dict] = None

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        stdout_path: Optional[str] = None,
    ) -> CommandResult:
        args = [str(a) for a in argv]
        to = float(timeout if timeout is not None else self.default_timeout)
        get_logger().debug(f"exec: {redact_text(' '.join(args))} (timeout={to:.0f}s)")
        try:
            if stdout_path is not None:
                os.makedirs(os.path.dirname(stdout_path) or ".", exist_ok=True)
                with open(stdout_path, "wb") as out:
                    res = subprocess.run(args, stdout=out, stderr=subprocess.PIPE, timeout=to, env=self.env)
                return CommandResult(argv=args, returncode=res.returncode, stderr=res.stderr.decode("utf-8", errors="replace"))
            res = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=to,
                env=self.env,
            )
            return CommandResult(argv=args, returncode=res.returncode, stdout=res.stdout or "", stderr=res.stderr or "")
        except subprocess.TimeoutExpired:
            return CommandResult(argv=args, returncode=-1, timed_out=True, stderr=f"timed out after {to:.0f}s")
        except FileNotFoundError as e:
            return CommandResult(argv=args, returncode=127, stderr=str(e))
        except PermissionError as e:
            return CommandResult(argv=args, returncode=126, stderr=str(e))
