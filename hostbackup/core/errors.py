from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from hostbackup.core.redaction import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class HostBackupError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def __str__(self) -> str:
        return self.user_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- Run-aborting errors ----
class InsufficientSpace(HostBackupError):
    def __init__(self, *, phase: str, available_bytes: int, projected_bytes: int):
        mb_avail = int(available_bytes) // (1024 * 1024)
        mb_needed = int(projected_bytes) // (1024 * 1024)
        super().__init__(
            "insufficient_space",
            f"The space available is: {mb_avail}MB, the backup file size is: {mb_needed}MB. "
            "THE BACKUP STOPPED. THE FILE IS NOT SAVED. CLEAN SPACE!!!",
            severity=Severity.CRITICAL,
            recoverable=False,
            context={"phase": phase, "available_bytes": int(available_bytes), "projected_bytes": int(projected_bytes)},
        )
        self.phase = phase
        self.available_bytes = int(available_bytes)
        self.projected_bytes = int(projected_bytes)


class UnrecoverableSetupError(HostBackupError):
    def __init__(self, user_message: str = "Backup setup failed.", **ctx: Any):
        super().__init__("unrecoverable_setup", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


# ---- Locally absorbed errors ----
class CollectorError(HostBackupError):
    def __init__(self, user_message: str = "Collector failed.", **ctx: Any):
        super().__init__("collector_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class PermissionRestoreError(HostBackupError):
    def __init__(self, *, path: str, mode: int, reason: str):
        super().__init__(
            "permission_restore_error",
            f"Could not restore permissions for {path}",
            severity=Severity.WARN,
            recoverable=True,
            context={"path": path, "mode": oct(int(mode)), "reason": reason},
        )
        self.path = path
        self.mode = int(mode)


# ---- Misc ----
class ConfigError(HostBackupError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class StateTransitionError(HostBackupError):
    def __init__(self, user_message: str = "Internal state error.", **ctx: Any):
        super().__init__("state_transition_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)
