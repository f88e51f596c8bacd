from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from typing import Dict, List, Tuple

from hostbackup.core.errors import PermissionRestoreError
from hostbackup.core.logger import get_logger


@dataclass(frozen=True)
class PermissionRecord:
    path: str
    original_mode: int


class PermissionLedger:
    """
    Records every permission change made for read access, so restore_all()
    can put the host back exactly as it was found.

    One record per path, captured before the first chmod; restore_all()
    consumes the records once and clears the ledger.
    """

    def __init__(self, *, logger=None, ops=None, run_id: str = ""):
        self.logger = logger or get_logger()
        self.ops = ops
        self.run_id = run_id
        self._records: Dict[str, PermissionRecord] = {}
        self._restore_calls = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and os.path.abspath(path) in self._records

    @property
    def records(self) -> Tuple[PermissionRecord, ...]:
        return tuple(self._records.values())

    @property
    def restore_calls(self) -> int:
        return self._restore_calls

    def acquire(self, path: str, desired_mode: int) -> bool:
        """
        Record path's current mode (first time only) and apply desired_mode.
        Returns False when the path is missing or chmod was refused.
        """
        key = os.path.abspath(path)
        try:
            st = os.lstat(key)
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.warning(f"Cannot stat {key}: {e}")
            return False
        if stat.S_ISLNK(st.st_mode):
            # chmod would follow the link and alter a path we never recorded.
            return False
        if key in self._records:
            return True
        original = stat.S_IMODE(st.st_mode)
        self._records[key] = PermissionRecord(path=key, original_mode=original)
        if original == int(desired_mode):
            return True
        try:
            os.chmod(key, int(desired_mode))
        except OSError as e:
            self.logger.warning(f"Could not chmod {oct(int(desired_mode))} {key}: {e}")
            return False
        self.logger.debug(f"chmod {oct(original)} -> {oct(int(desired_mode))}: {key}")
        return True

    def restore_all(self) -> List[PermissionRestoreError]:
        self._restore_calls += 1
        if not self._records:
            return []
        self.logger.info("Restoring original permissions...")
        errors: List[PermissionRestoreError] = []
        restored = 0
        for rec in list(self._records.values()):
            try:
                if not os.path.lexists(rec.path):
                    continue
                if stat.S_IMODE(os.lstat(rec.path).st_mode) != rec.original_mode:
                    os.chmod(rec.path, rec.original_mode)
                restored += 1
            except OSError as e:
                err = PermissionRestoreError(path=rec.path, mode=rec.original_mode, reason=str(e))
                self.logger.warning(f"{err.user_message}: {e}")
                errors.append(err)
        self._records.clear()
        if self.ops is not None:
            self.ops.log(
                run_id=self.run_id,
                event="permissions.restore",
                outcome="ok" if not errors else "partial",
                details={"restored": restored, "failed": [e.path for e in errors]},
            )
        return errors
