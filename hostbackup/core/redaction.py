from __future__ import annotations

import re
from typing import Any, Dict

REDACT_KEYS = {
    "password",
    "passphrase",
    "secret",
    "token",
    "api_key",
    "easypanel_db_password",
}

_PASSWORD_FLAG_RE = re.compile(r"(?<=\s)(-p)(\S+)")
_KV_RE = re.compile(r"(?i)\b(password|passphrase|token|api[_-]?key)\s*=\s*([^\s,;]+)")


def redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if str(k).lower() in REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [redact(x) for x in obj]
    return obj


def redact_text(text: str) -> str:
    """Mask inline credentials, e.g. `mysqldump -psecret` or `password=...`."""
    s = _PASSWORD_FLAG_RE.sub(r"\1***", " " + text)[1:]
    s = _KV_RE.sub(r"\1=***", s)
    return s
