from __future__ import annotations

import os
from typing import Any, Dict, Optional

from pydantic import ValidationError

from hostbackup.core.config.io import read_json_file
from hostbackup.core.config.models import BackupConfigFile
from hostbackup.core.errors import ConfigError

DEFAULT_CONFIG_PATH = "/etc/hostbackup/backup.json"
CONFIG_ENV = "HOSTBACKUP_CONFIG"


def resolve_config_path(path: Optional[str] = None) -> str:
    return path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH


def load_config(path: Optional[str] = None, *, overrides: Optional[Dict[str, Any]] = None, logger=None) -> BackupConfigFile:
    """
    Load backup.json. A missing file yields defaults; a corrupt or invalid one is fatal.
    """
    cfg_path = resolve_config_path(path)
    rr = read_json_file(cfg_path)
    data: Dict[str, Any] = {}
    if rr.ok:
        data = dict(rr.data)
    elif rr.error != "missing":
        raise ConfigError(f"Cannot read config {cfg_path}: {rr.error}", path=cfg_path)
    elif logger is not None:
        logger.debug(f"No config at {cfg_path}; using defaults.")
    for k, v in (overrides or {}).items():
        if v is not None:
            data[k] = v
    try:
        return BackupConfigFile.model_validate(data)
    except ValidationError as e:
        errs = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()[:5])
        raise ConfigError(f"Invalid config {cfg_path}: {errs}", path=cfg_path) from e
