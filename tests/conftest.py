from __future__ import annotations

import os

import pytest

from hostbackup.core.config.models import BackupConfigFile
from hostbackup.core.ops_log import OpsLogger


@pytest.fixture
def host_root(tmp_path):
    """
    A miniature host under tmp_path: etc/, opt/, home/ and a docker root,
    so collectors never touch the real machine.
    """
    root = tmp_path / "host"
    for d in ("etc/nginx/sites-enabled", "opt", "home", "var/lib/docker/volumes/app_data/_data"):
        os.makedirs(root / d, exist_ok=True)
    (root / "etc/nginx/nginx.conf").write_text("worker_processes auto;\n", encoding="utf-8")
    (root / "etc/nginx/sites-enabled/default").write_text("server { listen 80; }\n", encoding="utf-8")
    (root / "var/lib/docker/volumes/app_data/_data/db.bin").write_bytes(b"\x00" * 64)
    return root


@pytest.fixture
def cfg(tmp_path, host_root):
    return BackupConfigFile(
        backup_dir=str(tmp_path / "backups"),
        logs_dir=str(tmp_path / "logs"),
        require_root=False,
        docker_root=str(host_root / "var/lib/docker"),
        volume_root=str(host_root / "var/lib/docker/volumes"),
        compose_roots=[str(host_root / "opt")],
        config_paths=[str(host_root / "etc/nginx")],
        easypanel_dirs=[],
        home_root=str(host_root / "home"),
        delete_staging_after_archive=False,
    )


@pytest.fixture
def ops(tmp_path):
    return OpsLogger(path=str(tmp_path / "logs" / "ops.jsonl"))
