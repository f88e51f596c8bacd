from __future__ import annotations

import argparse
import sys
from typing import Optional

from hostbackup.core.backup.api import BackupOrchestrator
from hostbackup.core.backup.archiver import ArchiveBuilder
from hostbackup.core.backup.models import RunStatus
from hostbackup.core.config.manager import load_config
from hostbackup.core.errors import ConfigError
from hostbackup.core.host.disk import format_size
from hostbackup.core.logger import setup_logging


def _ask_delete_staging(staging_path: str) -> bool:
    try:
        answer = input(f"Delete the uncompressed backup directory {staging_path}? (y/N): ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def main(argv: Optional[list] = None) -> int:
    ap = argparse.ArgumentParser(description="Live VPS backup (no container downtime)")
    ap.add_argument("--config", default=None, help="Path to backup.json (defaults to $HOSTBACKUP_CONFIG or /etc/hostbackup/backup.json)")
    ap.add_argument("--backup-dir", default=None, help="Where staging and the archive are written")
    staging = ap.add_mutually_exclusive_group()
    staging.add_argument("--delete-staging", dest="delete_staging", action="store_true", default=None)
    staging.add_argument("--keep-staging", dest="delete_staging", action="store_false")
    ap.set_defaults(delete_staging=None)
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(
            args.config,
            overrides={"backup_dir": args.backup_dir, "delete_staging_after_archive": args.delete_staging},
        )
    except ConfigError as e:
        print(f"[ERROR] {e.user_message}", file=sys.stderr)
        return 1

    logger = setup_logging(cfg.logs_dir, verbose=args.verbose)
    run = BackupOrchestrator(cfg, logger=logger).run()

    if run.status != RunStatus.succeeded:
        msg = (run.error or {}).get("user_message", "Backup aborted.")
        print(f"[ERROR] {msg}", file=sys.stderr)
        return 1

    print("=== BACKUP COMPLETED SUCCESSFULLY ===")
    print(f"Backup archive: {run.archive_path} ({format_size(run.archive_size_bytes or 0)})")
    print(f"SHA-256: {run.archive_sha256}")
    omissions = run.omissions()
    if omissions:
        print(f"Skipped items: {len(omissions)} (see MANIFEST.txt)")
    for err in run.permission_errors:
        print(f"[WARNING] {err.get('user_message')}", file=sys.stderr)

    if not run.staging_deleted:
        if cfg.delete_staging_after_archive is None and sys.stdin.isatty():
            if _ask_delete_staging(run.staging_path):
                run.staging_deleted = ArchiveBuilder(logger=logger).discard_staging(run.staging_path)
        if not run.staging_deleted:
            print(f"Uncompressed backup kept at: {run.staging_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
