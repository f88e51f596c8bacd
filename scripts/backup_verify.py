from __future__ import annotations

import argparse
import json
from typing import Optional

from hostbackup.core.backup.verifier import verify_archive


def main(argv: Optional[list] = None) -> int:
    ap = argparse.ArgumentParser(description="Verify a backup archive against its embedded manifest")
    ap.add_argument("archive_path")
    args = ap.parse_args(argv)
    res = verify_archive(args.archive_path)
    print(json.dumps({"ok": res.ok, "errors": res.errors, "checked_files": res.checked_files}, indent=2))
    return 0 if res.ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
