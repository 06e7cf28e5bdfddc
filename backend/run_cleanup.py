#!/usr/bin/env python3
"""
CodeDrop Staging Cleanup Tool
Removes staging directories older than the retention window.
Meant to be run daily from cron or a systemd timer.
"""

import sys
import argparse
from typing import List, Optional

from config.paths import STAGING_DIR, get_target_roots
from config.settings import AppConfig, DeploySettings, setup_logging
from database import DatabaseManager
from main import build_service


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="CodeDrop Staging Cleanup Tool")
    parser.add_argument("--days", "-d", type=int, help="Retention in days (default: configured cleanup_days)")
    parser.add_argument("--dry-run", "-n", action="store_true", help="List what would be removed without deleting")
    parser.add_argument("--database", help="Database path (default: CODEDROP_DATABASE_PATH)")
    parser.add_argument("--staging-dir", help="Staging directory (default: CODEDROP_STAGING_DIR)")

    args = parser.parse_args(argv)

    if args.days is not None and args.days < 1:
        print("Error: --days must be at least 1.")
        return 1

    setup_logging(level=AppConfig.LOG_LEVEL)

    base_settings = DeploySettings.from_env()
    db = DatabaseManager(args.database or AppConfig.DATABASE_PATH,
                         initial_settings=base_settings.to_row_values())
    service = build_service(
        db,
        args.staging_dir or STAGING_DIR,
        get_target_roots(),
        base_settings=base_settings,
    )

    removed = service.run_cleanup(args.days, dry_run=args.dry_run)

    verb = "Would remove" if args.dry_run else "Removed"
    if removed:
        print(f"{verb} {len(removed)} staging director(ies):")
        for name in removed:
            print(f"  - {name}")
    else:
        print("Nothing to clean up.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
