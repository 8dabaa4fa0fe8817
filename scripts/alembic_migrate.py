#!/usr/bin/env python3
"""Registry Database Migration Helper.

Runs Alembic migrations against the swap registry, copying the SQLite
database aside first.

Usage:
    python scripts/alembic_migrate.py upgrade [head]   # Upgrade to latest
    python scripts/alembic_migrate.py downgrade [-1]   # Downgrade one version
    python scripts/alembic_migrate.py current          # Show current version
    python scripts/alembic_migrate.py history          # Show migration history

Backups land in data/backups/ and only the 10 most recent are kept.
"""

import argparse
import shutil
import subprocess
import sys
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
DB_PATH = PROJECT_ROOT / "data" / "swaprelay.db"
BACKUP_DIR = PROJECT_ROOT / "data" / "backups"
KEEP_BACKUPS = 10


def run_alembic(*args) -> int:
    """Run an alembic command from the project root."""
    cmd = ["alembic", *args]
    print(f"Running: {' '.join(cmd)}")
    return subprocess.run(cmd, cwd=PROJECT_ROOT).returncode


def backup_registry():
    """Copy the registry database (and its WAL/SHM files) aside.

    Returns:
        Path to the backup, or None on a fresh install
    """
    if not DB_PATH.exists():
        return None
    BACKUP_DIR.mkdir(parents=True, exist_ok=True)
    backup_path = BACKUP_DIR / f"pre_migration_{datetime.now():%Y%m%d_%H%M%S}.db"
    shutil.copy2(DB_PATH, backup_path)
    for ext in ("-wal", "-shm"):
        journal = Path(f"{DB_PATH}{ext}")
        if journal.exists():
            shutil.copy2(journal, Path(f"{backup_path}{ext}"))

    backups = sorted(BACKUP_DIR.glob("pre_migration_*.db"), key=lambda p: p.stat().st_mtime, reverse=True)
    for old in backups[KEEP_BACKUPS:]:
        old.unlink()
    return backup_path


def main() -> int:
    parser = argparse.ArgumentParser(description="Swap registry migrations")
    parser.add_argument("command", choices=["upgrade", "downgrade", "current", "history"])
    parser.add_argument("target", nargs="?")
    args = parser.parse_args()

    if args.command in ("upgrade", "downgrade"):
        backup_path = backup_registry()
        print(f"Backup created: {backup_path}" if backup_path else "No existing database to back up")
        default = "head" if args.command == "upgrade" else "-1"
        return run_alembic(args.command, args.target or default)

    if args.command == "history":
        return run_alembic("history", "--verbose")
    return run_alembic("current")


if __name__ == "__main__":
    sys.exit(main())
