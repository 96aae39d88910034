#!/usr/bin/env python3
"""
Backup Maintenance — Inspect and prune persisted snapshot backups.

Usage:
    # List backups for the queues document (newest first):
    python scripts/backups.py

    # Keep only the newest 3 backups:
    python scripts/backups.py --prune 3

    # Another document key / data directory:
    python scripts/backups.py --key queues --data-dir ./data
"""
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def run(key: str, data_dir: str, prune: int = None):
    from persistence.store import PersistenceStore

    store = PersistenceStore(data_dir=data_dir)
    backups = store.list_backups(key)
    print(f"Data dir: {store.data_dir}")
    print(f"Backups for '{key}': {len(backups)}")
    for name in backups:
        print(f"  {name}")

    if prune is not None:
        deleted = store.cleanup_old_backups(key, keep=prune)
        print(f"Deleted {deleted} backup(s), kept newest {prune}.")


def main():
    from config.settings import load_settings
    settings = load_settings()

    parser = argparse.ArgumentParser(description="Snapshot backup maintenance")
    parser.add_argument("--key", default=settings.persistence.document_key)
    parser.add_argument("--data-dir", default=settings.persistence.data_dir)
    parser.add_argument("--prune", type=int, metavar="KEEP", help="Delete all but the newest KEEP backups")
    args = parser.parse_args()

    run(args.key, args.data_dir, args.prune)


if __name__ == "__main__":
    main()
