"""
PersistenceStore — Atomic, backed-up, debounced JSON document storage.

Data layout:
  {data_dir}/
    queues.json                         current document for key "queues"
    backups/
      queues_2025-01-01T10-00-00-000000+00-00.json

Write path:
  1. serialize the document to {key}.json.tmp (flushed and fsynced)
  2. copy the existing {key}.json into backups/ (best effort)
  3. os.replace the temp file onto {key}.json (atomic on POSIX and Windows)

Read path:
  {key}.json → newest readable backup → None

Debounced saves keep one pending timer per key on the running event loop;
a new request for the same key replaces the previous one, so only the last
supplier registered during a quiet period is ever called.

Single-process only (no cross-process file locking).
"""
from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

logger = structlog.get_logger()

BACKUPS_DIRNAME = "backups"
_BACKUP_STAMP = r"\d{4}-\d{2}-\d{2}T[\d\-+]+"


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class PersistenceError(Exception):
    """Base exception for all persistence operations."""

    def __init__(self, message: str, key: str = ""):
        self.key = key
        super().__init__(message)


class PersistenceWriteError(PersistenceError):
    """The document could not be written; the previous file is left intact."""


class PersistenceReadError(PersistenceError):
    """The document exists but could not be read or parsed."""


class BackupError(PersistenceError):
    """A backup copy could not be created. Never fatal."""


# ══════════════════════════════════════════════════════════════
#  STORE
# ══════════════════════════════════════════════════════════════

@dataclass
class _PendingSave:
    supplier: Callable[[], Any]
    handle: asyncio.TimerHandle


class PersistenceStore:
    """
    Key → JSON document store on the local filesystem.

    save() raises PersistenceWriteError; load() never raises and returns
    None when neither the document nor any backup is readable.
    """

    def __init__(self, data_dir: str = "./data", debounce_delay: float = 2.0):
        self._data_dir = Path(data_dir)
        self._backups_dir = self._data_dir / BACKUPS_DIRNAME
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._backups_dir.mkdir(parents=True, exist_ok=True)
        self.debounce_delay = debounce_delay
        self._pending: dict[str, _PendingSave] = {}
        logger.info("persistence_store_initialized", data_dir=str(self._data_dir))

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def backups_dir(self) -> Path:
        return self._backups_dir

    # ── Paths ─────────────────────────────────────────────

    def _file_path(self, key: str) -> Path:
        return self._data_dir / f"{key}.json"

    def _backup_pattern(self, key: str) -> re.Pattern:
        return re.compile(rf"^{re.escape(key)}_{_BACKUP_STAMP}\.json$")

    @staticmethod
    def _timestamp() -> str:
        # Fixed-width UTC stamp: lexicographic order equals chronological order
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")
        return stamp.replace(":", "-").replace(".", "-")

    # ── Save ──────────────────────────────────────────────

    def save(self, key: str, document: Any) -> None:
        """Atomically replace the document for `key`, backing up the old one."""
        path = self._file_path(key)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            payload = json.dumps(document, indent=2, default=str)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())

            if path.exists():
                try:
                    self._create_backup(key)
                except BackupError as e:
                    logger.warning("persistence_backup_failed", key=key, error=str(e))

            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            logger.error("persistence_save_failed", key=key, error=str(e))
            raise PersistenceWriteError(f"Failed to save {key}: {e}", key) from e

        logger.info("persistence_saved", key=key, bytes=len(payload))

    def _create_backup(self, key: str) -> Path:
        source = self._file_path(key)
        target = self._backups_dir / f"{key}_{self._timestamp()}.json"
        try:
            shutil.copyfile(source, target)
        except OSError as e:
            raise BackupError(f"Failed to back up {key}: {e}", key) from e
        logger.debug("persistence_backup_created", key=key, backup=target.name)
        return target

    # ── Load ──────────────────────────────────────────────

    def _read(self, path: Path, key: str, expected_type: Optional[type] = None) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceReadError(f"Failed to read {path.name}: {e}", key) from e
        if expected_type is not None and not isinstance(data, expected_type):
            raise PersistenceReadError(
                f"Unexpected document in {path.name}: {type(data).__name__}", key
            )
        return data

    def load(self, key: str, expected_type: Optional[type] = None) -> Optional[Any]:
        """
        Return the stored document, the newest readable backup, or None.

        With `expected_type`, a document of any other JSON type counts as
        unreadable and the backups are tried instead.
        """
        path = self._file_path(key)
        if path.exists():
            try:
                data = self._read(path, key, expected_type)
                logger.info("persistence_loaded", key=key)
                return data
            except PersistenceReadError as e:
                logger.error("persistence_load_failed", key=key, error=str(e))
        else:
            logger.info("persistence_no_data", key=key)

        return self._load_from_latest_backup(key, expected_type)

    def _load_from_latest_backup(self, key: str, expected_type: Optional[type] = None) -> Optional[Any]:
        for name in self.list_backups(key):
            try:
                data = self._read(self._backups_dir / name, key, expected_type)
            except PersistenceReadError as e:
                logger.warning("persistence_backup_unreadable", key=key, backup=name, error=str(e))
                continue
            logger.info("persistence_recovered_from_backup", key=key, backup=name)
            return data
        return None

    # ── Debounce ──────────────────────────────────────────

    def debounced_save(
        self,
        key: str,
        supplier: Callable[[], Any],
        delay: Optional[float] = None,
    ) -> None:
        """
        Save `supplier()` under `key` after `delay` seconds without another
        request for the same key. Must be called from a running event loop.
        """
        delay = self.debounce_delay if delay is None else delay
        previous = self._pending.pop(key, None)
        if previous is not None:
            previous.handle.cancel()

        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._run_pending, key)
        self._pending[key] = _PendingSave(supplier=supplier, handle=handle)

    def _run_pending(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        try:
            self.save(key, pending.supplier())
        except Exception as e:
            logger.error("persistence_debounced_save_failed", key=key, error=str(e))

    def pending_keys(self) -> list[str]:
        return list(self._pending)

    def flush_all(self) -> list[str]:
        """Cancel every pending timer and write its document now."""
        flushed = []
        for key in list(self._pending):
            pending = self._pending.pop(key)
            pending.handle.cancel()
            try:
                self.save(key, pending.supplier())
                flushed.append(key)
            except Exception as e:
                logger.error("persistence_flush_failed", key=key, error=str(e))
        if flushed:
            logger.info("persistence_flushed", keys=flushed)
        return flushed

    # ── Backups ───────────────────────────────────────────

    def list_backups(self, key: str) -> list[str]:
        """Backup file names for `key`, newest first."""
        pattern = self._backup_pattern(key)
        try:
            names = [p.name for p in self._backups_dir.iterdir() if pattern.match(p.name)]
        except OSError as e:
            logger.error("persistence_list_backups_failed", key=key, error=str(e))
            return []
        return sorted(names, reverse=True)

    def cleanup_old_backups(self, key: str, keep: int = 5) -> int:
        """Delete all but the newest `keep` backups for `key`."""
        deleted = 0
        for name in self.list_backups(key)[max(keep, 0):]:
            try:
                (self._backups_dir / name).unlink()
                deleted += 1
            except OSError as e:
                logger.error("persistence_backup_cleanup_failed", key=key, backup=name, error=str(e))
        if deleted:
            logger.info("persistence_backups_pruned", key=key, deleted=deleted, kept=keep)
        return deleted

    # ── Diagnostics ───────────────────────────────────────

    def is_writable(self) -> bool:
        probe = self._data_dir / ".write-test"
        try:
            probe.write_text("test")
            probe.unlink()
            return True
        except OSError:
            return False

    def get_stats(self) -> dict[str, Any]:
        data_size = 0
        backup_count = 0
        try:
            for p in self._data_dir.iterdir():
                if p.is_file() and p.suffix == ".json":
                    data_size += p.stat().st_size
            backup_count = sum(1 for p in self._backups_dir.iterdir() if p.is_file())
        except OSError as e:
            logger.error("persistence_stats_failed", error=str(e))
        return {
            "data_dir": str(self._data_dir),
            "data_size": data_size,
            "backup_count": backup_count,
            "pending_saves": self.pending_keys(),
        }
