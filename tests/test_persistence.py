"""
Tests for PersistenceStore.

Covers:
  - atomic save + backup on overwrite
  - load fallback to backups (missing / corrupt primary)
  - debounced saves (coalescing, per-key independence, failure swallowing)
  - flush_all, backup cleanup, diagnostics
"""
import asyncio
import json
import os
from unittest.mock import patch

import pytest

from persistence.store import (
    BackupError, PersistenceStore, PersistenceWriteError,
)


@pytest.fixture
def store(data_dir):
    return PersistenceStore(data_dir=data_dir, debounce_delay=0.05)


def _read(path):
    with open(path) as f:
        return json.load(f)


# ──────────────────────────────────────────────────────────────
#  Save / Load
# ──────────────────────────────────────────────────────────────

class TestSaveLoad:
    def test_save_then_load(self, store):
        store.save("queues", {"queues": {"S1": []}, "workers": {}})
        assert store.load("queues") == {"queues": {"S1": []}, "workers": {}}

    def test_save_writes_indented_json_and_no_temp_file(self, store, data_dir):
        store.save("queues", {"a": 1})
        path = os.path.join(data_dir, "queues.json")
        with open(path) as f:
            text = f.read()
        assert text == json.dumps({"a": 1}, indent=2)
        assert not os.path.exists(path + ".tmp")

    def test_first_save_creates_no_backup(self, store):
        store.save("queues", {"v": 1})
        assert store.list_backups("queues") == []

    def test_overwrite_backs_up_previous_document(self, store):
        store.save("queues", {"v": 1})
        store.save("queues", {"v": 2})
        backups = store.list_backups("queues")
        assert len(backups) == 1
        assert _read(store.backups_dir / backups[0]) == {"v": 1}
        assert store.load("queues") == {"v": 2}

    def test_load_missing_returns_none(self, store):
        assert store.load("nothing") is None

    def test_load_falls_back_to_backup_when_primary_deleted(self, store, data_dir):
        store.save("queues", {"v": 1})
        store.save("queues", {"v": 2})
        os.remove(os.path.join(data_dir, "queues.json"))
        assert store.load("queues") == {"v": 1}

    def test_load_falls_back_to_backup_when_primary_corrupt(self, store, data_dir):
        store.save("queues", {"v": 1})
        store.save("queues", {"v": 2})
        with open(os.path.join(data_dir, "queues.json"), "w") as f:
            f.write("{not json")
        assert store.load("queues") == {"v": 1}

    def test_load_uses_newest_backup(self, store, data_dir):
        for v in range(4):
            store.save("queues", {"v": v})
        os.remove(os.path.join(data_dir, "queues.json"))
        assert store.load("queues") == {"v": 2}

    def test_load_skips_corrupt_newest_backup(self, store, data_dir):
        for v in range(3):
            store.save("queues", {"v": v})
        newest, older = store.list_backups("queues")[:2]
        with open(store.backups_dir / newest, "w") as f:
            f.write("garbage")
        os.remove(os.path.join(data_dir, "queues.json"))
        assert store.load("queues") == _read(store.backups_dir / older)

    def test_load_corrupt_without_backup_returns_none(self, store, data_dir):
        with open(os.path.join(data_dir, "queues.json"), "w") as f:
            f.write("")
        assert store.load("queues") is None

    def test_load_rejects_unexpected_document_type(self, store):
        store.save("queues", {"v": 1})
        store.save("queues", [1, 2, 3])
        assert store.load("queues") == [1, 2, 3]
        assert store.load("queues", expected_type=dict) == {"v": 1}

    def test_unexpected_type_without_backup_returns_none(self, store):
        store.save("queues", "text")
        assert store.load("queues", expected_type=dict) is None

    def test_backups_of_other_keys_are_ignored(self, store, data_dir):
        store.save("queues_extra", {"other": True})
        store.save("queues_extra", {"other": False})
        store.save("queues", {"v": 1})
        assert store.list_backups("queues") == []
        os.remove(os.path.join(data_dir, "queues.json"))
        assert store.load("queues") is None

    def test_backup_failure_does_not_block_save(self, store):
        store.save("queues", {"v": 1})
        with patch.object(store, "_create_backup", side_effect=BackupError("disk full", "queues")):
            store.save("queues", {"v": 2})
        assert store.load("queues") == {"v": 2}

    def test_write_failure_raises_and_keeps_previous(self, store, data_dir):
        store.save("queues", {"v": 1})
        with patch("persistence.store.os.replace", side_effect=OSError("read-only fs")):
            with pytest.raises(PersistenceWriteError):
                store.save("queues", {"v": 2})
        assert store.load("queues") == {"v": 1}
        assert not os.path.exists(os.path.join(data_dir, "queues.json.tmp"))


# ──────────────────────────────────────────────────────────────
#  Debounce
# ──────────────────────────────────────────────────────────────

class TestDebouncedSave:
    @pytest.mark.asyncio
    async def test_coalesces_to_single_write_of_last_supplier(self, store):
        calls = []

        def supplier(n):
            def build():
                calls.append(n)
                return {"n": n}
            return build

        with patch.object(store, "save", wraps=store.save) as save:
            for n in range(5):
                store.debounced_save("queues", supplier(n))
            await asyncio.sleep(0.2)

        assert save.call_count == 1
        assert calls == [4]
        assert store.load("queues") == {"n": 4}

    @pytest.mark.asyncio
    async def test_timer_restarts_on_each_call(self, store):
        with patch.object(store, "save", wraps=store.save) as save:
            for n in range(4):
                store.debounced_save("queues", lambda n=n: {"n": n}, delay=0.2)
                await asyncio.sleep(0.05)
            assert save.call_count == 0
            await asyncio.sleep(0.35)
        assert save.call_count == 1

    @pytest.mark.asyncio
    async def test_keys_debounce_independently(self, store):
        store.debounced_save("queues", lambda: {"k": "queues"})
        store.debounced_save("campaigns", lambda: {"k": "campaigns"})
        await asyncio.sleep(0.2)
        assert store.load("queues") == {"k": "queues"}
        assert store.load("campaigns") == {"k": "campaigns"}
        assert store.pending_keys() == []

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self, store):
        def broken():
            raise RuntimeError("serialization exploded")

        store.debounced_save("queues", broken)
        await asyncio.sleep(0.15)
        assert store.load("queues") is None
        assert store.pending_keys() == []

    @pytest.mark.asyncio
    async def test_flush_all_cancels_timers_and_writes_now(self, store):
        store.debounced_save("queues", lambda: {"v": "flushed"}, delay=10)
        assert store.pending_keys() == ["queues"]

        with patch.object(store, "save", wraps=store.save) as save:
            assert store.flush_all() == ["queues"]
            assert store.load("queues") == {"v": "flushed"}
            assert store.pending_keys() == []
            await asyncio.sleep(0.05)
        assert save.call_count == 1

    @pytest.mark.asyncio
    async def test_flush_all_with_nothing_pending(self, store):
        assert store.flush_all() == []


# ──────────────────────────────────────────────────────────────
#  Backups & diagnostics
# ──────────────────────────────────────────────────────────────

class TestBackupMaintenance:
    def test_cleanup_keeps_newest(self, store):
        for v in range(6):
            store.save("queues", {"v": v})
        before = store.list_backups("queues")
        assert len(before) == 5

        deleted = store.cleanup_old_backups("queues", keep=2)
        assert deleted == 3
        assert store.list_backups("queues") == before[:2]

    def test_cleanup_with_fewer_backups_than_keep(self, store):
        store.save("queues", {"v": 1})
        store.save("queues", {"v": 2})
        assert store.cleanup_old_backups("queues", keep=5) == 0
        assert len(store.list_backups("queues")) == 1

    def test_is_writable(self, store):
        assert store.is_writable() is True

    def test_stats(self, store):
        store.save("queues", {"v": 1})
        store.save("queues", {"v": 2})
        stats = store.get_stats()
        assert stats["backup_count"] == 1
        assert stats["data_size"] > 0
        assert stats["pending_saves"] == []

    def test_backups_script_lists_and_prunes(self, store, data_dir, capsys):
        from scripts.backups import run

        for v in range(4):
            store.save("queues", {"v": v})
        run("queues", data_dir, prune=1)

        out = capsys.readouterr().out
        assert "Backups for 'queues': 3" in out
        assert "Deleted 2 backup(s), kept newest 1." in out
        assert len(store.list_backups("queues")) == 1
