#!/usr/bin/env python3
"""Tests for persona_sync.py — peer registry and history watcher.

Run: python3 test_persona_sync.py
  or: pytest test_persona_sync.py -v
"""

import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from watchfiles import Change

import persona_store
import persona_sync
from persona_store import Store, Turn
from persona_sync import HistoryWatcher, PeerRegistry


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


# ===========================================================================
# 1. Peer registry
# ===========================================================================

class TestPeerRegistry(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / ".instances.json"
        self.clock = FakeClock()

    def tearDown(self):
        self._tmp.cleanup()

    def _registry(self):
        return PeerRegistry(self.path, ttl=300, clock=self.clock)

    def test_instance_ids_unique(self):
        ids = {persona_sync.make_instance_id(42, 1.0) for _ in range(5)}
        self.assertEqual(len(ids), 5)
        self.assertTrue(all(i.startswith("persona_42_1000_") for i in ids))

    def test_register_many_all_active(self):
        registries = [self._registry() for _ in range(4)]
        for r in registries:
            self.assertTrue(r.register())
        self.assertEqual(len(registries[0].list_active()), 4)

    def test_entry_fields(self):
        r = self._registry()
        r.register()
        entry = json.loads(self.path.read_text())[r.instance_id]
        self.assertEqual(entry["last_seen"], 1000.0)
        self.assertEqual(entry["start_time"], 1000.0)
        self.assertIn("pid", entry)

    def test_expired_entries_pruned(self):
        registries = [self._registry() for _ in range(3)]
        for r in registries:
            r.register()
        self.clock.now += 301
        self.assertEqual(registries[0].list_active(), {})
        # Pruning is written back
        self.assertEqual(json.loads(self.path.read_text()), {})

    def test_entry_at_ttl_boundary_still_active(self):
        r = self._registry()
        r.register()
        self.clock.now += 300
        self.assertEqual(len(r.list_active()), 1)

    def test_heartbeat_keeps_entry_alive(self):
        a, b = self._registry(), self._registry()
        a.register()
        b.register()
        self.clock.now += 200
        a.heartbeat()
        self.clock.now += 200
        self.assertEqual(list(a.list_active()), [a.instance_id])

    def test_heartbeat_reregisters_missing_entry(self):
        r = self._registry()
        r.register()
        self.path.write_text("{}")
        self.assertTrue(r.heartbeat())
        self.assertIn(r.instance_id, r.list_active())

    def test_unregister(self):
        a, b = self._registry(), self._registry()
        a.register()
        b.register()
        self.assertTrue(a.unregister())
        self.assertEqual(list(b.list_active()), [b.instance_id])

    def test_unregister_unknown_is_ok(self):
        self.assertTrue(self._registry().unregister())

    def test_missing_file_is_empty(self):
        self.assertEqual(self._registry().list_active(), {})

    def test_corrupt_file_is_empty(self):
        self.path.write_text("{not json")
        r = self._registry()
        with self.assertLogs("persona_sync", level="WARNING"):
            self.assertEqual(r.list_active(), {})
        # A later register overwrites the corrupt table
        r.register()
        self.assertEqual(len(r.list_active()), 1)

    def test_malformed_entries_dropped(self):
        self.path.write_text(json.dumps({
            "peer_text": {"pid": 1, "last_seen": "garbage"},
            "peer_null": {"pid": 2, "last_seen": None},
            "peer_missing": {"pid": 3},
            "peer_list": [1, 2],
        }))
        r = self._registry()
        with self.assertLogs("persona_sync", level="WARNING"):
            self.assertTrue(r.register())
            active = r.list_active()
        self.assertEqual(list(active), [r.instance_id])
        # The bad rows are not written back
        self.assertEqual(list(json.loads(self.path.read_text())), [r.instance_id])

    def test_heartbeat_loop_survives_failed_beat(self):
        r = self._registry()
        r.register()
        calls = []
        real_heartbeat = r.heartbeat

        def flaky_heartbeat():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("disk went away")
            return real_heartbeat()

        async def _run():
            counts = []
            with patch.object(r, "heartbeat", side_effect=flaky_heartbeat):
                with self.assertLogs("persona_sync", level="WARNING"):
                    r.start_heartbeat(interval=0.01, on_peers=counts.append)
                    for _ in range(300):
                        if counts:
                            break
                        await asyncio.sleep(0.01)
                    await r.stop_heartbeat()
            return counts

        counts = asyncio.run(_run())
        self.assertGreaterEqual(len(calls), 2)
        self.assertEqual(counts[0], 1)

    def test_write_failure_reported_not_raised(self):
        blocker = Path(self._tmp.name) / "file"
        blocker.write_text("")
        r = PeerRegistry(blocker / ".instances.json", clock=self.clock)
        with self.assertLogs("persona_sync", level="WARNING"):
            self.assertFalse(r.register())

    def test_heartbeat_loop_reports_peers(self):
        async def _run():
            r = self._registry()
            r.register()
            counts = []
            r.start_heartbeat(interval=0.01, on_peers=counts.append)
            for _ in range(200):
                if counts:
                    break
                await asyncio.sleep(0.01)
            await r.stop_heartbeat()
            return counts

        counts = asyncio.run(_run())
        self.assertTrue(counts)
        self.assertEqual(counts[0], 1)

    def test_stop_heartbeat_without_start(self):
        asyncio.run(self._registry().stop_heartbeat())


# ===========================================================================
# 2. History watcher
# ===========================================================================

class TestHistoryWatcher(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = Store(Path(self._tmp.name))
        self.store.initialize()

    def tearDown(self):
        self._tmp.cleanup()

    def _watcher(self, histories, records=None, **kw):
        return HistoryWatcher(
            self.store, "merlin",
            on_history=histories.append,
            on_persona=records.append if records is not None else None,
            debounce=0,
            **kw,
        )

    def test_history_change_delivers_turns(self):
        persona_store.save_history(self.store.history_path("merlin"), [Turn("user", "abracadabra")])
        histories = []
        watcher = self._watcher(histories)
        changes = {(Change.modified, str(self.store.history_path("merlin")))}
        asyncio.run(watcher.handle_changes(changes))
        self.assertEqual(histories, [[Turn("user", "abracadabra")]])

    def test_unrelated_files_ignored(self):
        histories = []
        watcher = self._watcher(histories)
        other = self.store.persona_dir("merlin") / "notes.txt"
        changes = {(Change.modified, str(other))}
        asyncio.run(watcher.handle_changes(changes))
        self.assertEqual(histories, [])

    def test_deletion_ignored(self):
        histories = []
        watcher = self._watcher(histories)
        changes = {(Change.deleted, str(self.store.history_path("merlin")))}
        asyncio.run(watcher.handle_changes(changes))
        self.assertEqual(histories, [])

    def test_unreadable_history_skipped(self):
        self.store.history_path("merlin").write_text("just a string\n")
        histories = []
        watcher = self._watcher(histories)
        changes = {(Change.modified, str(self.store.history_path("merlin")))}
        with self.assertLogs("persona_sync", level="WARNING"):
            asyncio.run(watcher.handle_changes(changes))
        self.assertEqual(histories, [])

    def test_persona_change_delivers_record(self):
        record = self.store.load_persona("merlin")
        record.prompt = "New prompt"
        self.store.save_persona(record)
        histories, records = [], []
        watcher = self._watcher(histories, records)
        changes = {(Change.added, str(self.store.persona_path("merlin")))}
        asyncio.run(watcher.handle_changes(changes))
        self.assertEqual(histories, [])
        self.assertEqual(records[0].prompt, "New prompt")

    def test_watcher_sees_external_rewrite(self):
        async def _run():
            histories = []
            watcher = self._watcher(histories, force_polling=True, poll_delay_ms=20)
            watcher.start()
            try:
                # Keep rewriting until the watcher has subscribed and noticed
                for i in range(200):
                    persona_store.save_history(
                        self.store.history_path("merlin"),
                        [Turn("user", "from another instance"), Turn("assistant", f"reply {i}")],
                    )
                    await asyncio.sleep(0.05)
                    if histories:
                        break
            finally:
                await watcher.stop()
            return histories

        histories = asyncio.run(_run())
        self.assertTrue(histories)
        self.assertEqual(histories[-1][0], Turn("user", "from another instance"))

    def test_stop_before_any_change(self):
        async def _run():
            watcher = self._watcher([], force_polling=True, poll_delay_ms=20)
            task = watcher.start()
            await asyncio.sleep(0.05)
            await watcher.stop()
            return task

        task = asyncio.run(_run())
        self.assertTrue(task.done())


if __name__ == "__main__":
    unittest.main()
