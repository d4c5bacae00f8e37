"""Multi-instance coordination: peer registry and history watcher.

Several ``persona chat`` processes can share one persona. Nothing is locked:

* the peer registry is a JSON table (``.instances.json``) that every process
  read-modify-writes; entries are keyed by a per-process instance id and
  refreshed by a heartbeat, so the worst a race can do is leave a stale
  peer count until the next heartbeat;
* the history file is the source of truth for a persona's conversation;
  when another process rewrites it, the watcher re-reads it and hands the
  full list to the engine, which replaces its in-memory history.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable

from watchfiles import Change, awatch

import persona_store

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

HEARTBEAT_INTERVAL = 30.0   # seconds between last_seen refreshes
PEER_TTL = 300.0            # entries older than this are pruned by readers
WATCH_DEBOUNCE = 0.1        # let the writer finish before re-reading
WATCH_RETRY_DELAY = 1.0     # back-off before resubscribing after a watcher error

_instance_counter = itertools.count()


# ── Peer Registry ────────────────────────────────────────────────────────────

def make_instance_id(pid: int | None = None, started: float | None = None) -> str:
    """Build an id from pid + start time (ms), plus a counter for same-process uniqueness."""
    pid = os.getpid() if pid is None else pid
    started = time.time() if started is None else started
    return f"persona_{pid}_{int(started * 1000)}_{next(_instance_counter)}"


class PeerRegistry:
    """File-backed table of live instances, advertised by heartbeat."""

    def __init__(
        self,
        path: Path,
        ttl: float = PEER_TTL,
        clock: Callable[[], float] = time.time,
        instance_id: str | None = None,
    ):
        self.path = Path(path)
        self.ttl = ttl
        self._clock = clock
        self.pid = os.getpid()
        self.start_time = clock()
        self.instance_id = instance_id or make_instance_id(self.pid, self.start_time)
        self._heartbeat_task: asyncio.Task | None = None
        self._stop: asyncio.Event | None = None

    # -- file I/O --

    def _read(self) -> dict[str, dict[str, Any]]:
        """Load the table. Missing or unreadable files count as empty."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("Peer registry %s unreadable, treating as empty: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Peer registry %s is not a table, treating as empty", self.path)
            return {}
        instances = {}
        for iid, info in data.items():
            last_seen = info.get("last_seen") if isinstance(info, dict) else None
            # bool is an int subclass but never a timestamp
            if not isinstance(last_seen, (int, float)) or isinstance(last_seen, bool):
                logger.warning("Dropping malformed peer registry entry %s: %r", iid, info)
                continue
            instances[iid] = info
        return instances

    def _write(self, instances: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{self.pid}.tmp")
        tmp.write_text(json.dumps(instances, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    # -- operations --

    def register(self) -> bool:
        instances = self._read()
        now = self._clock()
        instances[self.instance_id] = {
            "pid": self.pid,
            "start_time": self.start_time,
            "last_seen": now,
        }
        try:
            self._write(instances)
        except OSError as e:
            logger.warning("Failed to register instance %s: %s", self.instance_id, e)
            return False
        logger.info("Registered instance %s", self.instance_id)
        return True

    def heartbeat(self) -> bool:
        instances = self._read()
        now = self._clock()
        entry = instances.get(self.instance_id)
        if entry is None:
            # Pruned while we were asleep (suspended laptop): advertise again.
            logger.info("Instance %s missing from registry, re-registering", self.instance_id)
            entry = {"pid": self.pid, "start_time": self.start_time}
        entry["last_seen"] = now
        instances[self.instance_id] = entry
        try:
            self._write(instances)
        except OSError as e:
            logger.warning("Heartbeat write failed for %s: %s", self.instance_id, e)
            return False
        return True

    def unregister(self) -> bool:
        instances = self._read()
        if instances.pop(self.instance_id, None) is None:
            return True
        try:
            self._write(instances)
        except OSError as e:
            logger.warning("Failed to unregister %s (will expire after TTL): %s",
                           self.instance_id, e)
            return False
        logger.info("Unregistered instance %s", self.instance_id)
        return True

    def list_active(self) -> dict[str, dict[str, Any]]:
        instances = self._read()
        now = self._clock()
        active = {
            iid: info for iid, info in instances.items()
            if now - info["last_seen"] <= self.ttl
        }
        if len(active) != len(instances):
            logger.debug("Pruning %d stale instance(s)", len(instances) - len(active))
            try:
                self._write(active)
            except OSError as e:
                logger.warning("Failed to save pruned peer registry: %s", e)
        return active

    # -- heartbeat loop --

    def start_heartbeat(
        self,
        interval: float = HEARTBEAT_INTERVAL,
        on_peers: Callable[[int], None] | None = None,
    ) -> asyncio.Task:
        """Refresh last_seen every ``interval`` seconds until stopped.

        ``on_peers`` receives the live instance count after each beat.
        """
        self._stop = asyncio.Event()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(interval, on_peers))
        return self._heartbeat_task

    async def _heartbeat_loop(self, interval: float, on_peers) -> None:
        loop = asyncio.get_event_loop()
        stop = self._stop
        try:
            while not stop.is_set():
                try:
                    await asyncio.wait_for(stop.wait(), timeout=interval)
                    break
                except asyncio.TimeoutError:
                    pass
                try:
                    await loop.run_in_executor(None, self.heartbeat)
                    if on_peers is not None:
                        active = await loop.run_in_executor(None, self.list_active)
                        on_peers(len(active))
                except Exception as e:
                    logger.warning("Heartbeat for %s failed, retrying next beat: %s",
                                   self.instance_id, e)
        except asyncio.CancelledError:
            logger.debug("Heartbeat loop cancelled")

    async def stop_heartbeat(self) -> None:
        if self._stop is not None:
            self._stop.set()
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=2.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                task.cancel()


# ── History Watcher ──────────────────────────────────────────────────────────

class HistoryWatcher:
    """Reload a persona's history when another process rewrites it.

    ``on_history`` is called with the freshly read turn list, ``on_persona``
    with the freshly read persona record. Both are called on the event loop.
    """

    def __init__(
        self,
        store: persona_store.Store,
        name: str,
        on_history: Callable[[list[persona_store.Turn]], None],
        on_persona: Callable[[persona_store.PersonaRecord], None] | None = None,
        debounce: float = WATCH_DEBOUNCE,
        force_polling: bool | None = None,
        poll_delay_ms: int = 300,
    ):
        self.store = store
        self.name = name
        self.on_history = on_history
        self.on_persona = on_persona
        self.debounce = debounce
        self.force_polling = force_polling
        self.poll_delay_ms = poll_delay_ms
        self.persona_dir = store.persona_dir(name)
        self.history_path = store.history_path(name)
        self.persona_path = store.persona_path(name)
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=2.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                task.cancel()

    def _watch_paths(self) -> list[Path]:
        paths = [self.persona_dir]
        if self.history_path.exists():
            paths.append(self.history_path)
        else:
            logger.debug("History file %s does not exist yet, watching directory only",
                         self.history_path)
        return paths

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.persona_dir.mkdir(parents=True, exist_ok=True)
                watcher = awatch(
                    *self._watch_paths(),
                    stop_event=self._stop,
                    force_polling=self.force_polling,
                    poll_delay_ms=self.poll_delay_ms,
                )
                async for changes in watcher:
                    if changes:
                        await self.handle_changes(changes)
            except asyncio.CancelledError:
                logger.debug("History watcher for %s cancelled", self.name)
                return
            except Exception as e:
                logger.warning("History watcher error for %s: %s", self.name, e)
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=WATCH_RETRY_DELAY)
                except asyncio.TimeoutError:
                    pass
        logger.debug("History watcher for %s stopped", self.name)

    async def handle_changes(self, changes: set[tuple[Change, str]]) -> None:
        history_key = os.path.realpath(self.history_path)
        persona_key = os.path.realpath(self.persona_path)
        touched = {
            os.path.realpath(path) for change, path in changes
            if change in (Change.added, Change.modified)
        }
        if history_key not in touched and persona_key not in touched:
            return

        await asyncio.sleep(self.debounce)
        loop = asyncio.get_event_loop()

        if persona_key in touched and self.on_persona is not None:
            try:
                record = await loop.run_in_executor(None, self.store.load_persona, self.name)
            except Exception as e:
                logger.warning("Ignoring unreadable persona update for %s: %s", self.name, e)
            else:
                self.on_persona(record)

        if history_key in touched:
            try:
                turns = await loop.run_in_executor(None, self.store.load_history, self.name)
            except Exception as e:
                logger.warning("Ignoring unreadable history update for %s: %s", self.name, e)
                return
            logger.debug("History for %s changed on disk (%d turns)", self.name, len(turns))
            self.on_history(turns)
