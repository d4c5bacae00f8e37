"""Session engine: the record → transcribe → chat → synthesize → play loop.

The engine is a single-consumer event loop. Everything that changes engine
state arrives as a dict event on ``Engine.queue``:

* intents from the presentation layer (``start_recording``, ``submit_text``,
  ``clear``, ``toggle_mute``, ``switch_persona``, ``shutdown``, ...);
* completion events from work units (``recording_done``, ``chat_done``, ...);
* coordination events (``history_updated``, ``persona_updated``, ``peers``).

Blocking work (capture, HTTP calls, playback) runs in the default executor
and reports back with exactly one completion event. The state variable is
the only lock: a unit of work is dispatched only from a state that has none
in flight, so at most one is ever outstanding.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
from typing import Any, Callable

import persona_audio
import persona_store
import persona_sync
from persona_store import Session, Turn

logger = logging.getLogger(__name__)


class EngineState(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    CHATTING = "chatting"
    SYNTHESIZING = "synthesizing_audio"
    PLAYING = "playing"
    ERROR = "error"


# UI mode: a persona must be selected before the pipeline accepts input.
MODE_SELECTING = "selecting"
MODE_CHATTING = "chatting"

STATUS = {
    EngineState.IDLE: "",
    EngineState.RECORDING: "\U0001f3a4 Recording... speak now (Ctrl+R to stop)",
    EngineState.TRANSCRIBING: "\U0001f4dd Transcribing...",
    EngineState.CHATTING: "\U0001f4ad Thinking...",
    EngineState.SYNTHESIZING: "\U0001f50a Generating audio...",
    EngineState.PLAYING: "\U0001f508 Playing response...",
    EngineState.ERROR: "",
}

# Intents that start new work; accepted only from IDLE (or ERROR, which they clear)
PIPELINE_INTENTS = {"start_recording", "submit_text", "switch_persona"}

# Completion event type -> state it must arrive in
COMPLETIONS = {
    "recording_done": EngineState.RECORDING,
    "transcription_done": EngineState.TRANSCRIBING,
    "chat_done": EngineState.CHATTING,
    "synthesis_done": EngineState.SYNTHESIZING,
    "playback_done": EngineState.PLAYING,
}


class Engine:
    """Conversation state machine for one process.

    Collaborators are injected so the engine can be driven headless:

    backend         object with ``transcribe(path)``, ``chat(messages)`` and
                    ``synthesize(text, voice, instructions)``
    recorder_factory  zero-arg callable returning an object with
                    ``record() -> path`` and ``stop()``
    player          callable taking synthesized audio bytes, blocking until
                    playback ends
    registry        optional :class:`persona_sync.PeerRegistry`
    """

    def __init__(
        self,
        store: persona_store.Store,
        backend: Any,
        config: persona_store.Config | None = None,
        recorder_factory: Callable[[], Any] | None = None,
        player: Callable[[bytes], None] = persona_audio.play_bytes,
        stop_player: Callable[[], None] | None = None,
        registry: persona_sync.PeerRegistry | None = None,
        watch: bool = True,
        force_polling: bool | None = None,
        muted: bool = False,
    ):
        self.store = store
        self.backend = backend
        self.config = config or persona_store.Config()
        self.recorder_factory = recorder_factory
        self.player = player
        self.stop_player = stop_player
        self.registry = registry
        self.watch = watch
        self.force_polling = force_polling

        self.queue: asyncio.Queue[dict] = asyncio.Queue()
        self.state = EngineState.IDLE
        self.mode = MODE_SELECTING
        self.session: Session | None = None
        self.status = ""
        self.error = ""
        self.muted = muted
        self.peers = 1
        # Bumped whenever the transcript is replaced rather than appended to
        self.history_revision = 0

        self.listeners: list[Callable[[dict], None]] = []
        self.running = False
        self._work: asyncio.Task | None = None
        self._recorder: Any = None
        self._watcher: persona_sync.HistoryWatcher | None = None

    # ── Public API ──────────────────────────────────────────────────────────

    @property
    def max_turns(self) -> int:
        return self.config.history.max_turns

    def post(self, event: dict) -> None:
        self.queue.put_nowait(event)

    def intent(self, etype: str, **kwargs: Any) -> None:
        self.post({"type": etype, **kwargs})

    def snapshot(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "state": self.state.value,
            "status": self.status,
            "error": self.error,
            "persona": self.session.name if self.session else None,
            "turns": [t.to_dict() for t in self.session.turns] if self.session else [],
            "muted": self.muted,
            "peers": self.peers,
            "history_revision": self.history_revision,
        }

    async def start(self, persona: str | None = None) -> None:
        """Register with the peer registry and optionally open a persona."""
        self.running = True
        loop = asyncio.get_event_loop()
        if self.registry is not None:
            registered = False
            try:
                registered = await loop.run_in_executor(None, self.registry.register)
                if registered:
                    active = await loop.run_in_executor(None, self.registry.list_active)
                    self.peers = max(1, len(active))
            except Exception as e:
                logger.warning("Peer registry unavailable, running as a single instance: %s", e)
                self.peers = 1
            if registered:
                self.registry.start_heartbeat(
                    self.config.sync.heartbeat_interval,
                    on_peers=lambda n: self.intent("peers", count=n),
                )
        if persona is not None:
            await self._open_persona(persona)
        self._notify()

    async def step(self) -> dict:
        """Wait for one event and apply it."""
        event = await self.queue.get()
        await self.handle(event)
        return event

    async def run(self, persona: str | None = None) -> None:
        await self.start(persona)
        try:
            while self.running:
                await self.step()
        finally:
            await self.close()

    async def close(self) -> None:
        """Orderly shutdown: heartbeat, registry entry, watcher, capture, playback."""
        self.running = False
        loop = asyncio.get_event_loop()
        if self.registry is not None:
            await self.registry.stop_heartbeat()
            await loop.run_in_executor(None, self.registry.unregister)
        await self._stop_watcher()
        if self._recorder is not None:
            self._recorder.stop()
        if self.state == EngineState.PLAYING and self.stop_player is not None:
            try:
                self.stop_player()
            except Exception as e:
                logger.debug("stop_player failed: %s", e)
        if self._work is not None and not self._work.done():
            logger.debug("Discarding in-flight work on shutdown (state=%s)", self.state.value)

    # ── Event handling ──────────────────────────────────────────────────────

    async def handle(self, event: dict) -> None:
        etype = event.get("type")
        handler = getattr(self, f"_on_{etype}", None)
        if handler is None:
            logger.warning("Unknown engine event: %s", etype)
            return

        if etype in COMPLETIONS:
            if self.state != COMPLETIONS[etype]:
                logger.debug("Dropping stale %s in state %s", etype, self.state.value)
                return
            self._work = None
        elif etype in PIPELINE_INTENTS or etype == "clear":
            if not self._accepts(etype):
                logger.debug("Ignoring %s in state %s", etype, self.state.value)
                # Listeners still hear about it so input drivers waiting on IDLE wake up
                self._notify()
                return
            if self.state == EngineState.ERROR:
                self.error = ""
                self._set_state(EngineState.IDLE)

        result = handler(event)
        if asyncio.iscoroutine(result):
            await result
        self._notify()

    def _accepts(self, etype: str) -> bool:
        if etype == "clear":
            return self.state == EngineState.IDLE and self.session is not None
        if self.state not in (EngineState.IDLE, EngineState.ERROR):
            return False
        if etype == "switch_persona":
            return True
        return self.mode == MODE_CHATTING and self.session is not None

    def _set_state(self, state: EngineState) -> None:
        if state != self.state:
            logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state
        self.status = STATUS[state]

    def _fail(self, message: str) -> None:
        logger.error("%s", message)
        self.error = message
        self._set_state(EngineState.ERROR)

    def _notify(self) -> None:
        if not self.listeners:
            return
        snap = self.snapshot()
        for listener in list(self.listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Engine listener failed")

    def _dispatch(self, done_type: str, key: str, fn: Callable, *args: Any) -> None:
        """Run ``fn(*args)`` off-loop; post ``done_type`` with the result or error."""
        loop = asyncio.get_event_loop()

        async def unit() -> None:
            try:
                result = await loop.run_in_executor(None, fn, *args)
            except Exception as e:
                self.post({"type": done_type, "error": str(e) or type(e).__name__})
            else:
                self.post({"type": done_type, key: result, "error": None})

        self._work = asyncio.create_task(unit())

    # -- intents --

    def _on_start_recording(self, event: dict) -> None:
        if self.recorder_factory is None:
            self._fail("Recording error: no audio input device configured")
            return
        self._recorder = self.recorder_factory()
        self._set_state(EngineState.RECORDING)
        self._dispatch("recording_done", "path", self._recorder.record)

    def _on_stop_recording(self, event: dict) -> None:
        if self.state == EngineState.RECORDING and self._recorder is not None:
            self._recorder.stop()

    def _on_submit_text(self, event: dict) -> None:
        text = (event.get("text") or "").strip()
        if not text:
            return
        self._start_chat(text)

    def _on_clear(self, event: dict) -> None:
        self.session.clear()
        self.history_revision += 1
        try:
            self.session.persist()
        except Exception as e:
            self._fail(f"History save error: {e}")

    def _on_toggle_mute(self, event: dict) -> None:
        self.muted = not self.muted
        logger.info("Audio %s", "muted" if self.muted else "unmuted")

    async def _on_switch_persona(self, event: dict) -> None:
        name = event.get("name") or ""
        if self.session is not None and name == self.session.name:
            self.mode = MODE_CHATTING
            return
        await self._open_persona(name)

    def _on_select_persona(self, event: dict) -> None:
        """Back to the persona selector, keeping the current session open."""
        if self.state in (EngineState.IDLE, EngineState.ERROR):
            self.mode = MODE_SELECTING

    def _on_shutdown(self, event: dict) -> None:
        self.running = False

    # -- completions --

    def _on_recording_done(self, event: dict) -> None:
        self._recorder = None
        if event.get("error"):
            self._fail(f"Recording error: {event['error']}")
            return
        self._set_state(EngineState.TRANSCRIBING)
        self._dispatch("transcription_done", "text", self._transcribe, event["path"])

    def _on_transcription_done(self, event: dict) -> None:
        if event.get("error"):
            self._fail(f"Transcription error: {event['error']}")
            return
        self._start_chat(event["text"].strip())

    def _on_chat_done(self, event: dict) -> None:
        if event.get("error"):
            self._fail(f"Chat error: {event['error']}")
            return
        reply = event["reply"]
        self.session.append(Turn("assistant", reply), self.max_turns)
        # Persist before synthesis so a crash during playback keeps the pair
        try:
            self.session.persist()
        except Exception as e:
            self._fail(f"History save error: {e}")
            return
        self._set_state(EngineState.SYNTHESIZING)
        voice = self.session.persona.voice
        self._dispatch("synthesis_done", "audio", self.backend.synthesize,
                       reply, voice.name, voice.instructions)

    def _on_synthesis_done(self, event: dict) -> None:
        if event.get("error"):
            self._fail(f"Audio generation error: {event['error']}")
            return
        self._set_state(EngineState.PLAYING)
        if self.muted:
            self.post({"type": "playback_done", "error": None, "skipped": True})
            return
        self._dispatch("playback_done", "played", self.player, event["audio"])

    def _on_playback_done(self, event: dict) -> None:
        if event.get("error"):
            self._fail(f"Playback error: {event['error']}")
            return
        self._set_state(EngineState.IDLE)

    # -- coordination --

    def _on_history_updated(self, event: dict) -> None:
        if self.session is None or event.get("persona") != self.session.name:
            return
        turns = event["turns"]
        if turns == self.session.turns:
            return
        logger.info("History for %s updated by another instance (%d turns)",
                    self.session.name, len(turns))
        self.session.replace(turns)
        self.history_revision += 1

    def _on_persona_updated(self, event: dict) -> None:
        record = event["record"]
        if self.session is None or record.name != self.session.name:
            return
        self.session.persona = record

    def _on_peers(self, event: dict) -> None:
        self.peers = max(1, int(event.get("count", 1)))

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _start_chat(self, text: str) -> None:
        self.session.append(Turn("user", text), self.max_turns)
        self._set_state(EngineState.CHATTING)
        self._dispatch("chat_done", "reply", self.backend.chat, self.session.to_backend_view())

    def _transcribe(self, path: str) -> str:
        try:
            text = self.backend.transcribe(path)
        finally:
            try:
                os.unlink(path)
            except OSError:
                pass
        if not text or not text.strip():
            raise RuntimeError("no speech detected")
        return text

    async def _open_persona(self, name: str) -> None:
        loop = asyncio.get_event_loop()
        try:
            session = await loop.run_in_executor(None, self.store.open_session, name)
        except FileNotFoundError:
            self._fail(f"Persona '{name}' does not exist")
            return
        except Exception as e:
            self._fail(f"Error loading persona '{name}': {e}")
            return
        await self._stop_watcher()
        self.session = session
        self.mode = MODE_CHATTING
        self.history_revision += 1
        logger.info("Opened persona %s (%d turns)", name, len(session.turns))
        if self.watch:
            self._start_watcher(name)

    def _start_watcher(self, name: str) -> None:
        self._watcher = persona_sync.HistoryWatcher(
            self.store,
            name,
            on_history=lambda turns: self.intent("history_updated", persona=name, turns=turns),
            on_persona=lambda record: self.intent("persona_updated", record=record),
            debounce=self.config.sync.debounce,
            force_polling=self.force_polling,
        )
        try:
            self._watcher.start()
        except Exception as e:
            logger.warning("Could not watch %s, continuing without sync: %s", name, e)
            self._watcher = None

    async def _stop_watcher(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
