#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "httpx>=0.27",
#     "numpy>=2",
#     "sphn>=0.2.0",
#     "sounddevice>=0.4.6",
#     "pyyaml>=6.0",
#     "watchfiles>=0.21",
# ]
# ///
"""persona: talk to AI personas by voice, from the terminal.

CLI usage:
    persona chat                      # Pick a persona, then chat
    persona chat merlin               # Chat with a persona directly
    persona ask coach                 # One spoken question, one spoken answer
    persona ask coach --text "Hi"     # Same, typed
    persona read merlin notes.txt     # Read a text file aloud
    persona list | show | create | delete
    persona config show | path | set-input-device DEVICE
    persona devices                   # List ffmpeg capture devices

Several ``persona chat`` processes may share a persona: each one sees the
others' turns as soon as they are written to the persona's history file.
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import datetime
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Callable

import yaml

import persona_audio
import persona_store
import persona_sync
from persona_engine import MODE_SELECTING, Engine, EngineState

logger = logging.getLogger(__name__)

# ── TUI Rendering ────────────────────────────────────────────────────────────

DIM = "\033[2m"
DIM_ITALIC = "\033[2;3m"
BOLD = "\033[1m"
RED = "\033[31m"
GREEN = "\033[32m"
CYAN = "\033[36m"
RESET = "\033[0m"

USER_MARK = "❯"
ASSISTANT_MARK = "⏺"

KEY_RECORD = "\x12"  # Ctrl+R
KEY_CLEAR = "\x0c"   # Ctrl+L

HELP = """\
Enter: send | Ctrl+R: record/stop | Ctrl+L: clear | Ctrl+C: quit
/record /stop /clear /mute /persona [name] /quit /help"""


def _stamp(when: datetime.datetime | None = None) -> str:
    """Dimmed HH:MM:SS prefix for transcript lines."""
    when = when or datetime.datetime.now()
    return DIM_ITALIC + when.strftime("%H:%M:%S") + RESET


def render_error(message: str) -> str:
    return f"{RED}❌ {message}{RESET}"


def render_success(message: str) -> str:
    return f"{GREEN}✅ {message}{RESET}"


def render_info(message: str) -> str:
    return f"{CYAN}{message}{RESET}"


def render_title(title: str) -> str:
    return f"{BOLD}── {title} ──{RESET}"


class TUIRenderer:
    """Renders engine snapshots: transcript lines plus one in-place status line."""

    # Width of "HH:MM:SS ", keeps the status line aligned with turns
    _TS_PAD = " " * 9

    def __init__(self, tty: bool = True, personas: list[tuple[str, str]] | None = None):
        self._tty = tty
        self.personas = personas or []
        self.input_buffer = ""
        self._revision: int | None = None
        self._printed = 0
        self._mode: str | None = None
        self._last_error = ""
        self._status_active = False
        self._snap: dict | None = None

    # -- low level --

    def _clear_status(self) -> None:
        if self._status_active:
            sys.stdout.write("\r\033[K")
            self._status_active = False

    def _line(self, text: str) -> None:
        self._clear_status()
        sys.stdout.write(text + "\n")

    def _turn_line(self, turn: dict, persona: str | None) -> str:
        content = turn["content"].replace("\r", " ")
        if not self._tty:
            mark = USER_MARK if turn["role"] == "user" else ASSISTANT_MARK
            return f"{mark} {content}"
        if turn["role"] == "user":
            return f"{_stamp()} {USER_MARK} {content}"
        return f"{_stamp()} {ASSISTANT_MARK} {BOLD}{persona}{RESET} {content}"

    def status_text(self, snap: dict) -> str:
        if self.input_buffer:
            return f"{self._TS_PAD}{USER_MARK} {DIM}{self.input_buffer}{RESET}"
        if snap["error"]:
            text = render_error(snap["error"])
        elif snap["status"]:
            text = snap["status"]
        elif snap["mode"] == MODE_SELECTING:
            text = f"{DIM_ITALIC}(type a number or name to pick a persona){RESET}"
        else:
            text = f"{DIM_ITALIC}(type a message, Ctrl+R to record, /help){RESET}"
        tags = []
        if snap["peers"] > 1:
            tags.append(f"\U0001f465 {snap['peers']} instances")
        if snap["muted"]:
            tags.append("\U0001f507")
        if tags:
            text += "  " + " ".join(tags)
        return f"{self._TS_PAD}{text}"

    def redraw_status(self) -> None:
        if not self._tty or self._snap is None:
            return
        self._clear_status()
        sys.stdout.write(self.status_text(self._snap))
        self._status_active = True
        sys.stdout.flush()

    # -- snapshot rendering --

    def show_selector(self) -> None:
        if not self._tty:
            self._line("-- select a persona --")
            for i, (name, description) in enumerate(self.personas, 1):
                self._line(f"{i}. {name}  {description}")
            return
        self._line(render_title("Select a persona"))
        for i, (name, description) in enumerate(self.personas, 1):
            self._line(f"  {BOLD}{i}{RESET}. {name}  {DIM}{description}{RESET}")

    def show_help(self) -> None:
        for line in HELP.splitlines():
            self._line(f"{DIM}{line}{RESET}")
        self.redraw_status()

    def note(self, message: str) -> None:
        self._line(f"{DIM_ITALIC}{message}{RESET}" if self._tty else message)
        self.redraw_status()

    def render(self, snap: dict) -> None:
        self._snap = snap
        mode_changed = snap["mode"] != self._mode
        self._mode = snap["mode"]

        if snap["mode"] == MODE_SELECTING:
            if mode_changed:
                self.show_selector()
        else:
            turns = snap["turns"]
            if snap["history_revision"] != self._revision or mode_changed:
                # Transcript replaced (persona switch, clear, peer reload): reprint all
                self._revision = snap["history_revision"]
                self._line(render_title(f"Chat with {snap['persona']}") if self._tty
                           else f"-- {snap['persona']} --")
                self._printed = 0
            elif len(turns) < self._printed:
                self._printed = len(turns)
            for turn in turns[self._printed:]:
                self._line(self._turn_line(turn, snap["persona"]))
            self._printed = len(turns)

        if snap["error"] and snap["error"] != self._last_error and not self._tty:
            self._line(f"error: {snap['error']}")
        self._last_error = snap["error"]

        if self._tty:
            self.redraw_status()
        sys.stdout.flush()


# ── Input ────────────────────────────────────────────────────────────────────

def parse_command(line: str) -> tuple[str, dict[str, Any]] | None:
    """Map one line of user input to an engine intent (or a local command)."""
    line = line.strip()
    if not line:
        return None
    if not line.startswith("/"):
        return ("submit_text", {"text": line})
    cmd, _, arg = line[1:].partition(" ")
    cmd = cmd.lower()
    arg = arg.strip()
    if cmd in ("record", "r"):
        return ("start_recording", {})
    if cmd == "stop":
        return ("stop_recording", {})
    if cmd == "clear":
        return ("clear", {})
    if cmd == "mute":
        return ("toggle_mute", {})
    if cmd in ("persona", "personas", "p"):
        if arg:
            return ("switch_persona", {"name": arg})
        return ("select_persona", {})
    if cmd in ("quit", "exit", "q"):
        return ("shutdown", {})
    if cmd in ("help", "h", "?"):
        return ("help", {})
    return ("unknown", {"command": cmd})


def resolve_persona_choice(choice: str, personas: list[str]) -> str | None:
    choice = choice.strip()
    if choice.isdigit():
        idx = int(choice) - 1
        return personas[idx] if 0 <= idx < len(personas) else None
    return choice if choice in personas else None


async def _stdin_reader_line(loop, queue: asyncio.Queue, stream=None) -> None:
    """Queue each non-blank input line (stripped); None marks end of input."""
    readline = (stream or sys.stdin).readline
    try:
        while raw := await loop.run_in_executor(None, readline):
            text = raw.strip()
            if text:
                queue.put_nowait(text)
        queue.put_nowait(None)
    except asyncio.CancelledError:
        pass


async def _stdin_reader_tty(loop, queue: asyncio.Queue, renderer: TUIRenderer) -> None:
    """Read keys in cbreak mode; echo into the status line, queue lines and hotkeys."""
    import termios
    import tty

    fd = sys.stdin.fileno()
    old_settings = termios.tcgetattr(fd)

    def _restore_terminal() -> None:
        try:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
        except termios.error as e:
            logger.debug("Could not restore terminal settings: %s", e)

    atexit.register(_restore_terminal)
    tty.setcbreak(fd)

    # add_reader rather than an executor thread: a thread parked in os.read
    # would keep the interpreter alive after shutdown
    keys: asyncio.Queue[str | None] = asyncio.Queue()

    def _on_readable() -> None:
        try:
            raw = os.read(fd, 64)
        except OSError:
            raw = b""
        keys.put_nowait(raw.decode("utf-8", errors="replace") if raw else None)

    loop.add_reader(fd, _on_readable)
    try:
        while True:
            key = await keys.get()
            if key is None:
                await queue.put(None)
                break
            if key.startswith("\x1b"):
                continue  # arrow keys and other escape sequences
            # A read may return several keys at once (paste)
            for ch in key:
                if ch in (KEY_RECORD, KEY_CLEAR):
                    await queue.put(ch)
                elif ch in ("\n", "\r"):
                    text, renderer.input_buffer = renderer.input_buffer.strip(), ""
                    if text:
                        await queue.put(text)
                elif ch in ("\x7f", "\x08"):  # backspace / delete
                    renderer.input_buffer = renderer.input_buffer[:-1]
                elif ch == "\x04":  # Ctrl+D
                    if not renderer.input_buffer:
                        await queue.put(None)
                        return
                elif ch >= " ":
                    renderer.input_buffer += ch
            renderer.redraw_status()
    except asyncio.CancelledError:
        pass
    finally:
        loop.remove_reader(fd)
        _restore_terminal()
        atexit.unregister(_restore_terminal)


# ── Chat mode ────────────────────────────────────────────────────────────────

async def _wait_idle(idle: asyncio.Event) -> None:
    # The engine may leave IDLE again before this task resumes
    while not idle.is_set():
        await idle.wait()


async def _drive_input(
    engine: Engine,
    queue: asyncio.Queue,
    renderer: TUIRenderer,
    idle: asyncio.Event,
    sequential: bool,
) -> None:
    """Turn queued input into engine intents.

    In sequential (piped) mode each line waits for the previous exchange to
    finish, so a script of several lines plays out in order.
    """
    while True:
        item = await queue.get()
        if item is None:
            await _wait_idle(idle)
            engine.intent("shutdown")
            return
        if sequential:
            await _wait_idle(idle)

        if item == KEY_RECORD:
            if engine.state == EngineState.RECORDING:
                engine.intent("stop_recording")
            else:
                engine.intent("start_recording")
            continue
        if item == KEY_CLEAR:
            engine.intent("clear")
            continue

        if engine.mode == MODE_SELECTING and not item.startswith("/"):
            names = [name for name, _ in renderer.personas]
            name = resolve_persona_choice(item, names)
            if name is None:
                renderer.note(f"No persona matches {item!r}")
                continue
            parsed: tuple[str, dict] | None = ("switch_persona", {"name": name})
        else:
            parsed = parse_command(item)
        if parsed is None:
            continue
        etype, kwargs = parsed
        if etype == "help":
            renderer.show_help()
            continue
        if etype == "unknown":
            renderer.note(f"Unknown command /{kwargs['command']} (try /help)")
            continue
        if etype == "select_persona":
            renderer.personas = _persona_items(engine.store)
        if sequential and etype not in ("toggle_mute", "shutdown"):
            idle.clear()
        engine.intent(etype, **kwargs)


def _persona_items(store: persona_store.Store) -> list[tuple[str, str]]:
    items = []
    for name in store.list_personas():
        try:
            prompt = store.load_persona(name).prompt
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning("Skipping description for persona %s: %s", name, e)
            prompt = ""
        description = prompt[:50] + "..." if len(prompt) > 50 else (prompt or "AI persona")
        items.append((name, description))
    return items


def _install_signal_handlers(loop, engine: Engine) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.intent, "shutdown")
        except (NotImplementedError, RuntimeError):
            pass  # Windows: KeyboardInterrupt still ends asyncio.run


async def chat_mode(
    store: persona_store.Store,
    cfg: persona_store.Config,
    backend: Any,
    persona: str | None,
    is_tty: bool,
    muted: bool = False,
) -> None:
    loop = asyncio.get_event_loop()
    registry = persona_sync.PeerRegistry(store.registry_path, ttl=cfg.sync.peer_ttl)
    engine = Engine(
        store,
        backend,
        config=cfg,
        recorder_factory=lambda: persona_audio.Recorder(
            cfg.audio.input_device,
            cfg.audio.silence_threshold,
            cfg.audio.silence_duration,
            cfg.audio.input_format,
        ),
        player=persona_audio.play_bytes,
        stop_player=persona_audio.stop_playback,
        registry=registry,
        muted=muted,
    )
    renderer = TUIRenderer(tty=is_tty, personas=_persona_items(store))
    idle = asyncio.Event()

    def _on_snapshot(snap: dict) -> None:
        renderer.render(snap)
        if snap["state"] in (EngineState.IDLE.value, EngineState.ERROR.value):
            idle.set()
        else:
            idle.clear()

    engine.listeners.append(_on_snapshot)
    _install_signal_handlers(loop, engine)

    stdin_queue: asyncio.Queue[str | None] = asyncio.Queue()
    if is_tty:
        reader_task = asyncio.create_task(_stdin_reader_tty(loop, stdin_queue, renderer))
    else:
        reader_task = asyncio.create_task(_stdin_reader_line(loop, stdin_queue))
    driver_task = asyncio.create_task(
        _drive_input(engine, stdin_queue, renderer, idle, sequential=not is_tty)
    )

    try:
        await engine.run(persona)
    finally:
        for task in (driver_task, reader_task):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if is_tty:
            sys.stdout.write("\r\033[K")
        sys.stdout.flush()


# ── One-shot modes ───────────────────────────────────────────────────────────

async def ask_once(engine: Engine, persona: str, text: str | None) -> dict[str, Any]:
    """Run one exchange headless and return what happened."""
    await engine.start(persona)
    try:
        if engine.session is None:
            return {"error": engine.error or f"could not open persona {persona!r}"}
        before = len(engine.session.turns)
        if text is None:
            engine.intent("start_recording")
        else:
            engine.intent("submit_text", text=text)
        while True:
            await engine.step()
            if engine.state in (EngineState.IDLE, EngineState.ERROR):
                break
        new = [t.to_dict() for t in engine.session.turns[before:]]
        result: dict[str, Any] = {"persona": persona}
        for turn in new:
            result["question" if turn["role"] == "user" else "answer"] = turn["content"]
        if engine.state == EngineState.ERROR:
            result["error"] = engine.error
        return result
    finally:
        await engine.close()


def _print(data: Any, fmt: str, default: Callable[[], None]) -> None:
    if fmt == "json":
        print(json.dumps(data, indent=2, ensure_ascii=False))
    elif fmt == "plain":
        if isinstance(data, dict):
            for key, value in data.items():
                print(f"{key}: {value}")
        elif isinstance(data, list):
            for item in data:
                print(item)
        else:
            print(data)
    else:
        default()


def _fail(message: str, fmt: str = "default") -> int:
    if fmt == "json":
        print(json.dumps({"error": message}, indent=2))
    elif fmt == "plain":
        print(f"Error: {message}")
    else:
        print(render_error(message), file=sys.stderr)
    return 1


def _make_backend(cfg: persona_store.Config) -> persona_audio.OpenAIBackend | None:
    api_key = os.environ.get("OPENAI_API_KEY", "")
    if not api_key:
        return None
    return persona_audio.OpenAIBackend(
        api_key,
        cfg.models.transcription,
        cfg.models.speech,
        cfg.models.chat,
        base_url=cfg.api.base_url,
        timeout=cfg.api.timeout,
    )


# ── Commands ─────────────────────────────────────────────────────────────────

def cmd_chat(args, store: persona_store.Store) -> int:
    if args.name and not store.exists(args.name):
        return _fail(f"Persona '{args.name}' does not exist. Use 'persona list' to see personas.")
    cfg = store.load_config()
    backend = _make_backend(cfg)
    if backend is None:
        return _fail("OPENAI_API_KEY is not set in environment variables.")
    is_tty = sys.stdin.isatty() and sys.stdout.isatty() and not args.no_tty
    try:
        asyncio.run(chat_mode(store, cfg, backend, args.name, is_tty, muted=args.mute))
    finally:
        backend.close()
    if is_tty:
        print(render_success("Chat completed! Goodbye! \U0001f44b"))
    return 0


def cmd_ask(args, store: persona_store.Store) -> int:
    fmt = args.output
    if not store.exists(args.name):
        return _fail(f"Persona '{args.name}' does not exist.", fmt)
    cfg = store.load_config()
    backend = _make_backend(cfg)
    if backend is None:
        return _fail("OPENAI_API_KEY is not set in environment variables.", fmt)
    engine = Engine(
        store,
        backend,
        config=cfg,
        recorder_factory=lambda: persona_audio.Recorder(
            cfg.audio.input_device,
            cfg.audio.silence_threshold,
            cfg.audio.silence_duration,
            cfg.audio.input_format,
        ),
        stop_player=persona_audio.stop_playback,
        watch=False,
        muted=args.mute,
    )
    if fmt == "default":
        print(render_title(f"\U0001f399️ Discussion with {args.name}"))
        if args.text is None:
            print(render_info("\U0001f3a4 Recording started... Speak now!"))
    try:
        result = asyncio.run(ask_once(engine, args.name, args.text))
    finally:
        backend.close()
    if "error" in result:
        return _fail(result["error"], fmt)

    def _default():
        print(f"{USER_MARK} {result.get('question', '')}")
        print(f"{ASSISTANT_MARK} {BOLD}{args.name}{RESET} {result.get('answer', '')}")
        print(render_success("Conversation completed!"))

    _print(result, fmt, _default)
    return 0


def cmd_read(args, store: persona_store.Store) -> int:
    fmt = args.output
    try:
        record = store.load_persona(args.name)
    except FileNotFoundError:
        return _fail(f"Persona '{args.name}' does not exist.", fmt)
    try:
        text = Path(args.file).read_text(encoding="utf-8")
    except OSError as e:
        return _fail(f"Error reading file: {e}", fmt)
    cfg = store.load_config()
    backend = _make_backend(cfg)
    if backend is None:
        return _fail("OPENAI_API_KEY is not set in environment variables.", fmt)
    if fmt == "default":
        print(render_title(f"\U0001f4d6 Reading by {args.name}"))
        print(render_info("\U0001f50a Generating audio..."))
    try:
        audio = backend.synthesize(text, record.voice.name, record.voice.instructions)
        if fmt == "default":
            print(render_info("\U0001f508 Reading text..."))
        persona_audio.play_bytes(audio)
    except Exception as e:
        return _fail(f"Reading failed: {e}", fmt)
    finally:
        backend.close()
    _print({"persona": args.name, "file": args.file, "status": "read"}, fmt,
           lambda: print(render_success("Reading completed!")))
    return 0


def cmd_list(args, store: persona_store.Store) -> int:
    names = store.list_personas()
    fmt = _flag_format(args)

    def _default():
        if not names:
            print(render_info("No personas found. Create one with 'persona create <name>'."))
            return
        print(render_title("Available personas"))
        for name in names:
            print(f"  {name}")

    _print(names, fmt, _default)
    return 0


def cmd_show(args, store: persona_store.Store) -> int:
    fmt = _flag_format(args)
    try:
        record = store.load_persona(args.name)
        history = store.load_history(args.name)
    except FileNotFoundError:
        return _fail(f"Persona '{args.name}' does not exist.", fmt)
    data = {
        "name": record.name,
        "voice_name": record.voice.name,
        "voice_instructions": record.voice.instructions,
        "prompt": record.prompt,
        "history_count": len(history),
    }

    def _default():
        print(render_title(f"Persona: {record.name}"))
        print(f"  Voice: {record.voice.name}")
        print(f"  History: {len(history)} messages")
        print(render_title("Instructions"))
        print(f"  {record.voice.instructions}")
        print(render_title("Prompt"))
        print(f"  {record.prompt}")

    _print(data, fmt, _default)
    return 0


def cmd_create(args, store: persona_store.Store) -> int:
    fmt = _flag_format(args)
    try:
        store.create_persona(args.name)
    except (ValueError, FileExistsError) as e:
        return _fail(str(e), fmt)
    _print({"persona": args.name, "status": "created"}, fmt,
           lambda: print(render_success(f"Persona created: {args.name}")))
    return 0


def cmd_delete(args, store: persona_store.Store) -> int:
    fmt = _flag_format(args)
    try:
        store.delete_persona(args.name)
    except (ValueError, FileNotFoundError) as e:
        return _fail(str(e), fmt)
    _print({"persona": args.name, "status": "deleted"}, fmt,
           lambda: print(render_success(f"Persona deleted: {args.name}")))
    return 0


def cmd_config(args, store: persona_store.Store) -> int:
    fmt = _flag_format(args)
    if args.config_cmd == "path":
        data = {
            "config_dir": str(store.base_path),
            "config_file": str(store.config_path),
            "personas_dir": str(store.personas_dir),
        }

        def _default():
            print(render_info("Configuration paths:"))
            for key, value in data.items():
                print(f"  - {key}: {value}")

        _print(data, fmt, _default)
        return 0
    if args.config_cmd == "set-input-device":
        cfg = store.load_config()
        cfg.audio.input_device = args.device
        store.save_config(cfg)
        _print({"device": args.device, "status": "configured"}, fmt,
               lambda: print(render_success(f"Input device configured: {args.device}")))
        return 0

    cfg = store.load_config().to_dict()

    def _default():
        print(render_info("Configuration:"))
        for line in json.dumps(cfg, indent=2).splitlines():
            print(f"  {line}")

    _print(cfg if fmt != "plain" else json.dumps(cfg, indent=2), fmt, _default)
    return 0


def cmd_devices(args, store: persona_store.Store) -> int:
    fmt = _flag_format(args)
    cfg = store.load_config()
    try:
        devices = persona_audio.list_input_devices(cfg.audio.input_format)
    except persona_audio.CaptureError as e:
        return _fail(str(e), fmt)

    def _default():
        if not devices:
            print(render_info("No audio input devices found."))
            return
        print(render_title("Audio input devices"))
        for device in devices:
            marker = " (configured)" if device == cfg.audio.input_device else ""
            print(f"  {device}{marker}")

    _print(devices, fmt, _default)
    return 0


def _flag_format(args) -> str:
    if getattr(args, "json", False):
        return "json"
    if getattr(args, "plain", False):
        return "plain"
    return "default"


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="persona",
        description="Voice assistant personas with an interactive terminal interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP,
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    def _format_flags(p):
        p.add_argument("--json", action="store_true", help="Display information in JSON format")
        p.add_argument("--plain", action="store_true", help="Display simple plain text output")

    p = sub.add_parser("chat", help="Interactive chat with a persona")
    p.add_argument("name", nargs="?", help="Persona name (selector if omitted)")
    p.add_argument("--no-tty", action="store_true",
                   help="Force non-tty mode (line input, plain output)")
    p.add_argument("--mute", action="store_true", help="Start with audio playback muted")
    p.set_defaults(func=cmd_chat)

    p = sub.add_parser("ask", help="One question and answer with a persona")
    p.add_argument("name")
    p.add_argument("--text", help="Send this text instead of recording")
    p.add_argument("--mute", action="store_true", help="Do not play the answer")
    p.add_argument("-o", "--output", choices=["default", "json", "plain"], default="default")
    p.set_defaults(func=cmd_ask)

    p = sub.add_parser("read", help="Have a persona read a text file aloud")
    p.add_argument("name")
    p.add_argument("file")
    p.add_argument("-o", "--output", choices=["default", "json", "plain"], default="default")
    p.set_defaults(func=cmd_read)

    p = sub.add_parser("list", help="List all available personas")
    _format_flags(p)
    p.set_defaults(func=cmd_list)

    for name, func, help_text in (
        ("show", cmd_show, "Show persona details"),
        ("create", cmd_create, "Create a new persona"),
        ("delete", cmd_delete, "Delete a persona"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("name")
        _format_flags(p)
        p.set_defaults(func=func)

    p = sub.add_parser("config", help="Configuration management")
    config_sub = p.add_subparsers(dest="config_cmd")
    for name, help_text in (("show", "Display current configuration"),
                            ("path", "Display configuration paths")):
        cp = config_sub.add_parser(name, help=help_text)
        _format_flags(cp)
    cp = config_sub.add_parser("set-input-device", help="Set audio input device")
    cp.add_argument("device")
    _format_flags(cp)
    _format_flags(p)
    p.set_defaults(func=cmd_config, config_cmd="show")

    p = sub.add_parser("devices", help="List audio input devices known to ffmpeg")
    _format_flags(p)
    p.set_defaults(func=cmd_devices)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    store = persona_store.Store()
    try:
        store.initialize()
    except OSError as e:
        print(render_error(f"Unable to initialize {store.base_path}: {e}"), file=sys.stderr)
        return 1

    log_kwargs: dict[str, Any] = {}
    if args.command == "chat":
        # Keep log lines out of the TUI
        log_kwargs["filename"] = str(store.log_path)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        **log_kwargs,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    return args.func(args, store)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.stdout.write("\n")
        sys.exit(130)
