#!/usr/bin/env python3
"""Tests for persona.py — command parsing, TUI rendering, input driving and
the management subcommands.

Run: python3 test_persona.py
  or: pytest test_persona.py -v
"""

import asyncio
import datetime
import io
import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import persona
from persona import TUIRenderer, parse_command, resolve_persona_choice
from persona_engine import Engine
from persona_store import Store


def _snap(**kw):
    snap = {
        "mode": "chatting",
        "state": "idle",
        "status": "",
        "error": "",
        "persona": "merlin",
        "turns": [],
        "muted": False,
        "peers": 1,
        "history_revision": 1,
    }
    snap.update(kw)
    return snap


def _capture(fn, *args, **kwargs):
    """Call fn and capture stdout."""
    buf = io.StringIO()
    old_stdout = sys.stdout
    sys.stdout = buf
    try:
        result = fn(*args, **kwargs)
    finally:
        sys.stdout = old_stdout
    return result, buf.getvalue()


# ===========================================================================
# 1. Command parsing
# ===========================================================================

class TestParseCommand(unittest.TestCase):

    def test_plain_text(self):
        self.assertEqual(parse_command("  hello  "), ("submit_text", {"text": "hello"}))

    def test_blank(self):
        self.assertIsNone(parse_command("   "))

    def test_slash_commands(self):
        self.assertEqual(parse_command("/record")[0], "start_recording")
        self.assertEqual(parse_command("/r")[0], "start_recording")
        self.assertEqual(parse_command("/stop")[0], "stop_recording")
        self.assertEqual(parse_command("/clear")[0], "clear")
        self.assertEqual(parse_command("/MUTE")[0], "toggle_mute")
        self.assertEqual(parse_command("/quit")[0], "shutdown")
        self.assertEqual(parse_command("/help")[0], "help")

    def test_persona_command(self):
        self.assertEqual(parse_command("/persona coach"), ("switch_persona", {"name": "coach"}))
        self.assertEqual(parse_command("/persona"), ("select_persona", {}))

    def test_unknown(self):
        self.assertEqual(parse_command("/dance"), ("unknown", {"command": "dance"}))

    def test_resolve_persona_choice(self):
        names = ["coach", "freud", "merlin"]
        self.assertEqual(resolve_persona_choice("2", names), "freud")
        self.assertEqual(resolve_persona_choice("merlin", names), "merlin")
        self.assertIsNone(resolve_persona_choice("4", names))
        self.assertIsNone(resolve_persona_choice("0", names))
        self.assertIsNone(resolve_persona_choice("gandalf", names))


# ===========================================================================
# 2. TUI rendering
# ===========================================================================

class TestTUIRenderer(unittest.TestCase):

    def _render(self, snaps, tty=False, renderer=None):
        renderer = renderer or TUIRenderer(tty=tty)

        def _all():
            for snap in snaps:
                renderer.render(snap)

        return _capture(_all)[1]

    def test_nontty_prints_turns_once(self):
        turns = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "yo"}]
        output = self._render([
            _snap(turns=turns[:1]),
            _snap(turns=turns, state="playing"),
            _snap(turns=turns),
        ])
        self.assertEqual(output, "-- merlin --\n❯ hi\n⏺ yo\n")

    def test_nontty_revision_reprints(self):
        turns = [{"role": "user", "content": "hi"}]
        output = self._render([
            _snap(turns=turns),
            _snap(turns=[{"role": "user", "content": "peer"}], history_revision=2),
        ])
        self.assertEqual(output, "-- merlin --\n❯ hi\n-- merlin --\n❯ peer\n")

    def test_nontty_error_printed_once(self):
        output = self._render([
            _snap(state="error", error="Chat error: boom"),
            _snap(state="error", error="Chat error: boom"),
        ])
        self.assertEqual(output.count("error: Chat error: boom"), 1)

    def test_tty_status_line_in_place(self):
        output = self._render([
            _snap(state="chatting", status="\U0001f4ad Thinking..."),
            _snap(state="idle"),
        ], tty=True)
        self.assertIn("Thinking...", output)
        self.assertIn("\r\033[K", output)
        self.assertIn("Chat with merlin", output)

    def test_tty_turn_has_timestamp_and_name(self):
        output = self._render([
            _snap(turns=[{"role": "assistant", "content": "Greetings"}]),
        ], tty=True)
        self.assertRegex(output, r"\d\d:\d\d:\d\d")
        self.assertIn("merlin", output)
        self.assertIn("Greetings", output)

    def test_stamp_format(self):
        stamp = persona._stamp(datetime.datetime(2024, 5, 1, 9, 7, 3))
        self.assertIn("09:07:03", stamp)
        self.assertTrue(stamp.endswith(persona.RESET))

    def test_status_tags(self):
        renderer = TUIRenderer(tty=True)
        text = renderer.status_text(_snap(peers=3, muted=True))
        self.assertIn("3 instances", text)
        self.assertIn("\U0001f507", text)
        self.assertNotIn("instances", renderer.status_text(_snap(peers=1)))

    def test_status_shows_error(self):
        text = TUIRenderer(tty=True).status_text(_snap(error="Recording error: nope"))
        self.assertIn("Recording error: nope", text)

    def test_status_shows_input_buffer(self):
        renderer = TUIRenderer(tty=True)
        renderer.input_buffer = "half a senten"
        self.assertIn("half a senten", renderer.status_text(_snap()))

    def test_selector_listed(self):
        renderer = TUIRenderer(tty=False, personas=[("coach", "Motivating"), ("merlin", "Wizard")])
        output = self._render([_snap(mode="selecting", persona=None)], renderer=renderer)
        self.assertIn("1", output)
        self.assertIn("coach", output)
        self.assertIn("merlin", output)


# ===========================================================================
# 3. Input driving
# ===========================================================================

class FakeBackend:
    def __init__(self):
        self.messages = []

    def transcribe(self, path):
        return "spoken"

    def chat(self, messages):
        self.messages.append(messages[-1]["content"])
        return f"echo: {messages[-1]['content']}"

    def synthesize(self, text, voice, instructions=""):
        return b""


class TestDriveInput(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = Store(Path(self._tmp.name))
        self.store.initialize()

    def tearDown(self):
        self._tmp.cleanup()

    def test_line_reader_skips_blanks_and_marks_eof(self):
        async def _run():
            queue = asyncio.Queue()
            stream = io.StringIO("hello\n\n   \n/mute\nlast line")
            await persona._stdin_reader_line(asyncio.get_event_loop(), queue, stream)
            items = []
            while not queue.empty():
                items.append(queue.get_nowait())
            return items

        self.assertEqual(asyncio.run(_run()), ["hello", "/mute", "last line", None])

    def test_piped_lines_run_in_order(self):
        backend = FakeBackend()

        async def _run():
            engine = Engine(self.store, backend, player=lambda audio: None, watch=False)
            renderer = TUIRenderer(tty=False, personas=persona._persona_items(self.store))
            idle = asyncio.Event()

            def _on_snapshot(snap):
                if snap["state"] in ("idle", "error"):
                    idle.set()
                else:
                    idle.clear()

            engine.listeners.append(_on_snapshot)
            queue = asyncio.Queue()
            for item in ("first", "/mute", "second", None):
                queue.put_nowait(item)
            driver = asyncio.create_task(
                persona._drive_input(engine, queue, renderer, idle, sequential=True))
            await asyncio.wait_for(engine.run("coach"), 10)
            await driver
            return engine

        engine = asyncio.run(_run())
        self.assertEqual(backend.messages, ["first", "second"])
        self.assertTrue(engine.muted)
        self.assertEqual(len(engine.session.turns), 4)

    def test_selector_choice_by_number(self):
        async def _run():
            engine = Engine(self.store, FakeBackend(), player=lambda audio: None, watch=False)
            renderer = TUIRenderer(tty=False, personas=persona._persona_items(self.store))
            idle = asyncio.Event()
            idle.set()
            queue = asyncio.Queue()
            queue.put_nowait("1")
            await engine.start()
            driver = asyncio.create_task(
                persona._drive_input(engine, queue, renderer, idle, sequential=False))
            await asyncio.wait_for(engine.step(), 5)
            driver.cancel()
            await engine.close()
            return engine

        engine = asyncio.run(_run())
        self.assertEqual(engine.session.name, "coach")

    def test_ask_once_with_text(self):
        async def _run():
            engine = Engine(self.store, FakeBackend(), player=lambda audio: None, watch=False)
            return await persona.ask_once(engine, "merlin", "ping")

        result = asyncio.run(_run())
        self.assertEqual(result, {"persona": "merlin", "question": "ping", "answer": "echo: ping"})

    def test_ask_once_reports_error(self):
        async def _run():
            engine = Engine(self.store, FakeBackend(), watch=False)
            return await persona.ask_once(engine, "merlin", None)

        result = asyncio.run(_run())
        self.assertTrue(result["error"].startswith("Recording error:"))


# ===========================================================================
# 4. Management subcommands
# ===========================================================================

class TestSubcommands(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self._env = patch.dict(os.environ, {"PERSONA_HOME": self._tmp.name})
        self._env.start()

    def tearDown(self):
        self._env.stop()
        self._tmp.cleanup()

    def _main(self, *argv):
        return _capture(persona.main, ["--log-level", "WARNING", *argv])

    def test_list_json(self):
        code, output = self._main("list", "--json")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output), ["coach", "freud", "merlin", "persona"])

    def test_create_show_delete(self):
        code, _ = self._main("create", "bob")
        self.assertEqual(code, 0)
        code, output = self._main("show", "bob", "--json")
        data = json.loads(output)
        self.assertEqual(data["name"], "bob")
        self.assertEqual(data["history_count"], 0)
        code, _ = self._main("delete", "bob")
        self.assertEqual(code, 0)
        code, output = self._main("list", "--plain")
        self.assertNotIn("bob", output.split())

    def test_delete_default_fails(self):
        code, output = self._main("delete", "persona", "--json")
        self.assertEqual(code, 1)
        self.assertIn("error", json.loads(output))

    def test_show_missing_fails(self):
        code, _ = self._main("show", "ghost", "--plain")
        self.assertEqual(code, 1)

    def test_config_set_input_device(self):
        code, _ = self._main("config", "set-input-device", "USB Mic")
        self.assertEqual(code, 0)
        code, output = self._main("config", "show", "--json")
        self.assertEqual(json.loads(output)["audio"]["input_device"], "USB Mic")

    def test_config_path(self):
        code, output = self._main("config", "path", "--json")
        self.assertEqual(json.loads(output)["config_dir"], self._tmp.name)

    def test_chat_requires_api_key(self):
        with patch.dict(os.environ, {"OPENAI_API_KEY": ""}):
            with patch("sys.stderr", new_callable=io.StringIO) as err:
                code, _ = self._main("chat", "merlin")
        self.assertEqual(code, 1)
        self.assertIn("OPENAI_API_KEY", err.getvalue())


if __name__ == "__main__":
    unittest.main()
