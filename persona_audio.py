"""External collaborators: OpenAI-compatible backend, ffmpeg capture, playback.

Everything here blocks. The engine runs these calls in the default executor
and only ever sees their return value or exception.
"""

from __future__ import annotations

import logging
import os
import platform
import re
import subprocess
import tempfile
import threading
from pathlib import Path

import httpx
import numpy as np

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_SILENCE_THRESHOLD = -50   # dB
DEFAULT_SILENCE_DURATION = 2      # seconds
FFMPEG = "ffmpeg"

_SILENCE_START_RE = re.compile(r"silencedetect @ .*silence_start:")
_DSHOW_DEVICE_RE = re.compile(r'"([^"]+)"\s+\(audio\)')
_AVFOUNDATION_DEVICE_RE = re.compile(r"\[(\d+)\]\s+(.+)$")


class BackendError(RuntimeError):
    """Non-success or malformed response from the chat/speech backend."""


class CaptureError(RuntimeError):
    """ffmpeg could not record audio."""


# ── Backend ──────────────────────────────────────────────────────────────────

class OpenAIBackend:
    """transcribe / chat / synthesize against an OpenAI-compatible API."""

    def __init__(
        self,
        api_key: str,
        transcription_model: str,
        speech_model: str,
        chat_model: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ):
        self.transcription_model = transcription_model
        self.speech_model = speech_model
        self.chat_model = chat_model
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _check(response: httpx.Response, what: str) -> None:
        if response.status_code != 200:
            body = response.text[:500]
            raise BackendError(f"{what} failed with status {response.status_code}: {body}")

    def transcribe(self, audio_path: str | Path) -> str:
        with open(audio_path, "rb") as f:
            r = self._client.post(
                "/audio/transcriptions",
                data={"model": self.transcription_model},
                files={"file": ("audio.wav", f, "audio/wav")},
            )
        self._check(r, "transcription")
        try:
            return r.json()["text"]
        except (ValueError, KeyError) as e:
            raise BackendError(f"malformed transcription response: {e}") from e

    def chat(self, messages: list[dict[str, str]]) -> str:
        r = self._client.post(
            "/chat/completions",
            json={"model": self.chat_model, "messages": messages},
        )
        self._check(r, "chat")
        try:
            choices = r.json()["choices"]
        except (ValueError, KeyError) as e:
            raise BackendError(f"malformed chat response: {e}") from e
        if not choices:
            raise BackendError("no response from API")
        return choices[0]["message"]["content"] or ""

    def synthesize(self, text: str, voice: str, instructions: str = "") -> bytes:
        body = {
            "model": self.speech_model,
            "input": text,
            "voice": voice,
            "response_format": "mp3",
        }
        if instructions:
            body["instructions"] = instructions
        r = self._client.post("/audio/speech", json=body)
        self._check(r, "speech synthesis")
        return r.content


# ── Capture ──────────────────────────────────────────────────────────────────

def default_input_format() -> str:
    system = platform.system()
    if system == "Windows":
        return "dshow"
    if system == "Darwin":
        return "avfoundation"
    return "pulse"


def _input_spec(input_format: str, device: str) -> str:
    if input_format == "dshow":
        return f"audio={device}"
    if input_format == "avfoundation":
        return device if device.startswith(":") else f":{device}"
    return device or "default"


class Recorder:
    """One ffmpeg recording that ends at the first trailing silence.

    ``record()`` blocks; ``stop()`` may be called from another thread to end
    the recording early, in which case the partial file is still returned.
    """

    def __init__(
        self,
        device: str,
        silence_threshold: int = DEFAULT_SILENCE_THRESHOLD,
        silence_duration: int = DEFAULT_SILENCE_DURATION,
        input_format: str = "",
    ):
        self.device = device
        self.silence_threshold = silence_threshold or DEFAULT_SILENCE_THRESHOLD
        self.silence_duration = silence_duration or DEFAULT_SILENCE_DURATION
        self.input_format = input_format or default_input_format()
        self._proc: subprocess.Popen | None = None
        self._stopped = threading.Event()

    def command(self, output: str) -> list[str]:
        return [
            FFMPEG, "-hide_banner", "-y",
            "-f", self.input_format,
            "-i", _input_spec(self.input_format, self.device),
            "-af", f"silencedetect=n={self.silence_threshold}dB:d={self.silence_duration}",
            output,
        ]

    def record(self) -> str:
        if self._stopped.is_set():
            raise CaptureError("recording stopped before it started")
        fd, path = tempfile.mkstemp(prefix="recording-", suffix=".wav")
        os.close(fd)
        cmd = self.command(path)
        logger.debug("Recording: %s", " ".join(cmd))
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as e:
            os.unlink(path)
            raise CaptureError(f"failed to start ffmpeg: {e}") from e
        # stop() may have run while ffmpeg was being spawned
        if self._stopped.is_set():
            self._proc.terminate()

        stderr_lines: list[str] = []
        silence = False
        for line in self._proc.stderr:
            stderr_lines.append(line)
            if _SILENCE_START_RE.search(line):
                silence = True
                logger.debug("Silence detected, stopping capture")
                self._proc.terminate()
                break
        returncode = self._proc.wait()
        self._proc = None

        if returncode != 0 and not (silence or self._stopped.is_set()):
            os.unlink(path)
            output = "".join(stderr_lines[-20:]).strip()
            raise CaptureError(f"ffmpeg exited with status {returncode}\n{output}".rstrip())
        return path

    def stop(self) -> None:
        self._stopped.set()
        proc = self._proc
        if proc is not None and proc.poll() is None:
            try:
                proc.terminate()
            except OSError:
                pass


def list_input_devices(input_format: str = "") -> list[str]:
    """Ask ffmpeg for capture devices of the given input format."""
    input_format = input_format or default_input_format()
    if input_format in ("dshow", "avfoundation"):
        cmd = [FFMPEG, "-hide_banner", "-list_devices", "true", "-f", input_format, "-i", "dummy"]
    else:
        cmd = [FFMPEG, "-hide_banner", "-sources", input_format]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, errors="replace", timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise CaptureError(f"failed to run ffmpeg: {e}") from e

    devices: list[str] = []
    if input_format == "dshow":
        for line in proc.stderr.splitlines():
            m = _DSHOW_DEVICE_RE.search(line)
            if m and m.group(1).strip():
                devices.append(m.group(1).strip())
    elif input_format == "avfoundation":
        in_audio = False
        for line in proc.stderr.splitlines():
            if "audio devices" in line.lower():
                in_audio = True
                continue
            if in_audio:
                m = _AVFOUNDATION_DEVICE_RE.search(line)
                if m:
                    devices.append(m.group(2).strip())
    else:
        for line in proc.stdout.splitlines():
            line = line.strip().lstrip("*").strip()
            if not line or line.lower().startswith("auto-detected"):
                continue
            devices.append(line.split(" ", 1)[0])
    return devices


# ── Playback ─────────────────────────────────────────────────────────────────

def play_audio(path: str | Path) -> None:
    """Decode an audio file and play it, returning when playback ends."""
    import sounddevice as sd
    import sphn

    pcm, sample_rate = sphn.read(str(path))
    audio = np.clip(np.asarray(pcm, dtype=np.float32), -1, 1)
    # sphn returns (channels, samples); sounddevice wants (frames, channels)
    audio = np.ascontiguousarray(audio.T)
    if audio.size == 0:
        return
    sd.play(audio, int(sample_rate))
    sd.wait()


def stop_playback() -> None:
    """Interrupt whatever ``play_audio`` is playing; its ``sd.wait()`` returns."""
    import sounddevice as sd

    sd.stop()


def play_bytes(audio: bytes, suffix: str = ".mp3") -> None:
    """Write synthesized audio to a temp file, play it, remove it."""
    fd, path = tempfile.mkstemp(prefix="persona-", suffix=suffix)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(audio)
        play_audio(path)
    finally:
        try:
            os.unlink(path)
        except OSError:
            pass
