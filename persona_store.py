"""Conversation session data, persona records and on-disk layout.

Layout under the base directory (``~/.persona`` or ``$PERSONA_HOME``)::

    config.yaml
    .instances.json
    personas/<name>/persona.yaml
    personas/<name>/history.yaml
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_PERSONA = "persona"
DEFAULT_MAX_TURNS = 100
ROLES = ("user", "assistant", "system")

BUILTIN_PERSONAS: dict[str, dict[str, Any]] = {
    "persona": {
        "voice": {
            "name": "coral",
            "instructions": "Warm and relaxed, speaking at an easy conversational pace.",
        },
        "prompt": (
            "You are a friendly voice assistant. Keep answers short and "
            "conversational: they are read aloud, so avoid lists, markdown "
            "and code blocks."
        ),
    },
    "coach": {
        "voice": {
            "name": "onyx",
            "instructions": "Energetic and encouraging, like a sports coach on the sideline.",
        },
        "prompt": (
            "You are a motivating personal coach. Ask one question at a time, "
            "push gently toward concrete next steps and celebrate progress."
        ),
    },
    "merlin": {
        "voice": {
            "name": "fable",
            "instructions": "Old, slow and theatrical, with a hint of mischief.",
        },
        "prompt": (
            "You are Merlin the wizard. Answer in a whimsical, archaic tone "
            "while still being genuinely helpful."
        ),
    },
    "freud": {
        "voice": {
            "name": "echo",
            "instructions": "Calm, measured and curious, with long thoughtful pauses.",
        },
        "prompt": (
            "You are a psychoanalyst in the style of Sigmund Freud. Listen, "
            "reflect the user's words back and ask about their feelings."
        ),
    },
}


# ── Turns and sessions ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Turn:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "Turn":
        role = str(data.get("role", ""))
        if role not in ROLES:
            raise ValueError(f"invalid role: {role!r}")
        return cls(role=role, content=str(data.get("content") or ""))


@dataclass
class Voice:
    name: str = "alloy"
    instructions: str = ""


@dataclass
class PersonaRecord:
    """A persona as stored in ``persona.yaml``."""

    name: str
    voice: Voice = field(default_factory=Voice)
    prompt: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "voice": asdict(self.voice), "prompt": self.prompt}

    @classmethod
    def from_dict(cls, name: str, data: dict | None) -> "PersonaRecord":
        data = data or {}
        voice = data.get("voice") or {}
        return cls(
            name=data.get("name") or name,
            voice=Voice(
                name=voice.get("name") or Voice().name,
                instructions=voice.get("instructions") or "",
            ),
            prompt=data.get("prompt") or "",
        )


class Session:
    """Conversation state for one persona in one process.

    The system prompt is never stored as a turn; it is synthesized in front
    of the history by :meth:`to_backend_view`.
    """

    def __init__(
        self,
        persona: PersonaRecord,
        turns: list[Turn] | None = None,
        history_path: Path | None = None,
    ):
        self.persona = persona
        self.turns: list[Turn] = list(turns or [])
        self.history_path = history_path

    @property
    def name(self) -> str:
        return self.persona.name

    @property
    def prompt(self) -> str:
        return self.persona.prompt

    def append(self, turn: Turn, max_len: int = DEFAULT_MAX_TURNS) -> None:
        self.turns.append(turn)
        if max_len > 0 and len(self.turns) > max_len:
            del self.turns[: len(self.turns) - max_len]

    def clear(self) -> None:
        self.turns = []

    def replace(self, turns: list[Turn]) -> None:
        self.turns = list(turns)

    def to_backend_view(self) -> list[dict[str, str]]:
        view = [{"role": "system", "content": self.prompt}]
        view.extend(t.to_dict() for t in self.turns)
        return view

    def persist(self) -> None:
        if self.history_path is None:
            raise RuntimeError(f"session {self.name!r} has no history path")
        save_history(self.history_path, self.turns)

    def reload(self) -> None:
        if self.history_path is None:
            raise RuntimeError(f"session {self.name!r} has no history path")
        self.turns = load_history(self.history_path)


# ── History files ────────────────────────────────────────────────────────────

def _write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` in one rename so readers never see half a file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


def save_history(path: Path, turns: list[Turn]) -> None:
    data = [t.to_dict() for t in turns]
    _write_atomic(path, yaml.safe_dump(data, allow_unicode=True, sort_keys=False))


def load_history(path: Path) -> list[Turn]:
    """Read a history file. A missing file is an empty history."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        # Older histories were written as JSON
        data = json.loads(text)
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"{path}: history must be a list, got {type(data).__name__}")
    return [Turn.from_dict(item) for item in data]


# ── Configuration ────────────────────────────────────────────────────────────

@dataclass
class ModelsConfig:
    transcription: str = "whisper-1"
    speech: str = "gpt-4o-mini-tts"
    chat: str = "gpt-4o-mini"


@dataclass
class ApiConfig:
    base_url: str = "https://api.openai.com/v1"
    timeout: float = 60.0


@dataclass
class AudioConfig:
    input_device: str = ""
    input_format: str = ""
    silence_threshold: int = -50
    silence_duration: int = 2


@dataclass
class HistoryConfig:
    max_turns: int = DEFAULT_MAX_TURNS


@dataclass
class SyncConfig:
    heartbeat_interval: float = 30.0
    peer_ttl: float = 300.0
    debounce: float = 0.1


@dataclass
class Config:
    models: ModelsConfig = field(default_factory=ModelsConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    _SECTIONS = {
        "models": ModelsConfig,
        "api": ApiConfig,
        "audio": AudioConfig,
        "history": HistoryConfig,
        "sync": SyncConfig,
    }

    @classmethod
    def from_dict(cls, data: dict | None) -> "Config":
        cfg = cls()
        if data is not None and not isinstance(data, dict):
            logger.warning("Ignoring config: expected a mapping, got %s", type(data).__name__)
            data = None
        for section, section_cls in cls._SECTIONS.items():
            values = (data or {}).get(section) or {}
            if not isinstance(values, dict):
                logger.warning("Ignoring %s config: expected a mapping, got %r", section, values)
                continue
            known = {k: v for k, v in values.items() if k in section_cls.__dataclass_fields__}
            unknown = set(values) - set(known)
            if unknown:
                logger.warning("Ignoring unknown %s config keys: %s", section, sorted(unknown))
            setattr(cfg, section, section_cls(**known))
        return cfg

    def to_dict(self) -> dict[str, Any]:
        return {section: asdict(getattr(self, section)) for section in self._SECTIONS}


# ── Store ────────────────────────────────────────────────────────────────────

def default_base_path() -> Path:
    env = os.environ.get("PERSONA_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".persona"


class Store:
    """Flat-file persona, history and config records."""

    def __init__(self, base_path: Path | None = None):
        self.base_path = Path(base_path) if base_path else default_base_path()

    @property
    def personas_dir(self) -> Path:
        return self.base_path / "personas"

    @property
    def config_path(self) -> Path:
        return self.base_path / "config.yaml"

    @property
    def registry_path(self) -> Path:
        return self.base_path / ".instances.json"

    @property
    def log_path(self) -> Path:
        return self.base_path / "persona.log"

    def persona_dir(self, name: str) -> Path:
        return self.personas_dir / name

    def persona_path(self, name: str) -> Path:
        return self.persona_dir(name) / "persona.yaml"

    def history_path(self, name: str) -> Path:
        return self.persona_dir(name) / "history.yaml"

    def initialize(self) -> None:
        """Create the directory layout, default config and built-in personas."""
        self.personas_dir.mkdir(parents=True, exist_ok=True)
        if not self.config_path.exists():
            self.save_config(Config())
        for name, template in BUILTIN_PERSONAS.items():
            if not self.exists(name):
                self._create_from_template(name, template)

    # -- config --

    def load_config(self) -> Config:
        try:
            text = self.config_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Config()
        return Config.from_dict(yaml.safe_load(text))

    def save_config(self, cfg: Config) -> None:
        _write_atomic(self.config_path, yaml.safe_dump(cfg.to_dict(), sort_keys=False))

    # -- personas --

    def exists(self, name: str) -> bool:
        return self.persona_path(name).exists()

    def list_personas(self) -> list[str]:
        if not self.personas_dir.exists():
            return []
        return sorted(p.name for p in self.personas_dir.iterdir() if p.is_dir())

    def _create_from_template(self, name: str, template: dict[str, Any]) -> PersonaRecord:
        record = PersonaRecord.from_dict(name, {**template, "name": name})
        self.save_persona(record)
        save_history(self.history_path(name), [])
        return record

    def create_persona(self, name: str) -> PersonaRecord:
        if not name or os.sep in name or name.startswith("."):
            raise ValueError(f"invalid persona name: {name!r}")
        if self.exists(name):
            raise FileExistsError(f"persona {name!r} already exists")
        return self._create_from_template(name, BUILTIN_PERSONAS[DEFAULT_PERSONA])

    def delete_persona(self, name: str) -> None:
        if name == DEFAULT_PERSONA:
            raise ValueError(f"cannot delete the default persona {DEFAULT_PERSONA!r}")
        if not self.exists(name):
            raise FileNotFoundError(f"persona {name!r} does not exist")
        shutil.rmtree(self.persona_dir(name))

    def load_persona(self, name: str) -> PersonaRecord:
        text = self.persona_path(name).read_text(encoding="utf-8")
        return PersonaRecord.from_dict(name, yaml.safe_load(text))

    def save_persona(self, record: PersonaRecord) -> None:
        _write_atomic(
            self.persona_path(record.name),
            yaml.safe_dump(record.to_dict(), allow_unicode=True, sort_keys=False),
        )

    def load_history(self, name: str) -> list[Turn]:
        return load_history(self.history_path(name))

    def open_session(self, name: str) -> Session:
        """Load a persona record and its history into a fresh Session."""
        record = self.load_persona(name)
        history_path = self.history_path(name)
        return Session(record, load_history(history_path), history_path)
