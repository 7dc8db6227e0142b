"""Compact button tokens (``namespace:key:value``) and the engine+mode value grammar."""

import logging
from typing import Optional

from .models import CallbackToken, EngineMode

logger = logging.getLogger(__name__)

DELIMITER = ":"

# Telegram rejects callback_data longer than this
MAX_CALLBACK_BYTES = 64

# Namespaces
SESSION_FLOW = "sf"
TASK_FLOW = "tf"
ANSWER = "aq"

# Short engine codes used in start-mode buttons
DEFAULT_ENGINES = {
    "i": "itachi",
    "c": "itachic",
    "g": "itachig",
}
DEFAULT_ENGINE = "itachi"

# Machine engine_priority entries -> engine command
PROVIDER_ENGINES = {
    "claude": "itachi",
    "codex": "itachic",
    "gemini": "itachig",
}

MODE_FLAGS = {
    "ds": "--ds",
    "cds": "--cds",
}
DEFAULT_MODE = "ds"


def encode_callback(namespace: str, key: str, value: str = "") -> str:
    """Join a token. Only ``value`` may contain the delimiter."""
    if DELIMITER in namespace or DELIMITER in key:
        raise ValueError(f"Callback namespace/key may not contain '{DELIMITER}': {namespace!r}, {key!r}")
    token = f"{namespace}{DELIMITER}{key}{DELIMITER}{value}"
    if len(token.encode("utf-8")) > MAX_CALLBACK_BYTES:
        logger.warning(f"Callback token exceeds {MAX_CALLBACK_BYTES} bytes: {token[:40]}...")
    return token


def decode_callback(token: Optional[str]) -> Optional[CallbackToken]:
    """Split on the first two delimiters. Returns None for fewer than three parts."""
    if not token:
        return None
    parts = token.split(DELIMITER, 2)
    if len(parts) < 3:
        return None
    namespace, key, value = parts
    return CallbackToken(namespace=namespace, key=key, value=value)


def engines_from_config(config: Optional[dict] = None) -> tuple[dict[str, str], str]:
    """Return (short code -> engine command, default engine) from the sessions section."""
    sessions = (config or {}).get("sessions", {})
    engines = dict(sessions.get("engines") or DEFAULT_ENGINES)
    return engines, sessions.get("default_engine", DEFAULT_ENGINE)


def parse_engine_mode(
    value: str,
    engines: Optional[dict[str, str]] = None,
    default_engine: str = DEFAULT_ENGINE,
) -> EngineMode:
    """
    Parse a start-mode button value.

    "<engine>.<mode>" resolves the engine code through ``engines`` (unknown
    codes fall back to ``default_engine``). A value without "." is the legacy
    mode-only form; the engine is left to an external resolver.
    """
    engines = DEFAULT_ENGINES if engines is None else engines

    if "." not in value:
        flag = MODE_FLAGS.get(value, MODE_FLAGS[DEFAULT_MODE])
        return EngineMode(engine=None, mode=flag, needs_resolution=True)

    short, _, mode = value.partition(".")
    engine = engines.get(short)
    if engine is None:
        logger.debug(f"Unknown engine code {short!r}, using {default_engine}")
        engine = default_engine
    return EngineMode(engine=engine, mode=MODE_FLAGS.get(mode, MODE_FLAGS[DEFAULT_MODE]))


def engine_mode_value(short: str, mode: str) -> str:
    return f"{short}.{mode}"


class EngineResolver:
    """Picks the engine command for a machine from its engine priority list."""

    def __init__(self, priorities: Optional[dict[str, list[str]]] = None, default_engine: str = DEFAULT_ENGINE):
        self.priorities = priorities or {}
        self.default_engine = default_engine

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "EngineResolver":
        config = config or {}
        targets = config.get("ssh", {}).get("targets", {}) or {}
        priorities = {
            name: list(target.get("engine_priority") or [])
            for name, target in targets.items()
            if isinstance(target, dict)
        }
        _, default_engine = engines_from_config(config)
        return cls(priorities=priorities, default_engine=default_engine)

    def resolve(self, target: Optional[str]) -> str:
        priority = self.priorities.get(target or "", [])
        if priority:
            return PROVIDER_ENGINES.get(priority[0], self.default_engine)
        return self.default_engine
