from __future__ import annotations

import logging
import os
import pathlib
import re
import sys
from dataclasses import dataclass, field

from .errors import usage

DEFAULT_CAST_CALL_TIMEOUT_SEC = 30
DEFAULT_CAST_SEND_TIMEOUT_SEC = 30
DEFAULT_CAST_RECEIPT_TIMEOUT_SEC = 15
DEFAULT_HTTP_TIMEOUT_SEC = 20
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_str(name: str) -> str:
    return (os.environ.get(name) or "").strip()


def _env_timeout_sec(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    if not re.fullmatch(r"[0-9]+", raw):
        raise usage(f"{name} must be an integer number of seconds.")
    value = int(raw)
    if value < 1:
        raise usage(f"{name} must be >= 1.")
    return value


def default_app_dir() -> pathlib.Path:
    return pathlib.Path(_env_str("DEFI_AGENT_HOME") or str(pathlib.Path.home() / ".defi-agent")).expanduser()


@dataclass
class Settings:
    app_dir: pathlib.Path
    actions_path: pathlib.Path
    actions_lock_path: pathlib.Path
    cast_call_timeout_sec: int = DEFAULT_CAST_CALL_TIMEOUT_SEC
    cast_send_timeout_sec: int = DEFAULT_CAST_SEND_TIMEOUT_SEC
    cast_receipt_timeout_sec: int = DEFAULT_CAST_RECEIPT_TIMEOUT_SEC
    http_timeout_sec: int = DEFAULT_HTTP_TIMEOUT_SEC
    log_level: str = "WARNING"
    api_keys: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "Settings":
        app_dir = default_app_dir()
        actions_path = pathlib.Path(_env_str("DEFI_ACTIONS_PATH") or str(app_dir / "actions.json")).expanduser()
        lock_raw = _env_str("DEFI_ACTIONS_LOCK_PATH")
        actions_lock_path = pathlib.Path(lock_raw).expanduser() if lock_raw else actions_path.with_name(actions_path.name + ".lock")
        return cls(
            app_dir=app_dir,
            actions_path=actions_path,
            actions_lock_path=actions_lock_path,
            cast_call_timeout_sec=_env_timeout_sec("DEFI_CAST_CALL_TIMEOUT_SEC", DEFAULT_CAST_CALL_TIMEOUT_SEC),
            cast_send_timeout_sec=_env_timeout_sec("DEFI_CAST_SEND_TIMEOUT_SEC", DEFAULT_CAST_SEND_TIMEOUT_SEC),
            cast_receipt_timeout_sec=_env_timeout_sec("DEFI_CAST_RECEIPT_TIMEOUT_SEC", DEFAULT_CAST_RECEIPT_TIMEOUT_SEC),
            http_timeout_sec=_env_timeout_sec("DEFI_HTTP_TIMEOUT_SEC", DEFAULT_HTTP_TIMEOUT_SEC),
            log_level=(_env_str("DEFI_LOG_LEVEL") or "WARNING").upper(),
            api_keys={
                "1inch": _env_str("DEFI_1INCH_API_KEY"),
                "bungee": _env_str("DEFI_BUNGEE_API_KEY"),
                "bungee_affiliate": _env_str("DEFI_BUNGEE_AFFILIATE"),
            },
        )


def configure_logging(level: str = "WARNING") -> None:
    # stdout carries the JSON envelope; diagnostics go to stderr.
    root = logging.getLogger("defi_agent")
    if not any(getattr(handler, "_defi_agent", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._defi_agent = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.WARNING))
    root.propagate = False
