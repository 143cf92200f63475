"""Durable action store: one versioned JSON document keyed by action id."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import pathlib
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Iterator

from .actions import Action, utc_now
from .errors import ActionNotFound, DefiError, ErrorCode, usage

log = logging.getLogger(__name__)

STORE_VERSION = 1
DEFAULT_LIST_LIMIT = 20
DEFAULT_LOCK_TIMEOUT_SEC = 5.0
LOCK_RETRY_SEC = 0.05


class ActionStore:
    def __init__(
        self,
        path: pathlib.Path,
        lock_path: pathlib.Path | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SEC,
    ):
        self.path = pathlib.Path(path)
        self.lock_path = pathlib.Path(lock_path) if lock_path else self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout

    def _ensure_dir(self) -> None:
        directory = self.path.parent
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        if os.name != "nt":
            os.chmod(directory, 0o700)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._ensure_dir()
        lock_file = open(self.lock_path, "w")
        try:
            deadline = time.monotonic() + self.lock_timeout
            contended = False
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if not contended:
                        log.info("action store lock is held by another process; waiting up to %.1fs", self.lock_timeout)
                        contended = True
                    if time.monotonic() >= deadline:
                        raise DefiError(
                            ErrorCode.UNAVAILABLE,
                            f"timed out after {self.lock_timeout:g}s waiting for action store lock",
                            "Another defi-agent process is writing actions; retry shortly.",
                            {"lockPath": str(self.lock_path)},
                        )
                    time.sleep(LOCK_RETRY_SEC)
            yield
        finally:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            except OSError:
                pass
            lock_file.close()

    def _read_doc(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"version": STORE_VERSION, "actions": {}}
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise DefiError(ErrorCode.INTERNAL, f"Invalid JSON in '{self.path}'") from exc
        if not isinstance(doc, dict) or not isinstance(doc.get("actions"), dict):
            raise DefiError(ErrorCode.INTERNAL, f"Action store '{self.path}' has an unexpected shape.")
        return doc

    def _write_doc(self, doc: dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(doc, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            if os.name != "nt":
                os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def save(self, action: Action) -> None:
        if not action.action_id:
            raise usage("action id is required")
        with self._locked():
            doc = self._read_doc()
            doc["version"] = STORE_VERSION
            doc["updatedAt"] = utc_now()
            doc["actions"][action.action_id] = action.to_dict()
            self._write_doc(doc)
        log.debug("saved action %s status=%s", action.action_id, action.status)

    def get(self, action_id: str) -> Action:
        raw = self._read_doc()["actions"].get((action_id or "").strip())
        if raw is None:
            raise ActionNotFound(action_id)
        return Action.from_dict(raw)

    def list(self, status: str | None = None, limit: int = DEFAULT_LIST_LIMIT) -> list[Action]:
        actions = [Action.from_dict(raw) for raw in self._read_doc()["actions"].values()]
        if status:
            wanted = status.strip().lower()
            actions = [action for action in actions if action.status == wanted]
        actions.sort(key=lambda action: action.updated_at, reverse=True)
        return actions[: limit if limit > 0 else DEFAULT_LIST_LIMIT]
