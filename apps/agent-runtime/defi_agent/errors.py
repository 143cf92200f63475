from __future__ import annotations

import enum
from typing import Any


class ErrorCode(enum.Enum):
    INTERNAL = "internal"
    USAGE = "usage"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    UNSUPPORTED = "unsupported"
    STALE = "stale"
    PARTIAL_STRICT = "partial_strict"
    BLOCKED = "blocked"
    SIGNER = "signer"
    ACTION_PLAN = "action_plan"
    ACTION_SIM = "action_sim"
    ACTION_TIMEOUT = "action_timeout"


EXIT_CODES: dict[ErrorCode, int] = {
    ErrorCode.INTERNAL: 1,
    ErrorCode.USAGE: 2,
    ErrorCode.AUTH: 10,
    ErrorCode.RATE_LIMITED: 11,
    ErrorCode.UNAVAILABLE: 12,
    ErrorCode.UNSUPPORTED: 13,
    ErrorCode.STALE: 14,
    ErrorCode.PARTIAL_STRICT: 15,
    ErrorCode.BLOCKED: 16,
    ErrorCode.SIGNER: 17,
    ErrorCode.ACTION_PLAN: 18,
    ErrorCode.ACTION_SIM: 19,
    ErrorCode.ACTION_TIMEOUT: 20,
}


class DefiError(Exception):
    """Typed failure carrying a stable error code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        action_hint: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.action_hint = action_hint
        self.details = details or {}

    def __str__(self) -> str:
        cause = self.__cause__
        if cause is None or not str(cause):
            return self.message
        return f"{self.message}: {cause}"


class ActionNotFound(DefiError):
    """No persisted action exists for the requested id."""

    def __init__(self, action_id: str):
        super().__init__(
            ErrorCode.USAGE,
            f"action not found: {action_id}",
            "Run `defi-agent actions list` to find a valid action id.",
            {"actionId": action_id},
        )
        self.action_id = action_id


class SubprocessTimeout(DefiError):
    """A cast subprocess did not finish within its timeout."""

    def __init__(self, kind: str, timeout_sec: int, cmd: list[str]):
        # The command line may carry a private key; only the cast verb is kept.
        verb = cmd[1] if len(cmd) > 1 else (cmd[0] if cmd else "")
        super().__init__(
            ErrorCode.UNAVAILABLE,
            f"Timed out after {timeout_sec}s running: cast {verb}",
            details={"kind": kind, "timeoutSec": timeout_sec},
        )
        self.kind = kind
        self.timeout_sec = timeout_sec


def usage(message: str, **details: Any) -> DefiError:
    return DefiError(ErrorCode.USAGE, message, details=details or None)


def unavailable(message: str, **details: Any) -> DefiError:
    return DefiError(ErrorCode.UNAVAILABLE, message, details=details or None)


def unsupported(message: str, **details: Any) -> DefiError:
    return DefiError(ErrorCode.UNSUPPORTED, message, details=details or None)


def internal(message: str, **details: Any) -> DefiError:
    return DefiError(ErrorCode.INTERNAL, message, details=details or None)


def exit_code_for(exc: BaseException | None) -> int:
    if exc is None:
        return 0
    if isinstance(exc, DefiError):
        return EXIT_CODES.get(exc.code, 1)
    return EXIT_CODES[ErrorCode.INTERNAL]
