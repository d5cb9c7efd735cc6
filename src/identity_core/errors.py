from __future__ import annotations

"""Error taxonomy shared by the vault, gateway, store, and coordinator."""

from typing import Any


GATE_FAILED = "gate.failed"
XP_DECREASE_ATTEMPT = "xp.decreaseAttempt"
XP_INVALID_INCREMENT = "xp.invalidIncrement"
AUTH_SILO_NOT_FOUND = "auth.siloNotFound"
AUTH_INVALID_KEY = "auth.invalidKey"
AUTH_WRITE_NOT_AUTHORIZED = "auth.writeNotAuthorized"
AUTH_LOCKED_OUT = "auth.lockedOut"
AUTH_SESSION_INVALID = "auth.sessionInvalid"
STORE_TIMEOUT = "store.timeout"
STORE_UNAVAILABLE = "store.unavailable"
STORE_CONFLICT = "store.conflict"
CONFIG_INVALID = "config.invalid"
PLAYER_ARCHIVED = "player.archived"
PLAYER_NOT_FOUND = "player.notFound"
UPDATE_UNKNOWN_FIELD = "update.unknownField"
UPDATE_INVALID_VALUE = "update.invalidValue"

AUTH_CODES = {
    AUTH_SILO_NOT_FOUND,
    AUTH_INVALID_KEY,
    AUTH_WRITE_NOT_AUTHORIZED,
    AUTH_LOCKED_OUT,
    AUTH_SESSION_INVALID,
}
RETRYABLE_CODES = {STORE_TIMEOUT, STORE_UNAVAILABLE}


class IdentityError(ValueError):
    """Structured error with a stable code for API responses and audit rows."""

    def __init__(self, code: str, message: str, *, hint: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.hint:
            payload["hint"] = self.hint
        for key, value in self.context.items():
            if value is not None:
                payload[key] = value
        return payload


class ConfigError(IdentityError):
    """Startup configuration is unusable; the process must not start."""

    def __init__(self, message: str, *, hint: str | None = None, **context: Any) -> None:
        super().__init__(CONFIG_INVALID, message, hint=hint, **context)


class StoreError(IdentityError):
    """Persistence failure. Transient codes may be retried by the caller."""

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES
