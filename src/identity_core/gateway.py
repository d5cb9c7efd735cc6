from __future__ import annotations

"""Sovereign gateway: capability-scoped sessions for writes to the player record."""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .clock import ReferenceClock
from .config import IdentityConfig
from .dna import SIGNAL_ARCADE, SIGNAL_LUCK, SIGNAL_WEALTH, DNAAggregator, clamp_unit
from .errors import (
    AUTH_INVALID_KEY,
    AUTH_LOCKED_OUT,
    AUTH_SESSION_INVALID,
    AUTH_SILO_NOT_FOUND,
    AUTH_WRITE_NOT_AUTHORIZED,
    PLAYER_ARCHIVED,
    PLAYER_NOT_FOUND,
    UPDATE_INVALID_VALUE,
    UPDATE_UNKNOWN_FIELD,
)
from .models import Capability, DrillRecord, SiloRegistration, XPSource, format_ts
from .security import new_session_token, token_fingerprint, verify_api_key
from .store import Store
from .streak import StreakOracle
from .telemetry import TelemetryLogger
from .vault import XPVault


UPDATE_FIELDS = ("drill", "xp_grant", "xp_total", "wealth", "luck", "arcade", "streak_tick", "dna_refresh")
MAX_LOGGED_ID_CHARS = 64


@dataclass(frozen=True)
class Session:
    token: str
    silo_id: str
    capabilities: frozenset[Capability]
    issued_at: datetime

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


@dataclass(frozen=True)
class HandshakeResult:
    authorized: bool
    silo_name: str | None = None
    reason: str | None = None
    session_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "authorized": self.authorized,
            "silo_name": self.silo_name,
            "reason": self.reason,
            "session_token": self.session_token,
        }


@dataclass(frozen=True)
class UpdateResult:
    ok: bool
    applied_fields: tuple[str, ...] = ()
    reason: str | None = None
    results: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "applied_fields": list(self.applied_fields),
            "reason": self.reason,
            "results": {name: _result_dict(value) for name, value in self.results.items()},
        }


def _result_dict(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    return to_dict() if callable(to_dict) else value


@dataclass
class _SiloAttempts:
    failures: int = 0
    locked_until: datetime | None = None


class _UpdateField(BaseModel):
    model_config = ConfigDict(extra="forbid")


class DrillField(_UpdateField):
    drill_id: str = Field(min_length=1, max_length=128)
    accuracy: float = Field(ge=0, le=1)
    gto_compliance: float | None = Field(default=None, ge=0, le=1)


class XPGrantField(_UpdateField):
    """`add_xp` arguments. Amount and gate inputs are judged by the vault, which audits them."""

    amount: Any = None
    source: XPSource = XPSource.GREEN_CONTENT
    accuracy: float | None = None
    gto_compliance: float | None = None
    request_id: str | None = Field(default=None, min_length=1, max_length=256)
    source_identifier: str | None = Field(default=None, min_length=1, max_length=128)


class XPTotalField(_UpdateField):
    total: Any
    source_identifier: str | None = Field(default=None, min_length=1, max_length=128)


class UnitSignalField(_UpdateField):
    value: float = Field(allow_inf_nan=False)


class ArcadeField(_UpdateField):
    base_aggression: float = Field(default=0.0, allow_inf_nan=False)
    speed_score: float = Field(default=0.0, allow_inf_nan=False)


class FlagField(_UpdateField):
    value: bool


FIELD_MODELS: dict[str, type[_UpdateField]] = {
    "drill": DrillField,
    "xp_grant": XPGrantField,
    "xp_total": XPTotalField,
    SIGNAL_WEALTH: UnitSignalField,
    SIGNAL_LUCK: UnitSignalField,
    SIGNAL_ARCADE: ArcadeField,
    "streak_tick": FlagField,
    "dna_refresh": FlagField,
}


def parse_update_field(name: str, value: Any) -> _UpdateField:
    """Validate one update value; scalar shorthands are wrapped first."""

    model = FIELD_MODELS[name]
    if name == "xp_total" and not isinstance(value, Mapping):
        value = {"total": value}
    elif model in (UnitSignalField, FlagField):
        value = {"value": value}
    return model.model_validate(value)


class RecordWriter:
    """Routes authorized update fields to the component that owns them."""

    def __init__(
        self,
        store: Store,
        clock: ReferenceClock,
        vault: XPVault,
        oracle: StreakOracle,
        aggregator: DNAAggregator,
    ) -> None:
        self.store = store
        self.clock = clock
        self.vault = vault
        self.oracle = oracle
        self.aggregator = aggregator

    def unknown_fields(self, updates: Mapping[str, Any]) -> list[str]:
        return sorted(name for name in updates if name not in UPDATE_FIELDS)

    def parse(self, updates: Mapping[str, Any]) -> tuple[dict[str, _UpdateField], list[str]]:
        """Validate every field before anything is written.

        Returns the parsed fields and the names of the ones that failed.
        """

        parsed: dict[str, _UpdateField] = {}
        invalid: list[str] = []
        for name in UPDATE_FIELDS:
            if name not in updates:
                continue
            try:
                parsed[name] = parse_update_field(name, updates[name])
            except ValidationError:
                invalid.append(name)
        return parsed, invalid

    def apply(self, user_id: str, fields: Mapping[str, _UpdateField], *, caller: str) -> tuple[list[str], dict[str, Any]]:
        applied: list[str] = []
        results: dict[str, Any] = {}
        now = self.clock.now()
        for name in UPDATE_FIELDS:
            payload = fields.get(name)
            if payload is None:
                continue
            if isinstance(payload, DrillField):
                results[name] = self.store.append_drill(
                    user_id,
                    DrillRecord(
                        drill_id=payload.drill_id,
                        accuracy=payload.accuracy,
                        gto_compliance=payload.gto_compliance,
                        completed_at=now,
                    ),
                )
            elif isinstance(payload, XPGrantField):
                results[name] = self.vault.add_xp(
                    user_id,
                    payload.amount,
                    payload.source,
                    accuracy=payload.accuracy,
                    gto_compliance=payload.gto_compliance,
                    caller=caller,
                    request_id=payload.request_id,
                    source_identifier=payload.source_identifier,
                )
            elif isinstance(payload, XPTotalField):
                results[name] = self.vault.propose_total(
                    user_id,
                    payload.total,
                    caller=caller,
                    source_identifier=payload.source_identifier,
                )
            elif isinstance(payload, UnitSignalField):
                value = clamp_unit(payload.value)
                self.store.put_signal(user_id, name, value, now)
                results[name] = value
            elif isinstance(payload, ArcadeField):
                inputs = {
                    "base_aggression": clamp_unit(payload.base_aggression),
                    "speed_score": clamp_unit(payload.speed_score),
                }
                self.store.put_signal(user_id, name, inputs, now)
                results[name] = inputs
            elif isinstance(payload, FlagField) and payload.value:
                if name == "streak_tick":
                    results[name] = self.oracle.tick(user_id)
                else:
                    results[name] = self.aggregator.refresh(user_id)
            else:
                continue
            applied.append(name)
        return applied, results


class SovereignGateway:
    """Authenticates silos, issues in-memory sessions, and audits every call.

    Sessions live only as long as this object; nothing about them is
    persisted. Authentication failures are counted per silo and lock the silo
    out of further handshakes once `auth.max_failures` is reached.
    """

    def __init__(
        self,
        config: IdentityConfig,
        store: Store,
        clock: ReferenceClock,
        writer: RecordWriter,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self.writer = writer
        self.telemetry = telemetry
        self._sessions: dict[str, Session] = {}
        self._attempts: dict[str, _SiloAttempts] = {}
        self._lock = threading.Lock()

    def _emit(self, event_type: str, *, silo_id: str, data: dict[str, Any]) -> None:
        if self.telemetry is not None:
            self.telemetry.log_event(event_type, actor="silo", actor_id=silo_id, source="gateway", data=data)

    def _audit(self, silo_id: str, action: str, result: str, **extra: Any) -> None:
        row: dict[str, Any] = {
            "silo_id": str(silo_id)[:MAX_LOGGED_ID_CHARS],
            "action": action,
            "timestamp": format_ts(self.clock.now()),
            "result": result,
        }
        row.update({key: value for key, value in extra.items() if value is not None})
        self.store.append_handshake(row)

    def _locked(self, silo_id: str, now: datetime) -> bool:
        with self._lock:
            attempts = self._attempts.get(silo_id)
            if attempts is None or attempts.locked_until is None:
                return False
            if now >= attempts.locked_until:
                attempts.locked_until = None
                return False
            return True

    def _record_failure(self, silo_id: str, now: datetime) -> bool:
        """Count a failed key; returns True when this failure triggers a lockout."""

        with self._lock:
            attempts = self._attempts.setdefault(silo_id, _SiloAttempts())
            attempts.failures += 1
            if attempts.failures < self.config.max_auth_failures:
                return False
            attempts.failures = 0
            attempts.locked_until = now + timedelta(seconds=self.config.lockout_seconds)
            return True

    def failure_count(self, silo_id: str) -> int:
        with self._lock:
            attempts = self._attempts.get(silo_id)
            return attempts.failures if attempts else 0

    def _deny(self, silo_id: str, reason: str, intent: str, silo_name: str | None = None) -> HandshakeResult:
        self._audit(silo_id, "handshake", reason, intent=intent)
        self._emit("gateway.handshake", silo_id=silo_id, data={"result": reason, "intent": intent})
        return HandshakeResult(authorized=False, silo_name=silo_name, reason=reason)

    def handshake(self, silo_id: str, api_key: str, intent: str = "read") -> HandshakeResult:
        now = self.clock.now()
        intent = str(intent)[:16]
        try:
            requested: Capability | None = Capability(intent)
        except ValueError:
            requested = None
        silo = self.config.silo(silo_id)
        if silo is None or not silo.active:
            return self._deny(silo_id, AUTH_SILO_NOT_FOUND, intent)
        if self._locked(silo_id, now):
            return self._deny(silo_id, AUTH_LOCKED_OUT, intent, silo.display_name)
        if not isinstance(api_key, str) or not api_key or not verify_api_key(api_key, silo.api_key_digest):
            locked = self._record_failure(silo_id, now)
            result = self._deny(silo_id, AUTH_INVALID_KEY, intent, silo.display_name)
            if locked:
                self._emit(
                    "gateway.locked_out",
                    silo_id=silo_id,
                    data={"lockout_seconds": self.config.lockout_seconds},
                )
            return result
        if requested is None or not silo.can(requested):
            return self._deny(silo_id, AUTH_WRITE_NOT_AUTHORIZED, intent, silo.display_name)

        token = new_session_token()
        session = Session(
            token=token,
            silo_id=silo.silo_id,
            capabilities=frozenset({Capability.READ, requested}),
            issued_at=now,
        )
        with self._lock:
            self._sessions[token] = session
            self._attempts.pop(silo_id, None)
        self._audit(silo_id, "handshake", "authorized", intent=intent, session=token_fingerprint(token))
        self._emit("gateway.handshake", silo_id=silo_id, data={"result": "authorized", "intent": intent})
        return HandshakeResult(authorized=True, silo_name=silo.display_name, session_token=token)

    def session(self, token: str | None) -> Session | None:
        if not token:
            return None
        with self._lock:
            return self._sessions.get(token)

    def secure_update(self, token: str | None, user_id: str, updates: Mapping[str, Any]) -> UpdateResult:
        """Apply `updates` to one player record under a write session."""

        session = self.session(token)
        if session is None:
            self._audit("unknown", "secure_update", AUTH_SESSION_INVALID, user_id=user_id)
            return UpdateResult(ok=False, reason=AUTH_SESSION_INVALID)
        if not session.can(Capability.WRITE):
            self._audit(session.silo_id, "secure_update", AUTH_WRITE_NOT_AUTHORIZED, user_id=user_id)
            self._emit("gateway.update", silo_id=session.silo_id, data={"user_id": user_id, "result": AUTH_WRITE_NOT_AUTHORIZED})
            return UpdateResult(ok=False, reason=AUTH_WRITE_NOT_AUTHORIZED)
        unknown = self.writer.unknown_fields(updates)
        if unknown:
            self._audit(session.silo_id, "secure_update", UPDATE_UNKNOWN_FIELD, user_id=user_id, fields=unknown)
            return UpdateResult(ok=False, reason=UPDATE_UNKNOWN_FIELD)
        fields, invalid = self.writer.parse(updates)
        if invalid:
            self._audit(session.silo_id, "secure_update", UPDATE_INVALID_VALUE, user_id=user_id, fields=invalid)
            self._emit(
                "gateway.update",
                silo_id=session.silo_id,
                data={"user_id": user_id, "result": UPDATE_INVALID_VALUE, "fields": invalid},
            )
            return UpdateResult(ok=False, reason=UPDATE_INVALID_VALUE)

        with self.store.user_lock(user_id):
            record = self.store.load_player(user_id)
            if record is not None and record.archived:
                self._audit(session.silo_id, "secure_update", PLAYER_ARCHIVED, user_id=user_id)
                return UpdateResult(ok=False, reason=PLAYER_ARCHIVED)
            if record is None:
                self.store.ensure_player(user_id, self.clock.now())
            applied, results = self.writer.apply(user_id, fields, caller=session.silo_id)

        self._audit(session.silo_id, "secure_update", "ok", user_id=user_id, fields=applied)
        self._emit("gateway.update", silo_id=session.silo_id, data={"user_id": user_id, "result": "ok", "fields": applied})
        return UpdateResult(ok=True, applied_fields=tuple(applied), results=results)

    def admin_grant(
        self,
        token: str | None,
        user_id: str,
        amount: Any,
        source: XPSource | str,
        request_id: str | None = None,
    ) -> UpdateResult:
        """Manual XP grant under an admin session; the mastery gate is bypassed.

        With a `request_id` a repeated grant returns the committed entry.
        """

        session = self.session(token)
        if session is None:
            self._audit("unknown", "admin_grant", AUTH_SESSION_INVALID, user_id=user_id)
            return UpdateResult(ok=False, reason=AUTH_SESSION_INVALID)
        if not session.can(Capability.ADMIN):
            self._audit(session.silo_id, "admin_grant", AUTH_WRITE_NOT_AUTHORIZED, user_id=user_id)
            return UpdateResult(ok=False, reason=AUTH_WRITE_NOT_AUTHORIZED)
        with self.store.user_lock(user_id):
            record = self.store.load_player(user_id)
            if record is not None and record.archived:
                self._audit(session.silo_id, "admin_grant", PLAYER_ARCHIVED, user_id=user_id)
                return UpdateResult(ok=False, reason=PLAYER_ARCHIVED)
            grant = self.writer.vault.add_xp(
                user_id,
                amount,
                XPSource(source),
                bypass_gate=True,
                caller=session.silo_id,
                request_id=request_id,
            )
        self._audit(session.silo_id, "admin_grant", "ok" if grant.granted else str(grant.reason), user_id=user_id)
        return UpdateResult(ok=True, applied_fields=("xp_grant",), results={"xp_grant": grant})

    def archive_player(self, token: str | None, user_id: str) -> UpdateResult:
        """Archive a record on an erasure request. Records are never deleted."""

        session = self.session(token)
        if session is None or not session.can(Capability.ADMIN):
            reason = AUTH_SESSION_INVALID if session is None else AUTH_WRITE_NOT_AUTHORIZED
            self._audit(session.silo_id if session else "unknown", "archive", reason, user_id=user_id)
            return UpdateResult(ok=False, reason=reason)
        with self.store.user_lock(user_id):
            if self.store.load_player(user_id) is None:
                self._audit(session.silo_id, "archive", PLAYER_NOT_FOUND, user_id=user_id)
                return UpdateResult(ok=False, reason=PLAYER_NOT_FOUND)
            record = self.store.archive_player(user_id, self.clock.now())
        self._audit(session.silo_id, "archive", "ok", user_id=user_id)
        self._emit("player.archived", silo_id=session.silo_id, data={"user_id": user_id})
        return UpdateResult(ok=True, applied_fields=("archived_at",), results={"record": record})

    def revoke(self, token: str | None) -> bool:
        if not token:
            return False
        with self._lock:
            session = self._sessions.pop(token, None)
        if session is None:
            return False
        self._audit(session.silo_id, "revoke", "revoked", session=token_fingerprint(token))
        self._emit("gateway.revoked", silo_id=session.silo_id, data={"session": token_fingerprint(token)})
        return True

    def list_silos(self) -> list[SiloRegistration]:
        return list(self.config.silos)

    def handshake_log(self, limit: int | None = 100, silo_id: str | None = None) -> list[dict[str, Any]]:
        return self.store.handshake_log(limit, silo_id)
