from __future__ import annotations

"""XP vault: monotonic XP accounting behind a mastery gate.

Every rejection is reported as a `GrantResult` and audited as a security
alert; nothing here raises for a business outcome. Store failures propagate
and leave the record untouched, because a grant commits as one atomic write.
"""

import math
import threading
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Any

from .clock import ReferenceClock
from .config import GateConfig, IdentityConfig
from .errors import AUTH_LOCKED_OUT, GATE_FAILED, XP_DECREASE_ATTEMPT, XP_INVALID_INCREMENT
from .models import AlertKind, LevelUpNotification, PlayerRecord, SecurityAlert, XPLedgerEntry, XPSource, format_ts
from .signals import LEVEL_UP, SECURITY_ALERT, SignalBus
from .store import Store
from .telemetry import TelemetryLogger


GATE_SCORE_DIGITS = 6


def _is_unit(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) and 0.0 <= value <= 1.0


def mastery_gate_score(accuracy: float | None, gto_compliance: float | None, gate: GateConfig) -> float | None:
    """Blend accuracy and GTO compliance; `None` when neither was measured."""

    if accuracy is None and gto_compliance is None:
        return None
    if accuracy is None:
        return round(float(gto_compliance), GATE_SCORE_DIGITS)  # type: ignore[arg-type]
    if gto_compliance is None:
        return round(float(accuracy), GATE_SCORE_DIGITS)
    blended = gate.accuracy_weight * float(accuracy) + gate.gto_weight * float(gto_compliance)
    return round(blended, GATE_SCORE_DIGITS)


@dataclass(frozen=True)
class GrantResult:
    user_id: str
    new_total: int
    granted: bool
    gate_score: float | None = None
    reason: str | None = None
    entry: XPLedgerEntry | None = None
    level_up: LevelUpNotification | None = None
    alert: SecurityAlert | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "new_total": self.new_total,
            "granted": self.granted,
            "gate_score": self.gate_score,
            "reason": self.reason,
            "entry": self.entry.to_dict() if self.entry else None,
            "level_up": self.level_up.to_dict() if self.level_up else None,
            "alert": self.alert.to_dict() if self.alert else None,
        }


class XPVault:
    """Sole writer of XP totals, level, and the XP ledger."""

    def __init__(
        self,
        config: IdentityConfig,
        store: Store,
        clock: ReferenceClock,
        bus: SignalBus,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self.bus = bus
        self.telemetry = telemetry
        self._stats: Counter[str] = Counter()
        self._stats_lock = threading.Lock()

    def _emit(self, event_type: str, *, caller: str, data: dict[str, Any]) -> None:
        if self.telemetry is not None:
            self.telemetry.log_event(event_type, actor="silo", actor_id=caller, source="service", data=data)

    def _count(self, **increments: int) -> None:
        with self._stats_lock:
            self._stats.update(increments)

    def _current(self, user_id: str) -> PlayerRecord:
        return self.store.load_player(user_id) or PlayerRecord(user_id=user_id)

    def _reject(
        self,
        user_id: str,
        *,
        kind: AlertKind,
        reason: str,
        prior_total: int,
        attempted_total: int | None,
        caller: str,
        gate_score: float | None = None,
        detail: dict[str, Any] | None = None,
    ) -> GrantResult:
        alert = SecurityAlert(
            alert_id=str(uuid.uuid4()),
            user_id=user_id,
            kind=kind,
            prior_total=prior_total,
            attempted_total=attempted_total,
            source_identifier=caller,
            timestamp=self.clock.now(),
            detail=dict(detail or {}),
        )
        self.store.append_alert(alert)
        self._count(violations_blocked=1)
        self.bus.publish(SECURITY_ALERT, alert.to_dict())
        self._emit("security.alert", caller=caller, data={"user_id": user_id, "kind": kind.value, "reason": reason})
        self._emit(
            "xp.rejected",
            caller=caller,
            data={"user_id": user_id, "reason": reason, "prior_total": prior_total, "gate_score": gate_score},
        )
        return GrantResult(
            user_id=user_id,
            new_total=prior_total,
            granted=False,
            gate_score=gate_score,
            reason=reason,
            alert=alert,
        )

    def is_blocked(self, caller: str) -> bool:
        return self.store.is_blocked(caller)

    def _blocked_among(self, *identifiers: str | None) -> str | None:
        for identifier in identifiers:
            if identifier and self.is_blocked(identifier):
                return identifier
        return None

    def add_xp(
        self,
        user_id: str,
        amount: Any,
        source: XPSource,
        *,
        accuracy: float | None = None,
        gto_compliance: float | None = None,
        bypass_gate: bool = False,
        caller: str | None = None,
        request_id: str | None = None,
        source_identifier: str | None = None,
    ) -> GrantResult:
        """Grant `amount` XP after caller, increment, and mastery-gate checks.

        `request_id` makes the grant idempotent: a replay of an already
        committed request returns the original entry instead of granting twice.
        `source_identifier` names the upstream producer a silo relays for; a
        blocked producer is refused like a blocked caller.
        """

        caller = caller or self.config.identity_silo.silo_id
        source = XPSource(source)
        with self.store.user_lock(user_id):
            record = self._current(user_id)
            prior = record.xp_total

            blocked = self._blocked_among(caller, source_identifier)
            if blocked is not None:
                return self._reject(
                    user_id,
                    kind=AlertKind.UNAUTHORIZED_CALLER,
                    reason=AUTH_LOCKED_OUT,
                    prior_total=prior,
                    attempted_total=None,
                    caller=blocked,
                )

            if request_id is not None:
                existing = self.store.find_entry(user_id, request_id)
                if existing is not None:
                    return GrantResult(user_id=user_id, new_total=prior, granted=True, entry=existing)

            valid_amount = isinstance(amount, int) and not isinstance(amount, bool)
            if not valid_amount or not (self.config.min_increment <= amount <= self.config.max_increment):
                return self._reject(
                    user_id,
                    kind=AlertKind.INVALID_INCREMENT,
                    reason=XP_INVALID_INCREMENT,
                    prior_total=prior,
                    attempted_total=prior + amount if valid_amount else None,
                    caller=caller,
                    detail={"amount": repr(amount)[:40], "bounds": [self.config.min_increment, self.config.max_increment]},
                )

            gate_score: float | None = None
            gate_passed = not bypass_gate
            if not bypass_gate:
                measured = [value for value in (accuracy, gto_compliance) if value is not None]
                if any(not _is_unit(value) for value in measured):
                    return self._reject(
                        user_id,
                        kind=AlertKind.GATE_FAILED,
                        reason=GATE_FAILED,
                        prior_total=prior,
                        attempted_total=prior + amount,
                        caller=caller,
                        detail={"cause": "gate_input_out_of_range"},
                    )
                gate_score = mastery_gate_score(accuracy, gto_compliance, self.config.gate)
                if gate_score is not None and gate_score < self.config.gate.threshold:
                    return self._reject(
                        user_id,
                        kind=AlertKind.GATE_FAILED,
                        reason=GATE_FAILED,
                        prior_total=prior,
                        attempted_total=prior + amount,
                        caller=caller,
                        gate_score=gate_score,
                        detail={"threshold": self.config.gate.threshold},
                    )
            return self._commit(
                record,
                amount=amount,
                source=source,
                accuracy=accuracy,
                gto_compliance=gto_compliance,
                gate_passed=gate_passed,
                gate_score=gate_score,
                caller=caller,
                entry_id=request_id or str(uuid.uuid4()),
            )

    def _commit(
        self,
        record: PlayerRecord,
        *,
        amount: int,
        source: XPSource,
        accuracy: float | None,
        gto_compliance: float | None,
        gate_passed: bool,
        gate_score: float | None,
        caller: str,
        entry_id: str,
    ) -> GrantResult:
        prior = record.xp_total
        new_total = prior + amount
        entry = XPLedgerEntry(
            entry_id=entry_id,
            user_id=record.user_id,
            delta=amount,
            source=source,
            gate_passed=gate_passed,
            prior_total=prior,
            new_total=new_total,
            timestamp=self.clock.now(),
            caller_silo_id=caller,
            accuracy_at_grant=accuracy,
            gto_at_grant=gto_compliance,
        )
        levels = self.config.levels
        old_level = max(record.level, levels.level_for(prior))
        new_level = max(old_level, levels.level_for(new_total))
        updated = self.store.commit_grant(entry, new_level)
        self._count(grants_processed=1, xp_granted=amount)
        self._emit(
            "xp.granted",
            caller=caller,
            data={"user_id": record.user_id, "delta": amount, "source": source.value, "new_total": updated.xp_total},
        )

        level_up: LevelUpNotification | None = None
        if new_level > old_level:
            level_up = LevelUpNotification(
                user_id=record.user_id,
                old_level=old_level,
                new_level=new_level,
                rewards=tuple(levels.rewards_between(prior, new_total)),
            )
            self.bus.publish(LEVEL_UP, level_up.to_dict())
            self._emit("level.up", caller=caller, data={"user_id": record.user_id, "old_level": old_level, "new_level": new_level})

        return GrantResult(
            user_id=record.user_id,
            new_total=updated.xp_total,
            granted=True,
            gate_score=gate_score,
            entry=entry,
            level_up=level_up,
        )

    def propose_total(
        self,
        user_id: str,
        new_total: Any,
        *,
        caller: str,
        source_identifier: str | None = None,
    ) -> GrantResult:
        """Apply a caller-proposed absolute total.

        A total below the current one is a decrease attempt: rejected with no
        bypass, and an external source is blocked for good. The source is
        `source_identifier` when a silo relays for an upstream producer, else
        the caller itself. A higher total is granted as the difference.
        """

        source = source_identifier or caller
        with self.store.user_lock(user_id):
            prior = self._current(user_id).xp_total
            blocked_source = self._blocked_among(caller, source)
            if blocked_source is not None:
                return self._reject(
                    user_id,
                    kind=AlertKind.UNAUTHORIZED_CALLER,
                    reason=AUTH_LOCKED_OUT,
                    prior_total=prior,
                    attempted_total=new_total if isinstance(new_total, int) else None,
                    caller=blocked_source,
                )
            if not isinstance(new_total, int) or isinstance(new_total, bool) or new_total < 0:
                return self._reject(
                    user_id,
                    kind=AlertKind.INVALID_INCREMENT,
                    reason=XP_INVALID_INCREMENT,
                    prior_total=prior,
                    attempted_total=None,
                    caller=source,
                    detail={"proposed_total": repr(new_total)[:40]},
                )
            if new_total < prior:
                blocked = not self.config.is_internal_source(source)
                detail: dict[str, Any] = {"caller_blocked": blocked}
                if source != caller:
                    detail["relayed_by"] = caller
                result = self._reject(
                    user_id,
                    kind=AlertKind.DECREASE_ATTEMPT,
                    reason=XP_DECREASE_ATTEMPT,
                    prior_total=prior,
                    attempted_total=new_total,
                    caller=source,
                    detail=detail,
                )
                if blocked:
                    self.store.block_source(
                        source,
                        {
                            "blocked_at": format_ts(self.clock.now()),
                            "user_id": user_id,
                            "reason": XP_DECREASE_ATTEMPT,
                            "relayed_by": caller,
                        },
                    )
                    self._emit("source.blocked", caller=source, data={"user_id": user_id, "reason": XP_DECREASE_ATTEMPT})
                return result
            if new_total == prior:
                return GrantResult(user_id=user_id, new_total=prior, granted=True)
            return self.add_xp(
                user_id,
                new_total - prior,
                XPSource.SYSTEM,
                bypass_gate=True,
                caller=caller,
                source_identifier=source_identifier,
            )

    def history(self, user_id: str, limit: int = 50) -> list[XPLedgerEntry]:
        return self.store.history(user_id, limit)

    def alerts(self, user_id: str | None = None, limit: int = 50) -> list[SecurityAlert]:
        return self.store.alerts(user_id, limit)

    def breakdown(self, user_id: str) -> dict[str, int]:
        """XP earned per source over the full ledger."""

        totals: Counter[str] = Counter()
        for entry in self.store.history(user_id, None):
            totals[entry.source.value] += entry.delta
        return dict(sorted(totals.items()))

    def xp_to_next_level(self, user_id: str) -> dict[str, Any]:
        record = self._current(user_id)
        progress = self.config.levels.progress(record.xp_total)
        progress["xp_total"] = record.xp_total
        return progress

    def stats(self) -> dict[str, int]:
        with self._stats_lock:
            return {
                "grants_processed": self._stats["grants_processed"],
                "xp_granted": self._stats["xp_granted"],
                "violations_blocked": self._stats["violations_blocked"],
            }
