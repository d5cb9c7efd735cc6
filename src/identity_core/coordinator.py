from __future__ import annotations

"""Identity coordinator: sequences vault, oracle, and aggregator per inbound event."""

import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from .config import IdentityConfig
from .errors import STORE_TIMEOUT, STORE_UNAVAILABLE, StoreError
from .events import ArcadeUpdate, BankrollUpdate, DrillCompletion, InboundEvent, ManualGrant, ReputationUpdate
from .gateway import SovereignGateway, UpdateResult
from .models import DNAProfile, MultiplierSignal, XPSource
from .store import Store
from .streak import StreakOracle, TickResult
from .telemetry import TelemetryLogger
from .vault import GrantResult


T = TypeVar("T")


@dataclass(frozen=True)
class DrillOutcome:
    user_id: str
    grant: GrantResult | None = None
    tick: TickResult | None = None
    dna: DNAProfile | None = None
    signal: MultiplierSignal | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "grant": self.grant.to_dict() if self.grant else None,
            "tick": self.tick.to_dict() if self.tick else None,
            "dna": self.dna.to_dict() if self.dna else None,
            "signal": self.signal.to_dict() if self.signal else None,
            "reason": self.reason,
        }


class IdentityCoordinator:
    """Runs each inbound event as one serialized unit for its user.

    Storage transients are retried with bounded exponential backoff. Business
    rejections (gate, monotonicity, authorization) come back as values and are
    never retried.
    """

    def __init__(
        self,
        config: IdentityConfig,
        store: Store,
        gateway: SovereignGateway,
        oracle: StreakOracle,
        telemetry: TelemetryLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.gateway = gateway
        self.oracle = oracle
        self.telemetry = telemetry
        self.sleep = sleep

    def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self.telemetry is not None:
            self.telemetry.log_event(
                event_type,
                actor="system",
                actor_id="system:coordinator",
                source="coordinator",
                data=data,
            )

    def _with_retry(self, operation: str, user_id: str, fn: Callable[[], T]) -> T:
        policy = self.config.retry
        attempt = 1
        while True:
            try:
                return fn()
            except StoreError as exc:
                if not exc.retryable:
                    raise
                if exc.code == STORE_TIMEOUT:
                    # a timed-out call may still land; wait for it before reading again
                    self.store.settle()
                if attempt >= policy.max_attempts:
                    self._emit(
                        "store.unavailable",
                        {"operation": operation, "user_id": user_id, "attempts": attempt, "last_error": exc.code},
                    )
                    raise StoreError(
                        STORE_UNAVAILABLE,
                        f"{operation} failed after {attempt} attempts",
                        operation=operation,
                        last_error=exc.code,
                    ) from exc
                delay = policy.delay(attempt)
                self._emit(
                    "store.retry",
                    {"operation": operation, "user_id": user_id, "attempt": attempt, "delay_seconds": delay, "error": exc.code},
                )
                self.sleep(delay)
                attempt += 1

    def _update(self, operation: str, token: str | None, user_id: str, updates: dict[str, Any]) -> UpdateResult:
        return self._with_retry(operation, user_id, lambda: self.gateway.secure_update(token, user_id, updates))

    def drill_completion(self, event: DrillCompletion, session_token: str | None) -> DrillOutcome:
        """Grant, tick, refresh, signal: in that order, under one session.

        A rejected grant does not stop the remaining steps; the activity still
        counts toward the streak and the profile.
        """

        user_id = event.user_id
        grant: GrantResult | None = None
        tick: TickResult | None = None
        dna: DNAProfile | None = None
        with self.store.user_lock(user_id):
            try:
                step = self._update(
                    "xp_grant",
                    session_token,
                    user_id,
                    {
                        "drill": {
                            "drill_id": event.drill_id,
                            "accuracy": event.accuracy,
                            "gto_compliance": event.gto_compliance,
                        },
                        "xp_grant": {
                            "amount": event.xp_amount,
                            "source": XPSource.GREEN_CONTENT,
                            "accuracy": event.accuracy,
                            "gto_compliance": event.gto_compliance,
                            "request_id": f"drill:{event.drill_id}",
                        },
                    },
                )
                if not step.ok:
                    return DrillOutcome(user_id=user_id, reason=step.reason)
                grant = step.results.get("xp_grant")

                step = self._update("streak_tick", session_token, user_id, {"streak_tick": True})
                tick = step.results.get("streak_tick")

                step = self._update("dna_refresh", session_token, user_id, {"dna_refresh": True})
                dna = step.results.get("dna_refresh")

                signal = self._with_retry("signal", user_id, lambda: self.oracle.signal(user_id))
            except StoreError as exc:
                return DrillOutcome(user_id=user_id, grant=grant, tick=tick, dna=dna, reason=exc.code)
        return DrillOutcome(
            user_id=user_id,
            grant=grant,
            tick=tick,
            dna=dna,
            signal=signal,
            reason=grant.reason if grant is not None else None,
        )

    def _source_update(self, operation: str, user_id: str, token: str | None, updates: dict[str, Any]) -> UpdateResult:
        with self.store.user_lock(user_id):
            try:
                return self._update(operation, token, user_id, {**updates, "dna_refresh": True})
            except StoreError as exc:
                return UpdateResult(ok=False, reason=exc.code)

    def bankroll_update(self, event: BankrollUpdate, session_token: str | None) -> UpdateResult:
        return self._source_update("bankroll_update", event.user_id, session_token, {"wealth": event.wealth})

    def reputation_update(self, event: ReputationUpdate, session_token: str | None) -> UpdateResult:
        return self._source_update("reputation_update", event.user_id, session_token, {"luck": event.luck})

    def arcade_update(self, event: ArcadeUpdate, session_token: str | None) -> UpdateResult:
        return self._source_update(
            "arcade_update",
            event.user_id,
            session_token,
            {"arcade": {"base_aggression": event.base_aggression, "speed_score": event.speed_score}},
        )

    def manual_grant(self, event: ManualGrant) -> UpdateResult:
        with self.store.user_lock(event.user_id):
            try:
                return self._with_retry(
                    "manual_grant",
                    event.user_id,
                    lambda: self.gateway.admin_grant(
                        event.admin_session_token,
                        event.user_id,
                        event.amount,
                        event.source,
                        request_id=f"manual:{event.event_id}",
                    ),
                )
            except StoreError as exc:
                return UpdateResult(ok=False, reason=exc.code)

    def handle(self, event: InboundEvent, session_token: str | None = None) -> DrillOutcome | UpdateResult:
        """Dispatch any inbound event to its handler."""

        if isinstance(event, DrillCompletion):
            return self.drill_completion(event, session_token)
        if isinstance(event, BankrollUpdate):
            return self.bankroll_update(event, session_token)
        if isinstance(event, ReputationUpdate):
            return self.reputation_update(event, session_token)
        if isinstance(event, ArcadeUpdate):
            return self.arcade_update(event, session_token)
        if isinstance(event, ManualGrant):
            return self.manual_grant(event)
        raise TypeError(f"unsupported event type: {type(event).__name__}")
