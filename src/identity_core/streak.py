from __future__ import annotations

"""Streak oracle: day-window streak transitions and the reward multiplier."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .clock import ReferenceClock
from .config import IdentityConfig, StreakThresholds
from .models import (
    FlameState,
    MultiplierSignal,
    PlayerRecord,
    StreakAction,
    StreakState,
    StreakStatus,
    StreakTier,
)
from .signals import MULTIPLIER, SignalBus
from .store import Store
from .telemetry import TelemetryLogger


SIGNAL_SOURCE = "identity.streak"


def streak_tier(current: int, thresholds: StreakThresholds) -> StreakTier:
    if current >= thresholds.legendary:
        return StreakTier.LEGENDARY
    if current >= thresholds.dedicated:
        return StreakTier.DEDICATED
    if current >= thresholds.committed:
        return StreakTier.COMMITTED
    if current >= thresholds.growing:
        return StreakTier.GROWING
    if current >= 1:
        return StreakTier.STARTED
    return StreakTier.NONE


def streak_multiplier(current: int, thresholds: StreakThresholds) -> float:
    """Reward multiplier: three values, independent of the cosmetic tier."""

    if current >= thresholds.committed:
        return 2.0
    if current >= thresholds.growing:
        return 1.5
    return 1.0


def flame_state(current: int, thresholds: StreakThresholds) -> FlameState:
    if current >= thresholds.legendary:
        return FlameState.PURPLE_INFERNO
    if current >= thresholds.committed:
        return FlameState.ORANGE_ROARING
    if current >= thresholds.growing:
        return FlameState.BLUE_STARTER
    return FlameState.NONE


def next_flame(current: int, thresholds: StreakThresholds) -> dict[str, Any] | None:
    for state, required in (
        (FlameState.BLUE_STARTER, thresholds.growing),
        (FlameState.ORANGE_ROARING, thresholds.committed),
        (FlameState.PURPLE_INFERNO, thresholds.legendary),
    ):
        if current < required:
            return {"state": state.value, "required": required, "days_to_unlock": required - current}
    return None


def transition(day_delta: int | None, current: int) -> tuple[StreakAction, int]:
    """Apply the day-window rule to the stored streak."""

    if day_delta is None or day_delta >= 2:
        return StreakAction.RESET, 1
    if day_delta == 1:
        return StreakAction.INCREMENT, current + 1
    # Same day, or a clock that moved backwards.
    return StreakAction.MAINTAIN, max(current, 1)


@dataclass(frozen=True)
class TickResult:
    user_id: str
    action: StreakAction
    current: int
    longest: int
    tier: StreakTier
    multiplier: float
    flame_state: FlameState

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "action": self.action.value,
            "current": self.current,
            "longest": self.longest,
            "tier": self.tier.value,
            "multiplier": self.multiplier,
            "flame_state": self.flame_state.value,
        }


class StreakOracle:
    """Sole writer of streak fields and flame state."""

    def __init__(
        self,
        config: IdentityConfig,
        store: Store,
        clock: ReferenceClock,
        bus: SignalBus,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.config = config
        self.thresholds = config.streak
        self.store = store
        self.clock = clock
        self.bus = bus
        self.telemetry = telemetry

    def _record(self, user_id: str) -> PlayerRecord:
        return self.store.load_player(user_id) or PlayerRecord(user_id=user_id)

    def tick(self, user_id: str) -> TickResult:
        with self.store.user_lock(user_id):
            record = self._record(user_id)
            now = self.clock.now()
            action, current = transition(self.clock.day_delta(record.last_active_at, now), record.current_streak)
            longest = max(record.longest_streak, current)
            flame = flame_state(current, self.thresholds)
            self.store.save_streak(
                user_id,
                current=current,
                longest=longest,
                last_active_at=now,
                flame_state=flame,
            )
        result = TickResult(
            user_id=user_id,
            action=action,
            current=current,
            longest=longest,
            tier=streak_tier(current, self.thresholds),
            multiplier=streak_multiplier(current, self.thresholds),
            flame_state=flame,
        )
        if self.telemetry is not None:
            self.telemetry.log_event(
                "streak.ticked",
                actor="system",
                actor_id="system:streak",
                source="service",
                data={"user_id": user_id, "action": action.value, "current": current, "longest": longest},
            )
        return result

    def _deadline(self, last_active_at: datetime | None) -> datetime | None:
        """End of the reference day after the last activity."""

        if last_active_at is None:
            return None
        last_day = self.clock.local_date(last_active_at)
        return self.clock.midnight_of(last_day + timedelta(days=2))

    def _hours_remaining(self, deadline: datetime | None, now: datetime) -> float:
        if deadline is None:
            return 0.0
        return round(max(0.0, self.clock.hours_between(now, deadline)), 4)

    def peek(self, user_id: str) -> StreakState:
        record = self._record(user_id)
        now = self.clock.now()
        delta = self.clock.day_delta(record.last_active_at, now)
        if delta is None:
            status = StreakStatus.INACTIVE
        elif delta <= 0:
            status = StreakStatus.ACTIVE
        elif delta == 1:
            status = StreakStatus.AT_RISK
        else:
            status = StreakStatus.BROKEN
        current = record.current_streak
        return StreakState(
            user_id=user_id,
            current_streak=current,
            longest_streak=record.longest_streak,
            last_active_at=record.last_active_at,
            tier=streak_tier(current, self.thresholds),
            multiplier=streak_multiplier(current, self.thresholds),
            flame_state=flame_state(current, self.thresholds),
            hours_remaining=self._hours_remaining(self._deadline(record.last_active_at), now),
            status=status,
            next_flame=next_flame(current, self.thresholds),
        )

    def signal(self, user_id: str) -> MultiplierSignal:
        """Build and publish the multiplier payload for the reward subsystem."""

        record = self._record(user_id)
        deadline = self._deadline(record.last_active_at)
        signal = MultiplierSignal(
            source=SIGNAL_SOURCE,
            target=self.thresholds.signal_target,
            user_id=user_id,
            multiplier=streak_multiplier(record.current_streak, self.thresholds),
            tier=streak_tier(record.current_streak, self.thresholds),
            current_streak=record.current_streak,
            hours_remaining=self._hours_remaining(deadline, self.clock.now()),
            valid_until=deadline,
        )
        self.bus.publish(MULTIPLIER, signal.to_dict())
        if self.telemetry is not None:
            self.telemetry.log_event(
                "multiplier.signaled",
                actor="system",
                actor_id="system:streak",
                source="service",
                data={"user_id": user_id, "multiplier": signal.multiplier, "tier": signal.tier.value},
            )
        return signal
