from __future__ import annotations

"""DNA aggregator: five bounded axes and a weighted composite per player.

Axes are recomputed from the most recent drills, the post-tick streak, and the
latest arcade, bankroll, and reputation signals. An axis whose source has no
data keeps its previous value; with no previous snapshot it starts from a
fixed default.
"""

from dataclasses import dataclass
from typing import Any, Mapping

from .clock import ReferenceClock
from .config import IdentityConfig
from .models import Axis, DNAProfile, DrillRecord, PlayerRecord
from .store import Store
from .telemetry import TelemetryLogger


AXIS_DIGITS = 6
COMPOSITE_DIGITS = 4
SPEED_WEIGHT = 0.2
STREAK_WEIGHT = 5
LONGEST_WEIGHT = 2
TODAY_BONUS = 10
RECENT_BONUS = 5
RECENT_BONUS_DAYS = 3

AXIS_DEFAULTS = {
    Axis.ACCURACY: 0.5,
    Axis.GRIT: 0.0,
    Axis.AGGRESSION: 0.0,
    Axis.WEALTH: 0.5,
    Axis.LUCK: 0.5,
}

SIGNAL_WEALTH = "wealth"
SIGNAL_LUCK = "luck"
SIGNAL_ARCADE = "arcade"

# (minimum accuracy percent, tier), highest first
SKILL_TIER_TABLE = [(95, 10), (90, 9), (85, 8), (80, 7), (75, 6), (70, 5), (60, 4), (50, 3), (30, 2)]


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def drill_weight(position: int, decay_step: float) -> float:
    """Weight of the `position`-th most recent drill (1-based)."""

    return max(0.0, 1.0 - (position - 1) * decay_step)


def weighted_accuracy(drills: list[DrillRecord], *, window: int, decay_step: float) -> float | None:
    weighted = 0.0
    total_weight = 0.0
    for position, drill in enumerate(drills[:window], start=1):
        weight = drill_weight(position, decay_step)
        weighted += clamp_unit(drill.accuracy) * weight
        total_weight += weight
    if total_weight <= 0:
        return None
    return clamp_unit(weighted / total_weight)


def grit_score(current: int, longest: int, consistency_bonus: int) -> float:
    return min(1.0, (current * STREAK_WEIGHT + longest * LONGEST_WEIGHT + consistency_bonus) / 100)


def aggression_score(base_aggression: float, speed_score: float) -> float:
    return min(1.0, clamp_unit(base_aggression) + SPEED_WEIGHT * clamp_unit(speed_score))


def composite_score(axes: Mapping[Axis, float], weights: Mapping[Axis, float]) -> float:
    return round(clamp_unit(sum(axes[axis] * weights[axis] for axis in Axis)), COMPOSITE_DIGITS)


def skill_tier_for(accuracy: float) -> int:
    percent = clamp_unit(accuracy) * 100
    for minimum, tier in SKILL_TIER_TABLE:
        if percent >= minimum:
            return tier
    return 1


def delta(previous: DNAProfile | None, current: DNAProfile) -> dict[str, Any]:
    """Per-axis and composite change between two snapshots."""

    def _row(before: float | None, after: float) -> dict[str, Any]:
        change = None if before is None else round(after - before, AXIS_DIGITS)
        return {"from": before, "to": after, "delta": change}

    payload: dict[str, Any] = {
        axis.value: _row(previous.axis(axis) if previous else None, current.axis(axis)) for axis in Axis
    }
    payload["composite"] = _row(previous.composite if previous else None, current.composite)
    return payload


@dataclass(frozen=True)
class AxisInputs:
    """Raw values resolved for one refresh; `None` means the source had no data."""

    accuracy: float | None
    grit: float | None
    aggression: float | None
    wealth: float | None
    luck: float | None

    def get(self, axis: Axis) -> float | None:
        return getattr(self, axis.value)


class DNAAggregator:
    """Sole writer of the cached DNA snapshot and the skill tier derived from it."""

    def __init__(
        self,
        config: IdentityConfig,
        store: Store,
        clock: ReferenceClock,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self.telemetry = telemetry

    def _consistency_bonus(self, record: PlayerRecord) -> int:
        days = self.clock.day_delta(record.last_active_at, self.clock.now())
        if days is None:
            return 0
        if days <= 0:
            return TODAY_BONUS
        if days <= RECENT_BONUS_DAYS:
            return RECENT_BONUS
        return 0

    def _inputs(self, record: PlayerRecord) -> AxisInputs:
        drills = self.store.recent_drills(record.user_id, self.config.recent_window)
        signals = self.store.signals(record.user_id)

        arcade = signals.get(SIGNAL_ARCADE)
        aggression = None
        if isinstance(arcade, dict):
            aggression = aggression_score(arcade.get("base_aggression", 0.0), arcade.get("speed_score", 0.0))
        wealth = signals.get(SIGNAL_WEALTH)
        luck = signals.get(SIGNAL_LUCK)

        return AxisInputs(
            accuracy=weighted_accuracy(drills, window=self.config.recent_window, decay_step=self.config.decay_step),
            grit=grit_score(record.current_streak, record.longest_streak, self._consistency_bonus(record)),
            aggression=aggression,
            wealth=clamp_unit(wealth) if wealth is not None else None,
            luck=clamp_unit(luck) if luck is not None else None,
        )

    def compute(self, record: PlayerRecord) -> DNAProfile:
        """Build a profile for `record` without persisting it."""

        inputs = self._inputs(record)
        previous = record.dna_snapshot
        axes: dict[Axis, float] = {}
        for axis in Axis:
            value = inputs.get(axis)
            if value is None:
                value = previous.axis(axis) if previous is not None else AXIS_DEFAULTS[axis]
            axes[axis] = round(clamp_unit(value), AXIS_DIGITS)
        return DNAProfile(
            accuracy=axes[Axis.ACCURACY],
            grit=axes[Axis.GRIT],
            aggression=axes[Axis.AGGRESSION],
            wealth=axes[Axis.WEALTH],
            luck=axes[Axis.LUCK],
            composite=composite_score(axes, self.config.axis_weights),
            computed_at=self.clock.now(),
        )

    def refresh(self, user_id: str) -> DNAProfile:
        with self.store.user_lock(user_id):
            record = self.store.load_player(user_id) or PlayerRecord(user_id=user_id)
            profile = self.compute(record)
            self.store.save_dna(user_id, profile, skill_tier_for(profile.accuracy))
        if self.telemetry is not None:
            self.telemetry.log_event(
                "dna.refreshed",
                actor="system",
                actor_id="system:dna",
                source="service",
                data={"user_id": user_id, "composite": profile.composite},
            )
        return profile

    def get(self, user_id: str) -> DNAProfile | None:
        record = self.store.load_player(user_id)
        return record.dna_snapshot if record else None

    def check_version(self, user_id: str, client_version: int) -> dict[str, Any]:
        """Tell a client whether its cached profile is stale.

        `dna_version` moves on every XP grant and on every refresh that changes
        a value. The profile is only returned when the client is behind.
        """

        record = self.store.load_player(user_id) or PlayerRecord(user_id=user_id)
        needs_sync = record.dna_version > client_version
        return {
            "user_id": user_id,
            "needs_sync": needs_sync,
            "server_version": record.dna_version,
            "dna": record.dna_snapshot.to_dict() if needs_sync and record.dna_snapshot else None,
            "skill_tier": record.skill_tier if needs_sync else None,
        }
