from __future__ import annotations

import random
from datetime import timedelta

import pytest

from identity_core.clock import ManualClock
from identity_core.config import StreakThresholds
from identity_core.models import FlameState, StreakAction, StreakStatus, StreakTier
from identity_core.service import IdentityService
from identity_core.signals import MULTIPLIER, SignalRecorder
from identity_core.streak import flame_state, next_flame, streak_multiplier, streak_tier, transition


THRESHOLDS = StreakThresholds()


@pytest.mark.parametrize(
    ("current", "tier", "multiplier", "flame"),
    [
        (0, StreakTier.NONE, 1.0, FlameState.NONE),
        (1, StreakTier.STARTED, 1.0, FlameState.NONE),
        (2, StreakTier.STARTED, 1.0, FlameState.NONE),
        (3, StreakTier.GROWING, 1.5, FlameState.BLUE_STARTER),
        (6, StreakTier.GROWING, 1.5, FlameState.BLUE_STARTER),
        (7, StreakTier.COMMITTED, 2.0, FlameState.ORANGE_ROARING),
        (14, StreakTier.DEDICATED, 2.0, FlameState.ORANGE_ROARING),
        (29, StreakTier.DEDICATED, 2.0, FlameState.ORANGE_ROARING),
        (30, StreakTier.LEGENDARY, 2.0, FlameState.PURPLE_INFERNO),
        (365, StreakTier.LEGENDARY, 2.0, FlameState.PURPLE_INFERNO),
    ],
)
def test_tier_multiplier_and_flame_derivations(current: int, tier: StreakTier, multiplier: float, flame: FlameState) -> None:
    assert streak_tier(current, THRESHOLDS) == tier
    assert streak_multiplier(current, THRESHOLDS) == multiplier
    assert flame_state(current, THRESHOLDS) == flame


@pytest.mark.parametrize(
    ("delta", "current", "action", "expected"),
    [
        (0, 4, StreakAction.MAINTAIN, 4),
        (1, 4, StreakAction.INCREMENT, 5),
        (2, 4, StreakAction.RESET, 1),
        (9, 40, StreakAction.RESET, 1),
        (None, 0, StreakAction.RESET, 1),
        (-1, 4, StreakAction.MAINTAIN, 4),
    ],
)
def test_day_window_transition(delta: int | None, current: int, action: StreakAction, expected: int) -> None:
    assert transition(delta, current) == (action, expected)


def test_next_flame_progress() -> None:
    assert next_flame(0, THRESHOLDS) == {"state": "blue_starter", "required": 3, "days_to_unlock": 3}
    assert next_flame(8, THRESHOLDS) == {"state": "purple_inferno", "required": 30, "days_to_unlock": 22}
    assert next_flame(30, THRESHOLDS) is None


def test_first_tick_starts_streak(service: IdentityService) -> None:
    result = service.oracle.tick("u1")
    assert result.action == StreakAction.RESET
    assert result.current == 1
    assert result.tier == StreakTier.STARTED


def test_reset_after_two_idle_days(service: IdentityService, clock: ManualClock) -> None:
    service.store.save_streak(
        "u1",
        current=10,
        longest=10,
        last_active_at=clock.now() - timedelta(days=2),
        flame_state=FlameState.ORANGE_ROARING,
    )
    result = service.oracle.tick("u1")
    assert result.action == StreakAction.RESET
    assert result.current == 1
    assert result.longest == 10
    assert result.multiplier == 1.0
    assert result.flame_state == FlameState.NONE
    record = service.store.load_player("u1")
    assert record.longest_streak == 10
    assert record.last_active_at == clock.now()


def test_daily_ticks_walk_the_tiers(service: IdentityService, clock: ManualClock) -> None:
    seen: dict[int, StreakTier] = {}
    for day in range(1, 31):
        result = service.oracle.tick("u1")
        assert result.current == day
        seen[day] = result.tier
        # A second activity the same day only maintains.
        assert service.oracle.tick("u1").action == StreakAction.MAINTAIN
        clock.advance(days=1)
    assert seen[1] == StreakTier.STARTED
    assert seen[3] == StreakTier.GROWING
    assert seen[7] == StreakTier.COMMITTED
    assert seen[14] == StreakTier.DEDICATED
    assert seen[30] == StreakTier.LEGENDARY
    assert service.store.load_player("u1").flame_state == FlameState.PURPLE_INFERNO


def test_longest_never_decreases(service: IdentityService, clock: ManualClock) -> None:
    rng = random.Random(77)
    longest = 0
    current = 0
    for _ in range(200):
        clock.advance(hours=rng.choice([1, 6, 24, 24, 24, 48, 72]))
        result = service.oracle.tick("u1")
        if result.action != StreakAction.RESET:
            assert result.current >= current
        assert result.longest >= longest
        assert result.longest >= result.current
        longest = result.longest
        current = result.current


def test_peek_status_follows_day_window(service: IdentityService, clock: ManualClock) -> None:
    assert service.oracle.peek("u1").status == StreakStatus.INACTIVE
    service.oracle.tick("u1")
    state = service.oracle.peek("u1")
    assert state.status == StreakStatus.ACTIVE
    # Activity at 15:00 UTC: the streak survives until midnight after next.
    assert state.hours_remaining == pytest.approx(33.0)
    clock.advance(days=1)
    assert service.oracle.peek("u1").status == StreakStatus.AT_RISK
    clock.advance(days=1)
    broken = service.oracle.peek("u1")
    assert broken.status == StreakStatus.BROKEN
    assert broken.hours_remaining == 0.0


def test_signal_publishes_multiplier(service: IdentityService, recorder: SignalRecorder, clock: ManualClock) -> None:
    for _ in range(7):
        service.oracle.tick("u1")
        clock.advance(days=1)
    clock.advance(days=-1)
    signal = service.oracle.signal("u1")
    assert signal.multiplier == 2.0
    assert signal.tier == StreakTier.COMMITTED
    assert signal.current_streak == 7
    payloads = recorder.of(MULTIPLIER)
    assert len(payloads) == 1
    assert payloads[0]["source"] == "identity.streak"
    assert payloads[0]["target"] == "YELLOW_DIAMOND"
    assert payloads[0]["multiplier"] == 2.0
    assert payloads[0]["valid_until"] is not None
