from __future__ import annotations

import random
import threading
import time
from typing import Any

import pytest

from identity_core.dispatcher import EventDispatcher, lane_index
from identity_core.events import BankrollUpdate, DrillCompletion
from identity_core.service import IdentityService


class RecordingCoordinator:
    def __init__(self, seed: int) -> None:
        self.seen: list[tuple[str, str]] = []
        self.active: dict[str, int] = {}
        self.overlaps = 0
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def handle(self, event: Any, session_token: str | None = None) -> str:
        with self._lock:
            self.active[event.user_id] = self.active.get(event.user_id, 0) + 1
            if self.active[event.user_id] > 1:
                self.overlaps += 1
            delay = self._rng.random() / 1000
        time.sleep(delay)
        with self._lock:
            self.seen.append((event.user_id, event.drill_id))
            self.active[event.user_id] -= 1
        return event.drill_id


def _drill(user_id: str, index: int) -> DrillCompletion:
    return DrillCompletion(user_id=user_id, drill_id=f"{user_id}-{index}", accuracy=0.9, gto_compliance=0.9, xp_amount=10 + index)


def test_lane_index_is_stable_and_bounded() -> None:
    for user_id in ("alice", "bob", "carol", "", "ünïcode"):
        assert 0 <= lane_index(user_id, 4) < 4
        assert lane_index(user_id, 4) == lane_index(user_id, 4)
    assert lane_index("alice", 1) == 0


def test_events_for_one_user_run_in_submission_order() -> None:
    coordinator = RecordingCoordinator(seed=3)
    users = [f"user-{n}" for n in range(6)]
    submitted: dict[str, list[str]] = {user: [] for user in users}
    with EventDispatcher(coordinator, workers=3) as dispatcher:  # type: ignore[arg-type]
        futures = []
        for index in range(20):
            for user in users:
                event = _drill(user, index)
                submitted[user].append(event.drill_id)
                futures.append(dispatcher.submit(event))
        results = [future.result(timeout=10) for future in futures]
    assert len(results) == 120
    assert coordinator.overlaps == 0
    for user in users:
        assert [drill_id for uid, drill_id in coordinator.seen if uid == user] == submitted[user]


def test_interleaved_users_keep_consistent_ledgers(service: IdentityService, write_token: str) -> None:
    users = ["ana", "ben", "cai", "dee", "eve"]
    with service.dispatcher(workers=3) as dispatcher:
        futures = []
        for index in range(8):
            for user in users:
                futures.append(dispatcher.submit(_drill(user, index), write_token))
                if index % 3 == 0:
                    futures.append(dispatcher.submit(BankrollUpdate(user_id=user, wealth=0.1 * index), write_token))
        for future in futures:
            future.result(timeout=30)

    expected_total = sum(10 + index for index in range(8))
    for user in users:
        record = service.store.load_player(user)
        assert record.xp_total == expected_total
        ledger = list(reversed(service.vault.history(user, None)))
        assert [entry.entry_id for entry in ledger] == [f"drill:{user}-{index}" for index in range(8)]
        running = 0
        for entry in ledger:
            assert entry.prior_total == running
            running = entry.new_total
        assert running == record.xp_total
        assert [drill.drill_id for drill in service.store.recent_drills(user, 50)] == [
            f"{user}-{index}" for index in reversed(range(8))
        ]


def test_submit_after_shutdown_is_refused(service: IdentityService) -> None:
    dispatcher = service.dispatcher(workers=2)
    assert dispatcher.lanes == 2
    dispatcher.shutdown()
    with pytest.raises(RuntimeError):
        dispatcher.submit(_drill("u1", 0))


def test_zero_workers_is_rejected(service: IdentityService) -> None:
    with pytest.raises(ValueError):
        EventDispatcher(service.coordinator, workers=0)
