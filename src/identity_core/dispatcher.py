from __future__ import annotations

"""Per-user ordered event intake.

Events for one user always land on the same single-threaded lane, so they are
processed in submission order by at most one worker. Different users spread
across lanes and proceed in parallel.
"""

import hashlib
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from .coordinator import IdentityCoordinator
from .events import InboundEvent


DEFAULT_LANES = 4


def lane_index(user_id: str, lanes: int) -> int:
    digest = hashlib.sha256(user_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % lanes


class EventDispatcher:
    def __init__(self, coordinator: IdentityCoordinator, workers: int = DEFAULT_LANES) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.coordinator = coordinator
        self._lanes = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"identity-lane-{index}") for index in range(workers)
        ]
        self._closed = False
        self._lock = threading.Lock()

    @property
    def lanes(self) -> int:
        return len(self._lanes)

    def submit(self, event: InboundEvent, session_token: str | None = None) -> Future[Any]:
        with self._lock:
            if self._closed:
                raise RuntimeError("dispatcher is shut down")
            lane = self._lanes[lane_index(event.user_id, len(self._lanes))]
            return lane.submit(self.coordinator.handle, event, session_token)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        for lane in self._lanes:
            lane.shutdown(wait=wait)

    def __enter__(self) -> "EventDispatcher":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown(wait=True)
