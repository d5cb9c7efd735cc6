from __future__ import annotations

"""Outbound signal fan-out to the reward subsystem and other subscribers."""

import threading
from collections import defaultdict
from typing import Any, Callable

from .telemetry import TelemetryLogger


MULTIPLIER = "multiplier"
LEVEL_UP = "level_up"
SECURITY_ALERT = "security_alert"
TOPICS = {MULTIPLIER, LEVEL_UP, SECURITY_ALERT}

Handler = Callable[[dict[str, Any]], None]


class SignalBus:
    """Synchronous publish/subscribe for outbound identity signals.

    A failing subscriber is recorded as a telemetry risk flag; it never
    interrupts the publisher or the remaining subscribers.
    """

    def __init__(self, telemetry: TelemetryLogger | None = None) -> None:
        self.telemetry = telemetry
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        if topic not in TOPICS:
            raise ValueError(f"unknown signal topic: {topic}")
        with self._lock:
            self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[topic]:
                    self._handlers[topic].remove(handler)

        return _unsubscribe

    def publish(self, topic: str, payload: dict[str, Any]) -> int:
        """Deliver `payload` to every subscriber; returns the delivered count."""

        with self._lock:
            handlers = list(self._handlers.get(topic, []))
        delivered = 0
        for handler in handlers:
            try:
                handler(dict(payload))
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                if self.telemetry is not None:
                    self.telemetry.log_event(
                        "risk.flagged",
                        actor="system",
                        actor_id="system:signals",
                        source="service",
                        data={
                            "reason": "signal_subscriber_failed",
                            "topic": topic,
                            "error_type": exc.__class__.__name__,
                        },
                    )
        return delivered


class SignalRecorder:
    """Subscriber that keeps every payload it receives, per topic."""

    def __init__(self, bus: SignalBus, topics: set[str] | None = None) -> None:
        self.received: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._lock = threading.Lock()
        for topic in sorted(topics or TOPICS):
            bus.subscribe(topic, self._make_handler(topic))

    def _make_handler(self, topic: str) -> Handler:
        def _handler(payload: dict[str, Any]) -> None:
            with self._lock:
                self.received[topic].append(payload)

        return _handler

    def of(self, topic: str) -> list[dict[str, Any]]:
        with self._lock:
            return list(self.received.get(topic, []))
