from __future__ import annotations

"""Composition root wiring config, clock, store, components, and telemetry."""

import hashlib
import time
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from .clock import ReferenceClock
from .config import IdentityConfig, load_config
from .coordinator import IdentityCoordinator
from .dispatcher import DEFAULT_LANES, EventDispatcher
from .dna import DNAAggregator
from .errors import PLAYER_NOT_FOUND, IdentityError
from .gateway import RecordWriter, SovereignGateway
from .models import PlayerRecord
from .paths import ensure_home_dirs, identity_home
from .signals import SignalBus
from .store import JsonFileStore, Store
from .streak import StreakOracle
from .telemetry import TelemetryLogger
from .vault import XPVault


@dataclass
class IdentityService:
    """Running identity core: one instance per process."""

    config: IdentityConfig
    home: Path
    dirs: dict[str, Path]
    clock: ReferenceClock
    store: Store
    telemetry: TelemetryLogger
    bus: SignalBus
    vault: XPVault
    oracle: StreakOracle
    aggregator: DNAAggregator
    gateway: SovereignGateway
    coordinator: IdentityCoordinator

    @classmethod
    def create(
        cls,
        config: IdentityConfig | None = None,
        *,
        home: Path | None = None,
        clock: ReferenceClock | None = None,
        store: Store | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "IdentityService":
        """Load config (unless given), build every component, and log startup."""

        config = config or load_config()
        home = home or identity_home()
        dirs = ensure_home_dirs(home)
        telemetry = TelemetryLogger(events_path=dirs["telemetry"] / "events.jsonl")
        clock = clock or ReferenceClock(config.reference_timezone)

        def _on_timeout(operation: str, seconds: float) -> None:
            telemetry.log_event(
                "store.timeout",
                actor="system",
                actor_id="system:store",
                source="service",
                data={"operation": operation, "timeout_seconds": seconds},
            )

        if store is None:
            store = JsonFileStore(dirs["state"], timeout_seconds=config.store_timeout_seconds)
        if store.on_timeout is None:
            store.on_timeout = _on_timeout

        bus = SignalBus(telemetry)
        vault = XPVault(config, store, clock, bus, telemetry)
        oracle = StreakOracle(config, store, clock, bus, telemetry)
        aggregator = DNAAggregator(config, store, clock, telemetry)
        writer = RecordWriter(store, clock, vault, oracle, aggregator)
        gateway = SovereignGateway(config, store, clock, writer, telemetry)
        coordinator = IdentityCoordinator(config, store, gateway, oracle, telemetry, sleep=sleep)
        service = cls(
            config=config,
            home=home,
            dirs=dirs,
            clock=clock,
            store=store,
            telemetry=telemetry,
            bus=bus,
            vault=vault,
            oracle=oracle,
            aggregator=aggregator,
            gateway=gateway,
            coordinator=coordinator,
        )
        telemetry.log_event(
            "identity.started",
            actor="system",
            actor_id="system:identity",
            source="service",
            data={
                "home_path_hash": hashlib.sha256(str(home).encode("utf-8")).hexdigest(),
                "config_source": config.source,
                "silos": len(config.silos),
            },
        )
        return service

    def dispatcher(self, workers: int = DEFAULT_LANES) -> EventDispatcher:
        return EventDispatcher(self.coordinator, workers=workers)

    def player(self, user_id: str) -> dict[str, Any]:
        """Full read view of one player: record, streak, and level progress."""

        record = self.require_player(user_id)
        payload = record.to_dict()
        payload["streak"] = self.oracle.peek(user_id).to_dict()
        payload["progress"] = self.config.levels.progress(record.xp_total)
        return payload

    def require_player(self, user_id: str) -> PlayerRecord:
        record = self.store.load_player(user_id)
        if record is None:
            raise IdentityError(PLAYER_NOT_FOUND, f"unknown player: {user_id}", user_id=user_id)
        return record

    def dna_view(self, user_id: str) -> dict[str, Any]:
        record = self.require_player(user_id)
        profile = record.dna_snapshot
        return {
            "user_id": user_id,
            "dna": profile.to_dict() if profile else None,
            "skill_tier": record.skill_tier,
            "dna_version": record.dna_version,
        }

    def purge_audit(self) -> dict[str, Any]:
        """Drop security alerts and telemetry older than the retention window."""

        days = self.config.audit_retention_days
        cutoff = self.clock.now() - timedelta(days=days)
        alerts_removed = self.store.purge_alerts(cutoff)
        telemetry_result = self.telemetry.purge_older_than(timedelta(days=days))
        result = {
            "retention_days": days,
            "alerts_removed": alerts_removed,
            "telemetry": telemetry_result,
        }
        self.telemetry.log_event(
            "audit.purged",
            actor="operator",
            actor_id="operator:retention",
            source="service",
            data={"retention_days": days, "alerts_removed": alerts_removed},
        )
        return result

    def telemetry_summary(self, range_value: str = "7d") -> dict[str, Any]:
        return self.telemetry.export_summary(range_value=range_value)
