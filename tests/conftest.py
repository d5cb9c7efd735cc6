from __future__ import annotations

import copy
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

import pytest
import yaml

from identity_core.clock import ManualClock
from identity_core.config import IdentityConfig, config_from_mapping, default_config_path
from identity_core.security import digest_api_key
from identity_core.service import IdentityService
from identity_core.signals import SignalRecorder
from identity_core.store import MemoryStore


SILO_KEYS = {
    "RED_IDENTITY_DNA": "red-identity-key-0001",
    "GREEN_CONTENT": "green-content-key-0002",
    "YELLOW_DIAMOND": "yellow-diamond-key-0003",
    "ORANGE_SEARCH": "orange-search-key-0004",
}
START = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)


def _default_payload() -> dict[str, Any]:
    payload = yaml.safe_load(default_config_path().read_text(encoding="utf-8"))
    for row in payload["silos"]:
        row.pop("api_key_env", None)
        row["api_key_digest"] = digest_api_key(SILO_KEYS[row["silo_id"]])
    return payload


@pytest.fixture
def config_payload() -> Callable[..., dict[str, Any]]:
    """Factory for a valid raw config with known silo keys; kwargs override top-level sections."""

    base = _default_payload()

    def _make(**sections: Any) -> dict[str, Any]:
        payload = copy.deepcopy(base)
        for name, value in sections.items():
            if isinstance(value, dict) and isinstance(payload.get(name), dict):
                payload[name].update(value)
            else:
                payload[name] = value
        return payload

    return _make


@pytest.fixture
def config(config_payload: Callable[..., dict[str, Any]]) -> IdentityConfig:
    return config_from_mapping(config_payload(), source="tests", env={})


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock("UTC", START)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore(timeout_seconds=None)


@pytest.fixture
def service(tmp_path: Path, config: IdentityConfig, clock: ManualClock, store: MemoryStore) -> IdentityService:
    return IdentityService.create(config, home=tmp_path / "home", clock=clock, store=store, sleep=lambda _: None)


@pytest.fixture
def recorder(service: IdentityService) -> SignalRecorder:
    return SignalRecorder(service.bus)


@pytest.fixture
def write_token(service: IdentityService) -> str:
    result = service.gateway.handshake("RED_IDENTITY_DNA", SILO_KEYS["RED_IDENTITY_DNA"], "write")
    assert result.authorized
    assert result.session_token
    return result.session_token


@pytest.fixture
def admin_token(service: IdentityService) -> str:
    result = service.gateway.handshake("RED_IDENTITY_DNA", SILO_KEYS["RED_IDENTITY_DNA"], "admin")
    assert result.authorized
    assert result.session_token
    return result.session_token


@pytest.fixture
def silo_keys() -> dict[str, str]:
    return dict(SILO_KEYS)
