from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from identity_core.api import SESSION_HEADER, TRACE_HEADER, create_app, status_for
from identity_core.clock import ManualClock
from identity_core.models import FlameState, XPSource
from identity_core.service import IdentityService


@pytest.fixture
def client(service: IdentityService) -> TestClient:
    return TestClient(create_app(service), raise_server_exceptions=False)


def _session(client: TestClient, silo_id: str, key: str, intent: str = "write") -> str:
    response = client.post("/v1/handshake", json={"silo_id": silo_id, "api_key": key, "intent": intent})
    assert response.status_code == 200
    return response.json()["session_token"]


def _events(service: IdentityService, event_type: str) -> list[dict]:
    return [evt for evt in service.telemetry.iter_events() if evt["event_type"] == event_type]


def test_health(client: TestClient) -> None:
    response = client.get("/v1/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["reference_timezone"] == "UTC"
    assert response.headers[TRACE_HEADER].startswith("api:")


def test_trace_header_is_echoed(client: TestClient) -> None:
    response = client.get("/v1/health", headers={TRACE_HEADER: "trace-abc-123"})
    assert response.headers[TRACE_HEADER] == "trace-abc-123"


@pytest.mark.parametrize(
    ("silo_id", "key_silo", "intent", "status", "reason"),
    [
        ("NOPE", "GREEN_CONTENT", "read", 401, "auth.siloNotFound"),
        ("GREEN_CONTENT", "ORANGE_SEARCH", "read", 401, "auth.invalidKey"),
        ("GREEN_CONTENT", "GREEN_CONTENT", "write", 403, "auth.writeNotAuthorized"),
    ],
)
def test_handshake_rejections(
    client: TestClient, silo_keys: dict[str, str], silo_id: str, key_silo: str, intent: str, status: int, reason: str
) -> None:
    response = client.post(
        "/v1/handshake", json={"silo_id": silo_id, "api_key": silo_keys[key_silo], "intent": intent}
    )
    assert response.status_code == status
    assert response.json()["authorized"] is False
    assert response.json()["reason"] == reason
    assert response.json()["session_token"] is None


def test_handshake_lockout_is_423(client: TestClient, service: IdentityService, silo_keys: dict[str, str]) -> None:
    for _ in range(service.config.max_auth_failures):
        client.post("/v1/handshake", json={"silo_id": "ORANGE_SEARCH", "api_key": "wrong"})
    response = client.post("/v1/handshake", json={"silo_id": "ORANGE_SEARCH", "api_key": silo_keys["ORANGE_SEARCH"]})
    assert response.status_code == 423
    assert response.json()["reason"] == "auth.lockedOut"


def test_drill_completion_flow(
    client: TestClient, service: IdentityService, silo_keys: dict[str, str], clock: ManualClock
) -> None:
    service.vault.add_xp("u1", 1000, XPSource.MANUAL_GRANT, bypass_gate=True)
    service.store.save_streak(
        "u1", current=6, longest=6, last_active_at=clock.now() - timedelta(days=1), flame_state=FlameState.BLUE_STARTER
    )
    token = _session(client, "RED_IDENTITY_DNA", silo_keys["RED_IDENTITY_DNA"])

    response = client.post(
        "/v1/events/drill-completion",
        json={"user_id": "u1", "drill_id": "d-1", "accuracy": 0.9, "gto_compliance": 0.8, "xp_amount": 100},
        headers={SESSION_HEADER: token},
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["grant"]["granted"] is True
    assert payload["grant"]["new_total"] == 1100
    assert payload["tick"]["current"] == 7
    assert payload["signal"]["multiplier"] == 2.0

    reader = _session(client, "YELLOW_DIAMOND", silo_keys["YELLOW_DIAMOND"], "read")
    player = client.get("/v1/players/u1", headers={SESSION_HEADER: reader}).json()
    assert player["xp_total"] == 1100
    assert player["flame_state"] == "orange_roaring"
    assert player["streak"]["status"] == "active"
    assert player["progress"]["level"] == 5

    history = client.get("/v1/players/u1/history", params={"limit": 1}, headers={SESSION_HEADER: reader}).json()
    assert [row["entry_id"] for row in history] == ["drill:d-1"]
    breakdown = client.get("/v1/players/u1/breakdown", headers={SESSION_HEADER: reader}).json()
    assert breakdown["by_source"] == {"green_content": 100, "manual_grant": 1000}
    dna = client.get("/v1/players/u1/dna", headers={SESSION_HEADER: reader}).json()
    assert dna["dna"]["accuracy"] == 0.9
    assert dna["skill_tier"] == 9
    assert dna["dna_version"] == 3
    check = client.get("/v1/players/u1/dna/version", params={"client_version": 3}, headers={SESSION_HEADER: reader})
    assert check.json()["needs_sync"] is False
    check = client.get("/v1/players/u1/dna/version", params={"client_version": 1}, headers={SESSION_HEADER: reader})
    assert check.json()["needs_sync"] is True
    assert check.json()["dna"]["accuracy"] == 0.9


def test_gate_failure_is_a_business_rejection(client: TestClient, silo_keys: dict[str, str]) -> None:
    token = _session(client, "RED_IDENTITY_DNA", silo_keys["RED_IDENTITY_DNA"])
    response = client.post(
        "/v1/events/drill-completion",
        json={"user_id": "u1", "drill_id": "d-1", "accuracy": 0.5, "gto_compliance": 0.5, "xp_amount": 100},
        headers={SESSION_HEADER: token},
    )
    assert response.status_code == 200
    assert response.json()["reason"] == "gate.failed"
    assert response.json()["tick"]["current"] == 1


def test_events_need_a_write_session(client: TestClient, silo_keys: dict[str, str]) -> None:
    event = {"user_id": "u1", "drill_id": "d-1", "accuracy": 0.9, "xp_amount": 10}
    assert client.post("/v1/events/drill-completion", json=event).status_code == 401
    reader = _session(client, "GREEN_CONTENT", silo_keys["GREEN_CONTENT"], "read")
    response = client.post("/v1/events/bankroll", json={"user_id": "u1", "wealth": 0.4}, headers={SESSION_HEADER: reader})
    assert response.status_code == 403
    assert response.json()["reason"] == "auth.writeNotAuthorized"


def test_out_of_range_event_is_422(client: TestClient, silo_keys: dict[str, str]) -> None:
    token = _session(client, "RED_IDENTITY_DNA", silo_keys["RED_IDENTITY_DNA"])
    response = client.post(
        "/v1/events/drill-completion",
        json={"user_id": "u1", "drill_id": "d-1", "accuracy": 1.5, "xp_amount": 10},
        headers={SESSION_HEADER: token},
    )
    assert response.status_code == 422


def test_player_reads_need_session_and_known_player(client: TestClient, silo_keys: dict[str, str]) -> None:
    assert client.get("/v1/players/ghost").status_code == 401
    reader = _session(client, "ORANGE_SEARCH", silo_keys["ORANGE_SEARCH"], "read")
    for path in ("", "/history", "/breakdown", "/streak", "/dna", "/progress"):
        response = client.get(f"/v1/players/ghost{path}", headers={SESSION_HEADER: reader})
        assert response.status_code == 404
    assert response.json()["code"] == "player.notFound"


def test_update_route_refuses_unknown_fields(client: TestClient, silo_keys: dict[str, str]) -> None:
    token = _session(client, "RED_IDENTITY_DNA", silo_keys["RED_IDENTITY_DNA"])
    response = client.post(
        "/v1/players/u1/update", json={"updates": {"xp_lifetime": 5}}, headers={SESSION_HEADER: token}
    )
    assert response.status_code == 200
    assert response.json() == {"ok": False, "applied_fields": [], "reason": "update.unknownField", "results": {}}

    response = client.post(
        "/v1/players/u1/update", json={"updates": {"luck": 0.3, "dna_refresh": True}}, headers={SESSION_HEADER: token}
    )
    assert response.json()["applied_fields"] == ["luck", "dna_refresh"]
    assert response.json()["results"]["dna_refresh"]["luck"] == 0.3


def test_update_route_refuses_malformed_values(client: TestClient, service: IdentityService, silo_keys: dict[str, str]) -> None:
    token = _session(client, "RED_IDENTITY_DNA", silo_keys["RED_IDENTITY_DNA"])
    response = client.post(
        "/v1/players/u1/update",
        json={"updates": {"xp_grant": {"amount": 50, "source": "arcade"}, "wealth": "lots"}},
        headers={SESSION_HEADER: token},
    )
    assert response.status_code == 200
    assert response.json()["reason"] == "update.invalidValue"
    assert service.store.load_player("u1") is None


def test_update_route_blocks_relayed_source(client: TestClient, service: IdentityService, silo_keys: dict[str, str]) -> None:
    token = _session(client, "RED_IDENTITY_DNA", silo_keys["RED_IDENTITY_DNA"])
    client.post("/v1/players/u1/update", json={"updates": {"xp_total": 1000}}, headers={SESSION_HEADER: token})
    response = client.post(
        "/v1/players/u1/update",
        json={"updates": {"xp_total": {"total": 900, "source_identifier": "PARTNER_FEED"}}},
        headers={SESSION_HEADER: token},
    )
    assert response.json()["results"]["xp_total"]["reason"] == "xp.decreaseAttempt"
    assert service.store.is_blocked("PARTNER_FEED")
    assert service.store.load_player("u1").xp_total == 1000


def test_manual_grant_and_archive(client: TestClient, service: IdentityService, silo_keys: dict[str, str]) -> None:
    admin = _session(client, "RED_IDENTITY_DNA", silo_keys["RED_IDENTITY_DNA"], "admin")
    response = client.post("/v1/events/manual-grant", json={"user_id": "u1", "amount": 300, "admin_session_token": admin})
    assert response.status_code == 200
    assert response.json()["results"]["xp_grant"]["entry"]["gate_passed"] is False

    assert client.post("/v1/players/u1/archive", headers={SESSION_HEADER: admin}).status_code == 200
    assert client.post("/v1/players/nobody/archive", headers={SESSION_HEADER: admin}).status_code == 404
    writer = _session(client, "RED_IDENTITY_DNA", silo_keys["RED_IDENTITY_DNA"])
    response = client.post(
        "/v1/events/bankroll", json={"user_id": "u1", "wealth": 0.4}, headers={SESSION_HEADER: writer}
    )
    assert response.json()["reason"] == "player.archived"
    assert service.store.load_player("u1").xp_total == 300


def test_audit_routes(client: TestClient, silo_keys: dict[str, str]) -> None:
    reader = _session(client, "GREEN_CONTENT", silo_keys["GREEN_CONTENT"], "read")
    rows = client.get("/v1/audit/handshakes", params={"silo_id": "GREEN_CONTENT"}, headers={SESSION_HEADER: reader}).json()
    assert rows[0]["result"] == "authorized"
    assert all(silo_keys["GREEN_CONTENT"] not in str(row) for row in rows)

    assert client.post("/v1/audit/purge", headers={SESSION_HEADER: reader}).status_code == 403
    admin = _session(client, "RED_IDENTITY_DNA", silo_keys["RED_IDENTITY_DNA"], "admin")
    response = client.post("/v1/audit/purge", headers={SESSION_HEADER: admin})
    assert response.status_code == 200
    assert response.json()["retention_days"] == 365


def test_revoke_and_silos(client: TestClient, silo_keys: dict[str, str]) -> None:
    token = _session(client, "YELLOW_DIAMOND", silo_keys["YELLOW_DIAMOND"], "read")
    assert client.post("/v1/revoke", headers={SESSION_HEADER: token}).json() == {"revoked": True}
    assert client.get("/v1/audit/handshakes", headers={SESSION_HEADER: token}).status_code == 401
    silos = client.get("/v1/silos").json()
    assert {silo["silo_id"] for silo in silos} == set(silo_keys)
    assert all("api_key_digest" not in silo for silo in silos)
    config = client.get("/v1/config").json()
    assert config["identity_silo"] == "RED_IDENTITY_DNA"
    assert "api_key_digest" not in str(config)


def test_telemetry_summary_endpoint(client: TestClient) -> None:
    response = client.get("/v1/telemetry/summary", params={"range": "24h"})
    assert response.status_code == 200
    assert response.json()["range"] == "24h"
    assert client.get("/v1/telemetry/summary", params={"range": "forever"}).status_code == 422


def test_internal_error_is_flagged_with_trace(
    client: TestClient, service: IdentityService, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _boom() -> dict:
        raise RuntimeError("stats unavailable")

    monkeypatch.setattr(service.vault, "stats", _boom)
    response = client.get("/v1/health", headers={TRACE_HEADER: "trace-err-1"})
    assert response.status_code == 500
    assert response.json()["trace_id"] == "trace-err-1"
    flagged = _events(service, "risk.flagged")[-1]
    assert flagged["data"]["reason"] == "api_internal_error"
    assert flagged["data"]["trace_id"] == "trace-err-1"


@pytest.mark.parametrize(
    ("reason", "status"),
    [
        (None, 200),
        ("gate.failed", 200),
        ("auth.sessionInvalid", 401),
        ("auth.writeNotAuthorized", 403),
        ("auth.lockedOut", 423),
        ("store.timeout", 503),
        ("player.notFound", 404),
    ],
)
def test_status_for(reason: str | None, status: int) -> None:
    assert status_for(reason) == status
