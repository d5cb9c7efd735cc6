from __future__ import annotations

"""HTTP intake for silos: handshakes, inbound events, and player reads."""

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import (
    AUTH_LOCKED_OUT,
    AUTH_SESSION_INVALID,
    AUTH_WRITE_NOT_AUTHORIZED,
    AUTH_CODES,
    PLAYER_NOT_FOUND,
    STORE_TIMEOUT,
    STORE_UNAVAILABLE,
    IdentityError,
)
from .events import ArcadeUpdate, BankrollUpdate, DrillCompletion, ManualGrant, ReputationUpdate
from .models import Capability
from .service import IdentityService
from .telemetry import detect_core_version, sanitize_actor_id


SESSION_HEADER = "X-Identity-Session"
TRACE_HEADER = "X-Identity-Trace-Id"


class HandshakeRequest(BaseModel):
    silo_id: str = Field(min_length=1, max_length=128)
    api_key: str = Field(min_length=1, max_length=512)
    intent: str = Field(default="read", max_length=16)


class UpdateRequest(BaseModel):
    """Raw `secure_update` payload; field names and values are checked by the gateway."""

    updates: dict[str, Any] = Field(default_factory=dict)


def status_for(reason: str | None) -> int:
    """Map a rejection code onto an HTTP status; business rejections stay 200."""

    if reason == AUTH_WRITE_NOT_AUTHORIZED:
        return 403
    if reason == AUTH_LOCKED_OUT:
        return 423
    if reason in AUTH_CODES:
        return 401
    if reason in (STORE_UNAVAILABLE, STORE_TIMEOUT):
        return 503
    if reason == PLAYER_NOT_FOUND:
        return 404
    return 200


def _respond(payload: dict[str, Any], reason: str | None) -> Any:
    status = status_for(reason)
    if status == 200:
        return payload
    return JSONResponse(status_code=status, content=payload)


def create_app(service: IdentityService) -> FastAPI:
    """Create API routes backed by `IdentityService`."""

    app = FastAPI(title="Identity Core API", version=detect_core_version())

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get(TRACE_HEADER) or "").strip()
        trace_id = sanitize_actor_id(incoming) if incoming else f"api:{uuid4()}"
        if not trace_id or trace_id == "unknown":
            trace_id = f"api:{uuid4()}"
        request.state.trace_id = trace_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            service.telemetry.log_event(
                "risk.flagged",
                actor="system",
                actor_id="api:unknown",
                source="api",
                data={
                    "reason": "api_internal_error",
                    "endpoint": request.url.path,
                    "error_type": exc.__class__.__name__,
                    "trace_id": trace_id,
                },
            )
            response = JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "Internal server error",
                    "trace_id": trace_id,
                },
            )
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.exception_handler(IdentityError)
    async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
        status = status_for(exc.code)
        payload = exc.to_dict()
        payload["trace_id"] = getattr(request.state, "trace_id", None)
        return JSONResponse(status_code=status if status != 200 else 400, content=payload)

    def require_read(token: str | None) -> None:
        session = service.gateway.session(token)
        if session is None:
            raise HTTPException(status_code=401, detail=AUTH_SESSION_INVALID)
        if not session.can(Capability.READ):
            raise HTTPException(status_code=403, detail=AUTH_WRITE_NOT_AUTHORIZED)

    @app.get("/v1/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": service.telemetry.build.core_version,
            "reference_timezone": service.config.reference_timezone,
            "vault": service.vault.stats(),
        }

    @app.post("/v1/handshake")
    def handshake(request: HandshakeRequest) -> Any:
        result = service.gateway.handshake(request.silo_id, request.api_key, request.intent)
        return _respond(result.to_dict(), result.reason)

    @app.post("/v1/revoke")
    def revoke(session: str | None = Header(default=None, alias=SESSION_HEADER)) -> dict[str, Any]:
        return {"revoked": service.gateway.revoke(session)}

    @app.get("/v1/config")
    def config_summary() -> dict[str, Any]:
        return service.config.summary()

    @app.get("/v1/silos")
    def list_silos() -> list[dict[str, Any]]:
        return [silo.to_dict() for silo in service.gateway.list_silos()]

    @app.post("/v1/events/drill-completion")
    def drill_completion(
        event: DrillCompletion,
        session: str | None = Header(default=None, alias=SESSION_HEADER),
    ) -> Any:
        outcome = service.coordinator.drill_completion(event, session)
        return _respond(outcome.to_dict(), outcome.reason)

    @app.post("/v1/events/bankroll")
    def bankroll(event: BankrollUpdate, session: str | None = Header(default=None, alias=SESSION_HEADER)) -> Any:
        result = service.coordinator.bankroll_update(event, session)
        return _respond(result.to_dict(), result.reason)

    @app.post("/v1/events/reputation")
    def reputation(event: ReputationUpdate, session: str | None = Header(default=None, alias=SESSION_HEADER)) -> Any:
        result = service.coordinator.reputation_update(event, session)
        return _respond(result.to_dict(), result.reason)

    @app.post("/v1/events/arcade")
    def arcade(event: ArcadeUpdate, session: str | None = Header(default=None, alias=SESSION_HEADER)) -> Any:
        result = service.coordinator.arcade_update(event, session)
        return _respond(result.to_dict(), result.reason)

    @app.post("/v1/events/manual-grant")
    def manual_grant(event: ManualGrant) -> Any:
        result = service.coordinator.manual_grant(event)
        return _respond(result.to_dict(), result.reason)

    @app.post("/v1/players/{user_id}/update")
    def update_player(
        user_id: str,
        request: UpdateRequest,
        session: str | None = Header(default=None, alias=SESSION_HEADER),
    ) -> Any:
        result = service.gateway.secure_update(session, user_id, request.updates)
        return _respond(result.to_dict(), result.reason)

    @app.post("/v1/players/{user_id}/archive")
    def archive_player(user_id: str, session: str | None = Header(default=None, alias=SESSION_HEADER)) -> Any:
        result = service.gateway.archive_player(session, user_id)
        return _respond(result.to_dict(), result.reason)

    @app.get("/v1/players/{user_id}")
    def get_player(user_id: str, session: str | None = Header(default=None, alias=SESSION_HEADER)) -> dict[str, Any]:
        require_read(session)
        return service.player(user_id)

    @app.get("/v1/players/{user_id}/history")
    def get_history(
        user_id: str,
        limit: int = Query(default=50, ge=1, le=1000),
        session: str | None = Header(default=None, alias=SESSION_HEADER),
    ) -> list[dict[str, Any]]:
        require_read(session)
        service.require_player(user_id)
        return [entry.to_dict() for entry in service.vault.history(user_id, limit)]

    @app.get("/v1/players/{user_id}/alerts")
    def get_alerts(
        user_id: str,
        limit: int = Query(default=50, ge=1, le=1000),
        session: str | None = Header(default=None, alias=SESSION_HEADER),
    ) -> list[dict[str, Any]]:
        require_read(session)
        return [alert.to_dict() for alert in service.vault.alerts(user_id, limit)]

    @app.get("/v1/players/{user_id}/breakdown")
    def get_breakdown(user_id: str, session: str | None = Header(default=None, alias=SESSION_HEADER)) -> dict[str, Any]:
        require_read(session)
        service.require_player(user_id)
        return {"user_id": user_id, "by_source": service.vault.breakdown(user_id)}

    @app.get("/v1/players/{user_id}/streak")
    def get_streak(user_id: str, session: str | None = Header(default=None, alias=SESSION_HEADER)) -> dict[str, Any]:
        require_read(session)
        service.require_player(user_id)
        return service.oracle.peek(user_id).to_dict()

    @app.get("/v1/players/{user_id}/dna")
    def get_dna(user_id: str, session: str | None = Header(default=None, alias=SESSION_HEADER)) -> dict[str, Any]:
        require_read(session)
        return service.dna_view(user_id)

    @app.get("/v1/players/{user_id}/dna/version")
    def check_dna_version(
        user_id: str,
        client_version: int = Query(default=0, ge=0),
        session: str | None = Header(default=None, alias=SESSION_HEADER),
    ) -> dict[str, Any]:
        require_read(session)
        service.require_player(user_id)
        return service.aggregator.check_version(user_id, client_version)

    @app.get("/v1/players/{user_id}/progress")
    def get_progress(user_id: str, session: str | None = Header(default=None, alias=SESSION_HEADER)) -> dict[str, Any]:
        require_read(session)
        service.require_player(user_id)
        return service.vault.xp_to_next_level(user_id)

    @app.get("/v1/audit/handshakes")
    def handshake_log(
        limit: int = Query(default=100, ge=1, le=1000),
        silo_id: str | None = None,
        session: str | None = Header(default=None, alias=SESSION_HEADER),
    ) -> list[dict[str, Any]]:
        require_read(session)
        return service.gateway.handshake_log(limit, silo_id)

    @app.post("/v1/audit/purge")
    def purge_audit(session: str | None = Header(default=None, alias=SESSION_HEADER)) -> dict[str, Any]:
        current = service.gateway.session(session)
        if current is None:
            raise HTTPException(status_code=401, detail=AUTH_SESSION_INVALID)
        if not current.can(Capability.ADMIN):
            raise HTTPException(status_code=403, detail=AUTH_WRITE_NOT_AUTHORIZED)
        return service.purge_audit()

    @app.get("/v1/telemetry/summary")
    def telemetry_summary(range: str = Query(default="7d", pattern=r"^\d+[dh]$")) -> dict[str, Any]:
        try:
            return service.telemetry_summary(range)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    return app
