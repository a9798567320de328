"""FastAPI frontend for KidVolts.

Every route resolves the caller from the ``X-Actor-Id`` header (set by the
authenticating proxy in front of the app) and delegates to :class:`KidVolts`.
Domain errors are mapped onto HTTP status codes by a single handler.
Run with ``uvicorn kidvolts.webapp.application:create_app --factory``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Type

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlmodel import SQLModel

from ..config import ACTOR_HEADER, Settings
from ..exceptions import (
    ConflictError,
    InsufficientPointsError,
    InsufficientStockError,
    InvalidTransitionError,
    KidVoltsError,
    RecordNotFoundError,
    UnauthorizedError,
)
from ..models import HistoryStatus
from ..service import KidVolts

ERROR_STATUS: Dict[Type[KidVoltsError], tuple[int, str]] = {
    UnauthorizedError: (403, "unauthorized"),
    RecordNotFoundError: (404, "not_found"),
    InvalidTransitionError: (409, "invalid_transition"),
    InsufficientStockError: (409, "insufficient_stock"),
    InsufficientPointsError: (409, "insufficient_points"),
    ConflictError: (409, "conflict"),
}


class SubmissionIn(BaseModel):
    mission_id: str


class DecisionIn(BaseModel):
    decision: str


def _error_status(exc: KidVoltsError) -> tuple[int, str]:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return 400, "error"


def _dump(record: SQLModel) -> Dict[str, Any]:
    payload = record.model_dump()
    payload.pop("version", None)
    return payload


def actor_id(request: Request) -> str:
    return request.headers.get(ACTOR_HEADER, "").strip()


def create_app(service: Optional[KidVolts] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI app around ``service`` (or one built from ``settings``)."""

    resolved = settings or (service.settings if service is not None else Settings.from_env())
    kidvolts = service or KidVolts.from_settings(resolved)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resolved.scheduler_enabled:
            kidvolts.scheduler.start()
        try:
            yield
        finally:
            if kidvolts.scheduler.running:
                kidvolts.scheduler.stop()

    app = FastAPI(title="KidVolts", lifespan=lifespan)
    app.state.kidvolts = kidvolts

    @app.exception_handler(KidVoltsError)
    async def kidvolts_error_handler(request: Request, exc: KidVoltsError) -> JSONResponse:
        status, code = _error_status(exc)
        kidvolts.logger.log(
            "request_rejected", path=request.url.path, actor=actor_id(request), error=code, detail=str(exc)
        )
        return JSONResponse({"error": code, "detail": str(exc)}, status_code=status)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    @app.post("/api/history", status_code=201)
    def submit_mission(request: Request, payload: SubmissionIn) -> Dict[str, Any]:
        return _dump(kidvolts.submit_mission(actor_id(request), payload.mission_id))

    @app.get("/api/history")
    def list_history(request: Request, status: Optional[HistoryStatus] = None) -> List[Dict[str, Any]]:
        return [_dump(record) for record in kidvolts.list_history(actor_id(request), status=status)]

    @app.get("/api/history/{record_id}")
    def view_history(request: Request, record_id: str) -> Dict[str, Any]:
        return _dump(kidvolts.view_history(actor_id(request), record_id))

    @app.post("/api/history/{record_id}/decision")
    def decide_mission(request: Request, record_id: str, payload: DecisionIn) -> Dict[str, Any]:
        return _dump(kidvolts.decide_mission(actor_id(request), record_id, payload.decision))

    # ------------------------------------------------------------------
    # Catalogue, bazaar and ranking
    # ------------------------------------------------------------------
    @app.get("/api/missions")
    def list_missions(request: Request) -> List[Dict[str, Any]]:
        return [_dump(mission) for mission in kidvolts.list_missions(actor_id(request))]

    @app.get("/api/bazaar")
    def list_bazaar(request: Request) -> List[Dict[str, Any]]:
        return [_dump(item) for item in kidvolts.list_bazaar(actor_id(request))]

    @app.post("/api/bazaar/{item_id}/claim")
    def claim_item(request: Request, item_id: str) -> Dict[str, Any]:
        return _dump(kidvolts.claim_item(actor_id(request), item_id))

    @app.get("/api/leaderboard")
    def leaderboard(request: Request, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return [
            {
                "id": user.id,
                "username": user.username,
                "points": user.points,
                "missions_completed": user.missions_completed,
                "avatar_url": user.avatar_url,
            }
            for user in kidvolts.leaderboard(actor_id(request), limit=limit)
        ]

    @app.get("/api/users/{user_id}")
    def view_user(request: Request, user_id: str) -> Dict[str, Any]:
        return _dump(kidvolts.view_user(actor_id(request), user_id))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    @app.get("/api/jobs")
    def scheduled_jobs() -> Dict[str, Any]:
        last = kidvolts.scheduled_jobs()
        upcoming = kidvolts.scheduler.next_runs()
        return {name: {"last_firing": last.get(name), "next_firing": upcoming.get(name)} for name in upcoming}

    @app.get("/healthz", include_in_schema=False)
    def healthz() -> Dict[str, Any]:
        return {"ok": True, "scheduler_running": kidvolts.scheduler.running}

    return app


__all__ = ["ERROR_STATUS", "SubmissionIn", "DecisionIn", "actor_id", "create_app"]
