# kubeconsole/api/server.py

"""
HTTP surface of the console assistant.

Chat turns stream back as Server-Sent Events; session management is plain
JSON. Every route lives under /api/chat/v1.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from kubeconsole.boot.app_context import AppContext
from kubeconsole.orchestration.chat_service import ChatService
from kubeconsole.orchestration.errors import (
    CheckpointError,
    SessionConflict,
    SessionNotFound,
    ValidationError,
)

_log = logging.getLogger(__name__)

API_PREFIX = "/api/chat/v1"

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _service(request: Request) -> ChatService:
    return request.app.state.service


async def _json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise ValidationError("Request body is not valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(ValidationError)
    async def _validation(_request: Request, exc: ValidationError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _request_validation(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "Invalid request parameters")

    @app.exception_handler(SessionNotFound)
    async def _not_found(_request: Request, exc: SessionNotFound) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(SessionConflict)
    async def _conflict(_request: Request, exc: SessionConflict) -> JSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(CheckpointError)
    async def _storage(_request: Request, exc: CheckpointError) -> JSONResponse:
        _log.error("Checkpoint store failure: %s", exc)
        return _error(503, "Conversation storage is unavailable")


def build_router() -> APIRouter:
    router = APIRouter(prefix=API_PREFIX)

    # ── chat ─────────────────────────────────────────────────────────────────

    @router.post("/msg")
    async def post_message(request: Request):
        service = _service(request)
        turn = await service.open_turn(await _json_body(request))
        return StreamingResponse(
            service.stream_turn(turn),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    @router.get("/msg")
    async def get_messages(
        request: Request,
        session_id: str = Query("", alias="sessionId"),
        user_id: str = Query("", alias="userId"),
    ):
        return await _service(request).get_history(session_id, user_id)

    # ── sessions ─────────────────────────────────────────────────────────────

    @router.get("/sessions")
    async def list_sessions(
        request: Request,
        user_id: str = Query("", alias="userId"),
        include_deleted: bool = Query(False, alias="includeDeleted"),
    ):
        sessions = await _service(request).list_sessions(user_id, include_deleted=include_deleted)
        return {"sessions": [s.to_dict() for s in sessions], "total": len(sessions)}

    @router.post("/session")
    async def create_session(request: Request):
        body = await _json_body(request)
        session = await _service(request).create_session(
            body.get("sessionId") or "", body.get("userId") or "", body.get("title")
        )
        return {"session": session.to_dict(), "message": "Session created successfully"}

    @router.put("/session")
    async def rename_session(request: Request):
        body = await _json_body(request)
        session = await _service(request).rename_session(body.get("sessionId") or "", body.get("title"))
        return {"session": session.to_dict(), "message": "Session updated successfully"}

    @router.delete("/session")
    async def delete_session(
        request: Request,
        session_id: str = Query("", alias="sessionId"),
        permanent: bool = Query(False),
    ):
        deleted = await _service(request).delete_session(session_id, permanent=permanent)
        if not deleted:
            return _error(404, "Session not found or already deleted")
        kind = "permanently deleted" if permanent else "deleted"
        return {"message": f"Session {kind} successfully"}

    @router.post("/session/restore")
    async def restore_session(request: Request):
        body = await _json_body(request)
        restored = await _service(request).restore_session(body.get("sessionId") or "")
        if not restored:
            return _error(404, "Session not found or not deleted")
        return {"message": "Session restored successfully"}

    return router


def create_app(service: Optional[ChatService] = None, cfg: Optional[Dict[str, Any]] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Ready chat service (tests inject one). When omitted, the
            lifespan builds an AppContext from `cfg` and closes it on shutdown.
        cfg: Merged settings used when `service` is not given.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            app.state.service = service
            yield
            return

        ctx = await AppContext.create(cfg or {})
        app.state.service = ctx.service
        _log.info("Console assistant server starting.")
        try:
            yield
        finally:
            _log.info("Console assistant server shutting down.")
            await ctx.aclose()

    app = FastAPI(
        title="Kube Console Copilot",
        description="Supervisor/worker assistant for the cluster console",
        version="1.0.0",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.service = service

    _install_error_handlers(app)
    app.include_router(build_router())

    @app.get(API_PREFIX + "/health")
    async def health():
        return {"status": "ok"}

    return app
