"""
Radiance AI Chain Diagnosis Service - FastAPI Application

Endpoints:
  POST /chain/sessions
  GET  /chain/sessions/{session_id}
  POST /chain/sessions/{session_id}/next
  GET  /chain/sessions/{session_id}/next/stream
  POST /chain/sessions/{session_id}/stages/{stage}
  POST /chain/sessions/{session_id}/retry
  GET  /chain/users/{user_id}/sessions
  POST /chain/run
  GET  /health

The caller's authenticated identity arrives in the `X-User-Id` header.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from agents import MissingPrerequisiteError, orchestrator_agent
from completion_client import CompletionError
from models import (
    ChainDiagnosisSession,
    HealthResponse,
    SessionListResponse,
    SessionResponse,
    StageName,
    StageRunResponse,
    StartSessionResponse,
    UserInput,
)
from session_store import bind_request_user

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _debug_error_enabled() -> bool:
    return (os.getenv("RADIANCE_EXPOSE_ERRORS", "true") or "true").strip().lower() in {
        "1",
        "true",
        "yes",
        "on",
    }


def _error_detail(prefix: str, exc: Exception) -> str:
    if not _debug_error_enabled():
        return prefix
    detail = str(exc).strip() or exc.__class__.__name__
    # Keep payload concise for UI.
    if len(detail) > 500:
        detail = detail[:500] + "..."
    return f"{prefix} {detail}"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


CHAIN_TIMEOUT_SECONDS = max(30.0, _env_float("RADIANCE_CHAIN_TIMEOUT_SECONDS", 1800.0))


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    orchestrator_agent.session_store.initialize()
    yield


app = FastAPI(
    title="Radiance AI Chain Diagnosis Service",
    description="Multi-agent chain diagnosis pipeline over a completion backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _stage_run_response(session: ChainDiagnosisSession, stage: StageName) -> StageRunResponse:
    response = session.response_for(stage)
    return StageRunResponse(
        success=True,
        session_id=session.id,
        stage=stage,
        status=session.status,
        current_step=session.current_step,
        next_stage=session.next_stage,
        response=response.model_dump(mode="json") if response is not None else None,
        warnings=list(session.persistence_warnings),
    )


def _stage_http_error(action: str, session_id: str, exc: Exception) -> HTTPException:
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, KeyError):
        return HTTPException(status_code=404, detail=str(exc).strip("'\""))
    if isinstance(exc, MissingPrerequisiteError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, CompletionError):
        return HTTPException(status_code=502, detail=_error_detail(f"Failed to {action}.", exc))
    logger.exception("Failed to %s for session %s: %s", action, session_id, exc)
    return HTTPException(status_code=500, detail=_error_detail(f"Failed to {action}.", exc))


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        service="radiance-chain-diagnosis",
        session_store_backend=orchestrator_agent.session_store.backend_name,
        completion_base_url=orchestrator_agent.completion_client.base_url,
        timestamp=datetime.now(timezone.utc),
    )


@app.get("/")
async def root() -> dict:
    return {
        "service": "radiance-chain-diagnosis",
        "status": "ok",
        "health": "/health",
        "docs": "/docs",
    }


@app.post("/chain/sessions", response_model=StartSessionResponse)
async def start_session(
    user_input: UserInput,
    x_user_id: Optional[str] = Header(default=None),
) -> StartSessionResponse:
    bind_request_user(x_user_id)
    try:
        session = orchestrator_agent.initialize_session(user_input, user_id=x_user_id)
        msg = "Chain diagnosis session initialized."
        if not user_input.has_report:
            msg = "Chain diagnosis session initialized; no medical report, analyst stage skipped."
        return StartSessionResponse(
            success=True,
            session_id=session.id,
            status=session.status,
            current_step=session.current_step,
            next_stage=session.next_stage,
            warnings=list(session.persistence_warnings),
            message=msg,
        )
    except Exception as exc:
        logger.exception("Failed to start chain diagnosis session: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to start session.", exc),
        ) from exc


@app.get("/chain/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    x_user_id: Optional[str] = Header(default=None),
) -> SessionResponse:
    bind_request_user(x_user_id)
    session = orchestrator_agent.get_session(session_id)
    if session is None or not orchestrator_agent.can_read(session):
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}.")
    return SessionResponse(success=True, session=session)


@app.get("/chain/users/{user_id}/sessions", response_model=SessionListResponse)
async def list_user_sessions(
    user_id: str,
    x_user_id: Optional[str] = Header(default=None),
) -> SessionListResponse:
    bind_request_user(x_user_id)
    caller = orchestrator_agent.session_store.current_user_id()
    if caller is not None and caller != user_id:
        raise HTTPException(status_code=403, detail="Sessions can only be listed by their owner.")
    sessions = orchestrator_agent.list_sessions(user_id)
    return SessionListResponse(success=True, user_id=user_id, sessions=sessions)


@app.post("/chain/sessions/{session_id}/next", response_model=StageRunResponse)
async def run_next_stage(
    session_id: str,
    x_user_id: Optional[str] = Header(default=None),
) -> StageRunResponse:
    bind_request_user(x_user_id)
    try:
        session = orchestrator_agent.get_session(session_id)
        if session is None:
            raise KeyError(f"Session not found: {session_id}.")
        stage = session.next_stage
        if stage is None:
            raise ValueError(f"Session {session_id} has already completed all stages.")
        session = await orchestrator_agent.run_next_stage(session_id, streaming=False)
        return _stage_run_response(session, stage)
    except Exception as exc:
        raise _stage_http_error("run next stage", session_id, exc) from exc


@app.post("/chain/sessions/{session_id}/stages/{stage}", response_model=StageRunResponse)
async def run_stage(
    session_id: str,
    stage: StageName,
    x_user_id: Optional[str] = Header(default=None),
) -> StageRunResponse:
    bind_request_user(x_user_id)
    try:
        await orchestrator_agent.run_stage(session_id, stage, streaming=False)
        session = orchestrator_agent.get_session(session_id)
        return _stage_run_response(session, stage)
    except Exception as exc:
        raise _stage_http_error(f"run {stage.value}", session_id, exc) from exc


@app.post("/chain/sessions/{session_id}/retry", response_model=StageRunResponse)
async def retry_stage(
    session_id: str,
    x_user_id: Optional[str] = Header(default=None),
) -> StageRunResponse:
    bind_request_user(x_user_id)
    try:
        session = orchestrator_agent.get_session(session_id)
        if session is None:
            raise KeyError(f"Session not found: {session_id}.")
        stage = session.next_stage
        session = await orchestrator_agent.retry_stage(session_id, streaming=False)
        return _stage_run_response(session, stage)
    except Exception as exc:
        raise _stage_http_error("retry stage", session_id, exc) from exc


@app.get("/chain/sessions/{session_id}/next/stream")
async def stream_next_stage(
    session_id: str,
    x_user_id: Optional[str] = Header(default=None),
) -> StreamingResponse:
    session = orchestrator_agent.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}.")
    if session.next_stage is None:
        raise HTTPException(status_code=400, detail=f"Session {session_id} has already completed all stages.")
    stage = session.next_stage

    async def _events() -> AsyncIterator[str]:
        bind_request_user(x_user_id)
        try:
            async for chunk in orchestrator_agent.stream_next_stage(session_id):
                yield f"data: {chunk.model_dump_json()}\n\n"
        except Exception as exc:
            logger.warning("Streamed stage %s failed for session %s: %s", stage.value, session_id, exc)
        final = {
            "stage": stage.value,
            "status": session.status.value,
            "current_step": session.current_step,
            "error_message": session.error_message,
        }
        yield f"event: session\ndata: {json.dumps(final)}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(_events(), media_type="text/event-stream")


@app.post("/chain/run", response_model=SessionResponse)
async def run_full_chain(
    user_input: UserInput,
    x_user_id: Optional[str] = Header(default=None),
) -> SessionResponse:
    bind_request_user(x_user_id)
    try:
        session = await asyncio.wait_for(
            orchestrator_agent.run_full_chain(user_input, user_id=x_user_id),
            timeout=CHAIN_TIMEOUT_SECONDS,
        )
        return SessionResponse(success=True, session=session)
    except asyncio.TimeoutError as exc:
        logger.error("Full chain timed out after %.1fs", CHAIN_TIMEOUT_SECONDS)
        raise HTTPException(
            status_code=504,
            detail=f"Failed to run chain diagnosis. Timed out after {int(CHAIN_TIMEOUT_SECONDS)}s.",
        ) from exc
    except Exception as exc:
        logger.exception("Failed to run chain diagnosis: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to run chain diagnosis.", exc),
        ) from exc
