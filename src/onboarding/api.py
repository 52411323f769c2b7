"""
Onboarding API Endpoints.

FastAPI router exposing the onboarding orchestrator to a client app.
One orchestrator per user, kept in-process (least recently used sessions
are closed past API_MAX_SESSIONS) and backed by the configured progress
store, so a restarted server resumes from the last save. While the app
runs, `session_lifespan` retries failed saves on the autosave interval.

Voice capture happens on the client; finalized transcripts are posted to
/voice/transcript and go through the same pipeline as local recordings.
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from nutriflow.config import settings
from onboarding.catalog import get_sections
from onboarding.errors import AnswerValidationError
from onboarding.orchestrator import OnboardingOrchestrator, build_orchestrator
from onboarding.progress import build_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/onboarding", tags=["onboarding"])

_sessions: OrderedDict[str, OnboardingOrchestrator] = OrderedDict()


# =============================================================================
# Auth
# =============================================================================


async def get_user_id(x_user_id: str | None = Header(None)) -> str:
    """User identity is supplied by the gateway in front of this service."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


# =============================================================================
# Request/Response Models
# =============================================================================


class AnswerRequest(BaseModel):
    question_id: str
    value: Any = None


class ToggleRequest(BaseModel):
    question_id: str
    value: str


class DetailRequest(BaseModel):
    question_id: str
    text: str = ""


class TranscriptRequest(BaseModel):
    transcript: str = Field(default="", max_length=5000)


class StepResponse(BaseModel):
    result: str
    state: dict


class VoiceResponse(BaseModel):
    outcome: str
    question_id: str | None = None
    errors: dict[str, str] = Field(default_factory=dict)
    state: dict


# =============================================================================
# Session Helpers
# =============================================================================


async def get_session(user_id: str) -> OnboardingOrchestrator:
    """Existing orchestrator for the user, or a freshly started one."""
    orchestrator = _sessions.get(user_id)
    if orchestrator is not None:
        _sessions.move_to_end(user_id)
        return orchestrator

    orchestrator = build_orchestrator(user_id)
    orchestrator.start()
    _sessions[user_id] = orchestrator
    logger.info(f"Onboarding session opened for {user_id}")

    while len(_sessions) > settings.api_max_sessions:
        evicted_id, evicted = _sessions.popitem(last=False)
        logger.info(f"Closing idle onboarding session for {evicted_id}")
        await evicted.aclose()
    return orchestrator


async def close_session(user_id: str) -> None:
    orchestrator = _sessions.pop(user_id, None)
    if orchestrator is not None:
        await orchestrator.aclose()


async def close_sessions() -> None:
    """Flush and close every open session."""
    while _sessions:
        _, orchestrator = _sessions.popitem(last=False)
        await orchestrator.aclose()


def clear_sessions() -> None:
    _sessions.clear()


async def autosave_sessions(interval: float) -> None:
    """Retry failed progress saves for every open session until cancelled."""
    while True:
        await asyncio.sleep(interval)
        for orchestrator in list(_sessions.values()):
            await orchestrator.store.autosave_tick()


@asynccontextmanager
async def session_lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Run the autosave sweep while the app serves; flush sessions on shutdown."""
    task = asyncio.create_task(autosave_sessions(settings.autosave_interval_seconds))
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await close_sessions()


def _step(orchestrator: OnboardingOrchestrator, action, *args) -> StepResponse:
    try:
        result = action(*args)
    except AnswerValidationError as e:
        raise HTTPException(status_code=400, detail={"errors": e.errors})
    except KeyError as e:
        raise HTTPException(status_code=400, detail=str(e).strip("'\""))
    return StepResponse(result=result.value, state=orchestrator.snapshot())


# =============================================================================
# Endpoints: Catalog and State
# =============================================================================


@router.get("/sections")
async def list_sections() -> dict:
    """Section and question definitions for rendering."""
    return {"sections": [section.to_dict() for section in get_sections()]}


@router.get("/state")
async def get_state(user_id: str = Depends(get_user_id)) -> dict:
    """Current progress, active question and errors."""
    orchestrator = await get_session(user_id)
    state = orchestrator.snapshot()
    state["responses"] = orchestrator.final_responses()
    return state


@router.post("/reset")
async def reset_onboarding(user_id: str = Depends(get_user_id)) -> dict:
    """Discard saved progress and start over."""
    await close_session(user_id)
    build_store(user_id).reset()

    logger.info(f"Onboarding reset for {user_id}")
    return (await get_session(user_id)).snapshot()


# =============================================================================
# Endpoints: Answers
# =============================================================================


@router.post("/answer", response_model=StepResponse)
async def submit_answer(request: AnswerRequest, user_id: str = Depends(get_user_id)) -> StepResponse:
    orchestrator = await get_session(user_id)
    return _step(orchestrator, orchestrator.answer, request.question_id, request.value)


@router.post("/toggle", response_model=StepResponse)
async def toggle_option(request: ToggleRequest, user_id: str = Depends(get_user_id)) -> StepResponse:
    orchestrator = await get_session(user_id)
    return _step(orchestrator, orchestrator.toggle, request.question_id, request.value)


@router.post("/detail", response_model=StepResponse)
async def submit_detail(request: DetailRequest, user_id: str = Depends(get_user_id)) -> StepResponse:
    orchestrator = await get_session(user_id)
    return _step(orchestrator, orchestrator.detail, request.question_id, request.text)


# =============================================================================
# Endpoints: Navigation
# =============================================================================


@router.post("/next", response_model=StepResponse)
async def next_step(user_id: str = Depends(get_user_id)) -> StepResponse:
    orchestrator = await get_session(user_id)
    return _step(orchestrator, orchestrator.next)


@router.post("/previous", response_model=StepResponse)
async def previous_step(user_id: str = Depends(get_user_id)) -> StepResponse:
    orchestrator = await get_session(user_id)
    moved = orchestrator.previous()
    return StepResponse(result="moved" if moved else "blocked", state=orchestrator.snapshot())


# =============================================================================
# Endpoints: Voice
# =============================================================================


@router.post("/voice/transcript", response_model=VoiceResponse)
async def submit_transcript(request: TranscriptRequest, user_id: str = Depends(get_user_id)) -> VoiceResponse:
    """Interpret a client-side transcript for the active question."""
    orchestrator = await get_session(user_id)
    try:
        result = await orchestrator.handle_transcript(request.transcript)
    except AnswerValidationError as e:
        raise HTTPException(status_code=400, detail={"errors": e.errors})

    return VoiceResponse(
        outcome=result.outcome.value,
        question_id=result.question_id,
        errors=result.errors,
        state=orchestrator.snapshot(),
    )
