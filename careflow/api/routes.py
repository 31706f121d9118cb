"""
REST API routes for the CareFlow handoff pipeline.
Provides endpoints for note submission, retries, chart questions and events.
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from careflow.core.auth import get_current_user
from careflow.core.config import get_settings
from careflow.core.errors import ChatUnavailableError, NoteNotFoundError, UnrecoverableInputError
from careflow.models.schemas import (
    AskRequest, AskResponse, EmbedRequest, EmbedResponse, NoteReportResponse, NoteResponse,
    NoteState, NoteSubmitResponse, ReportResponse, SourceResponse, TaskResponse, TokenData
)
from careflow.services.handoff import HandoffService
from careflow.services.notifications import ChangeFeed

logger = logging.getLogger(__name__)

# idle clients are checked for disconnection this often
KEEPALIVE_SECONDS = 15.0

# Create routers
notes_router = APIRouter(prefix="/notes", tags=["Notes"])
patients_router = APIRouter(prefix="/patients", tags=["Patients"])
reports_router = APIRouter(prefix="/reports", tags=["Reports"])
events_router = APIRouter(prefix="/events", tags=["Events"])


def get_handoff_service(request: Request) -> HandoffService:
    """The service instance created at startup."""
    service = getattr(request.app.state, "handoff_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up"
        )
    return service


def _not_found(e: NoteNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


# ============================================================================
# Note Routes
# ============================================================================

@notes_router.post("", response_model=NoteSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_note(
    patient_id: str = Form(...),
    duration_seconds: Optional[float] = Form(default=None),
    shift_type: str = Form(default="day"),
    audio: UploadFile = File(...),
    current_user: TokenData = Depends(get_current_user),
    service: HandoffService = Depends(get_handoff_service)
):
    """
    Upload a recorded note. Processing continues in the background;
    follow progress on the events stream or by polling the note.
    """
    data = await audio.read()
    max_bytes = get_settings().storage.max_file_size_mb * 1024 * 1024
    if len(data) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="Recording is too large"
        )

    extension = "webm"
    if audio.filename and "." in audio.filename:
        extension = audio.filename.rsplit(".", 1)[-1].lower()

    try:
        note_id = await service.submit_note(
            patient_id=patient_id,
            author_id=current_user.user_id,
            audio=data,
            duration_seconds=duration_seconds,
            shift_type=shift_type,
            extension=extension,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return NoteSubmitResponse(note_id=note_id, state=NoteState.UPLOADED)


@notes_router.get("/{note_id}", response_model=NoteResponse)
async def get_note(
    note_id: str,
    current_user: TokenData = Depends(get_current_user),
    service: HandoffService = Depends(get_handoff_service)
):
    """Current processing state of a note."""
    try:
        note = await service.get_note(note_id)
    except NoteNotFoundError as e:
        raise _not_found(e)
    return NoteResponse.model_validate(note)


@notes_router.get("/{note_id}/report", response_model=NoteReportResponse)
async def get_note_report(
    note_id: str,
    current_user: TokenData = Depends(get_current_user),
    service: HandoffService = Depends(get_handoff_service)
):
    """Report and tasks extracted from a note."""
    try:
        detail = await service.get_note_detail(note_id)
    except NoteNotFoundError as e:
        raise _not_found(e)

    return NoteReportResponse(
        note=NoteResponse.model_validate(detail.note),
        report=ReportResponse.model_validate(detail.report) if detail.report else None,
        tasks=[TaskResponse.model_validate(t) for t in detail.tasks],
    )


@notes_router.post("/{note_id}/retry", response_model=NoteResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_note(
    note_id: str,
    current_user: TokenData = Depends(get_current_user),
    service: HandoffService = Depends(get_handoff_service)
):
    """
    Retry a failed note from the stage where it stopped.
    Retrying a processed note does nothing.
    """
    try:
        note = await service.retry_note(note_id, wait=False)
    except NoteNotFoundError as e:
        raise _not_found(e)
    except UnrecoverableInputError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    return NoteResponse.model_validate(note)


# ============================================================================
# Patient Chart Q&A Routes
# ============================================================================

@patients_router.post("/{patient_id}/ask", response_model=AskResponse)
async def ask_patient_question(
    patient_id: str,
    body: AskRequest,
    current_user: TokenData = Depends(get_current_user),
    service: HandoffService = Depends(get_handoff_service)
):
    """Answer a question from this patient's handoff reports."""
    try:
        result = await service.ask_patient_question(patient_id, body.question)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ChatUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    return AskResponse(
        answer=result.answer,
        sources=[
            SourceResponse(
                id=s.report_id,
                shift_type=s.shift_type,
                created_at=s.created_at,
                similarity=s.similarity,
            )
            for s in result.sources
        ],
    )


# ============================================================================
# Report Routes
# ============================================================================

@reports_router.post("/embed", response_model=EmbedResponse)
async def embed_reports(
    body: EmbedRequest,
    current_user: TokenData = Depends(get_current_user),
    service: HandoffService = Depends(get_handoff_service)
):
    """Embed one report by id, or every report still missing a vector."""
    if not body.report_id and not body.batch:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide report_id or set batch to true"
        )
    embedded = await service.embed_reports(report_id=None if body.batch else body.report_id)
    return EmbedResponse(embedded=embedded)


# ============================================================================
# Event Routes
# ============================================================================

@events_router.get("")
async def stream_events(
    request: Request,
    patient_id: Optional[str] = Query(default=None),
    current_user: TokenData = Depends(get_current_user),
    service: HandoffService = Depends(get_handoff_service)
):
    """Server-sent events for note state changes and new reports."""
    return StreamingResponse(
        event_stream(request, service.change_feed, patient_id), media_type="text/event-stream"
    )


async def event_stream(
    request: Request,
    change_feed: ChangeFeed,
    patient_id: Optional[str] = None,
    keepalive_seconds: float = KEEPALIVE_SECONDS,
):
    """Yield SSE frames until the client goes away, with a comment frame on quiet periods."""
    async with change_feed.subscribe(patient_id) as subscription:
        yield ": connected\n\n"
        while not await request.is_disconnected():
            try:
                event = await subscription.get(timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            payload = json.dumps(event.to_dict(), default=str)
            yield f"event: {event.table}.{event.event}\ndata: {payload}\n\n"
