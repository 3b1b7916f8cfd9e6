import base64
import binascii
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from ..processing import annotated_job, new_job, submit_job
from ..session import SessionMonitor
from ..utils import decode_base64_image
from .annotations.models import AnnotatedImage, AnnotationStroke
from .jobs import ID_PATTERN, JobNotFoundError, JobRecord, JobStatus, JobStore
from .markers.converter import DEFAULT_BASE_PROMPT, to_markers, to_prompt
from .pipeline.context import ProcessingContext
from .pipeline.errors import ErrorKind, PipelineError, retry_delay, validation_error
from .pipeline.orchestrator import AIProcessingOrchestrator
from .pipeline.results import ProcessingResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/edit", tags=["edit"])


# --- Dependencies (wired on app.state by main) ---

def get_orchestrator(request: Request) -> AIProcessingOrchestrator:
    state = request.app.state
    if getattr(state, "orchestrator", None) is None:
        state.orchestrator = AIProcessingOrchestrator(state.registry.get_image_service(), state.registry.config)
    return state.orchestrator


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_session(request: Request) -> SessionMonitor:
    return request.app.state.session


def pipeline_error_response(err: PipelineError) -> JSONResponse:
    status = 422 if err.kind == ErrorKind.VALIDATION else 502
    body = {
        **err.to_dict(),
        "retryable": err.retryable,
        "retry_after_seconds": retry_delay(err, 0).total_seconds(),
    }
    return JSONResponse({"error": body}, status_code=status)


# --- Request models ---

class MarkersRequest(BaseModel):
    strokes: List[AnnotationStroke]
    instructions: Optional[str] = None
    base_prompt: str = DEFAULT_BASE_PROMPT


class ProcessRequest(BaseModel):
    image: str  # Base64 data URL
    prompt: str
    context: ProcessingContext = Field(default_factory=ProcessingContext)
    user_id: str = Field("anonymous", pattern=ID_PATTERN)
    image_id: Optional[str] = None
    background: bool = False


class AnnotatedRequest(BaseModel):
    image: str  # Base64 data URL
    strokes: List[AnnotationStroke]
    instructions: Optional[str] = None
    context: Optional[ProcessingContext] = None
    user_id: str = Field("anonymous", pattern=ID_PATTERN)
    image_id: Optional[str] = None
    background: bool = False


class SafetyRequest(BaseModel):
    image: str  # Base64 data URL


class SessionStartRequest(BaseModel):
    user_id: str


# --- Helpers ---

def _decode(image: str) -> bytes:
    try:
        return decode_base64_image(image)
    except (binascii.Error, ValueError):
        raise validation_error("Image is not valid base64")


def _result_payload(result: ProcessingResult) -> dict:
    return {
        "job_id": result.job_id,
        "status": JobStatus.COMPLETED.value,
        "image": base64.b64encode(result.processed_image_data).decode("utf-8"),
        "original_prompt": result.original_prompt,
        "enhanced_prompt": result.enhanced_prompt,
        "processing_time_ms": int(result.processing_time.total_seconds() * 1000),
        "image_analysis": result.image_analysis.model_dump() if result.image_analysis else None,
        "metadata": result.metadata,
    }


def _job_payload(job: JobRecord) -> dict:
    data = job.model_dump(mode="json")
    data["result_url"] = f"{router.prefix}/jobs/{job.user_id}/{job.id}"
    if job.status == JobStatus.COMPLETED and job.result:
        data["image_url"] = f"{router.prefix}/jobs/{job.user_id}/{job.id}/image"
    return data


def _accepted(job: JobRecord) -> JSONResponse:
    return JSONResponse({
        "request_id": job.id,
        "status": JobStatus.PENDING.value,
        "result_url": f"{router.prefix}/jobs/{job.user_id}/{job.id}",
    }, status_code=202)


# --- Endpoints ---

@router.post("/markers")
async def convert_markers(request: MarkersRequest):
    """
    Converts drawn strokes into AI markers and the removal prompt, without
    calling any model.
    """
    annotated = AnnotatedImage.from_bytes(b"", request.strokes, request.instructions)
    markers = to_markers(annotated)
    return {
        "markers": [m.to_ai_map() for m in markers],
        "prompt": to_prompt(annotated, request.base_prompt),
    }


@router.post("/process")
async def process_image(
    request: ProcessRequest,
    orchestrator: AIProcessingOrchestrator = Depends(get_orchestrator),
    store: JobStore = Depends(get_store),
):
    image_data = _decode(request.image)
    if request.background:
        job = store.create_job(new_job(request.user_id, request.image_id or "upload", request.prompt))
        submit_job(orchestrator, store, job, image_data, request.context)
        return _accepted(job)

    outcome = await orchestrator.process_image(image_data, request.prompt, request.context)
    return _result_payload(outcome.unwrap())


@router.post("/annotated")
async def process_annotated(
    request: AnnotatedRequest,
    orchestrator: AIProcessingOrchestrator = Depends(get_orchestrator),
    store: JobStore = Depends(get_store),
):
    annotated = AnnotatedImage.from_bytes(_decode(request.image), request.strokes, request.instructions)
    if request.background:
        if not annotated.has_annotations:
            raise validation_error("At least one annotation stroke is required")
        job = store.create_job(annotated_job(request.user_id, request.image_id or "upload", annotated))
        submit_job(orchestrator, store, job, context=request.context, annotated=annotated)
        return _accepted(job)

    outcome = await orchestrator.process_annotated_image(annotated, request.context)
    return _result_payload(outcome.unwrap())


@router.get("/jobs/{user_id}")
def list_jobs(user_id: str = Path(pattern=ID_PATTERN), store: JobStore = Depends(get_store)):
    return {"jobs": [_job_payload(j) for j in store.list_user_jobs(user_id)]}


@router.get("/jobs/{user_id}/{job_id}")
def get_job(
    user_id: str = Path(pattern=ID_PATTERN),
    job_id: str = Path(pattern=ID_PATTERN),
    store: JobStore = Depends(get_store),
):
    try:
        return _job_payload(store.get_job(user_id, job_id))
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")


@router.get("/jobs/{user_id}/{job_id}/image")
def get_job_image(
    user_id: str = Path(pattern=ID_PATTERN),
    job_id: str = Path(pattern=ID_PATTERN),
    store: JobStore = Depends(get_store),
):
    try:
        job = store.get_job(user_id, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    if job.status != JobStatus.COMPLETED or not job.result:
        raise HTTPException(status_code=409, detail=f"Job {job_id} is {job.status.value}")
    return FileResponse(store.job_dir(user_id) / job.result)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, orchestrator: AIProcessingOrchestrator = Depends(get_orchestrator)):
    running = orchestrator.is_running(job_id)
    (await orchestrator.cancel_processing(job_id)).unwrap()
    return {"job_id": job_id, "status": "cancelling" if running else "not_running"}


@router.post("/safety")
async def check_safety(request: SafetyRequest, orchestrator: AIProcessingOrchestrator = Depends(get_orchestrator)):
    outcome = await orchestrator.validate_image_safety(_decode(request.image))
    return {"safe": outcome.unwrap()}


@router.get("/session")
def session_status(session: SessionMonitor = Depends(get_session)):
    state = session.poll()
    remaining = session.remaining()
    return {
        "user_id": session.user_id,
        "state": state.value if state else None,
        "message": state.message if state else None,
        "remaining_seconds": remaining.total_seconds() if remaining else None,
    }


@router.post("/session/start")
def session_start(request: SessionStartRequest, session: SessionMonitor = Depends(get_session)):
    session.start(request.user_id)
    return session_status(session)


@router.post("/session/end")
def session_end(session: SessionMonitor = Depends(get_session)):
    session.end()
    return session_status(session)
