import os
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import get_config
from .editing.api import get_orchestrator, pipeline_error_response, router as edit_router
from .editing.jobs import JobStore, JobStoreError
from .editing.pipeline.errors import PipelineError
from .models_loader import ClientRegistry
from .session import SessionMonitor

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

config = get_config()

app = FastAPI(title="Revision Image Editing API")
app.include_router(edit_router)

app.state.registry = ClientRegistry(config)
app.state.orchestrator = None  # built on first use, needs OPENAI_API_KEY
app.state.store = JobStore(config.data_dir)
app.state.session = SessionMonitor()


@app.middleware("http")
async def record_session_activity(request: Request, call_next):
    request.app.state.session.record_activity()
    return await call_next(request)


@app.exception_handler(PipelineError)
async def handle_pipeline_error(request: Request, exc: PipelineError):
    return pipeline_error_response(exc)


@app.exception_handler(JobStoreError)
async def handle_store_error(request: Request, exc: JobStoreError):
    logging.getLogger(__name__).error("Job store failure: %s", exc)
    return JSONResponse({"error": {"kind": "storage", "message": str(exc)}}, status_code=500)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ai")
async def health_ai(request: Request):
    try:
        orchestrator = get_orchestrator(request)
    except PipelineError as e:
        return {"status": "unavailable", "reason": e.message}
    available = await orchestrator.is_service_available()
    return {
        "status": "ok" if available else "unavailable",
        "ai_model": orchestrator.config.ai_model,
        "image_model": orchestrator.config.image_model,
    }
