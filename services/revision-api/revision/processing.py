import asyncio
import logging
import time
from datetime import timedelta
from typing import Awaitable, Callable, Optional, Set

from .editing.annotations.models import AnnotatedImage
from .editing.jobs import JobRecord, JobStore, JobStoreError, JobType
from .editing.markers.converter import to_prompt
from .editing.pipeline.cancellation import CancellationToken
from .editing.pipeline.context import ProcessingContext
from .editing.pipeline.errors import ErrorKind, PipelineError, retry_async
from .editing.pipeline.orchestrator import AIProcessingOrchestrator, new_job_id
from .editing.pipeline.results import Outcome, ProcessingResult

logger = logging.getLogger(__name__)

_ARTIFACT_SUFFIXES = {"png": "png", "jpeg": "jpg", "webp": "webp"}

# Strong references to running jobs so they are not garbage collected mid-flight
_background: Set[asyncio.Task] = set()

Attempt = Callable[[CancellationToken], Awaitable[Outcome[ProcessingResult]]]


def new_job(
    user_id: str,
    image_id: str,
    prompt: str,
    job_type: JobType = JobType.OBJECT_REMOVAL,
    job_id: Optional[str] = None,
) -> JobRecord:
    return JobRecord(id=job_id or new_job_id(), user_id=user_id, image_id=image_id,
                     type=job_type, prompt=prompt)


def annotated_job(user_id: str, image_id: str, annotated: AnnotatedImage) -> JobRecord:
    return new_job(user_id, image_id, to_prompt(annotated))


async def run_job(
    orchestrator: AIProcessingOrchestrator,
    store: JobStore,
    job: JobRecord,
    image_data: bytes,
    context: ProcessingContext,
) -> JobRecord:
    """Runs the pipeline for a stored job inline and returns the settled record."""
    def attempt(token: CancellationToken):
        return orchestrator.process_image(image_data, job.prompt, context, job_id=job.id, token=token)
    return await _run(orchestrator, store, job, attempt)


async def run_annotated_job(
    orchestrator: AIProcessingOrchestrator,
    store: JobStore,
    job: JobRecord,
    annotated: AnnotatedImage,
    context: Optional[ProcessingContext] = None,
) -> JobRecord:
    def attempt(token: CancellationToken):
        return orchestrator.process_annotated_image(annotated, context, job_id=job.id, token=token)
    return await _run(orchestrator, store, job, attempt)


def submit_job(
    orchestrator: AIProcessingOrchestrator,
    store: JobStore,
    job: JobRecord,
    image_data: Optional[bytes] = None,
    context: Optional[ProcessingContext] = None,
    annotated: Optional[AnnotatedImage] = None,
) -> asyncio.Task:
    """Starts a stored job in the background; it can be cancelled by id right away."""
    orchestrator.register(job.id)
    if annotated is not None:
        coro = run_annotated_job(orchestrator, store, job, annotated, context)
    else:
        coro = run_job(orchestrator, store, job, image_data, context or ProcessingContext())
    task = asyncio.create_task(coro)
    _background.add(task)
    task.add_done_callback(_finished)
    logger.info("Submitted job %s for user %s", job.id, job.user_id)
    return task


def _finished(task: asyncio.Task) -> None:
    _background.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Background job crashed: %s", task.exception())


async def _run(
    orchestrator: AIProcessingOrchestrator,
    store: JobStore,
    job: JobRecord,
    attempt: Attempt,
) -> JobRecord:
    config = orchestrator.config
    token = orchestrator.register(job.id)
    started = time.monotonic()
    failure: Optional[PipelineError] = None
    try:
        job = store.update_job(store.get_job(job.user_id, job.id).mark_processing())

        async def once() -> ProcessingResult:
            return (await attempt(token)).unwrap()

        async def sleep(seconds: float) -> None:
            await token.guard(asyncio.sleep(seconds))

        try:
            result = await retry_async(once, max_retries=config.max_retries,
                                       base_delay=timedelta(seconds=config.retry_base_delay), sleep=sleep)
        except PipelineError as err:
            failure = err
            return store.update_job(_settle_failure(job, err))

        elapsed_ms = int((time.monotonic() - started) * 1000)
        fmt = result.image_analysis.format if result.image_analysis else "png"
        metadata = {**result.metadata, "enhanced_prompt": result.enhanced_prompt}
        try:
            path = store.save_artifact(job.user_id, job.id, result.processed_image_data,
                                       suffix=_ARTIFACT_SUFFIXES.get(fmt, "png"))
            settled = store.update_job(job.mark_completed(path.name, elapsed_ms, metadata))
        except JobStoreError as e:
            logger.error("Job %s: could not store result: %s", job.id, e)
            return store.update_job(job.mark_failed(f"Could not store result: {e}",
                                                    {"kind": "storage", "message": str(e)}))
        logger.info("Job %s completed (%d ms)", job.id, elapsed_ms)
        return settled
    finally:
        orchestrator.release(job.id, failure)


def _settle_failure(job: JobRecord, err: PipelineError) -> JobRecord:
    if err.kind == ErrorKind.CANCELLED:
        logger.info("Job %s cancelled", job.id)
        return job.mark_cancelled(err.message)
    logger.warning("Job %s failed: %s", job.id, err.message)
    return job.mark_failed(err.message, err.to_dict())
