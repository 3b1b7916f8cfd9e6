"""
AI Processing Orchestrator

Runs the two-stage object-removal pipeline for one request:

    Validating -> GeneratingPrompt -> ApplyingEdit -> Completed
                        (any state) -> Failed / Cancelled

GeneratingPrompt only runs when the context carries markers; otherwise the
user's prompt goes to the image model verbatim. Every public operation
returns an Outcome; remote faults are classified into PipelineError and are
never retried here (see errors.retry_async for the caller-side policy).
"""
import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Set, TypeVar

from ...config import AIConfig, get_config
from ...utils import probe_image_bytes
from ..annotations.models import AnnotatedImage
from ..markers.converter import to_markers, to_prompt
from .cancellation import CancellationToken
from .context import ProcessingContext
from .errors import ErrorKind, PipelineError, classify, validation_error
from .results import ImageAnalysis, Outcome, ProcessingProgress, ProcessingResult, ProcessingStage
from .service import GenerativeImageService

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_FINISHED_CHANNELS = 256


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class _ProgressChannel:
    """Fan-out of progress updates for one job; remembers the latest update."""

    def __init__(self):
        self.started = time.monotonic()
        self.latest: Optional[ProcessingProgress] = None
        self._queues: List[asyncio.Queue] = []

    def publish(self, stage: ProcessingStage, progress: float, message: str) -> None:
        eta = None
        if 0.0 < progress < 1.0 and not stage.is_terminal:
            elapsed = time.monotonic() - self.started
            eta = timedelta(seconds=elapsed * (1.0 - progress) / progress)
        update = ProcessingProgress(progress=progress, stage=stage, message=message,
                                    estimated_time_remaining=eta)
        self.latest = update
        for q in list(self._queues):
            q.put_nowait(update)

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        if self.latest is not None:
            q.put_nowait(self.latest)
        self._queues.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._queues:
            self._queues.remove(q)


class AIProcessingOrchestrator:
    def __init__(self, service: GenerativeImageService, config: Optional[AIConfig] = None):
        self.service = service
        self.config = config or get_config()
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._pinned: Set[str] = set()
        self._channels: "OrderedDict[str, _ProgressChannel]" = OrderedDict()
        self._outcomes: "OrderedDict[str, Outcome[ProcessingResult]]" = OrderedDict()

    # ─── Public API ────────────────────────────────────────────────
    async def process_image(
        self,
        image_data: bytes,
        user_prompt: str,
        context: ProcessingContext,
        job_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Outcome[ProcessingResult]:
        job_id = job_id or new_job_id()
        token = token or self._tokens.get(job_id) or CancellationToken()
        self._tokens[job_id] = token
        channel = self._channel(job_id)
        started = time.monotonic()

        logger.info("Job %s: processing %d bytes, type=%s, markers=%d",
                    job_id, len(image_data or b""), context.processing_type.value, len(context.markers))
        try:
            channel.publish(ProcessingStage.VALIDATING, 0.05, "Validating input...")
            self._validate_image(image_data)
            self._validate_prompt(user_prompt)

            enhanced_prompt = user_prompt
            if context.markers:
                channel.publish(ProcessingStage.ANALYZING, 0.15, "Analyzing marked areas...")
                if context.prompt_system_instructions:
                    logger.debug("Job %s: using custom prompt system instructions", job_id)
                enhanced_prompt = await self._remote(token, lambda: self.service.generate_editing_prompt(
                    image_data, list(context.markers), context.prompt_system_instructions))
                channel.publish(ProcessingStage.PROMPT_ENGINEERING, 0.4, "Editing prompt ready")
            else:
                logger.info("Job %s: no markers, using the user prompt as-is", job_id)

            token.raise_if_cancelled()
            channel.publish(ProcessingStage.AI_PROCESSING, 0.5, "Generating result...")
            processed = await self._remote(token, lambda: self.service.process_image_with_ai(
                image_data, enhanced_prompt, context.edit_system_instructions))

            channel.publish(ProcessingStage.POST_PROCESSING, 0.9, "Finalizing result...")
            result = ProcessingResult(
                processed_image_data=processed,
                original_prompt=user_prompt,
                enhanced_prompt=enhanced_prompt,
                processing_time=timedelta(seconds=time.monotonic() - started),
                job_id=job_id,
                image_analysis=ImageAnalysis.from_bytes(processed),
                metadata=self._metadata(context),
            )
            channel.publish(ProcessingStage.COMPLETED, 1.0, "Processing complete")
            logger.info("Job %s: completed in %.2fs, %d bytes", job_id,
                        result.processing_time.total_seconds(), len(processed))
            return Outcome.ok(result)

        except Exception as e:
            err = classify(e)
            if job_id in self._pinned and err.retryable:
                # the runner may try again; release() publishes the final stage
                logger.info("Job %s: attempt failed (%s), leaving progress open", job_id, err.kind.value)
            else:
                self._publish_end(channel, err)
            if err.kind in (ErrorKind.VALIDATION, ErrorKind.CANCELLED):
                logger.info("Job %s: %s: %s", job_id, err.kind.value, err.message)
            else:
                logger.error("Job %s: failed (%s): %s", job_id, err.kind.value, e)
            return Outcome.fail(err)
        finally:
            if job_id not in self._pinned:
                self._tokens.pop(job_id, None)
            self._retire(job_id)

    async def process_annotated_image(
        self,
        annotated: AnnotatedImage,
        context: Optional[ProcessingContext] = None,
        job_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Outcome[ProcessingResult]:
        if not annotated.has_annotations:
            return Outcome.fail(validation_error("At least one annotation stroke is required"))
        try:
            image_data = annotated.image_bytes()
        except OSError as e:
            logger.warning("Could not read annotated image: %s", e)
            return Outcome.fail(validation_error("Image data could not be read"))

        markers = to_markers(annotated)
        context = (context or ProcessingContext.object_removal()).with_markers(markers)
        return await self.process_image(image_data, to_prompt(annotated), context, job_id=job_id, token=token)

    async def process_images(
        self,
        images: Sequence[bytes],
        user_prompt: str,
        context: ProcessingContext,
    ) -> Outcome[List[ProcessingResult]]:
        if not images:
            return Outcome.fail(validation_error("No images provided"))
        if len(images) > self.config.max_images_per_request:
            return Outcome.fail(validation_error(
                f"Too many images: {len(images)} (max {self.config.max_images_per_request})"))

        results = []
        for image_data in images:
            outcome = await self.process_image(image_data, user_prompt, context)
            if not outcome.success:
                return Outcome.fail(outcome.error)
            results.append(outcome.value)
        return Outcome.ok(results)

    async def edit_image_with_prompt(
        self,
        image_bytes: bytes,
        editing_prompt: str,
        system_instructions: Optional[str] = None,
    ) -> Outcome[bytes]:
        try:
            self._validate_image(image_bytes)
            self._validate_prompt(editing_prompt)
            edited = await self._remote(
                CancellationToken(),
                lambda: self.service.process_image_with_ai(image_bytes, editing_prompt, system_instructions),
            )
            return Outcome.ok(edited)
        except Exception as e:
            err = classify(e)
            logger.error("Image edit failed (%s): %s", err.kind.value, e)
            return Outcome.fail(err)

    def submit(
        self,
        image_data: bytes,
        user_prompt: str,
        context: ProcessingContext,
        job_id: Optional[str] = None,
    ) -> str:
        """Starts process_image as a background task and returns its job id."""
        job_id = job_id or new_job_id()
        token = CancellationToken()
        self._tokens[job_id] = token
        self._channel(job_id)
        task = asyncio.create_task(
            self.process_image(image_data, user_prompt, context, job_id=job_id, token=token))
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._task_done(job_id, t))
        return job_id

    async def wait(self, job_id: str) -> Outcome[ProcessingResult]:
        task = self._tasks.get(job_id)
        if task is not None:
            outcome = await task
            self._outcomes.pop(job_id, None)
            return outcome
        outcome = self._outcomes.pop(job_id, None)
        if outcome is None:
            return Outcome.fail(validation_error(f"Unknown job: {job_id}"))
        return outcome

    def register(self, job_id: str) -> CancellationToken:
        """
        Pins a job id to one token so it stays cancellable across several
        process_image attempts, until release() is called.
        """
        token = self._tokens.setdefault(job_id, CancellationToken())
        self._pinned.add(job_id)
        self._channel(job_id)
        return token

    def release(self, job_id: str, error: Optional[PipelineError] = None) -> None:
        """
        Unpins a job. If its progress has not reached a terminal stage yet
        (the last attempt failed retryably, or the runner stopped between
        attempts), ends it with `error`.
        """
        self._pinned.discard(job_id)
        self._tokens.pop(job_id, None)
        channel = self._channels.get(job_id)
        if channel is None:
            return
        if channel.latest is None or not channel.latest.stage.is_terminal:
            self._publish_end(channel, error or PipelineError(ErrorKind.GENERAL, "Processing stopped"))
        self._retire(job_id)

    async def cancel_processing(self, job_id: str) -> Outcome[None]:
        token = self._tokens.get(job_id)
        if token is None:
            logger.debug("Cancel for %s ignored: job not running", job_id)
            return Outcome.ok()
        token.cancel("Cancelled by user")
        logger.info("Job %s: cancellation requested", job_id)
        return Outcome.ok()

    def is_running(self, job_id: str) -> bool:
        return job_id in self._tokens

    async def watch_progress(self, job_id: str) -> AsyncIterator[ProcessingProgress]:
        """Ends right away for a job that was never started or has been evicted."""
        channel = self._channels.get(job_id)
        if channel is None:
            logger.debug("No progress for %s: job unknown", job_id)
            return
        queue = channel.subscribe()
        try:
            while True:
                update = await queue.get()
                yield update
                if update.stage.is_terminal:
                    return
        finally:
            channel.unsubscribe(queue)

    async def is_service_available(self) -> bool:
        try:
            await asyncio.wait_for(self.service.check_content_safety(probe_image_bytes()),
                                   timeout=self.config.request_timeout)
            return True
        except Exception as e:
            logger.warning("AI service unavailable: %s", e)
            return False

    async def validate_image_safety(self, image_bytes: bytes) -> Outcome[bool]:
        try:
            self._validate_image(image_bytes)
            is_safe = await asyncio.wait_for(self.service.check_content_safety(image_bytes),
                                             timeout=self.config.request_timeout)
            return Outcome.ok(is_safe)
        except Exception as e:
            err = classify(e)
            logger.error("Safety validation failed (%s): %s", err.kind.value, e)
            return Outcome.fail(err)

    # ─── Internal helpers ──────────────────────────────────────────
    def _validate_image(self, image_data: Optional[bytes]) -> None:
        if not image_data:
            raise validation_error("Image data is empty")
        if len(image_data) > self.config.max_image_size_bytes:
            size_mb = len(image_data) / (1024 * 1024)
            raise validation_error(
                f"Image too large: {size_mb:.1f}MB (max {self.config.max_image_size_mb:g}MB)")

    @staticmethod
    def _validate_prompt(prompt: Optional[str]) -> None:
        if prompt is None or not prompt.strip():
            raise validation_error("Prompt is empty")

    async def _remote(self, token: CancellationToken, call: Callable[[], Awaitable[T]]) -> T:
        token.raise_if_cancelled()
        return await token.guard(asyncio.wait_for(call(), timeout=self.config.request_timeout))

    @staticmethod
    def _publish_end(channel: _ProgressChannel, err: PipelineError) -> None:
        stage = ProcessingStage.CANCELLED if err.kind == ErrorKind.CANCELLED else ProcessingStage.FAILED
        last = channel.latest.progress if channel.latest else 0.0
        channel.publish(stage, last, err.message)

    def _task_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is not task:
            return
        del self._tasks[job_id]
        if not task.cancelled() and task.exception() is None:
            self._outcomes[job_id] = task.result()
            while len(self._outcomes) > _MAX_FINISHED_CHANNELS:
                self._outcomes.popitem(last=False)

    def _metadata(self, context: ProcessingContext) -> dict:
        return {
            "processing_type": context.processing_type.value,
            "quality_level": context.quality_level.value,
            "performance_priority": context.performance_priority.value,
            "markers_count": len(context.markers),
            "ai_model": self.config.ai_model,
            "image_model": self.config.image_model,
            "sampling": {
                "temperature": self.config.temperature,
                "top_k": self.config.top_k,
                "top_p": self.config.top_p,
            },
            "timestamp": datetime.now().isoformat(),
        }

    def _channel(self, job_id: str) -> _ProgressChannel:
        channel = self._channels.get(job_id)
        if channel is None:
            channel = self._channels[job_id] = _ProgressChannel()
        return channel

    def _retire(self, job_id: str) -> None:
        # Finished channels stay readable for late watchers, oldest evicted first
        self._channels.move_to_end(job_id)
        while len(self._channels) > _MAX_FINISHED_CHANNELS:
            oldest, channel = next(iter(self._channels.items()))
            if oldest in self._tokens or (channel.latest and not channel.latest.stage.is_terminal):
                break
            self._channels.popitem(last=False)
