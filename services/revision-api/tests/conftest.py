import asyncio
import io

import pytest
from PIL import Image

from revision.config import AIConfig
from revision.editing.annotations.models import AnnotatedImage, AnnotationPoint, AnnotationStroke
from revision.editing.jobs import JobStore
from revision.editing.pipeline.orchestrator import AIProcessingOrchestrator


def png_bytes(color=(200, 30, 30), size=(8, 8)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def stroke(stroke_id, *points) -> AnnotationStroke:
    return AnnotationStroke(id=stroke_id, points=tuple(AnnotationPoint(x=x, y=y) for x, y in points))


class StubImageService:
    """In-memory GenerativeImageService that records every call."""

    def __init__(self, editing_prompt="Remove the bench and extend the lawn", result=None,
                 analyze_error=None, edit_error=None, safety_error=None, safe=True, delay=0.0):
        self.editing_prompt = editing_prompt
        self.result = result if result is not None else png_bytes((20, 120, 40))
        self.analyze_error = analyze_error
        self.edit_error = edit_error
        self.safety_error = safety_error
        self.safe = safe
        self.delay = delay
        self.calls = {"analyze": 0, "edit": 0, "safety": 0}
        self.last_markers = None
        self.last_prompt_instructions = None
        self.last_edit_prompt = None
        self.last_edit_instructions = None

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def generate_editing_prompt(self, image_bytes, markers, system_instructions=None):
        self.calls["analyze"] += 1
        self.last_markers = list(markers)
        self.last_prompt_instructions = system_instructions
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.analyze_error is not None:
            raise self.analyze_error
        return self.editing_prompt

    async def process_image_with_ai(self, image_bytes, editing_prompt, system_instructions=None):
        self.calls["edit"] += 1
        self.last_edit_prompt = editing_prompt
        self.last_edit_instructions = system_instructions
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.edit_error is not None:
            raise self.edit_error
        return self.result

    async def check_content_safety(self, image_bytes):
        self.calls["safety"] += 1
        if self.safety_error is not None:
            raise self.safety_error
        return self.safe


@pytest.fixture
def config(tmp_path):
    return AIConfig(max_retries=0, retry_base_delay=0.001, request_timeout=5.0,
                    max_image_size_mb=1.0, data_dir=tmp_path)


@pytest.fixture
def service():
    return StubImageService()


@pytest.fixture
def orchestrator(service, config):
    return AIProcessingOrchestrator(service, config)


@pytest.fixture
def store(tmp_path):
    return JobStore(tmp_path / "store")


@pytest.fixture
def image():
    return png_bytes()


@pytest.fixture
def annotated(image):
    return AnnotatedImage.from_bytes(
        image,
        [stroke("s1", (0.1, 0.2), (0.3, 0.4)), stroke("s2", (0.8, 0.8))],
        instructions="remove trees",
    )
