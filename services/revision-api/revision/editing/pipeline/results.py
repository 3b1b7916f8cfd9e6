from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from ...utils import dominant_colors_hex, open_image
from .errors import PipelineError

T = TypeVar("T")


class ImageAnalysis(BaseModel):
    width: int
    height: int
    format: str
    file_size: int
    dominant_colors: List[str] = Field(default_factory=list)
    detected_objects: List[str] = Field(default_factory=list)
    quality_score: Optional[float] = None

    model_config = {"frozen": True}

    @classmethod
    def from_bytes(cls, data: bytes) -> Optional["ImageAnalysis"]:
        img = open_image(data)
        if img is None:
            return None
        return cls(
            width=img.width,
            height=img.height,
            format=(img.format or "unknown").lower(),
            file_size=len(data),
            dominant_colors=dominant_colors_hex(img),
        )


class ProcessingResult(BaseModel):
    processed_image_data: bytes
    original_prompt: str
    enhanced_prompt: str
    processing_time: timedelta
    job_id: Optional[str] = None
    image_analysis: Optional[ImageAnalysis] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class ProcessingStage(str, Enum):
    VALIDATING = "validating"
    ANALYZING = "analyzing"
    PROMPT_ENGINEERING = "prompt_engineering"
    AI_PROCESSING = "ai_processing"
    POST_PROCESSING = "post_processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStage.COMPLETED, ProcessingStage.FAILED, ProcessingStage.CANCELLED)


class ProcessingProgress(BaseModel):
    progress: float = Field(ge=0.0, le=1.0)
    stage: ProcessingStage
    message: str = ""
    estimated_time_remaining: Optional[timedelta] = None

    model_config = {"frozen": True}


class Outcome(BaseModel, Generic[T]):
    """Success/failure result returned by every pipeline operation."""
    success: bool
    value: Optional[T] = None
    error: Optional[PipelineError] = None

    model_config = {"arbitrary_types_allowed": True}

    @classmethod
    def ok(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: PipelineError) -> "Outcome[T]":
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        if not self.success:
            raise self.error
        return self.value
