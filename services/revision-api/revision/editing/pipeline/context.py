from enum import Enum
from typing import Optional, Sequence, Tuple

from pydantic import BaseModel, model_validator

from ..markers.converter import Marker


class ProcessingType(str, Enum):
    ENHANCE = "enhance"
    ARTISTIC = "artistic"
    RESTORATION = "restoration"
    COLOR_CORRECTION = "color_correction"
    OBJECT_REMOVAL = "object_removal"
    BACKGROUND_CHANGE = "background_change"
    FACE_EDIT = "face_edit"
    CUSTOM = "custom"


class QualityLevel(str, Enum):
    DRAFT = "draft"
    STANDARD = "standard"
    HIGH = "high"
    PROFESSIONAL = "professional"


class PerformancePriority(str, Enum):
    SPEED = "speed"
    BALANCED = "balanced"
    QUALITY = "quality"


class ProcessingContext(BaseModel):
    """
    Per-request configuration of the editing pipeline.

    prompt_system_instructions replace the analysis model's default system
    prompt; edit_system_instructions replace the image model's default
    editing instructions.
    """
    processing_type: ProcessingType = ProcessingType.OBJECT_REMOVAL
    quality_level: QualityLevel = QualityLevel.STANDARD
    performance_priority: PerformancePriority = PerformancePriority.BALANCED
    markers: Tuple[Marker, ...] = ()
    custom_instructions: Optional[str] = None
    target_format: Optional[str] = None
    prompt_system_instructions: Optional[str] = None
    edit_system_instructions: Optional[str] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _custom_needs_instructions(self) -> "ProcessingContext":
        if self.processing_type == ProcessingType.CUSTOM:
            if not self.custom_instructions or len(self.custom_instructions) < 10:
                raise ValueError("Custom processing type requires detailed instructions (min 10 characters)")
        return self

    def with_markers(self, markers: Sequence[Marker]) -> "ProcessingContext":
        return self.model_copy(update={"markers": tuple(markers)})

    @classmethod
    def quick_enhance(cls) -> "ProcessingContext":
        return cls(
            processing_type=ProcessingType.ENHANCE,
            quality_level=QualityLevel.STANDARD,
            performance_priority=PerformancePriority.SPEED,
        )

    @classmethod
    def professional_edit(cls, processing_type: ProcessingType, markers: Sequence[Marker] = ()) -> "ProcessingContext":
        return cls(
            processing_type=processing_type,
            quality_level=QualityLevel.PROFESSIONAL,
            performance_priority=PerformancePriority.QUALITY,
            markers=tuple(markers),
        )

    @classmethod
    def artistic_transform(cls, quality: QualityLevel = QualityLevel.HIGH, style: Optional[str] = None) -> "ProcessingContext":
        return cls(
            processing_type=ProcessingType.ARTISTIC,
            quality_level=quality,
            performance_priority=PerformancePriority.BALANCED,
            custom_instructions=style,
        )

    @classmethod
    def restoration(cls) -> "ProcessingContext":
        return cls(
            processing_type=ProcessingType.RESTORATION,
            quality_level=QualityLevel.HIGH,
            performance_priority=PerformancePriority.QUALITY,
        )

    @classmethod
    def object_removal(cls, markers: Sequence[Marker] = ()) -> "ProcessingContext":
        return cls(processing_type=ProcessingType.OBJECT_REMOVAL, markers=tuple(markers))
