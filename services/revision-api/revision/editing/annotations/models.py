from datetime import datetime
from pathlib import Path
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field


class AnnotationPoint(BaseModel):
    x: float  # 0..1, normalized to image width
    y: float  # 0..1, normalized to image height
    pressure: float = 1.0

    model_config = {"frozen": True}

    def to_absolute(self, image_width: float, image_height: float) -> "AnnotationPoint":
        return AnnotationPoint(x=self.x * image_width, y=self.y * image_height, pressure=self.pressure)

    @classmethod
    def from_absolute(
        cls,
        absolute_x: float,
        absolute_y: float,
        image_width: float,
        image_height: float,
        pressure: float = 1.0,
    ) -> "AnnotationPoint":
        return cls(x=absolute_x / image_width, y=absolute_y / image_height, pressure=pressure)


class AnnotationStroke(BaseModel):
    """A continuous path the user drew over an object to remove."""
    id: str
    points: Tuple[AnnotationPoint, ...] = ()
    color: str = "#ff0000"
    width: float = 4.0
    timestamp: datetime = Field(default_factory=datetime.now)

    model_config = {"frozen": True}

    def add_point(self, point: AnnotationPoint) -> "AnnotationStroke":
        return self.model_copy(update={"points": self.points + (point,)})


class BytesPayload(BaseModel):
    kind: Literal["bytes"] = "bytes"
    data: bytes

    model_config = {"frozen": True}

    def read_bytes(self) -> bytes:
        return self.data


class PathPayload(BaseModel):
    kind: Literal["path"] = "path"
    path: Path

    model_config = {"frozen": True}

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


ImagePayload = Annotated[Union[BytesPayload, PathPayload], Field(discriminator="kind")]


class AnnotatedImage(BaseModel):
    original_image: ImagePayload
    annotations: Tuple[AnnotationStroke, ...] = ()
    created_at: datetime = Field(default_factory=datetime.now)
    instructions: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def has_annotations(self) -> bool:
        return len(self.annotations) > 0

    def image_bytes(self) -> bytes:
        return self.original_image.read_bytes()

    @classmethod
    def from_bytes(cls, data: bytes, annotations=(), instructions: Optional[str] = None) -> "AnnotatedImage":
        return cls(
            original_image=BytesPayload(data=data),
            annotations=tuple(annotations),
            instructions=instructions,
        )
