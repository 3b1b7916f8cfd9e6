import logging
from typing import Dict, List, Sequence, Tuple

from pydantic import BaseModel

from ..annotations.models import AnnotatedImage, AnnotationStroke

logger = logging.getLogger(__name__)

DEFAULT_BASE_PROMPT = "Remove the marked objects from this image"
MARKER_LABEL = "marked_object"

RECONSTRUCTION_QUALITIES = [
    "Natural background continuity",
    "Consistent lighting and shadows",
    "Seamless texture matching",
    "Overall image quality",
]


class Marker(BaseModel):
    id: str
    x: float
    y: float
    label: str = MARKER_LABEL

    model_config = {"frozen": True}

    def to_ai_map(self) -> Dict[str, object]:
        return {"id": self.id, "x": self.x, "y": self.y, "label": self.label}


def stroke_center(stroke: AnnotationStroke) -> Tuple[float, float]:
    # Centroid of the stroke
    if not stroke.points:
        logger.warning("Stroke %s has no points, using image center", stroke.id)
        return 0.5, 0.5

    xs = [p.x for p in stroke.points]
    ys = [p.y for p in stroke.points]
    return sum(xs) / len(xs), sum(ys) / len(ys)


def to_markers(annotated_image: AnnotatedImage) -> List[Marker]:
    """
    One marker per stroke, placed at the stroke centroid.
    """
    markers: List[Marker] = []
    for stroke in annotated_image.annotations:
        x, y = stroke_center(stroke)
        markers.append(Marker(id=stroke.id, x=x, y=y))

    logger.debug("Converted %d strokes to markers", len(markers))
    return markers


def to_prompt(annotated_image: AnnotatedImage, base_prompt: str = DEFAULT_BASE_PROMPT) -> str:
    """
    Builds the removal prompt sent with the image: marker count, the user's
    free-text instructions and the qualities the reconstructed background
    should keep.
    """
    marker_count = len(annotated_image.annotations)
    if marker_count == 0:
        return base_prompt

    lines = [base_prompt, "", f"Marked areas to remove: {marker_count} object(s)"]

    instructions = annotated_image.instructions
    if instructions is not None and instructions.strip():
        lines += ["", f"Additional instructions: {instructions}"]

    lines += ["", "Please remove the marked objects while maintaining:"]
    lines += [f"- {q}" for q in RECONSTRUCTION_QUALITIES]

    return "\n".join(lines) + "\n"


def describe_markers(markers: Sequence[Marker]) -> str:
    return "\n".join(
        f"- Marked area {i} at normalized coordinates ({m.x:.3f}, {m.y:.3f}): {m.label}"
        for i, m in enumerate(markers, 1)
    )
