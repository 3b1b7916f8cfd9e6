import pytest
from pydantic import ValidationError

from revision.config import AIConfig
from revision.editing.markers.converter import Marker
from revision.editing.pipeline.context import (
    PerformancePriority,
    ProcessingContext,
    ProcessingType,
    QualityLevel,
)


def test_defaults():
    ctx = ProcessingContext()
    assert ctx.processing_type == ProcessingType.OBJECT_REMOVAL
    assert ctx.quality_level == QualityLevel.STANDARD
    assert ctx.performance_priority == PerformancePriority.BALANCED
    assert ctx.markers == ()


def test_factories():
    assert ProcessingContext.quick_enhance().performance_priority == PerformancePriority.SPEED
    assert ProcessingContext.restoration().processing_type == ProcessingType.RESTORATION
    pro = ProcessingContext.professional_edit(ProcessingType.FACE_EDIT, [Marker(id="a", x=0.1, y=0.1)])
    assert pro.quality_level == QualityLevel.PROFESSIONAL
    assert len(pro.markers) == 1
    art = ProcessingContext.artistic_transform(style="watercolor wash")
    assert art.processing_type == ProcessingType.ARTISTIC
    assert art.custom_instructions == "watercolor wash"


def test_custom_type_requires_detailed_instructions():
    with pytest.raises(ValidationError):
        ProcessingContext(processing_type=ProcessingType.CUSTOM, custom_instructions="short")
    with pytest.raises(ValidationError):
        ProcessingContext(processing_type=ProcessingType.CUSTOM)
    ctx = ProcessingContext(processing_type=ProcessingType.CUSTOM, custom_instructions="turn the sky purple")
    assert ctx.custom_instructions == "turn the sky purple"


def test_with_markers_returns_copy():
    ctx = ProcessingContext.quick_enhance()
    updated = ctx.with_markers([Marker(id="a", x=0.5, y=0.5)])
    assert ctx.markers == ()
    assert updated.markers[0].id == "a"
    assert updated.processing_type == ProcessingType.ENHANCE


def test_context_is_immutable():
    ctx = ProcessingContext()
    with pytest.raises(ValidationError):
        ctx.quality_level = QualityLevel.HIGH


def test_context_parses_from_json():
    ctx = ProcessingContext.model_validate({
        "processing_type": "background_change",
        "quality_level": "high",
        "markers": [{"id": "m", "x": 0.2, "y": 0.3}],
    })
    assert ctx.processing_type == ProcessingType.BACKGROUND_CHANGE
    assert ctx.markers[0].label == "marked_object"


def test_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("REVISION_AI_MODEL", "gpt-4o-mini")
    monkeypatch.setenv("REVISION_TEMPERATURE", "0.1")
    monkeypatch.setenv("REVISION_MAX_IMAGE_SIZE_MB", "2.5")
    monkeypatch.setenv("REVISION_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("REVISION_TOP_K", "")
    config = AIConfig.from_env()
    assert config.ai_model == "gpt-4o-mini"
    assert config.temperature == 0.1
    assert config.top_k == 40
    assert config.max_image_size_bytes == int(2.5 * 1024 * 1024)
    assert config.data_dir == tmp_path
