import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel
from dotenv import load_dotenv

load_dotenv()

# ============================================================================
# DEFAULT SYSTEM PROMPTS: one per pipeline stage
# ============================================================================

ANALYSIS_SYSTEM_PROMPT = """You are an expert AI image analysis system specialized in object removal for photo editing.

Your task is to analyze the uploaded image and the user's requested changes, then create a clear, specific prompt for an image editing AI.

Guidelines:
- Be specific about colors, styles, objects, and spatial relationships
- Include technical details like lighting, composition, and style
- Maintain the original image's essence while incorporating requested changes

OUTPUT FORMAT (JSON):
{
    "identified_objects": ["red bicycle", "trash can"],
    "editing_prompt": "Remove [specific objects] from this [scene]. Fill the area with [background]. Ensure seamless blending by [lighting, shadows, perspective].",
    "confidence": 0.0-1.0,
    "technical_notes": "Any specific challenges"
}

Keep the editing prompt under 200 words."""

EDIT_SYSTEM_PROMPT = """Edit this photo to remove the specified objects:
- Remove the marked objects completely
- Fill in the background naturally where objects were removed
- Maintain consistent lighting and shadows
- Preserve the original image quality and composition
- Ensure seamless blending with no visible artifacts"""


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


class AIConfig(BaseModel):
    """Model identifiers, sampling and limits for the editing pipeline."""
    ai_model: str = "gpt-4o"
    image_model: str = "gpt-image-1"
    safety_model: str = "omni-moderation-latest"

    temperature: float = 0.4
    top_k: int = 40  # not accepted by every backend, recorded in result metadata
    top_p: float = 0.95
    max_output_tokens: int = 1024

    request_timeout: float = 30.0  # seconds, per remote call
    max_retries: int = 2
    retry_base_delay: float = 1.0  # seconds

    max_image_size_mb: float = 10.0
    max_images_per_request: int = 1

    analysis_system_prompt: str = ANALYSIS_SYSTEM_PROMPT
    edit_system_prompt: str = EDIT_SYSTEM_PROMPT

    data_dir: Path = Path("data")

    model_config = {"frozen": True}

    @property
    def max_image_size_bytes(self) -> int:
        return int(self.max_image_size_mb * 1024 * 1024)

    @classmethod
    def from_env(cls) -> "AIConfig":
        defaults = cls()
        return cls(
            ai_model=os.getenv("REVISION_AI_MODEL", defaults.ai_model),
            image_model=os.getenv("REVISION_IMAGE_MODEL", defaults.image_model),
            safety_model=os.getenv("REVISION_SAFETY_MODEL", defaults.safety_model),
            temperature=_env_float("REVISION_TEMPERATURE", defaults.temperature),
            top_k=_env_int("REVISION_TOP_K", defaults.top_k),
            top_p=_env_float("REVISION_TOP_P", defaults.top_p),
            max_output_tokens=_env_int("REVISION_MAX_OUTPUT_TOKENS", defaults.max_output_tokens),
            request_timeout=_env_float("REVISION_REQUEST_TIMEOUT", defaults.request_timeout),
            max_retries=_env_int("REVISION_MAX_RETRIES", defaults.max_retries),
            retry_base_delay=_env_float("REVISION_RETRY_BASE_DELAY", defaults.retry_base_delay),
            max_image_size_mb=_env_float("REVISION_MAX_IMAGE_SIZE_MB", defaults.max_image_size_mb),
            max_images_per_request=_env_int("REVISION_MAX_IMAGES_PER_REQUEST", defaults.max_images_per_request),
            analysis_system_prompt=os.getenv("REVISION_ANALYSIS_SYSTEM_PROMPT") or defaults.analysis_system_prompt,
            edit_system_prompt=os.getenv("REVISION_EDIT_SYSTEM_PROMPT") or defaults.edit_system_prompt,
            data_dir=Path(os.getenv("REVISION_DATA_DIR", str(defaults.data_dir))),
        )


_config: Optional[AIConfig] = None


def get_config() -> AIConfig:
    global _config
    if _config is None:
        _config = AIConfig.from_env()
    return _config


def reload_config() -> AIConfig:
    global _config
    _config = AIConfig.from_env()
    return _config
