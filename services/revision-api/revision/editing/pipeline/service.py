"""
Remote generative-model collaborator for the editing pipeline.

The pipeline depends on three hosted capabilities:
- analyze the marked image and write an editing prompt
- edit the image with that prompt
- check an image against the provider's content-safety policy

OpenAIImageService backs them with GPT-4o vision (analysis), the Image Edit
API (editing) and the moderation endpoint (safety).
"""
import base64
import json
import logging
from typing import Optional, Protocol, Sequence

from openai import AsyncOpenAI

from ...config import AIConfig
from ...utils import detect_mime_type, to_data_url
from ..markers.converter import Marker, describe_markers
from .errors import ErrorKind, PipelineError

logger = logging.getLogger(__name__)

FALLBACK_EDITING_PROMPT = (
    "Remove the marked objects from the image using content-aware fill. "
    "Reconstruct the background naturally to maintain visual consistency. "
    "Apply appropriate lighting and shadow adjustments for seamless integration."
)


class GenerativeImageService(Protocol):
    async def generate_editing_prompt(
        self,
        image_bytes: bytes,
        markers: Sequence[Marker],
        system_instructions: Optional[str] = None,
    ) -> str:
        ...

    async def process_image_with_ai(
        self,
        image_bytes: bytes,
        editing_prompt: str,
        system_instructions: Optional[str] = None,
    ) -> bytes:
        ...

    async def check_content_safety(self, image_bytes: bytes) -> bool:
        ...


def parse_analysis_response(content: str) -> str:
    """
    Pulls `editing_prompt` out of the analysis model's JSON answer. Free-text
    answers are used directly when they read like an instruction.
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        logger.warning("Analysis response was not JSON, using free-text fallback")
        lowered = content.lower()
        if "remove" in lowered or "edit" in lowered:
            return content if len(content) <= 300 else content[:300] + "..."
        return FALLBACK_EDITING_PROMPT

    prompt = data.get("editing_prompt") if isinstance(data, dict) else None
    if not prompt:
        return FALLBACK_EDITING_PROMPT

    objects = data.get("identified_objects") or []
    logger.info("Analysis identified %d object(s), confidence=%s", len(objects), data.get("confidence"))
    return str(prompt).strip()


class OpenAIImageService:
    def __init__(self, client: AsyncOpenAI, config: AIConfig):
        self.client = client
        self.config = config

    async def generate_editing_prompt(
        self,
        image_bytes: bytes,
        markers: Sequence[Marker],
        system_instructions: Optional[str] = None,
    ) -> str:
        system_prompt = system_instructions or self.config.analysis_system_prompt
        user_text = (
            f"The user marked {len(markers)} area(s) for removal:\n"
            f"{describe_markers(markers)}\n\n"
            "1. Identify the objects in the marked areas\n"
            "2. Analyze the background patterns and textures around them\n"
            "3. Consider lighting, shadows, and color harmony\n"
            "4. Write the editing prompt for seamless removal"
        )

        response = await self.client.chat.completions.create(
            model=self.config.ai_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": [
                    {"type": "text", "text": user_text},
                    {"type": "image_url", "image_url": {"url": to_data_url(image_bytes)}},
                ]},
            ],
            response_format={"type": "json_object"},
            temperature=self.config.temperature,
            top_p=self.config.top_p,
            max_tokens=self.config.max_output_tokens,
        )

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise PipelineError(ErrorKind.GENERAL, "Empty response from analysis model", code="empty_response")
        return parse_analysis_response(content)

    async def process_image_with_ai(
        self,
        image_bytes: bytes,
        editing_prompt: str,
        system_instructions: Optional[str] = None,
    ) -> bytes:
        instructions = system_instructions or self.config.edit_system_prompt
        prompt = f"{instructions}\n\nEditing instructions: {editing_prompt}"

        mime = detect_mime_type(image_bytes, default="image/png")
        extension = mime.split("/")[-1]
        params = {}
        if self.config.image_model.startswith("dall-e"):
            # dall-e models return URLs unless asked otherwise
            params["response_format"] = "b64_json"

        response = await self.client.images.edit(
            model=self.config.image_model,
            image=(f"image.{extension}", image_bytes, mime),
            prompt=prompt,
            n=1,
            **params,
        )

        if not response.data or not response.data[0].b64_json:
            raise PipelineError(ErrorKind.GENERAL, "Image model returned no edited image", code="empty_response")
        return base64.b64decode(response.data[0].b64_json)

    async def check_content_safety(self, image_bytes: bytes) -> bool:
        response = await self.client.moderations.create(
            model=self.config.safety_model,
            input=[{"type": "image_url", "image_url": {"url": to_data_url(image_bytes)}}],
        )
        flagged = any(r.flagged for r in response.results)
        if flagged:
            logger.info("Image flagged by content-safety check")
        return not flagged
