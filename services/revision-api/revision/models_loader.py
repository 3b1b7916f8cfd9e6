import os
import logging
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from .config import AIConfig, get_config
from .editing.pipeline.errors import ErrorKind, PipelineError

logger = logging.getLogger("models_loader")


class ClientRegistry:
    """Lazily builds the hosted-model clients shared by the editing pipeline."""

    def __init__(self, config: Optional[AIConfig] = None):
        self.config = config or get_config()
        self._openai: Optional[AsyncOpenAI] = None
        self._image_service = None

    def get_openai(self) -> AsyncOpenAI:
        if self._openai is None:
            if not os.environ.get("OPENAI_API_KEY"):
                logger.warning("OPENAI_API_KEY not set; set it to enable the editing pipeline")
            try:
                # Retries are a caller policy, not the SDK's
                self._openai = AsyncOpenAI(timeout=self.config.request_timeout, max_retries=0)
            except OpenAIError as e:
                logger.exception("OpenAI client init failed: %s", e)
                raise PipelineError(
                    ErrorKind.AUTHENTICATION,
                    "OpenAI client not initialized. Check your API key.",
                    code="client_init",
                ) from e
            logger.info("Created OpenAI client (timeout=%ss)", self.config.request_timeout)
        return self._openai

    def get_image_service(self):
        if self._image_service is None:
            from .editing.pipeline.service import OpenAIImageService
            self._image_service = OpenAIImageService(self.get_openai(), self.config)
            logger.info("Loaded image service (analysis=%s, edit=%s)",
                        self.config.ai_model, self.config.image_model)
        return self._image_service
