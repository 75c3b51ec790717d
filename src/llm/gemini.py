"""
Gemini client on Vertex AI through the Google Gen AI SDK.
"""

import logging
from typing import Optional

from google import genai
from google.genai import types

from .base import BaseLLMClient, GenerationConfig, LLMProvider, LLMResponse
from .config import get_gcp_config

logger = logging.getLogger(__name__)


class GeminiClient(BaseLLMClient):

    retriable_markers = ("rate", "quota", "429", "internal", "500", "503")

    def __init__(self, model_id: str = "gemini-2.5-flash", project_id: Optional[str] = None, region: str = "europe-west4"):
        super().__init__(model_id, project_id or get_gcp_config()[0], region)
        self._client = None

    @property
    def provider(self) -> LLMProvider:
        return LLMProvider.GEMINI

    def _initialize(self) -> None:
        logger.info(f"Initializing Gemini: model={self.model_id}, project={self.project_id}, region={self.region}")
        self._client = genai.Client(vertexai=True, project=self.project_id, location=self.region)

    def _call(self, prompt: str, config: GenerationConfig, system_prompt: Optional[str]) -> LLMResponse:
        gen_config = types.GenerateContentConfig(
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            top_p=config.top_p,
            system_instruction=system_prompt,
            response_mime_type="application/json" if config.json_output else None,
            **config.extra,
        )

        response = self._client.models.generate_content(
            model=self.model_id,
            contents=prompt,
            config=gen_config,
        )

        finish_reason = None
        if response.candidates:
            finish_reason = getattr(response.candidates[0], "finish_reason", None)

        text = response.text
        if not text or not text.strip():
            raise ValueError(f"Empty response from Gemini. Finish reason: {finish_reason}")

        usage = getattr(response, "usage_metadata", None)
        return LLMResponse(
            text=text,
            model=self.model_id,
            provider=self.provider,
            input_tokens=getattr(usage, "prompt_token_count", None) if usage else None,
            output_tokens=getattr(usage, "candidates_token_count", None) if usage else None,
            finish_reason=str(finish_reason) if finish_reason else None,
        )
