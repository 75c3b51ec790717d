"""
Claude client on Vertex AI through the Anthropic SDK.
"""

import logging
from typing import Optional

from anthropic import AnthropicVertex

from .base import BaseLLMClient, GenerationConfig, LLMProvider, LLMResponse
from .config import get_gcp_config

logger = logging.getLogger(__name__)


class ClaudeClient(BaseLLMClient):

    retriable_markers = ("rate", "overloaded", "429", "500", "503", "timeout")

    def __init__(self, model_id: str = "claude-haiku-4-5@20251001", project_id: Optional[str] = None, region: str = "us-east5"):
        super().__init__(model_id, project_id or get_gcp_config()[0], region)
        self._client = None

    @property
    def provider(self) -> LLMProvider:
        return LLMProvider.CLAUDE

    def _initialize(self) -> None:
        logger.info(f"Initializing Claude: model={self.model_id}, project={self.project_id}, region={self.region}")
        self._client = AnthropicVertex(project_id=self.project_id, region=self.region)

    def _call(self, prompt: str, config: GenerationConfig, system_prompt: Optional[str]) -> LLMResponse:
        kwargs = {
            "model": self.model_id,
            "max_tokens": config.max_output_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": config.temperature,
            **config.extra,
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        response = self._client.messages.create(**kwargs)

        # Concatenate text blocks
        text = "".join(block.text for block in response.content or [] if hasattr(block, "text"))
        if not text.strip():
            raise ValueError("Empty text from Claude API")

        return LLMResponse(
            text=text,
            model=self.model_id,
            provider=self.provider,
            input_tokens=response.usage.input_tokens if response.usage else None,
            output_tokens=response.usage.output_tokens if response.usage else None,
            finish_reason=response.stop_reason,
        )
