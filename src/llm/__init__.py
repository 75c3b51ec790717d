"""
LLM Provider Abstraction Layer

Unified JSON-generation interface over Gemini and Claude (both on Vertex AI),
used by the knowledge unit synthesizer.

Usage:
    from src.llm import get_client
    client = get_client()              # LLM_MODEL / LLM_PROVIDER / default
    client = get_client("claude-haiku")
    data = client.generate_json(prompt, system_prompt=system)
"""

import logging
import os
from typing import Dict, Optional

from .base import BaseLLMClient, GenerationConfig, LLMProvider, LLMResponse
from .config import (
    MODEL_ALIASES,
    MODEL_REGISTRY,
    ModelInfo,
    get_default_model,
    get_gcp_config,
    get_model_info,
    resolve_model_name,
)

logger = logging.getLogger(__name__)

_client_cache: Dict[str, BaseLLMClient] = {}


def get_client(
    model: Optional[str] = None,
    project_id: Optional[str] = None,
    region: Optional[str] = None,
    cache: bool = True,
) -> BaseLLMClient:
    """
    Get an LLM client for the specified model.

    Args:
        model: Model name or alias (LLM_MODEL env var or default if None)
        project_id: GCP project ID (GCP_PROJECT env var if None)
        region: GCP region (provider default if None)
        cache: Reuse client instances

    Raises:
        ValueError: If the model is not in the registry
    """
    model_name = resolve_model_name(model) if model else get_default_model()

    cache_key = f"{model_name}:{project_id}:{region}"
    if cache and cache_key in _client_cache:
        return _client_cache[cache_key]

    model_info = get_model_info(model_name)
    if not model_info:
        available = ", ".join(list(MODEL_REGISTRY) + list(MODEL_ALIASES))
        raise ValueError(f"Unknown model: {model_name}. Available: {available}")

    default_project, default_region = get_gcp_config()
    project_id = project_id or default_project

    if model_info.provider == LLMProvider.GEMINI:
        from .gemini import GeminiClient
        client = GeminiClient(model_id=model_info.model_id, project_id=project_id, region=region or default_region)
    else:
        from .claude import ClaudeClient
        region = region or os.environ.get("CLAUDE_REGION", "europe-west1")
        client = ClaudeClient(model_id=model_info.model_id, project_id=project_id, region=region)

    if cache:
        _client_cache[cache_key] = client

    logger.info(f"Created LLM client: {client}")
    return client


def clear_cache() -> None:
    _client_cache.clear()


__all__ = [
    "get_client",
    "clear_cache",
    "BaseLLMClient",
    "GenerationConfig",
    "LLMProvider",
    "LLMResponse",
    "ModelInfo",
    "get_model_info",
    "get_default_model",
]
