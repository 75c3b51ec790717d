"""
LLM provider abstraction: shared types, JSON handling and retry loop.

Synthesis only needs "send a prompt, get JSON back"; each provider
implements _call() and inherits retries and JSON parsing from here.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 30.0

T = TypeVar("T")


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    GEMINI = "gemini"
    CLAUDE = "claude"


@dataclass
class GenerationConfig:
    """
    Model-agnostic generation configuration.

    Defaults favour deterministic structured output.
    """
    temperature: float = 0.2
    max_output_tokens: int = 8192
    top_p: float = 0.95
    json_output: bool = False

    # Provider-specific overrides (optional)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Unified response from any LLM provider."""
    text: str
    model: str
    provider: LLMProvider
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    finish_reason: Optional[str] = None


def is_retriable(error: Exception, markers: Iterable[str]) -> bool:
    """True if the error message mentions a transient condition."""
    message = str(error).lower()
    return any(marker in message for marker in markers)


def with_retries(
    call: Callable[[], T],
    markers: Iterable[str],
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run call() with exponential backoff on retriable errors.

    Non-retriable errors and the last failed attempt are re-raised.
    """
    markers = tuple(markers)
    backoff = INITIAL_BACKOFF
    for attempt in range(MAX_RETRIES):
        try:
            return call()
        except Exception as e:
            if is_retriable(e, markers) and attempt < MAX_RETRIES - 1:
                logger.warning(
                    f"{label}: retriable error (attempt {attempt + 1}/{MAX_RETRIES}): {e}. "
                    f"Retrying after {backoff}s"
                )
                sleep(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)
            else:
                logger.error(f"{label} failed after {attempt + 1} attempts: {e}")
                raise
    raise RuntimeError(f"{label}: retry loop exited without a result")


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if the model added one."""
    text = text.strip()
    if not text.startswith("```"):
        return text
    text = text.split("\n", 1)[1] if "\n" in text else text[3:]
    if text.rstrip().endswith("```"):
        text = text.rstrip()[:-3]
    return text.strip()


class BaseLLMClient(ABC):
    """
    Abstract base class for LLM clients.

    Subclasses create their SDK client lazily in _initialize() and perform a
    single request in _call(); generate() wraps that in the retry loop.
    """

    retriable_markers = ("rate", "quota", "429", "500", "503", "timeout")

    def __init__(self, model_id: str, project_id: Optional[str], region: str):
        self.model_id = model_id
        self.project_id = project_id
        self.region = region
        self._initialized = False

    @property
    @abstractmethod
    def provider(self) -> LLMProvider:
        ...

    @abstractmethod
    def _initialize(self) -> None:
        """Create the underlying SDK client. Called once, on first use."""

    @abstractmethod
    def _call(self, prompt: str, config: GenerationConfig, system_prompt: Optional[str]) -> LLMResponse:
        """Perform one request (no retries)."""

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self._initialize()
            self._initialized = True

    def generate(
        self,
        prompt: str,
        config: Optional[GenerationConfig] = None,
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        """
        Generate text from a prompt, retrying transient failures.

        Raises:
            ValueError: If the provider returns an empty response
        """
        self._ensure_initialized()
        config = config or GenerationConfig()
        return with_retries(
            lambda: self._call(prompt, config, system_prompt),
            self.retriable_markers,
            label=f"{self.provider.value} generation",
        )

    def generate_json(
        self,
        prompt: str,
        config: Optional[GenerationConfig] = None,
        system_prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Generate and parse a JSON object.

        Raises:
            ValueError: If the response is not a JSON object
        """
        config = config or GenerationConfig(json_output=True)
        response = self.generate(prompt, config, system_prompt)
        text = strip_code_fence(response.text)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON response from {self.provider.value}: {text[:200]}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object from {self.provider.value}, got {type(data).__name__}")
        return data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self.model_id}, region={self.region})"
