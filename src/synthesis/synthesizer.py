"""
Synthesizer contract and the LLM-backed implementation.

The LLM sees fragments under small integer ids (1..n) rather than the real
fragment ids; replies are mapped back before validation. Integers the LLM
invents map to ids outside the cluster and fail the membership check.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from src.clustering.exceptions import ExternalSynthesizerError
from src.llm import BaseLLMClient, GenerationConfig, get_client

from .prompt_manager import SYSTEM_PROMPT, PromptManager
from .schema import SynthesisRequest, SynthesisResponse, parse_synthesis_response

logger = logging.getLogger(__name__)


class Synthesizer(ABC):
    """Turns one cluster's fragments into candidate knowledge units."""

    @abstractmethod
    def synthesize(self, request: SynthesisRequest) -> SynthesisResponse:
        """
        Raises:
            ExternalSynthesizerError: If the external system fails or replies unparseably
        """


class LLMSynthesizer(Synthesizer):
    """
    Synthesizer that prompts an LLM through the provider abstraction.

    Args:
        client: LLM client (default: get_client(), from LLM_MODEL / LLM_PROVIDER)
        prompt_manager: Source of the system prompt and request rendering
        generation_config: Overrides the JSON-mode defaults
    """

    def __init__(
        self,
        client: Optional[BaseLLMClient] = None,
        prompt_manager: Optional[PromptManager] = None,
        generation_config: Optional[GenerationConfig] = None,
    ):
        self._client = client
        self.prompt_manager = prompt_manager or PromptManager()
        self.generation_config = generation_config or GenerationConfig(json_output=True)

    @property
    def client(self) -> BaseLLMClient:
        if self._client is None:
            self._client = get_client()
        return self._client

    def synthesize(self, request: SynthesisRequest) -> SynthesisResponse:
        alias_of: Dict[str, int] = {fid: i for i, fid in enumerate(request.fragment_ids, start=1)}
        id_map: Dict[int, str] = {i: fid for fid, i in alias_of.items()}

        prompt = self.prompt_manager.format_request(request, alias_of)
        stats = self.prompt_manager.get_prompt_stats(prompt)
        logger.info(
            f"Synthesizing cluster {request.cluster_id}: {len(alias_of)} fragments, "
            f"~{stats['estimated_tokens']} tokens"
        )

        try:
            raw = self.client.generate_json(
                prompt,
                config=self.generation_config,
                system_prompt=SYSTEM_PROMPT,
            )
        except ValueError as e:
            raise ExternalSynthesizerError(f"Unparseable synthesizer reply: {e}") from e
        except Exception as e:
            logger.error(f"Synthesizer call failed for cluster {request.cluster_id}: {e}")
            raise ExternalSynthesizerError(f"Synthesizer call failed: {e}") from e

        return parse_synthesis_response(raw, id_map=id_map, cluster_id=request.cluster_id)
