"""
Knowledge unit synthesis: request/response schema, prompts, the synthesizer
contract and the coordinator that validates and commits its output.
"""

from .coordinator import SynthesisCoordinator, SynthesisOutcome
from .prompt_manager import PromptManager
from .schema import (
    CandidateUnit,
    CategoryDefinition,
    SynthesisFragment,
    SynthesisGuidance,
    SynthesisRequest,
    SynthesisResponse,
    parse_synthesis_response,
)
from .synthesizer import LLMSynthesizer, Synthesizer

__all__ = [
    "CandidateUnit",
    "CategoryDefinition",
    "LLMSynthesizer",
    "PromptManager",
    "SynthesisCoordinator",
    "SynthesisFragment",
    "SynthesisGuidance",
    "SynthesisOutcome",
    "SynthesisRequest",
    "SynthesisResponse",
    "Synthesizer",
    "parse_synthesis_response",
]
