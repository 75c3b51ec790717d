"""
Prompt Manager for knowledge unit synthesis.

Loads guidance texts and category definitions from the package prompts/
directory and renders synthesis requests as the JSON user prompt.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .schema import CategoryDefinition, SynthesisGuidance, SynthesisRequest, TEXT_LIMITS

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a knowledge clustering assistant. Process the provided JSON request "
    "containing instructions and fragments, and reply with a single JSON object."
)

PRIMARY_GUIDANCE_FILE = "primary_guidance.txt"
FRAGMENT_WEIGHTING_FILE = "fragment_weighting.txt"
CATEGORIES_FILE = "categories.yaml"


class PromptManager:
    """
    Manages prompts for knowledge unit synthesis.

    Handles:
    - Loading guidance texts from files (cached)
    - Loading category definitions from YAML
    - Rendering requests with integer fragment ids
    """

    def __init__(self, prompt_dir: Optional[str] = None):
        if prompt_dir is None:
            self.prompt_dir = Path(__file__).parent / "prompts"
        else:
            self.prompt_dir = Path(prompt_dir)

        self._prompt_cache: Dict[str, str] = {}
        self._categories: Optional[List[CategoryDefinition]] = None

    def load_prompt(self, prompt_name: str) -> str:
        """
        Load a prompt text from file.

        Raises:
            FileNotFoundError: If the prompt file doesn't exist
        """
        if prompt_name in self._prompt_cache:
            return self._prompt_cache[prompt_name]

        prompt_path = self.prompt_dir / prompt_name
        if not prompt_path.exists():
            raise FileNotFoundError(
                f"Prompt file not found: {prompt_path}. "
                f"Available prompts: {sorted(p.name for p in self.prompt_dir.glob('*.txt'))}"
            )

        with open(prompt_path, "r", encoding="utf-8") as f:
            text = f.read().strip()

        self._prompt_cache[prompt_name] = text
        return text

    def load_categories(self) -> List[CategoryDefinition]:
        """
        Load category definitions from categories.yaml.

        The file holds a top-level `categories` list of {name, guidance} entries.
        A missing file means no category restriction.

        Raises:
            ValueError: If the file is malformed
        """
        if self._categories is not None:
            return self._categories

        path = self.prompt_dir / CATEGORIES_FILE
        if not path.exists():
            logger.warning(f"No category definitions at {path}; categories will not be checked")
            self._categories = []
            return self._categories

        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid category definitions in {path}: {e}") from e

        entries = data.get("categories") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ValueError(f"{path} must contain a top-level 'categories' list")

        categories = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("name"):
                raise ValueError(f"Category entry without a name in {path}: {entry!r}")
            categories.append(CategoryDefinition(
                name=str(entry["name"]),
                guidance=str(entry.get("guidance", "")).strip(),
            ))

        logger.info(f"Loaded {len(categories)} category definitions")
        self._categories = categories
        return categories

    def build_guidance(self, organization_context: Optional[str] = None) -> SynthesisGuidance:
        return SynthesisGuidance(
            primary_guidance=self.load_prompt(PRIMARY_GUIDANCE_FILE),
            fragment_weighting=self.load_prompt(FRAGMENT_WEIGHTING_FILE),
            category_definitions=list(self.load_categories()),
            organization_context=organization_context,
        )

    def format_request(self, request: SynthesisRequest, alias_of: Mapping[str, int]) -> str:
        """
        Render a request as the JSON user prompt.

        Fragment ids are replaced by their integer aliases.
        """
        payload: Dict[str, Any] = {
            "instructions": request.guidance.to_dict(),
            "response_limits": {k: v for k, v in TEXT_LIMITS.items() if k != "content"},
            "fragments": [
                {**fragment.to_dict(), "id": alias_of[fragment.id]}
                for fragment in request.fragments
            ],
        }
        return json.dumps(payload, ensure_ascii=False, default=str)

    def get_prompt_stats(self, prompt: str) -> Dict[str, Any]:
        """Character, word and rough token counts for a rendered prompt."""
        return {
            "char_count": len(prompt),
            "word_count": len(prompt.split()),
            "estimated_tokens": len(prompt) // 4,
        }
