"""
Request/response schema for knowledge unit synthesis.

The synthesizer is an untrusted external system and every response is
validated field by field. A malformed response as a whole is an
ExternalSynthesizerError; a malformed individual candidate is a
SynthesisValidationError that only drops that candidate.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from src.clustering.exceptions import ExternalSynthesizerError, SynthesisValidationError
from src.clustering.models import ConfidenceLevel, Fragment

logger = logging.getLogger(__name__)

# Text limits applied to synthesized fields (longer values are truncated)
TEXT_LIMITS: Dict[str, int] = {
    "title": 75,
    "summary": 250,
    "content": 10000,
    "confidence_comment": 200,
    "clustering_rationale": 200,
    "message": 200,
}

REQUIRED_FIELDS = ("fragment_ids", "title", "summary", "category", "content", "confidence")

# Prefix given to integer ids the synthesizer invents
UNKNOWN_ID_PREFIX = "unknown:"


def truncate(value: Optional[str], field_name: str) -> Optional[str]:
    """Trim whitespace and cut to the field's limit."""
    if value is None:
        return None
    text = str(value).strip()
    limit = TEXT_LIMITS[field_name]
    if len(text) > limit:
        logger.debug(f"Truncating {field_name} from {len(text)} to {limit} characters")
        text = text[:limit].rstrip()
    return text


@dataclass
class CategoryDefinition:
    name: str
    guidance: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "guidance": self.guidance}


@dataclass
class SynthesisGuidance:
    """Instructions sent with every request."""
    primary_guidance: str
    fragment_weighting: str
    category_definitions: List[CategoryDefinition] = field(default_factory=list)
    organization_context: Optional[str] = None

    @property
    def category_names(self) -> List[str]:
        return [c.name for c in self.category_definitions]

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "primary_guidance": self.primary_guidance,
            "fragment_weighting": self.fragment_weighting,
            "category_definitions": [c.to_dict() for c in self.category_definitions],
        }
        if self.organization_context:
            data["organization_context"] = self.organization_context
        return data


@dataclass
class SynthesisFragment:
    """Fragment as presented to the synthesizer."""
    id: str
    title: str
    content: str
    category: Optional[str] = None
    source: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_fragment(cls, fragment: Fragment) -> "SynthesisFragment":
        source = fragment.metadata.get("source")
        if not isinstance(source, dict):
            source = {k: v for k, v in fragment.metadata.items() if isinstance(v, (str, int, float, bool))}
        return cls(
            id=fragment.id,
            title=fragment.title,
            content=fragment.content,
            category=fragment.category,
            source=dict(source),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "content": self.content,
            "source": self.source,
        }


@dataclass
class SynthesisRequest:
    cluster_id: str
    guidance: SynthesisGuidance
    fragments: List[SynthesisFragment]

    @property
    def fragment_ids(self) -> List[str]:
        return [f.id for f in self.fragments]


@dataclass
class CandidateUnit:
    """One proposed knowledge unit, after per-field parsing but before cluster validation."""
    fragment_ids: List[str]
    title: str
    summary: str
    category: str
    content: str
    confidence: ConfidenceLevel
    confidence_comment: Optional[str] = None
    clustering_rationale: Optional[str] = None


@dataclass
class ExcludedFragment:
    fragment_id: str
    reason: str


@dataclass
class SynthesisResponse:
    candidates: List[CandidateUnit]
    excluded: List[ExcludedFragment] = field(default_factory=list)
    message: Optional[str] = None
    rejected: List[str] = field(default_factory=list)


def _map_id(raw_id: Any, id_map: Optional[Mapping[int, str]]) -> str:
    if id_map is None:
        return str(raw_id)
    try:
        key = int(raw_id)
    except (TypeError, ValueError):
        return f"{UNKNOWN_ID_PREFIX}{raw_id}"
    return id_map.get(key, f"{UNKNOWN_ID_PREFIX}{key}")


def parse_candidate(
    raw: Any,
    id_map: Optional[Mapping[int, str]] = None,
    cluster_id: Optional[str] = None,
) -> CandidateUnit:
    """
    Parse a single candidate object.

    Raises:
        SynthesisValidationError: On missing fields, wrong types or unknown confidence
    """
    if not isinstance(raw, dict):
        raise SynthesisValidationError(f"Candidate must be an object, got {type(raw).__name__}", cluster_id)

    missing = [name for name in REQUIRED_FIELDS if raw.get(name) in (None, "")]
    if missing:
        raise SynthesisValidationError(f"Candidate missing required fields: {missing}", cluster_id)

    raw_ids = raw["fragment_ids"]
    if not isinstance(raw_ids, list) or not raw_ids:
        raise SynthesisValidationError("fragment_ids must be a non-empty list", cluster_id)

    try:
        confidence = ConfidenceLevel.parse(raw["confidence"])
    except ValueError as e:
        raise SynthesisValidationError(str(e), cluster_id) from None

    title = truncate(raw["title"], "title")
    content = truncate(raw["content"], "content")
    if not title or not content:
        raise SynthesisValidationError("title and content must not be blank", cluster_id)

    return CandidateUnit(
        fragment_ids=[_map_id(fid, id_map) for fid in raw_ids],
        title=title,
        summary=truncate(raw["summary"], "summary"),
        category=str(raw["category"]).strip(),
        content=content,
        confidence=confidence,
        confidence_comment=truncate(raw.get("confidence_comment"), "confidence_comment"),
        clustering_rationale=truncate(raw.get("clustering_rationale"), "clustering_rationale"),
    )


def parse_synthesis_response(
    raw: Any,
    id_map: Optional[Mapping[int, str]] = None,
    cluster_id: Optional[str] = None,
) -> SynthesisResponse:
    """
    Parse a synthesizer reply.

    Args:
        raw: Decoded JSON reply
        id_map: Integer ids shown to the synthesizer -> fragment ids
        cluster_id: For log context

    Returns:
        SynthesisResponse with parsed candidates in response order; candidates
        that fail parsing are listed in `rejected` with the reason

    Raises:
        ExternalSynthesizerError: If the reply is not an object with a knowledge_units list
    """
    if not isinstance(raw, dict):
        raise ExternalSynthesizerError(f"Synthesizer reply must be a JSON object, got {type(raw).__name__}")
    units = raw.get("knowledge_units")
    if not isinstance(units, list):
        raise ExternalSynthesizerError("Synthesizer reply has no knowledge_units list")

    candidates: List[CandidateUnit] = []
    rejected: List[str] = []
    for position, item in enumerate(units, start=1):
        try:
            candidates.append(parse_candidate(item, id_map, cluster_id))
        except SynthesisValidationError as e:
            logger.warning(f"Cluster {cluster_id}: rejected candidate {position}: {e.message}")
            rejected.append(f"candidate {position}: {e.message}")

    excluded = []
    for item in raw.get("excluded_fragments") or []:
        if isinstance(item, dict) and "fragment_id" in item:
            excluded.append(ExcludedFragment(
                fragment_id=_map_id(item["fragment_id"], id_map),
                reason=str(item.get("reason", "")),
            ))

    return SynthesisResponse(
        candidates=candidates,
        excluded=excluded,
        message=truncate(raw.get("message"), "message"),
        rejected=rejected,
    )
