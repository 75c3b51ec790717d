"""
Unit tests for synthesizer response parsing.

Tests:
- Required fields and confidence parsing per candidate
- Text truncation to field limits
- Integer id mapping, including ids the synthesizer invents
- Whole-response errors
"""

import pytest

from src.clustering.exceptions import ExternalSynthesizerError, SynthesisValidationError
from src.clustering.models import ConfidenceLevel, Fragment
from src.synthesis.schema import (
    TEXT_LIMITS,
    UNKNOWN_ID_PREFIX,
    SynthesisFragment,
    parse_candidate,
    parse_synthesis_response,
    truncate,
)


def candidate(**overrides):
    data = {
        "fragment_ids": [1, 2],
        "title": "Reset a password",
        "summary": "Steps for resetting a user password",
        "category": "Process",
        "content": "Open settings, choose Security, then Reset password.",
        "confidence": "High",
        "confidence_comment": "Two consistent sources",
        "clustering_rationale": "Both describe the same procedure",
    }
    data.update(overrides)
    return data


ID_MAP = {1: "frag-a", 2: "frag-b", 3: "frag-c"}


class TestParseCandidate:

    def test_valid_candidate(self):
        parsed = parse_candidate(candidate(), ID_MAP, "cluster-1")

        assert parsed.fragment_ids == ["frag-a", "frag-b"]
        assert parsed.confidence == ConfidenceLevel.HIGH
        assert parsed.title == "Reset a password"
        assert parsed.clustering_rationale == "Both describe the same procedure"

    @pytest.mark.parametrize("missing", ["fragment_ids", "title", "summary", "category", "content", "confidence"])
    def test_missing_required_field(self, missing):
        data = candidate()
        del data[missing]
        with pytest.raises(SynthesisValidationError):
            parse_candidate(data, ID_MAP, "cluster-1")

    def test_unknown_confidence(self):
        with pytest.raises(SynthesisValidationError):
            parse_candidate(candidate(confidence="certain"), ID_MAP)

    def test_non_object(self):
        with pytest.raises(SynthesisValidationError):
            parse_candidate(["not", "an", "object"], ID_MAP)

    def test_fragment_ids_must_be_list(self):
        with pytest.raises(SynthesisValidationError):
            parse_candidate(candidate(fragment_ids="1,2"), ID_MAP)

    def test_blank_title_after_trim(self):
        with pytest.raises(SynthesisValidationError):
            parse_candidate(candidate(title="   "), ID_MAP)

    def test_long_text_is_truncated(self):
        parsed = parse_candidate(candidate(title="x" * 200, summary="y" * 1000), ID_MAP)

        assert len(parsed.title) == TEXT_LIMITS["title"]
        assert len(parsed.summary) == TEXT_LIMITS["summary"]

    def test_invented_ids_are_marked_unknown(self):
        parsed = parse_candidate(candidate(fragment_ids=[1, 99, "abc"]), ID_MAP)

        assert parsed.fragment_ids == ["frag-a", f"{UNKNOWN_ID_PREFIX}99", f"{UNKNOWN_ID_PREFIX}abc"]

    def test_string_integer_ids_accepted(self):
        parsed = parse_candidate(candidate(fragment_ids=["1", "3"]), ID_MAP)
        assert parsed.fragment_ids == ["frag-a", "frag-c"]

    def test_without_id_map_ids_pass_through(self):
        parsed = parse_candidate(candidate(fragment_ids=["frag-x", "frag-y"]))
        assert parsed.fragment_ids == ["frag-x", "frag-y"]


class TestParseResponse:

    def test_bad_candidates_rejected_individually(self):
        raw = {
            "knowledge_units": [candidate(), candidate(confidence=None), "junk"],
            "message": "done",
        }
        response = parse_synthesis_response(raw, ID_MAP, "cluster-1")

        assert len(response.candidates) == 1
        assert len(response.rejected) == 2
        assert response.rejected[0].startswith("candidate 2")
        assert response.message == "done"

    def test_excluded_fragments_mapped(self):
        raw = {
            "knowledge_units": [],
            "excluded_fragments": [{"fragment_id": 3, "reason": "off topic"}, {"reason": "no id"}],
        }
        response = parse_synthesis_response(raw, ID_MAP)

        assert len(response.excluded) == 1
        assert response.excluded[0].fragment_id == "frag-c"
        assert response.excluded[0].reason == "off topic"

    def test_empty_units_is_valid(self):
        response = parse_synthesis_response({"knowledge_units": []}, ID_MAP)
        assert response.candidates == []
        assert response.message is None

    @pytest.mark.parametrize("raw", [None, [], "text", {"units": []}, {"knowledge_units": {}}])
    def test_malformed_response(self, raw):
        with pytest.raises(ExternalSynthesizerError):
            parse_synthesis_response(raw, ID_MAP)


class TestHelpers:

    def test_truncate(self):
        assert truncate(None, "title") is None
        assert truncate("  padded  ", "title") == "padded"
        assert len(truncate("z" * 500, "message")) == TEXT_LIMITS["message"]

    def test_synthesis_fragment_source_from_metadata(self):
        fragment = Fragment(
            id="f1",
            content="body",
            title="Heading",
            category="FAQ",
            metadata={"tenant": "acme", "tags": ["a"], "page": 3},
        )
        converted = SynthesisFragment.from_fragment(fragment)

        assert converted.source == {"tenant": "acme", "page": 3}
        assert converted.to_dict()["title"] == "Heading"

    def test_synthesis_fragment_explicit_source(self):
        fragment = Fragment(id="f1", content="body", metadata={"source": {"type": "ticket", "ref": "T-1"}})
        assert SynthesisFragment.from_fragment(fragment).source == {"type": "ticket", "ref": "T-1"}
