from __future__ import annotations

import pytest

from grant_ingest.errors import ValidationError
from grant_ingest.matcher import (
    CandidateIndex,
    find_existing,
    title_key,
    titles_are_similar,
    validate_source_id,
)
from grant_ingest.models import DetectionMethod, OpportunityRecord, StoredOpportunity


def stored(opportunity_id: str, title: str, source_id: str = "grants-gov") -> StoredOpportunity:
    return StoredOpportunity(id=f"db-{opportunity_id}", source_id=source_id,
                             opportunity_id=opportunity_id, title=title)


def test_identical_titles_are_similar() -> None:
    for title in ["Solar Grant 2024", "A", "Rural Broadband Expansion Program"]:
        assert titles_are_similar(title, title)


def test_year_suffix_variant_is_similar() -> None:
    assert titles_are_similar("Solar Grant", "Solar Grant 2024")
    assert titles_are_similar("SOLAR GRANT (2024)", "solar grant")


def test_high_word_overlap_is_similar() -> None:
    assert titles_are_similar(
        "Advanced Community Solar Energy Program Grants",
        "Advanced Community Solar Energy Program Funding",
    )


def test_disjoint_titles_are_not_similar() -> None:
    assert not titles_are_similar("Rural Broadband Expansion", "Urban Forestry Initiative")
    assert not titles_are_similar(None, "Urban Forestry Initiative")


def test_threshold_is_configurable() -> None:
    first = "Community Solar Energy Program Grants"
    second = "Community Solar Energy Program Funding"
    assert not titles_are_similar(first, second)
    assert titles_are_similar(first, second, threshold=0.6)


def test_title_key_normalizes_case_and_whitespace() -> None:
    assert title_key("  Solar   GRANT 2024 ") == "solar grant 2024"
    assert title_key("") is None


def test_validate_source_id() -> None:
    assert validate_source_id("grants-gov") == "grants-gov"
    assert validate_source_id(" 3f2b8c1e-7d4a-4e0b-9c8f-1a2b3c4d5e6f ") == "3f2b8c1e-7d4a-4e0b-9c8f-1a2b3c4d5e6f"
    for bad in ["", "   ", None, "bad id", "drop;table"]:
        with pytest.raises(ValidationError) as exc:
            validate_source_id(bad)
        assert exc.value.code == "INVALID_SOURCE_ID"


def test_validated_id_match() -> None:
    index = CandidateIndex(by_id={"X1": stored("X1", "Solar Grant 2024")})
    match = find_existing(OpportunityRecord(id="X1", title="Solar Grant 2024"), "grants-gov", index)
    assert match.method == DetectionMethod.ID_VALIDATION
    assert match.existing.opportunity_id == "X1"


def test_reused_id_falls_through_to_title() -> None:
    index = CandidateIndex(
        by_id={"X1": stored("X1", "Rural Broadband Expansion")},
        by_title={"urban forestry initiative": stored("X9", "Urban Forestry Initiative")},
    )
    match = find_existing(OpportunityRecord(id="X1", title="Urban Forestry Initiative"), "grants-gov", index)
    assert match.method == DetectionMethod.TITLE_ONLY
    assert match.existing.opportunity_id == "X9"
    assert match.id_validation_failed


def test_reused_id_without_title_match_is_new() -> None:
    index = CandidateIndex(by_id={"X1": stored("X1", "Rural Broadband Expansion")})
    match = find_existing(OpportunityRecord(id="X1", title="Urban Forestry Initiative"), "grants-gov", index)
    assert match.existing is None
    assert match.method == DetectionMethod.NO_MATCH
    assert match.id_validation_failed


def test_short_titles_never_match_by_title() -> None:
    index = CandidateIndex(by_title={"grant": stored("X2", "Grant")})
    match = find_existing(OpportunityRecord(id=None, title="Grant"), "grants-gov", index)
    assert match.existing is None


def test_candidates_from_other_sources_are_ignored() -> None:
    index = CandidateIndex(by_id={"X1": stored("X1", "Solar Grant 2024", source_id="other-source")})
    match = find_existing(OpportunityRecord(id="X1", title="Solar Grant 2024"), "grants-gov", index)
    assert match.existing is None
