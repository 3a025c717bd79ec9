"""Tests for matching_context: user-submitted text parsing and pair context assembly."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import create_engine

from db_models import CollaborationProposal, Publication, ResearcherProfile, User
from matching_context import (
    assemble_context_for_pair,
    assemble_context_for_pairs,
    fetch_researcher_context,
    parse_user_submitted_texts,
)
from models import VISIBLE, EligiblePair, UserSubmittedText
from proposal_store import ProposalStore

_A = "aaaa-0001"
_B = "bbbb-0002"
_C = "cccc-0003"


@pytest.fixture
def store() -> ProposalStore:
    store = ProposalStore(create_engine("sqlite://"))
    store.create_schema()
    with store.session_factory.begin() as session:
        session.add_all(
            [
                User(id=_A, name="Dr. Alice", institution="Scripps", department="Chemistry"),
                User(id=_B, name="Dr. Bob", institution="UCSF"),
                User(id=_C, name="Dr. Carol", institution="Broad"),
                ResearcherProfile(
                    user_id=_A,
                    research_summary="Small-molecule activators of HRI.",
                    techniques=["medicinal chemistry"],
                    experimental_models=["patient fibroblasts"],
                    disease_areas=["CMT2A"],
                    key_targets=["HRI"],
                    keywords=["ISR"],
                    grant_titles=["R01 HRI activators"],
                    user_submitted_texts=[
                        {"label": "Priorities", "content": "Imaging partners"},
                        {"label": "missing content"},
                        "not an object",
                    ],
                ),
                ResearcherProfile(user_id=_B, research_summary="Cryo-ET of organelles."),
                Publication(user_id=_A, pmid="111", title="Older", journal="Cell", year=2019, author_position="last", abstract="Old."),
                Publication(user_id=_A, pmid="222", title="Newer", journal="Nature", year=2023, author_position="first", abstract="New."),
                CollaborationProposal(
                    researcher_a_id=_A,
                    researcher_b_id=_B,
                    title="Existing idea",
                    collaboration_type="methodological enhancement",
                    scientific_question="Does HRI remodel cristae?",
                    one_line_summary_a="-",
                    one_line_summary_b="-",
                    detailed_rationale="-",
                    lab_a_contributions="-",
                    lab_b_contributions="-",
                    lab_a_benefits="-",
                    lab_b_benefits="-",
                    proposed_first_experiment="-",
                    confidence_tier="high",
                    visibility_a=VISIBLE,
                    visibility_b=VISIBLE,
                    profile_version_a=1,
                    profile_version_b=1,
                ),
            ]
        )
    return store


def _pair(a: str, b: str) -> EligiblePair:
    return EligiblePair(a, b, VISIBLE, VISIBLE, 1, 1)


# ---------------------------------------------------------------------------
# parse_user_submitted_texts
# ---------------------------------------------------------------------------

def test_parse_user_submitted_texts_keeps_well_formed_entries() -> None:
    raw = [{"label": "Goals", "content": "Find chemists"}, {"label": 3, "content": None}]

    assert parse_user_submitted_texts(raw) == [
        UserSubmittedText("Goals", "Find chemists"),
        UserSubmittedText("3", "None"),
    ]


@pytest.mark.parametrize("raw", [None, {}, "text", 42, [None, "x", {"label": "only label"}]])
def test_parse_user_submitted_texts_drops_malformed(raw) -> None:
    assert parse_user_submitted_texts(raw) == []


# ---------------------------------------------------------------------------
# Context assembly
# ---------------------------------------------------------------------------

def test_fetch_researcher_context_maps_profile(store: ProposalStore) -> None:
    context = fetch_researcher_context(store, _A)

    assert context is not None
    assert context.name == "Dr. Alice"
    assert context.department == "Chemistry"
    assert context.techniques == ["medicinal chemistry"]
    assert context.grant_titles == ["R01 HRI activators"]
    assert context.user_submitted_texts == [UserSubmittedText("Priorities", "Imaging partners")]
    assert [p.title for p in context.publications] == ["Newer", "Older"]


def test_fetch_researcher_context_defaults_empty_lists(store: ProposalStore) -> None:
    context = fetch_researcher_context(store, _B)

    assert context is not None
    assert context.department is None
    assert context.techniques == []
    assert context.user_submitted_texts == []
    assert context.publications == []


def test_fetch_researcher_context_requires_profile(store: ProposalStore) -> None:
    assert fetch_researcher_context(store, _C) is None
    assert fetch_researcher_context(store, "nobody") is None


def test_assemble_context_for_pair_includes_existing_proposals(store: ProposalStore) -> None:
    matching_input = assemble_context_for_pair(store, _A, _B)

    assert matching_input is not None
    assert matching_input.researcher_a.name == "Dr. Alice"
    assert matching_input.researcher_b.name == "Dr. Bob"
    assert [(p.title, p.scientific_question) for p in matching_input.existing_proposals] == [
        ("Existing idea", "Does HRI remodel cristae?")
    ]


def test_assemble_context_for_pair_missing_profile(store: ProposalStore) -> None:
    assert assemble_context_for_pair(store, _A, _C) is None


def test_assemble_context_for_pairs_reports_errors(store: ProposalStore) -> None:
    pairs = [_pair(_A, _B), _pair(_A, _C)]

    contexts, errors = assemble_context_for_pairs(store, pairs)

    assert [c.pair for c in contexts] == [pairs[0]]
    assert [e.pair for e in errors] == [pairs[1]]
    assert "missing profile" in errors[0].error


def test_assemble_context_for_pairs_survives_exceptions(store: ProposalStore) -> None:
    pairs = [_pair(_A, _B), _pair(_A, _B)]

    with patch.object(
        store, "read_existing_proposals", side_effect=[RuntimeError("db went away"), []]
    ):
        contexts, errors = assemble_context_for_pairs(store, pairs)

    assert len(contexts) == 1
    assert [e.error for e in errors] == ["db went away"]
