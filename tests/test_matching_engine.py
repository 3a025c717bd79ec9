"""Tests for matching_engine.generate_proposals_for_pair and extract_text_content."""

from __future__ import annotations

import json
import threading
from unittest.mock import MagicMock, patch

import pytest

from matching_engine import EmptyResponseError, extract_text_content, generate_proposals_for_pair
from matching_prompt import MATCHING_MODEL_CONFIG, build_matching_retry_message
from models import (
    VISIBLE,
    ContentBlock,
    EligiblePair,
    ExistingProposal,
    MatchingInput,
    PairContext,
    ResearcherContext,
)
from retry_policy import OperationCancelled

_PROPOSAL = {
    "title": "Cryo-ET of HRI-Induced Mitochondrial Remodeling",
    "collaboration_type": "methodological enhancement",
    "scientific_question": "How does HRI activation remodel mitochondrial ultrastructure?",
    "one_line_summary_a": "Cryo-ET could show the remodeling your compounds produce.",
    "one_line_summary_b": "A clean pharmacological specimen for your cryo-ET pipeline.",
    "detailed_rationale": "Lab A has compounds; Lab B has tomography.",
    "lab_a_contributions": "MFN2-deficient fibroblasts and HRI activators",
    "lab_b_contributions": "Cryo-FIB milling and tomography",
    "lab_a_benefits": "Ultrastructural evidence",
    "lab_b_benefits": "A drug-induced phenotype",
    "proposed_first_experiment": "Treat fibroblasts for 48h and image both conditions.",
    "anchoring_publication_pmids": ["12345678"],
    "confidence_tier": "high",
    "reasoning": "Specific phenotype, exact technical match.",
}

_PAIR = EligiblePair("aaaa", "bbbb", VISIBLE, VISIBLE, 1, 1)


def _context(existing: list[ExistingProposal] | None = None) -> PairContext:
    return PairContext(
        pair=_PAIR,
        input=MatchingInput(
            researcher_a=ResearcherContext("Dr. A", "Scripps", "Studies stress signaling."),
            researcher_b=ResearcherContext("Dr. B", "UCSF", "Builds cryo-ET pipelines."),
            existing_proposals=existing or [],
        ),
    )


def _text(value: str) -> list[ContentBlock]:
    return [ContentBlock(type="text", text=value)]


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code


# ---------------------------------------------------------------------------
# extract_text_content
# ---------------------------------------------------------------------------

def test_extract_text_content_joins_text_blocks() -> None:
    blocks = [
        ContentBlock(type="text", text="[{"),
        ContentBlock(type="thinking"),
        ContentBlock(type="text", text="}]"),
    ]
    assert extract_text_content(blocks) == "[{}]"


def test_extract_text_content_raises_without_text_blocks() -> None:
    with pytest.raises(EmptyResponseError, match="no text content blocks"):
        extract_text_content([ContentBlock(type="tool_use")])
    with pytest.raises(EmptyResponseError):
        extract_text_content([])


# ---------------------------------------------------------------------------
# Parse-retry state machine
# ---------------------------------------------------------------------------

def test_well_formed_first_response() -> None:
    complete = MagicMock(return_value=_text(json.dumps([_PROPOSAL])))

    result = generate_proposals_for_pair(_context(), complete=complete, model="test-model")

    assert [p.title for p in result.proposals] == [_PROPOSAL["title"]]
    assert result.discarded == 0
    assert result.deduplicated == 0
    assert result.attempts == 1
    assert result.retried is False
    assert result.raw_count == 1
    assert result.model == "test-model"
    complete.assert_called_once()


def test_complete_receives_model_config_and_user_message() -> None:
    complete = MagicMock(return_value=_text("[]"))

    generate_proposals_for_pair(_context(), complete=complete, model="test-model")

    args, kwargs = complete.call_args
    system, messages = args
    assert "JSON array" in system
    assert len(messages) == 1
    assert messages[0]["role"] == "user"
    assert "=== Researcher A ===" in messages[0]["content"]
    assert kwargs == {
        "model": "test-model",
        "max_tokens": MATCHING_MODEL_CONFIG.max_tokens,
        "temperature": MATCHING_MODEL_CONFIG.temperature,
        "timeout": MATCHING_MODEL_CONFIG.timeout_seconds,
    }


def test_unparseable_then_empty_array_retries_once() -> None:
    complete = MagicMock(side_effect=[_text("Sorry, here are some ideas..."), _text("[]")])

    result = generate_proposals_for_pair(_context(), complete=complete, model="m")

    assert result.proposals == []
    assert result.attempts == 2
    assert result.retried is True
    assert complete.call_count == 2

    retry_messages = complete.call_args_list[1].args[1]
    assert [m["role"] for m in retry_messages] == ["user", "assistant", "user"]
    assert retry_messages[1]["content"] == "Sorry, here are some ideas..."
    assert retry_messages[2]["content"] == build_matching_retry_message()


def test_first_call_history_is_not_mutated_by_retry() -> None:
    seen_lengths: list[int] = []

    def complete(system, messages, **kwargs):
        seen_lengths.append(len(messages))
        return _text("not json" if len(seen_lengths) == 1 else "[]")

    generate_proposals_for_pair(_context(), complete=complete, model="m")

    assert seen_lengths == [1, 3]


def test_non_array_then_valid_array() -> None:
    complete = MagicMock(
        side_effect=[_text(json.dumps(_PROPOSAL)), _text(json.dumps([_PROPOSAL]))]
    )

    result = generate_proposals_for_pair(_context(), complete=complete, model="m")

    assert len(result.proposals) == 1
    assert result.attempts == 2
    assert result.retried is True


def test_two_unparseable_responses_give_empty_result() -> None:
    complete = MagicMock(side_effect=[_text("nope"), _text("still nope")])

    result = generate_proposals_for_pair(_context(), complete=complete, model="m")

    assert result.proposals == []
    assert result.attempts == 2
    assert result.retried is True
    assert result.raw_count == 0
    assert complete.call_count == 2


def test_single_attempt_does_not_retry_parse_failure() -> None:
    complete = MagicMock(return_value=_text("nope"))

    result = generate_proposals_for_pair(_context(), complete=complete, model="m", max_attempts=1)

    assert result.proposals == []
    assert result.attempts == 1
    assert result.retried is False
    complete.assert_called_once()


def test_max_attempts_is_bounded_at_two() -> None:
    complete = MagicMock(return_value=_text("nope"))

    result = generate_proposals_for_pair(_context(), complete=complete, model="m", max_attempts=5)

    assert result.attempts == 2
    assert complete.call_count == 2


def test_invalid_elements_are_discarded_not_retried() -> None:
    bad = {**_PROPOSAL, "confidence_tier": "certain"}
    complete = MagicMock(return_value=_text(json.dumps([_PROPOSAL, bad, None])))

    result = generate_proposals_for_pair(_context(), complete=complete, model="m")

    assert len(result.proposals) == 1
    assert result.discarded == 2
    assert result.raw_count == 3
    assert result.attempts == 1
    complete.assert_called_once()


def test_duplicates_of_existing_proposals_are_removed() -> None:
    existing = [ExistingProposal(_PROPOSAL["title"], "An unrelated question")]
    fresh = {**_PROPOSAL, "title": "Kinase profiling", "scientific_question": "Which kinases matter?"}
    complete = MagicMock(return_value=_text(json.dumps([_PROPOSAL, fresh])))

    result = generate_proposals_for_pair(_context(existing), complete=complete, model="m")

    assert [p.title for p in result.proposals] == ["Kinase profiling"]
    assert result.deduplicated == 1
    assert result.discarded == 0


def test_more_than_three_elements_are_truncated() -> None:
    items = [{**_PROPOSAL, "title": f"Idea {i}", "scientific_question": f"Q{i}"} for i in range(5)]
    complete = MagicMock(return_value=_text(json.dumps(items)))

    result = generate_proposals_for_pair(_context(), complete=complete, model="m")

    assert len(result.proposals) == 3
    assert result.raw_count == 3


def test_default_model_comes_from_matching_config() -> None:
    complete = MagicMock(return_value=_text("[]"))

    result = generate_proposals_for_pair(_context(), complete=complete)

    assert result.model == MATCHING_MODEL_CONFIG.model


def test_defaults_to_anthropic_client() -> None:
    with patch("anthropic_client.complete", return_value=_text("[]")) as mock_complete:
        result = generate_proposals_for_pair(_context())

    mock_complete.assert_called_once()
    assert result.attempts == 1


# ---------------------------------------------------------------------------
# Transient-retry composition
# ---------------------------------------------------------------------------

def test_transient_error_is_retried_inside_one_attempt() -> None:
    complete = MagicMock(side_effect=[_StatusError(529), _text(json.dumps([_PROPOSAL]))])
    sleep = MagicMock()

    result = generate_proposals_for_pair(
        _context(), complete=complete, model="m", api_retry_base_delay_ms=0, sleep=sleep
    )

    assert len(result.proposals) == 1
    assert result.attempts == 1
    assert result.retried is False
    assert complete.call_count == 2


def test_exhausted_transient_retries_propagate() -> None:
    complete = MagicMock(side_effect=_StatusError(503))

    with pytest.raises(_StatusError):
        generate_proposals_for_pair(
            _context(), complete=complete, model="m", api_max_retries=3, api_retry_base_delay_ms=0
        )

    assert complete.call_count == 3


def test_fatal_error_propagates_without_retry() -> None:
    complete = MagicMock(side_effect=_StatusError(401))

    with pytest.raises(_StatusError):
        generate_proposals_for_pair(_context(), complete=complete, model="m")

    complete.assert_called_once()


def test_response_without_text_blocks_is_fatal() -> None:
    complete = MagicMock(return_value=[ContentBlock(type="tool_use")])

    with pytest.raises(EmptyResponseError):
        generate_proposals_for_pair(_context(), complete=complete, model="m")

    complete.assert_called_once()


def test_worst_case_physical_calls() -> None:
    # Each logical attempt needs three physical calls; both attempts return unparseable text.
    complete = MagicMock(
        side_effect=[
            _StatusError(500),
            _StatusError(500),
            _text("garbage"),
            _StatusError(500),
            _StatusError(500),
            _text("more garbage"),
        ]
    )

    result = generate_proposals_for_pair(
        _context(), complete=complete, model="m", api_max_retries=3, api_retry_base_delay_ms=0
    )

    assert result.attempts == 2
    assert complete.call_count == 6


def test_cancelled_event_aborts_before_calling() -> None:
    event = threading.Event()
    event.set()
    complete = MagicMock()

    with pytest.raises(OperationCancelled):
        generate_proposals_for_pair(_context(), complete=complete, model="m", cancel_event=event)

    complete.assert_not_called()


def test_cancel_during_call_discards_reply() -> None:
    event = threading.Event()
    parse_calls = []

    def complete(system, messages, **kwargs):
        # Caller cancels while the request is in flight.
        event.set()
        return _text(json.dumps([_PROPOSAL]))

    with patch("matching_engine.parse_matching_output", side_effect=parse_calls.append):
        with pytest.raises(OperationCancelled):
            generate_proposals_for_pair(
                _context(), complete=complete, model="m", cancel_event=event
            )

    assert parse_calls == []


def test_cancel_during_first_call_skips_parse_retry() -> None:
    event = threading.Event()

    def cancel_then_reply(*args, **kwargs):
        event.set()
        return _text("garbage")

    complete = MagicMock(side_effect=cancel_then_reply)

    with pytest.raises(OperationCancelled):
        generate_proposals_for_pair(_context(), complete=complete, model="m", cancel_event=event)

    complete.assert_called_once()


# ---------------------------------------------------------------------------
# Request timeout
# ---------------------------------------------------------------------------

def test_request_timeout_is_passed_to_every_call() -> None:
    complete = MagicMock(side_effect=[_text("garbage"), _text("[]")])

    generate_proposals_for_pair(
        _context(), complete=complete, model="m", request_timeout_seconds=7.5
    )

    assert [c.kwargs["timeout"] for c in complete.call_args_list] == [7.5, 7.5]


def test_request_timeout_defaults_to_matching_config() -> None:
    complete = MagicMock(return_value=_text("[]"))

    generate_proposals_for_pair(_context(), complete=complete, model="m")

    assert complete.call_args.kwargs["timeout"] == MATCHING_MODEL_CONFIG.timeout_seconds
