"""Turns eligible pairs into prompt-ready matching input by reading researcher data from the store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from models import (
    EligiblePair,
    MatchingInput,
    PairContext,
    ResearcherContext,
    UserSubmittedText,
)
from proposal_store import ProposalStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PairContextError:
    pair: EligiblePair
    error: str


def parse_user_submitted_texts(raw: Any) -> list[UserSubmittedText]:
    """Keep only {label, content} objects from the stored JSON; anything else is dropped."""
    if not isinstance(raw, list):
        return []
    return [
        UserSubmittedText(label=str(entry["label"]), content=str(entry["content"]))
        for entry in raw
        if isinstance(entry, dict) and "label" in entry and "content" in entry
    ]


def fetch_researcher_context(store: ProposalStore, user_id: str) -> ResearcherContext | None:
    """Profile plus all publications for one researcher, or None without a user or profile."""
    record = store.read_researcher(user_id)
    if record is None:
        return None
    user, profile = record
    if profile is None:
        return None

    return ResearcherContext(
        name=user.name,
        institution=user.institution or "",
        department=user.department or None,
        research_summary=profile.research_summary or "",
        techniques=list(profile.techniques or []),
        experimental_models=list(profile.experimental_models or []),
        disease_areas=list(profile.disease_areas or []),
        key_targets=list(profile.key_targets or []),
        keywords=list(profile.keywords or []),
        grant_titles=list(profile.grant_titles or []),
        user_submitted_texts=parse_user_submitted_texts(profile.user_submitted_texts),
        publications=store.read_publications(user_id),
    )


def assemble_context_for_pair(
    store: ProposalStore, researcher_a_id: str, researcher_b_id: str
) -> MatchingInput | None:
    researcher_a = fetch_researcher_context(store, researcher_a_id)
    researcher_b = fetch_researcher_context(store, researcher_b_id)
    if researcher_a is None or researcher_b is None:
        return None

    return MatchingInput(
        researcher_a=researcher_a,
        researcher_b=researcher_b,
        existing_proposals=store.read_existing_proposals(researcher_a_id, researcher_b_id),
    )


def assemble_context_for_pairs(
    store: ProposalStore, pairs: Sequence[EligiblePair]
) -> tuple[list[PairContext], list[PairContextError]]:
    """Assemble contexts one pair at a time; a failing pair is reported, never raised."""
    contexts: list[PairContext] = []
    errors: list[PairContextError] = []

    for pair in pairs:
        try:
            matching_input = assemble_context_for_pair(
                store, pair.researcher_a_id, pair.researcher_b_id
            )
        except Exception as exc:
            LOGGER.exception(
                "Context assembly failed for pair %s/%s", pair.researcher_a_id, pair.researcher_b_id
            )
            errors.append(PairContextError(pair=pair, error=str(exc)))
            continue

        if matching_input is None:
            errors.append(
                PairContextError(
                    pair=pair, error="One or both researchers missing profile or user record"
                )
            )
        else:
            contexts.append(PairContext(pair=pair, input=matching_input))

    return contexts, errors
