"""Eligible pair computation for the matching engine.

Decides which researcher pairs should have collaboration proposals generated
and which side of each pair may see them. A pair (A, B) is eligible when:

- A selected B and B selected A (mutual): both sides visible.
- Only A selected B and B allows incoming proposals: A visible, B pending.
- Only B selected A and A allows incoming proposals: B visible, A pending.

Both researchers must have a profile, and a pair already evaluated at the
same pair of profile versions is skipped.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable

from cap_sampler import MATCH_POOL_CAP, cap_entries_for_user
from models import (
    PENDING_OTHER_INTEREST,
    VISIBLE,
    EligiblePair,
    MatchingResult,
    PoolEntry,
    UserState,
)

LOGGER = logging.getLogger(__name__)


def order_user_ids(first: str, second: str) -> tuple[str, str]:
    """Return the two ids as (researcher_a_id, researcher_b_id), smaller first."""
    return (first, second) if first < second else (second, first)


def compute_eligible_pairs(
    pool_entries: Iterable[PoolEntry],
    users: Iterable[UserState],
    prior_results: Iterable[MatchingResult],
    for_user_id: str | None = None,
    cap: int | None = None,
    seed: str | None = None,
    disable_cap: bool = False,
) -> list[EligiblePair]:
    """Compute every pair that needs evaluation, in first-seen order.

    Args:
        pool_entries: Directed match pool selections.
        users: Settings and profile state of the users involved.
        prior_results: The MatchingResult audit trail.
        for_user_id: Only consider entries where this user is selector or target.
        cap: Per-selector pool cap; defaults to MATCH_POOL_CAP.
        seed: Rotation seed for bulk sampling; defaults to the ISO week.
        disable_cap: Skip capping entirely (admin/debug runs).
    """
    entries = list(pool_entries)
    if for_user_id is not None:
        entries = [
            e for e in entries if e.user_id == for_user_id or e.target_user_id == for_user_id
        ]
    if not entries:
        return []

    if not disable_cap:
        entries = _cap_per_selector(entries, MATCH_POOL_CAP if cap is None else cap, seed)

    selected: set[tuple[str, str]] = {(e.user_id, e.target_user_id) for e in entries}
    users_by_id = {u.id: u for u in users}

    candidates: dict[tuple[str, str], EligiblePair] = {}
    for entry in entries:
        key = order_user_ids(entry.user_id, entry.target_user_id)
        if key in candidates or key[0] == key[1]:
            continue

        a_id, b_id = key
        user_a = users_by_id.get(a_id)
        user_b = users_by_id.get(b_id)
        if user_a is None or user_b is None or not user_a.has_profile or not user_b.has_profile:
            continue

        visibility = _compute_visibility(
            a_selected_b=(a_id, b_id) in selected,
            b_selected_a=(b_id, a_id) in selected,
            a_allows_incoming=user_a.allow_incoming_proposals,
            b_allows_incoming=user_b.allow_incoming_proposals,
        )
        if visibility is None:
            continue

        candidates[key] = EligiblePair(
            researcher_a_id=a_id,
            researcher_b_id=b_id,
            visibility_a=visibility[0],
            visibility_b=visibility[1],
            profile_version_a=user_a.profile_version,
            profile_version_b=user_b.profile_version,
        )

    pairs = _filter_already_evaluated(list(candidates.values()), prior_results)
    LOGGER.info(
        "Eligible pairs: entries=%s candidates=%s eligible=%s for_user_id=%s",
        len(entries),
        len(candidates),
        len(pairs),
        for_user_id,
    )
    return pairs


def _cap_per_selector(
    entries: list[PoolEntry], cap: int, seed: str | None
) -> list[PoolEntry]:
    by_selector: dict[str, list[PoolEntry]] = defaultdict(list)
    for entry in entries:
        by_selector[entry.user_id].append(entry)

    capped: list[PoolEntry] = []
    for user_id, user_entries in by_selector.items():
        capped.extend(cap_entries_for_user(user_entries, cap, user_id, seed))
    return capped


def _compute_visibility(
    a_selected_b: bool,
    b_selected_a: bool,
    a_allows_incoming: bool,
    b_allows_incoming: bool,
) -> tuple[str, str] | None:
    """Return (visibility_a, visibility_b), or None if the pair is not eligible."""
    if a_selected_b and b_selected_a:
        return VISIBLE, VISIBLE
    if a_selected_b and b_allows_incoming:
        return VISIBLE, PENDING_OTHER_INTEREST
    if b_selected_a and a_allows_incoming:
        return PENDING_OTHER_INTEREST, VISIBLE
    return None


def _filter_already_evaluated(
    pairs: list[EligiblePair], prior_results: Iterable[MatchingResult]
) -> list[EligiblePair]:
    """Drop pairs with a MatchingResult at exactly the current profile versions."""
    evaluated: set[tuple[str, str, int, int]] = set()
    for result in prior_results:
        a_id, b_id = order_user_ids(result.researcher_a_id, result.researcher_b_id)
        if a_id == result.researcher_a_id:
            evaluated.add((a_id, b_id, result.profile_version_a, result.profile_version_b))
        else:
            evaluated.add((a_id, b_id, result.profile_version_b, result.profile_version_a))

    return [
        p
        for p in pairs
        if (p.researcher_a_id, p.researcher_b_id, p.profile_version_a, p.profile_version_b)
        not in evaluated
    ]
