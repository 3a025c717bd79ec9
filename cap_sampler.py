"""Per-user match pool capping with seeded, rotating sampling of bulk entries."""

from __future__ import annotations

import hashlib
import logging
import os
import random
from datetime import UTC, date, datetime
from typing import Sequence, TypeVar

from models import BULK_SOURCES, PoolEntry

MATCH_POOL_CAP = int(os.getenv("MATCH_POOL_CAP", "200"))

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def cycle_seed(today: date | None = None) -> str:
    """Return the ISO week label (e.g. '2026-W42') used as the default rotation seed."""
    today = today or datetime.now(UTC).date()
    year, week, _ = today.isocalendar()
    return f"{year}-W{week:02d}"


def seeded_sample(items: Sequence[T], count: int, seed: str) -> list[T]:
    """Pick `count` items deterministically for `seed`.

    Runs a partial Fisher-Yates shuffle on a copy of `items`, driven by a
    private Random instance seeded from a SHA-256 digest of `seed`. The same
    (items, seed) always yields the same list; a different seed yields a
    different subset with high probability. `items` is never mutated.
    """
    if count <= 0:
        return []
    pool = list(items)
    if count >= len(pool):
        return pool

    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    rng = random.Random(int.from_bytes(digest[:8], "big"))

    for i in range(count):
        j = i + int(rng.random() * (len(pool) - i))
        pool[i], pool[j] = pool[j], pool[i]
    return pool[:count]


def cap_entries_for_user(
    entries: Sequence[PoolEntry],
    cap_size: int,
    user_id: str,
    seed: str | None = None,
) -> list[PoolEntry]:
    """Cap one selector's pool entries at `cap_size`.

    Entries from a bulk source (affiliation_select, all_users) are sampled to
    fill whatever budget the explicit selections leave. Everything else,
    individual_select included, is always kept, even past the cap.
    """
    individual = [e for e in entries if e.source not in BULK_SOURCES]
    bulk = [e for e in entries if e.source in BULK_SOURCES]

    remaining = max(0, cap_size - len(individual))
    if len(bulk) <= remaining:
        return individual + bulk

    base_seed = seed if seed is not None else cycle_seed()
    sampled = seeded_sample(bulk, remaining, f"{base_seed}:{user_id}")
    LOGGER.debug(
        "Capped pool for user_id=%s: individual=%s bulk=%s sampled=%s cap=%s",
        user_id,
        len(individual),
        len(bulk),
        len(sampled),
        cap_size,
    )
    return individual + sampled
