"""CLI entrypoint for a matching cycle: eligible pairs -> context -> LLM proposals -> store."""

from __future__ import annotations

import argparse
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable

from dotenv import load_dotenv

import anthropic_client
import openai_client
from eligible_pairs import compute_eligible_pairs, order_user_ids
from matching_context import assemble_context_for_pair
from matching_engine import CompleteFn, generate_proposals_for_pair
from matching_prompt import MATCHING_MODEL_CONFIG
from models import EligiblePair, PairContext, StoredProposalsSummary
from proposal_store import ProposalStore
from retry_policy import OperationCancelled


@dataclass(frozen=True, slots=True)
class CycleSummary:
    eligible: int
    processed: int
    skipped: int
    failed: int
    stored: int


def parse_args() -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Generate collaboration proposals for eligible researcher pairs")
    parser.add_argument("--for-user", default=None, help="Only evaluate pairs involving this user id")
    parser.add_argument(
        "--pair",
        nargs=2,
        metavar=("USER_ID", "USER_ID"),
        default=None,
        help="Evaluate a single pair (skipped if not eligible or already evaluated)",
    )
    parser.add_argument("--cap", type=int, default=None, help="Per-user match pool cap (default MATCH_POOL_CAP)")
    parser.add_argument("--seed", default=None, help="Bulk sampling seed (default: current ISO week)")
    parser.add_argument("--disable-cap", action="store_true", help="Use every pool entry, no capping")
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of pairs to evaluate")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only log which pairs would be evaluated, without LLM calls or writes",
    )
    return parser.parse_args()


def select_provider(provider: str | None = None) -> tuple[CompleteFn, str]:
    """Return (complete function, model name) for LLM_PROVIDER."""
    provider = (provider or os.getenv("LLM_PROVIDER", "anthropic")).strip().lower()
    if provider == "anthropic":
        return anthropic_client.complete, MATCHING_MODEL_CONFIG.model
    if provider == "openai":
        return openai_client.complete, openai_client.OPENAI_MODEL
    raise RuntimeError(f"Unsupported LLM_PROVIDER {provider!r} (expected 'anthropic' or 'openai')")


def _process_pair(
    store: ProposalStore,
    pair: EligiblePair,
    complete: CompleteFn,
    model: str,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StoredProposalsSummary | None:
    """Assemble, generate and store one pair. None means context was unavailable."""
    pair_label = f"{pair.researcher_a_id}/{pair.researcher_b_id}"
    matching_input = assemble_context_for_pair(store, pair.researcher_a_id, pair.researcher_b_id)
    if matching_input is None:
        logging.warning("Failed to assemble context for pair %s: missing profile data", pair_label)
        return None

    pair_context = PairContext(pair=pair, input=matching_input)
    result = generate_proposals_for_pair(
        pair_context,
        complete=complete,
        model=model,
        cancel_event=cancel_event,
        sleep=sleep,
    )
    summary = store.store_proposals_and_result(pair_context, result, cancel_event=cancel_event)
    logging.info(
        "Pair %s: generated=%s stored=%s discarded=%s deduplicated=%s attempts=%s",
        pair_label,
        len(result.proposals),
        summary.stored,
        result.discarded,
        result.deduplicated,
        result.attempts,
    )
    return summary


def run_matching_for_pair(
    store: ProposalStore,
    researcher_a_id: str,
    researcher_b_id: str,
    complete: CompleteFn,
    model: str,
    cap: int | None = None,
    seed: str | None = None,
    disable_cap: bool = False,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StoredProposalsSummary | None:
    """Evaluate one pair if it is still eligible.

    Returns None without error when the pair is ineligible, already evaluated
    at the current profile versions, or missing profile data. LLM errors that
    survive backoff and storage errors are logged and re-raised.
    """
    a_id, b_id = order_user_ids(researcher_a_id, researcher_b_id)
    pair_label = f"{a_id}/{b_id}"

    entries = store.read_pool_entries(for_user_id=a_id)
    user_ids = {e.user_id for e in entries} | {e.target_user_id for e in entries}
    pairs = compute_eligible_pairs(
        entries,
        store.read_users(sorted(user_ids)),
        store.read_matching_results(for_user_id=a_id),
        for_user_id=a_id,
        cap=cap,
        seed=seed,
        disable_cap=disable_cap,
    )
    pair = next(
        (p for p in pairs if p.researcher_a_id == a_id and p.researcher_b_id == b_id), None
    )
    if pair is None:
        logging.info("Pair %s not eligible or already evaluated. Skipping.", pair_label)
        return None

    try:
        return _process_pair(store, pair, complete, model, cancel_event=cancel_event, sleep=sleep)
    except Exception as exc:
        logging.error("Pair %s matching failed: %s", pair_label, exc)
        raise


def run_matching_cycle(
    store: ProposalStore,
    complete: CompleteFn,
    model: str,
    for_user_id: str | None = None,
    cap: int | None = None,
    seed: str | None = None,
    disable_cap: bool = False,
    limit: int | None = None,
    dry_run: bool = False,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> CycleSummary:
    """Evaluate every eligible pair sequentially; one pair's failure never stops the cycle."""
    pairs = compute_eligible_pairs(
        store.read_pool_entries(for_user_id=for_user_id),
        store.read_users(),
        store.read_matching_results(for_user_id=for_user_id),
        for_user_id=for_user_id,
        cap=cap,
        seed=seed,
        disable_cap=disable_cap,
    )
    eligible = len(pairs)
    if limit is not None:
        pairs = pairs[:limit]
    logging.info("Matching cycle: eligible=%s to_process=%s dry_run=%s", eligible, len(pairs), dry_run)

    processed = 0
    skipped = 0
    failed = 0
    stored = 0

    for pair in pairs:
        pair_label = f"{pair.researcher_a_id}/{pair.researcher_b_id}"
        if dry_run:
            processed += 1
            logging.info(
                "[dry-run] Would evaluate pair %s (visibility %s/%s, versions %s/%s)",
                pair_label,
                pair.visibility_a,
                pair.visibility_b,
                pair.profile_version_a,
                pair.profile_version_b,
            )
            continue

        try:
            summary = _process_pair(store, pair, complete, model, cancel_event=cancel_event, sleep=sleep)
        except OperationCancelled:
            logging.warning("Matching cycle cancelled before pair %s completed", pair_label)
            break
        except Exception as exc:  # keep the cycle going; the pair stays unevaluated for next run
            failed += 1
            logging.exception("Failed processing pair %s: %s", pair_label, exc)
            continue

        if summary is None:
            skipped += 1
        else:
            processed += 1
            stored += summary.stored

    logging.info(
        "Cycle complete. processed=%s skipped=%s failed=%s stored=%s",
        processed,
        skipped,
        failed,
        stored,
    )
    return CycleSummary(
        eligible=eligible, processed=processed, skipped=skipped, failed=failed, stored=stored
    )


def main() -> None:
    """Initialize config and execute one matching run."""
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args()

    store = ProposalStore()
    store.create_schema()
    complete, model = select_provider()

    if args.pair:
        if args.dry_run:
            logging.info("[dry-run] Would evaluate pair %s/%s", *order_user_ids(*args.pair))
            return
        run_matching_for_pair(
            store,
            args.pair[0],
            args.pair[1],
            complete,
            model,
            cap=args.cap,
            seed=args.seed,
            disable_cap=args.disable_cap,
        )
        return

    run_matching_cycle(
        store,
        complete,
        model,
        for_user_id=args.for_user,
        cap=args.cap,
        seed=args.seed,
        disable_cap=args.disable_cap,
        limit=args.limit,
        dry_run=args.dry_run,
    )


if __name__ == "__main__":
    main()
