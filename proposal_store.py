"""Persistence for the matching engine: pool/user/profile reads and the atomic proposal write."""

from __future__ import annotations

import logging
import os
import threading
from typing import Sequence

from sqlalchemy import create_engine, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from db_models import (
    Base,
    CollaborationProposal,
    MatchingResultRow,
    MatchPoolEntryRow,
    Publication,
    ResearcherProfile,
    User,
)
from models import (
    NO_PROPOSAL,
    PROPOSALS_GENERATED,
    ExistingProposal,
    MatchingPublication,
    MatchingResult,
    PairContext,
    PoolEntry,
    ProposalGenerationResult,
    StoredProposalsSummary,
    UserState,
)
from retry_policy import check_cancelled

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///matching.db")

LOGGER = logging.getLogger(__name__)


class ProposalStore:
    """Reads matching inputs and writes proposals plus their audit record.

    Args:
        engine: SQLAlchemy engine. Defaults to one built from DATABASE_URL.
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self.engine = engine or create_engine(DATABASE_URL)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    # ---------------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------------

    def read_pool_entries(self, for_user_id: str | None = None) -> list[PoolEntry]:
        """Pool entries, optionally only those where the user is selector or target."""
        stmt = select(MatchPoolEntryRow)
        if for_user_id:
            stmt = stmt.where(
                or_(
                    MatchPoolEntryRow.user_id == for_user_id,
                    MatchPoolEntryRow.target_user_id == for_user_id,
                )
            )
        with self.session_factory() as session:
            rows = session.scalars(stmt.order_by(MatchPoolEntryRow.created_at)).all()
            return [
                PoolEntry(user_id=r.user_id, target_user_id=r.target_user_id, source=r.source)
                for r in rows
            ]

    def read_users(self, user_ids: Sequence[str] | None = None) -> list[UserState]:
        stmt = select(User, ResearcherProfile).outerjoin(
            ResearcherProfile, ResearcherProfile.user_id == User.id
        )
        if user_ids is not None:
            stmt = stmt.where(User.id.in_(list(user_ids)))
        with self.session_factory() as session:
            return [
                UserState(
                    id=user.id,
                    allow_incoming_proposals=bool(user.allow_incoming_proposals),
                    has_profile=profile is not None,
                    profile_version=profile.profile_version if profile is not None else 0,
                )
                for user, profile in session.execute(stmt).all()
            ]

    def read_matching_results(self, for_user_id: str | None = None) -> list[MatchingResult]:
        stmt = select(MatchingResultRow)
        if for_user_id:
            stmt = stmt.where(
                or_(
                    MatchingResultRow.researcher_a_id == for_user_id,
                    MatchingResultRow.researcher_b_id == for_user_id,
                )
            )
        with self.session_factory() as session:
            return [
                MatchingResult(
                    researcher_a_id=r.researcher_a_id,
                    researcher_b_id=r.researcher_b_id,
                    profile_version_a=r.profile_version_a,
                    profile_version_b=r.profile_version_b,
                    outcome=r.outcome,
                )
                for r in session.scalars(stmt).all()
            ]

    def read_researcher(self, user_id: str) -> tuple[User, ResearcherProfile | None] | None:
        """The user row and its profile row (detached), or None if the user does not exist."""
        with self.session_factory() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            profile = session.scalars(
                select(ResearcherProfile).where(ResearcherProfile.user_id == user_id)
            ).first()
            return user, profile

    def read_publications(self, user_id: str) -> list[MatchingPublication]:
        """All of a researcher's publications, most recent first."""
        stmt = (
            select(Publication)
            .where(Publication.user_id == user_id)
            .order_by(Publication.year.desc())
        )
        with self.session_factory() as session:
            return [
                MatchingPublication(
                    title=p.title,
                    journal=p.journal or "",
                    year=p.year,
                    author_position=p.author_position,
                    abstract=p.abstract or "",
                    pmid=p.pmid,
                )
                for p in session.scalars(stmt).all()
            ]

    def read_existing_proposals(
        self, researcher_a_id: str, researcher_b_id: str
    ) -> list[ExistingProposal]:
        stmt = select(CollaborationProposal).where(
            CollaborationProposal.researcher_a_id == researcher_a_id,
            CollaborationProposal.researcher_b_id == researcher_b_id,
        )
        with self.session_factory() as session:
            return [
                ExistingProposal(title=p.title, scientific_question=p.scientific_question)
                for p in session.scalars(stmt).all()
            ]

    # ---------------------------------------------------------------------------
    # Atomic write
    # ---------------------------------------------------------------------------

    def store_proposals_and_result(
        self,
        pair_context: PairContext,
        generation_result: ProposalGenerationResult,
        cancel_event: threading.Event | None = None,
    ) -> StoredProposalsSummary:
        """Persist the pair's proposals and its MatchingResult in one transaction.

        Anchoring PMIDs resolve only against publications owned by the two
        researchers in the pair; unresolved ones are counted and dropped. A set
        `cancel_event` aborts before commit, rolling everything back.
        """
        pair = pair_context.pair
        proposals = generation_result.proposals
        outcome = PROPOSALS_GENERATED if proposals else NO_PROPOSAL
        pair_ids = [pair.researcher_a_id, pair.researcher_b_id]

        all_pmids = {
            pmid.strip()
            for proposal in proposals
            for pmid in proposal.anchoring_publication_pmids
            if pmid and pmid.strip()
        }

        unresolved = 0
        with self.session_factory.begin() as session:
            pmid_to_id: dict[str, str] = {}
            if all_pmids:
                rows = session.execute(
                    select(Publication.id, Publication.pmid).where(
                        Publication.pmid.in_(sorted(all_pmids)),
                        Publication.user_id.in_(pair_ids),
                    )
                ).all()
                pmid_to_id = {pmid: pub_id for pub_id, pmid in rows if pmid}

            for proposal in proposals:
                anchoring_ids: list[str] = []
                for pmid in proposal.anchoring_publication_pmids:
                    pmid = pmid.strip()
                    if not pmid:
                        continue
                    if pmid in pmid_to_id:
                        anchoring_ids.append(pmid_to_id[pmid])
                    else:
                        unresolved += 1

                session.add(
                    CollaborationProposal(
                        researcher_a_id=pair.researcher_a_id,
                        researcher_b_id=pair.researcher_b_id,
                        title=proposal.title,
                        collaboration_type=proposal.collaboration_type,
                        scientific_question=proposal.scientific_question,
                        one_line_summary_a=proposal.one_line_summary_a,
                        one_line_summary_b=proposal.one_line_summary_b,
                        detailed_rationale=proposal.detailed_rationale,
                        lab_a_contributions=proposal.lab_a_contributions,
                        lab_b_contributions=proposal.lab_b_contributions,
                        lab_a_benefits=proposal.lab_a_benefits,
                        lab_b_benefits=proposal.lab_b_benefits,
                        proposed_first_experiment=proposal.proposed_first_experiment,
                        anchoring_publication_ids=anchoring_ids,
                        confidence_tier=proposal.confidence_tier,
                        llm_reasoning=proposal.reasoning,
                        llm_model=generation_result.model,
                        visibility_a=pair.visibility_a,
                        visibility_b=pair.visibility_b,
                        profile_version_a=pair.profile_version_a,
                        profile_version_b=pair.profile_version_b,
                    )
                )

            session.add(
                MatchingResultRow(
                    researcher_a_id=pair.researcher_a_id,
                    researcher_b_id=pair.researcher_b_id,
                    outcome=outcome,
                    profile_version_a=pair.profile_version_a,
                    profile_version_b=pair.profile_version_b,
                )
            )
            session.flush()
            check_cancelled(cancel_event)

        if unresolved:
            LOGGER.warning(
                "Pair %s/%s: %s anchoring PMID(s) did not resolve to a publication of either researcher",
                pair.researcher_a_id,
                pair.researcher_b_id,
                unresolved,
            )
        return StoredProposalsSummary(stored=len(proposals), unresolved_pmids=unresolved)
