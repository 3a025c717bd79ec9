"""SQLAlchemy ORM models for the tables the matching engine reads and writes."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    institution = Column(String, nullable=False, default="")
    department = Column(String, nullable=True)
    allow_incoming_proposals = Column(Boolean, nullable=False, default=False)

    profile = relationship("ResearcherProfile", back_populates="user", uselist=False)

    def __repr__(self):
        return f"<User(id={self.id}, name={self.name})>"


class ResearcherProfile(Base):
    __tablename__ = "researcher_profiles"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    research_summary = Column(Text, nullable=False, default="")

    # Lists of strings
    techniques = Column(JSON, nullable=False, default=list)
    experimental_models = Column(JSON, nullable=False, default=list)
    disease_areas = Column(JSON, nullable=False, default=list)
    key_targets = Column(JSON, nullable=False, default=list)
    keywords = Column(JSON, nullable=False, default=list)
    grant_titles = Column(JSON, nullable=False, default=list)

    # [{"label": ..., "content": ...}], user-entered and loosely validated
    user_submitted_texts = Column(JSON, nullable=True)

    # Bumped whenever profile content changes; drives re-evaluation
    profile_version = Column(Integer, nullable=False, default=1)

    user = relationship("User", back_populates="profile")


class Publication(Base):
    __tablename__ = "publications"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    pmid = Column(String, nullable=True, index=True)
    title = Column(Text, nullable=False)
    journal = Column(String, nullable=False, default="")
    year = Column(Integer, nullable=False)
    author_position = Column(String, nullable=False, default="middle")  # first | last | middle
    abstract = Column(Text, nullable=False, default="")


class MatchPoolEntryRow(Base):
    __tablename__ = "match_pool_entries"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    target_user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(String, nullable=False, default="individual_select")
    created_at = Column(DateTime, default=_utcnow, nullable=False)


class CollaborationProposal(Base):
    __tablename__ = "collaboration_proposals"

    id = Column(String(36), primary_key=True, default=_new_id)
    researcher_a_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    researcher_b_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    title = Column(Text, nullable=False)
    collaboration_type = Column(String, nullable=False)
    scientific_question = Column(Text, nullable=False)
    one_line_summary_a = Column(Text, nullable=False)
    one_line_summary_b = Column(Text, nullable=False)
    detailed_rationale = Column(Text, nullable=False)
    lab_a_contributions = Column(Text, nullable=False)
    lab_b_contributions = Column(Text, nullable=False)
    lab_a_benefits = Column(Text, nullable=False)
    lab_b_benefits = Column(Text, nullable=False)
    proposed_first_experiment = Column(Text, nullable=False)
    anchoring_publication_ids = Column(JSON, nullable=False, default=list)  # publications.id values
    confidence_tier = Column(String, nullable=False)
    llm_reasoning = Column(Text, nullable=True)
    llm_model = Column(String, nullable=True)

    visibility_a = Column(String, nullable=False)
    visibility_b = Column(String, nullable=False)
    profile_version_a = Column(Integer, nullable=False)
    profile_version_b = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=_utcnow, nullable=False)


class MatchingResultRow(Base):
    """Append-only audit record: one row per pair evaluation."""

    __tablename__ = "matching_results"

    id = Column(String(36), primary_key=True, default=_new_id)
    researcher_a_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    researcher_b_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    outcome = Column(String, nullable=False)
    profile_version_a = Column(Integer, nullable=False)
    profile_version_b = Column(Integer, nullable=False)
    evaluated_at = Column(DateTime, default=_utcnow, nullable=False)
