"""Shared typed models for the matching engine."""

from __future__ import annotations

from dataclasses import dataclass, field

# Pool entry sources
INDIVIDUAL_SELECT = "individual_select"
AFFILIATION_SELECT = "affiliation_select"
ALL_USERS = "all_users"

BULK_SOURCES: frozenset[str] = frozenset({AFFILIATION_SELECT, ALL_USERS})

# Per-side proposal visibility
VISIBLE = "visible"
PENDING_OTHER_INTEREST = "pending_other_interest"
HIDDEN = "hidden"

# MatchingResult outcomes
PROPOSALS_GENERATED = "proposals_generated"
NO_PROPOSAL = "no_proposal"

CONFIDENCE_TIERS: frozenset[str] = frozenset({"high", "moderate", "speculative"})


@dataclass(frozen=True, slots=True)
class PoolEntry:
    """Directed edge: the selector wants the target considered for matching."""

    user_id: str
    target_user_id: str
    source: str = INDIVIDUAL_SELECT


@dataclass(frozen=True, slots=True)
class UserState:
    id: str
    allow_incoming_proposals: bool
    has_profile: bool
    profile_version: int = 1


@dataclass(frozen=True, slots=True)
class EligiblePair:
    """A pair to evaluate. researcher_a_id is always the lexicographically smaller id."""

    researcher_a_id: str
    researcher_b_id: str
    visibility_a: str
    visibility_b: str
    profile_version_a: int
    profile_version_b: int


@dataclass(frozen=True, slots=True)
class MatchingResult:
    researcher_a_id: str
    researcher_b_id: str
    profile_version_a: int
    profile_version_b: int
    outcome: str = NO_PROPOSAL


@dataclass(frozen=True, slots=True)
class MatchingPublication:
    title: str
    journal: str
    year: int
    author_position: str  # first | last | middle
    abstract: str
    pmid: str | None = None


@dataclass(frozen=True, slots=True)
class UserSubmittedText:
    label: str
    content: str


@dataclass(frozen=True, slots=True)
class ResearcherContext:
    """All profile and publication data for one researcher in a pair."""

    name: str
    institution: str
    research_summary: str
    department: str | None = None
    techniques: list[str] = field(default_factory=list)
    experimental_models: list[str] = field(default_factory=list)
    disease_areas: list[str] = field(default_factory=list)
    key_targets: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    grant_titles: list[str] = field(default_factory=list)
    user_submitted_texts: list[UserSubmittedText] = field(default_factory=list)
    publications: list[MatchingPublication] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ExistingProposal:
    title: str
    scientific_question: str


@dataclass(frozen=True, slots=True)
class MatchingInput:
    researcher_a: ResearcherContext
    researcher_b: ResearcherContext
    existing_proposals: list[ExistingProposal] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class PairContext:
    """An eligible pair together with its prompt-ready input."""

    pair: EligiblePair
    input: MatchingInput


@dataclass(frozen=True, slots=True)
class ProposalOutput:
    """A single validated proposal as produced by the LLM."""

    title: str
    collaboration_type: str
    scientific_question: str
    one_line_summary_a: str
    one_line_summary_b: str
    detailed_rationale: str
    lab_a_contributions: str
    lab_b_contributions: str
    lab_a_benefits: str
    lab_b_benefits: str
    proposed_first_experiment: str
    anchoring_publication_pmids: list[str]
    confidence_tier: str
    reasoning: str


@dataclass(frozen=True, slots=True)
class ContentBlock:
    """Provider-neutral piece of an LLM response (only "text" blocks carry text)."""

    type: str
    text: str = ""


@dataclass(frozen=True, slots=True)
class ProposalGenerationResult:
    proposals: list[ProposalOutput]
    discarded: int
    deduplicated: int
    attempts: int
    retried: bool
    raw_count: int
    model: str


@dataclass(frozen=True, slots=True)
class StoredProposalsSummary:
    stored: int
    unresolved_pmids: int
