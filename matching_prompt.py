"""Prompt builder and output validator for collaboration proposal generation.

Public API
----------
select_publications(pubs, cap, require_abstract) -> list[MatchingPublication]
select_abstracts_for_matching(pubs)              -> list[MatchingPublication]  # cap 10
select_publications_for_synthesis(pubs)          -> list[MatchingPublication]  # cap 30
get_matching_system_message()                    -> str
build_matching_user_message(matching_input)      -> str
build_matching_messages(matching_input)          -> (system, user)
build_matching_retry_message()                   -> str
parse_matching_output(raw)                       -> list[Any]
decode_proposal(obj)                             -> ProposalOutput | list[FieldError]
validate_proposal(obj)                           -> ProposalValidationResult
filter_valid_proposals(items)                    -> FilterResult
compute_text_similarity(a, b)                    -> float
deduplicate_proposals(candidates, existing, threshold) -> DeduplicationResult
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any, Sequence

from models import (
    CONFIDENCE_TIERS,
    ExistingProposal,
    MatchingInput,
    MatchingPublication,
    ProposalOutput,
    ResearcherContext,
)

MAX_ABSTRACTS_PER_RESEARCHER = 10
MAX_SYNTHESIS_PUBLICATIONS = 30
MAX_PROPOSALS_PER_CALL = 3
DEFAULT_SIMILARITY_THRESHOLD = 0.5

_AUTHOR_POSITION_PRIORITY: dict[str, int] = {"last": 0, "first": 1, "middle": 2}

REQUIRED_STRING_FIELDS: tuple[str, ...] = (
    "title",
    "collaboration_type",
    "scientific_question",
    "one_line_summary_a",
    "one_line_summary_b",
    "detailed_rationale",
    "lab_a_contributions",
    "lab_b_contributions",
    "lab_a_benefits",
    "lab_b_benefits",
    "proposed_first_experiment",
    "confidence_tier",
    "reasoning",
)

ANCHORING_FIELD = "anchoring_publication_pmids"


@dataclass(frozen=True, slots=True)
class ModelConfig:
    model: str
    max_tokens: int
    temperature: float
    timeout_seconds: float


MATCHING_MODEL_CONFIG = ModelConfig(
    model=os.getenv("CLAUDE_MODEL", "claude-opus-4-20250514"),
    max_tokens=4096,
    temperature=0.5,
    timeout_seconds=float(os.getenv("LLM_REQUEST_TIMEOUT_SECONDS", "120")),
)


class MatchingOutputError(RuntimeError):
    """The whole LLM response could not be turned into a proposal array."""


class MatchingOutputParseError(MatchingOutputError):
    """The response is not valid JSON."""


class MatchingOutputShapeError(MatchingOutputError):
    """The response is valid JSON but its top-level value is not an array."""


@dataclass(frozen=True, slots=True)
class FieldError:
    field: str
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class ProposalValidationResult:
    valid: bool
    errors: list[str]


@dataclass(frozen=True, slots=True)
class FilterResult:
    valid: list[ProposalOutput]
    discarded: int
    errors: list[list[str]]


@dataclass(frozen=True, slots=True)
class DeduplicationResult:
    unique: list[ProposalOutput]
    duplicates: int


SYSTEM_PROMPT = """You are a scientific collaboration proposal engine for a research platform.
You are given the profiles and publications of two researchers (Researcher A and Researcher B).
Propose specific, synergistic collaborations between their labs, each with a concrete first experiment.

## Core Instructions

1. Every proposal must be SPECIFIC and SYNERGISTIC for both labs.
2. Each lab must bring something the other lab does not have.
3. Each lab must benefit in a way that is not generic.
4. A concrete first experiment is REQUIRED, scoped to days or weeks of effort.
5. Return an empty array [] if no quality proposal exists. Silence is better than noise.
6. If existing proposals are listed, propose something DISTINCT or return nothing.
7. Return at most 3 proposals.
8. Never quote user-submitted priorities; frame proposals with publicly available information.

## Anti-Genericity Rules (CRITICAL)

- If either lab's contribution reads as a generic service ("computational analysis",
  "structural studies", "mouse behavioral testing") without reference to the specific
  scientific question, the proposal is too generic. Do not generate it.
- Each contribution must name specific techniques, models, reagents or datasets from that
  lab's profile. "Lab A's expertise in X" is not enough; say what they would do and with what.
- The first experiment must name specific assays, computational methods, reagents or datasets.
  "We would analyze the data" is not an experiment.
- If you cannot say why this collaboration beats either lab hiring a postdoc to do the other
  lab's part, do not generate the proposal.

## Output Schema

Return ONLY a valid JSON array. No markdown fencing, no commentary outside the JSON.

Each element must follow this schema:
{
  "title": "Short descriptive name",
  "collaboration_type": "e.g. mechanistic extension, methodological enhancement, translational application",
  "scientific_question": "The core question this collaboration addresses",
  "one_line_summary_a": "Shown to researcher A: what B brings and why it matters to A",
  "one_line_summary_b": "Shown to researcher B: what A brings and why it matters to B",
  "detailed_rationale": "2-3 paragraphs shared by both researchers",
  "lab_a_contributions": "What lab A brings: specific techniques, reagents, models",
  "lab_b_contributions": "What lab B brings: specific techniques, reagents, models",
  "lab_a_benefits": "What lab A specifically gets out of it",
  "lab_b_benefits": "What lab B specifically gets out of it",
  "proposed_first_experiment": "Concrete pilot: who provides what, which assays, key readouts, interpretation",
  "anchoring_publication_pmids": ["12345678"],
  "confidence_tier": "high | moderate | speculative",
  "reasoning": "Internal reasoning on why this match clears the quality bar"
}

## Confidence Tiers

- high: clear complementarity, specific anchoring publications, concrete first experiment,
  both sides benefit non-generically.
- moderate: good synergy, but the first experiment is less defined or one side's benefit is
  less clear.
- speculative: an interesting angle that needs more development or depends on assumptions
  about unpublished work.

## Examples

### Good: Computational optimization of H1R inverse agonists

{
  "title": "Computational Optimization of H1R Inverse Agonists for Osteoarthritis",
  "collaboration_type": "mechanistic extension",
  "scientific_question": "Which structural features of cyproheptadine are required for FoxO activation in chondrocytes?",
  "one_line_summary_a": "Docking and pharmacophore modeling could explain which H1R binding determinants drive your FoxO activation phenotype and guide more selective chondroprotective compounds.",
  "one_line_summary_b": "A panel of H1R ligands with measured FoxO activity in chondrocytes is an ideal system for dissecting functional selectivity with your docking pipeline.",
  "detailed_rationale": "Researcher A showed that cyproheptadine activates FoxO transcription factors in chondrocytes through H1R inverse agonism, but the structural basis separating FoxO activation from antihistamine activity is unknown. Researcher B's GPU docking platform and pharmacophore pipeline can model the ligand-receptor interactions and correlate binding modes with measured activity.",
  "lab_a_contributions": "Panel of H1R ligands with quantified FoxO activation, chondrocyte functional assays for validating predictions",
  "lab_b_contributions": "GPU docking platform, pharmacophore modeling pipeline, virtual screening infrastructure for GPCR ligands",
  "lab_a_benefits": "A structural rationale for the FoxO mechanism and computationally prioritized derivatives",
  "lab_b_benefits": "A functional selectivity problem at a therapeutically relevant GPCR as a new application for the platform",
  "proposed_first_experiment": "Lab A sends 10-15 H1R ligands with FoxO activation data. Lab B docks all compounds against the H1R structure and builds pharmacophore models. Readouts: interaction fingerprints correlated with FoxO potency.",
  "anchoring_publication_pmids": ["38471293"],
  "confidence_tier": "high",
  "reasoning": "Anchored to a specific finding with a clear mechanistic gap; the capabilities are complementary; neither side does generic work; the pilot is cheap and concrete."
}

### Good: Cryo-ET of drug-induced mitochondrial remodeling

{
  "title": "Cryo-ET Visualization of HRI-Induced Mitochondrial Remodeling",
  "collaboration_type": "methodological enhancement",
  "scientific_question": "How does HRI activation remodel mitochondrial membrane ultrastructure in MFN2-deficient cells?",
  "one_line_summary_a": "Cryo-electron tomography with automated membrane morphometrics could show, at nanometer resolution, the mitochondrial elongation your HRI activators produce.",
  "one_line_summary_b": "HRI activators rescue mitochondrial morphology in MFN2-deficient fibroblasts, giving your cryo-ET pipeline a clean before/after pharmacological specimen.",
  "detailed_rationale": "Researcher A's HRI-activating compounds restore mitochondrial function in MFN2-deficient cells, but whether cristae, membrane spacing or network connectivity change is unknown. Researcher B's cryo-FIB milling, tomography and membrane quantification pipeline answers exactly those questions.",
  "lab_a_contributions": "MFN2-deficient patient fibroblasts, HRI activator compounds, treatment protocols, functional rescue data",
  "lab_b_contributions": "Cryo-FIB-SEM sample preparation, cryo-electron tomography, automated membrane morphometrics",
  "lab_a_benefits": "Ultrastructural evidence for the rescue mechanism",
  "lab_b_benefits": "A drug-induced phenotype that demonstrates cryo-ET for pharmacology",
  "proposed_first_experiment": "Lab A treats MFN2-deficient fibroblasts with vehicle or HRI activator for 48h. Lab B images both conditions by cryo-ET. Readouts: cristae morphology, membrane thickness, network connectivity.",
  "anchoring_publication_pmids": [],
  "confidence_tier": "high",
  "reasoning": "A specific phenotype that needs structural characterization, an exact technical match and a self-contained pilot."
}

### Bad: one side is generic service work

Rejected: "Lab B's knowledge graph mining could identify new drug targets for Lab A's kinase inhibitor program."
Reason: no specific graph, dataset or analysis is named; any computational group could do this.

### Bad: overlap without complementarity

Rejected: "Both labs study Alzheimer's disease in mouse models and could pool datasets for statistical power."
Reason: shared interest is not synergy, and pooling data is not a first experiment.

### Bad: no concrete first experiment

Rejected: "Lab A's chemical biology and Lab B's stress signaling knowledge could lead to new neurodegeneration therapies."
Reason: no question, compound, assay or readout is named."""

_RETRY_PROMPT = """Your previous response could not be parsed as valid JSON. Regenerate it following these strict formatting rules:

1. Return ONLY a JSON array. No markdown fencing, no commentary outside the JSON.
2. The array must contain 0-3 proposal objects following the schema in your instructions.
3. If no quality proposals exist, return exactly: []
4. Escape every string properly (no unescaped quotes or raw newlines).
5. Do NOT use trailing commas.

Use the same researcher pair context from the previous message."""


# ---------------------------------------------------------------------------
# Publication selection
# ---------------------------------------------------------------------------

def select_publications(
    publications: Sequence[MatchingPublication],
    cap: int,
    require_abstract: bool = True,
) -> list[MatchingPublication]:
    """Order by author position (last > first > middle), then newest first, and truncate."""
    candidates = [
        p for p in publications if not require_abstract or (p.abstract and p.abstract.strip())
    ]
    ordered = sorted(
        candidates,
        key=lambda p: (_AUTHOR_POSITION_PRIORITY.get(p.author_position, 2), -p.year),
    )
    return ordered[:cap]


def select_abstracts_for_matching(
    publications: Sequence[MatchingPublication],
) -> list[MatchingPublication]:
    return select_publications(publications, MAX_ABSTRACTS_PER_RESEARCHER, require_abstract=True)


def select_publications_for_synthesis(
    publications: Sequence[MatchingPublication],
) -> list[MatchingPublication]:
    return select_publications(publications, MAX_SYNTHESIS_PUBLICATIONS, require_abstract=False)


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------

def get_matching_system_message() -> str:
    """Static system message; identical for every pair so it can be prompt-cached."""
    return SYSTEM_PROMPT


def build_matching_retry_message() -> str:
    return _RETRY_PROMPT


def build_matching_messages(matching_input: MatchingInput) -> tuple[str, str]:
    """Return (system, user) messages for one pair."""
    return get_matching_system_message(), build_matching_user_message(matching_input)


def build_matching_user_message(matching_input: MatchingInput) -> str:
    """Assemble both researcher blocks plus existing proposals for de-duplication."""
    sections = [
        "Analyze the following pair of researchers and propose up to 3 specific, synergistic "
        "collaboration proposals. Return a JSON array following the schema in your "
        "instructions. Return an empty array [] if no quality proposals exist.",
        "",
        _researcher_block("Researcher A", matching_input.researcher_a),
        "",
        _researcher_block("Researcher B", matching_input.researcher_b),
    ]

    if matching_input.existing_proposals:
        sections.append("")
        sections.append("=== Existing Proposals for This Pair ===")
        sections.append(
            "These proposals already exist. Do not restate them; propose something DISTINCT "
            "or return nothing."
        )
        for proposal in matching_input.existing_proposals:
            sections.append(f"- Title: {proposal.title}")
            sections.append(f"  Question: {proposal.scientific_question}")

    return "\n".join(sections)


def _researcher_block(label: str, researcher: ResearcherContext) -> str:
    lines = [
        f"=== {label} ===",
        f"Name: {researcher.name}",
        f"Institution: {researcher.institution}",
    ]
    if researcher.department:
        lines.append(f"Department: {researcher.department}")

    lines += [
        "",
        "Research Summary:",
        researcher.research_summary,
        "",
        f"Techniques: {_join_or_none(researcher.techniques)}",
        f"Experimental Models: {_join_or_none(researcher.experimental_models)}",
        f"Disease Areas: {_join_or_none(researcher.disease_areas)}",
        f"Key Targets: {_join_or_none(researcher.key_targets)}",
        f"Keywords: {_join_or_none(researcher.keywords)}",
    ]

    if researcher.grant_titles:
        lines += ["", "Grant Titles:"]
        lines += [f"- {grant}" for grant in researcher.grant_titles]

    if researcher.user_submitted_texts:
        lines += ["", "User-Submitted Priorities:"]
        lines += [f"- {t.label}: {t.content}" for t in researcher.user_submitted_texts]

    if researcher.publications:
        lines += ["", "Publication Titles (all, most recent first):"]
        lines.append(_format_title_list(researcher.publications))

        abstracts = select_abstracts_for_matching(researcher.publications)
        if abstracts:
            lines += [
                "",
                f"Selected Abstracts ({len(abstracts)} of {len(researcher.publications)}, "
                "prioritized by author position and recency):",
            ]
            lines.append(
                "\n\n".join(f'- "{p.title}" ({p.year})\n  {p.abstract}' for p in abstracts)
            )

    return "\n".join(lines)


def _format_title_list(publications: Sequence[MatchingPublication]) -> str:
    ordered = sorted(publications, key=lambda p: p.year, reverse=True)
    return "\n".join(
        f"{i}. {p.title} ({p.journal}, {p.year}) [{p.author_position} author]"
        for i, p in enumerate(ordered, start=1)
    )


def _join_or_none(values: Sequence[str]) -> str:
    return ", ".join(values) or "(none)"


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

_FENCE_OPEN = re.compile(r"^```[\w-]*[ \t]*\n?")
_FENCE_CLOSE = re.compile(r"\n?\s*```\s*$")
_TRAILING_COMMA = re.compile(r",\s*([\]}])")


def parse_matching_output(raw: str) -> list[Any]:
    """Parse raw LLM text into a list of (still unvalidated) proposal elements.

    Tolerates surrounding whitespace, one markdown code fence with or without a
    language tag, and trailing commas. Arrays longer than MAX_PROPOSALS_PER_CALL
    are truncated.

    Raises:
        MatchingOutputParseError: the text is not valid JSON.
        MatchingOutputShapeError: the top-level JSON value is not an array.
    """
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
        cleaned = _FENCE_CLOSE.sub("", cleaned, count=1)
    cleaned = _TRAILING_COMMA.sub(r"\1", cleaned)

    try:
        parsed = json.loads(cleaned)
    except JSONDecodeError as exc:
        raise MatchingOutputParseError(
            f"Failed to parse matching output as JSON: {cleaned[:200]}..."
        ) from exc

    if not isinstance(parsed, list):
        raise MatchingOutputShapeError(
            f"Matching output must be a JSON array (got {_json_type_name(parsed)})"
        )

    return parsed[:MAX_PROPOSALS_PER_CALL]


def _json_type_name(value: Any) -> str:
    if isinstance(value, dict):
        return "object"
    if isinstance(value, str):
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if value is None:
        return "null"
    return type(value).__name__


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def decode_proposal(obj: Any) -> ProposalOutput | list[FieldError]:
    """Decode one array element into a ProposalOutput, or every field error found."""
    if not isinstance(obj, dict):
        return [FieldError("", "Proposal must be a non-null object")]

    errors: list[FieldError] = []
    for name in REQUIRED_STRING_FIELDS:
        value = obj.get(name)
        if not isinstance(value, str) or not value.strip():
            errors.append(FieldError(name, f"Missing or empty required field: {name}"))

    anchors = obj.get(ANCHORING_FIELD)
    if not isinstance(anchors, list):
        errors.append(
            FieldError(ANCHORING_FIELD, f"{ANCHORING_FIELD} must be an array (may be empty)")
        )

    tier = obj.get("confidence_tier")
    if isinstance(tier, str) and tier.strip() and tier not in CONFIDENCE_TIERS:
        errors.append(
            FieldError(
                "confidence_tier",
                f'Invalid confidence_tier: "{tier}" (must be high, moderate, or speculative)',
            )
        )

    if errors:
        return errors

    values = {name: obj[name] for name in REQUIRED_STRING_FIELDS}
    return ProposalOutput(
        **values,
        anchoring_publication_pmids=[str(p) for p in anchors if p is not None],
    )


def validate_proposal(obj: Any) -> ProposalValidationResult:
    decoded = decode_proposal(obj)
    if isinstance(decoded, ProposalOutput):
        return ProposalValidationResult(valid=True, errors=[])
    return ProposalValidationResult(valid=False, errors=[e.message for e in decoded])


def filter_valid_proposals(items: Sequence[Any]) -> FilterResult:
    """Keep valid elements in order; count and describe the rest (never retried)."""
    valid: list[ProposalOutput] = []
    errors: list[list[str]] = []
    discarded = 0

    for item in items:
        decoded = decode_proposal(item)
        if isinstance(decoded, ProposalOutput):
            valid.append(decoded)
            errors.append([])
        else:
            discarded += 1
            errors.append([e.message for e in decoded])

    return FilterResult(valid=valid, discarded=discarded, errors=errors)


# ---------------------------------------------------------------------------
# De-duplication
# ---------------------------------------------------------------------------

_NON_WORD = re.compile(r"[^\w\s]")


def _word_set(text: str) -> set[str]:
    return set(_NON_WORD.sub(" ", text.lower()).split())


def compute_text_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the normalized word sets of two texts.

    Two texts that both normalize to nothing are identical (1.0); exactly one
    empty side gives 0.0.
    """
    words_a = _word_set(a)
    words_b = _word_set(b)
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def deduplicate_proposals(
    candidates: Sequence[ProposalOutput],
    existing: Sequence[ExistingProposal],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> DeduplicationResult:
    """Drop candidates whose title OR question is too close to any existing proposal."""
    if not existing:
        return DeduplicationResult(unique=list(candidates), duplicates=0)

    unique: list[ProposalOutput] = []
    duplicates = 0
    for candidate in candidates:
        if any(
            compute_text_similarity(candidate.title, e.title) >= threshold
            or compute_text_similarity(candidate.scientific_question, e.scientific_question)
            >= threshold
            for e in existing
        ):
            duplicates += 1
        else:
            unique.append(candidate)

    return DeduplicationResult(unique=unique, duplicates=duplicates)
