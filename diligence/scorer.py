"""AI scorer: one parallel LLM evaluation per rubric category.

Architecture
------------
For every category of the resolved criteria the scorer sends the company
dossier together with that category's criteria and collects per-criterion
scores (0-100).  A final thesis call produces the qualitative answers
shown next to the score.  All calls run concurrently.

The scorer only produces raw ``score`` values.  Weighted scores and the
overall score come from ``diligence.calculator`` so that AI scores and
analyst overrides always aggregate the same way.

``SCORER_VERSION`` must change whenever prompts or parsing change, since it
is part of the scoring fingerprint.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from diligence.calculator import recalculate_overall, recalculate_weighted_scores
from diligence.fingerprint import FINGERPRINT_METRICS
from diligence.models import DiligenceDocument, DiligenceNote, DiligenceRecord
from diligence.schemas import (
    CategoryScore, Criteria, CriteriaCategory, Criterion, CriterionScore, DiligenceScore,
)
from diligence.utils import round_half_up

log = logging.getLogger(__name__)

SCORER_VERSION = "2026-10-01-category-rubric-v3"


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Default rubric (seeded into the criteria table, editable via API / XLSX)
# ---------------------------------------------------------------------------

DEFAULT_CRITERIA = Criteria(categories=[
    CriteriaCategory(name="Team", weight=30, criteria=[
        Criterion(name="Founder-market fit",
                  description="Do the founders have unusual insight into this market?",
                  scoring_guidance="80+ for prior operating roles or exits in the space; <40 with no relevant background."),
        Criterion(name="Execution track record",
                  description="Evidence the team ships and sells.",
                  scoring_guidance="Reward shipped product, prior companies, hires of senior operators."),
    ]),
    CriteriaCategory(name="Market", weight=25, criteria=[
        Criterion(name="Market size",
                  description="Credible bottom-up TAM for the initial wedge and expansion.",
                  scoring_guidance="80+ only with a sourced TAM above $1B; cap at 50 when the TAM is a top-down claim."),
        Criterion(name="Market timing",
                  description="Why now: regulatory, technical or behavioural shifts.",
                  scoring_guidance="Reward concrete catalysts over generic growth narratives."),
    ]),
    CriteriaCategory(name="Product", weight=20, criteria=[
        Criterion(name="Problem necessity",
                  description="Is the problem a must-solve for the buyer?",
                  scoring_guidance="Painkillers score high, nice-to-haves low."),
        Criterion(name="Differentiation",
                  description="Defensibility against incumbents and well-funded peers.",
                  scoring_guidance="Reward proprietary data, workflow lock-in, or technical moat."),
    ]),
    CriteriaCategory(name="Traction", weight=15, criteria=[
        Criterion(name="Revenue and growth",
                  description="ARR level and year-over-year growth.",
                  scoring_guidance="Benchmark against stage: seed >$250k ARR growing 3x scores 80+."),
        Criterion(name="Customer quality",
                  description="Logos, retention and contract value.",
                  scoring_guidance="Reward multi-year contracts and expansion revenue."),
    ]),
    CriteriaCategory(name="Deal Terms", weight=10, criteria=[
        Criterion(name="Valuation",
                  description="Entry price relative to traction and comparables.",
                  scoring_guidance="Penalize valuations above 50x ARR at seed."),
    ]),
])

CATEGORY_SYSTEM_PROMPT = """\
You are a venture capital analyst scoring one category of a diligence \
assessment for the company described in the dossier.

CATEGORY: {category}

Score each criterion below from 0 to 100 using its guidance.  Only cite \
evidence that appears in the dossier; when evidence is missing, say so, \
lower your confidence, and list the missing data.

CRITERIA:
{criteria}

Respond with ONLY valid JSON:
{{
  "score": <0-100 overall score for the category>,
  "criteria": [
    {{
      "name": "<criterion name, exactly as given>",
      "score": <0-100>,
      "reasoning": "<1-2 sentences>",
      "evidence": ["<short quote or fact from the dossier>"],
      "confidence": <0-100>,
      "evidence_status": "<supported|weakly_supported|unknown|contradicted>",
      "missing_data": ["<what would change the score>"],
      "follow_up_questions": ["<question for the founders>"]
    }}
  ]
}}
"""

THESIS_SYSTEM_PROMPT = """\
You are a venture capital partner summarizing a potential investment for \
the investment committee, based on the dossier.

Respond with ONLY valid JSON:
{
  "problem_solving": "<what problem they solve>",
  "solution": "<how they solve it>",
  "ideal_customer": "<ideal customer profile>",
  "exciting": ["<what is exciting>"],
  "concerning": ["<what is concerning>"],
  "founder_questions": {
    "questions": ["<top 3 questions for the founders>"],
    "key_gaps": "<critical missing information>",
    "primary_concern": "<most concerning aspect>"
  }
}
"""

_EVIDENCE_STATUSES = {"supported", "weakly_supported", "unknown", "contradicted"}
_TRANSCRIPT_EXCERPT = 1500
_MAX_DOC_TEXT = 8000


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Async JSON-mode client for Anthropic or OpenAI-compatible APIs."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-sonnet-4-5"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def _complete(self, system: str, user: str) -> str:
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=4096,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            text = response.content[0].text.strip()
            m = re.search(r"```(?:json)?\s*(\{.*\})\s*```", text, re.DOTALL)
            return m.group(1) if m else text
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=4096,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or "{}"

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return the parsed JSON object."""
        try:
            text = await self._complete(system, user)
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
        if not isinstance(parsed, dict):
            raise LLMCallError(f"LLM returned {type(parsed).__name__}, expected an object")
        return parsed


# ---------------------------------------------------------------------------
# Dossier
# ---------------------------------------------------------------------------


def _has_value(metric: Any) -> bool:
    return isinstance(metric, Mapping) and bool(str(metric.get("value") or "").strip())


def _is_transcript(note: DiligenceNote) -> bool:
    return "transcript" in f"{note.category} {note.title}".lower()


def build_dossier(
    record: DiligenceRecord,
    notes: list[DiligenceNote],
    documents: list[DiligenceDocument],
    metrics: Mapping[str, Any],
    summarize_transcript_notes: bool = False,
) -> str:
    """Assemble everything the scorer is allowed to see into one text block."""
    sections = [f"COMPANY: {record.company_name}"]
    for label, value in (
        ("WEBSITE", record.company_url),
        ("INDUSTRY", record.industry),
        ("DESCRIPTION", record.company_description),
        ("NOTES", record.notes),
    ):
        if value and value.strip():
            sections.append(f"{label}: {value.strip()}")

    metric_lines = [
        f"- {name.upper()}: {str(metrics[name]['value']).strip()} ({metrics[name].get('source') or 'unknown source'})"
        for name in FINGERPRINT_METRICS
        if _has_value(metrics.get(name))
    ]
    if metric_lines:
        sections.append("\n--- METRICS ---")
        sections.extend(metric_lines)

    for note in notes:
        content = (note.content or "").strip()
        if not content:
            continue
        if summarize_transcript_notes and _is_transcript(note) and len(content) > _TRANSCRIPT_EXCERPT:
            content = content[:_TRANSCRIPT_EXCERPT] + " [...]"
        sections.append(f"\n--- NOTE ({note.category or 'Overall'}) {note.title or 'Note'} ---")
        sections.append(content)

    for doc in documents:
        sections.append(f"\n--- DOCUMENT: {doc.name} ({doc.doc_type or 'other'}) ---")
        sections.append(doc.extracted_text[:_MAX_DOC_TEXT])

    return "\n".join(sections)


def _format_criteria(category: CriteriaCategory) -> str:
    return "\n".join(
        f"- {c.name}: {c.description} Guidance: {c.scoring_guidance}".rstrip()
        for c in category.criteria
    ) or "- (no explicit criteria; score the category holistically)"


# ---------------------------------------------------------------------------
# Response normalization
# ---------------------------------------------------------------------------


def _clamp_score(val: Any, default: float | None = None) -> float | None:
    try:
        score = float(val)
    except (TypeError, ValueError):
        if val is not None:
            log.warning("Unparseable score %r, using %s", val, default)
        return default
    if score != score:  # NaN
        return default
    return max(0.0, min(100.0, score))


def _str_list(val: Any, limit: int = 5) -> list[str]:
    if not isinstance(val, list):
        return []
    return [str(v).strip() for v in val[:limit] if str(v).strip()]


def _normalize_criterion(raw: Any) -> CriterionScore | None:
    if not isinstance(raw, Mapping) or not str(raw.get("name") or "").strip():
        return None
    status = str(raw.get("evidence_status") or "").strip().lower()
    return CriterionScore(
        name=str(raw["name"]).strip(),
        score=_clamp_score(raw.get("score"), 0.0),
        reasoning=str(raw.get("reasoning", "")),
        evidence=_str_list(raw.get("evidence")),
        confidence=_clamp_score(raw.get("confidence")),
        evidence_status=status if status in _EVIDENCE_STATUSES else None,
        missing_data=_str_list(raw.get("missing_data")),
        follow_up_questions=_str_list(raw.get("follow_up_questions"), limit=3),
    )


def normalize_category_response(category: CriteriaCategory, raw: Mapping[str, Any]) -> CategoryScore:
    """Turn one category response into a ``CategoryScore``.

    The category score falls back to the mean of its criteria when the model
    omits it, and to 0 when there is nothing to average.
    """
    criteria = [c for c in map(_normalize_criterion, raw.get("criteria") or []) if c is not None]
    score = _clamp_score(raw.get("score"))
    if score is None:
        score = sum(c.score for c in criteria) / len(criteria) if criteria else 0.0
    return CategoryScore(
        category=category.name,
        score=round_half_up(score, 2),
        weight=category.weight,
        criteria=criteria,
    )


def compute_data_quality(
    record: DiligenceRecord,
    notes: list[DiligenceNote],
    documents: list[DiligenceDocument],
    metrics: Mapping[str, Any],
) -> float:
    """Share of the evidence sources that are present, 0-100."""
    checks = [
        bool((record.company_description or "").strip()),
        bool((record.company_url or "").strip()),
        any((n.content or "").strip() for n in notes) or bool((record.notes or "").strip()),
        any(d.doc_type == "deck" for d in documents),
        any(d.doc_type == "financial" for d in documents),
        any(_has_value(metrics.get(name)) for name in FINGERPRINT_METRICS),
    ]
    return round_half_up(100 * sum(checks) / len(checks))


# ---------------------------------------------------------------------------
# Score a record
# ---------------------------------------------------------------------------


async def _score_category(client: LLMClient, category: CriteriaCategory, dossier: str) -> CategoryScore:
    system = CATEGORY_SYSTEM_PROMPT.format(category=category.name, criteria=_format_criteria(category))
    raw = await client.call(system, dossier)
    return normalize_category_response(category, raw)


async def score_diligence(
    record: DiligenceRecord,
    criteria: Criteria,
    client: LLMClient,
    *,
    notes: list[DiligenceNote],
    documents: list[DiligenceDocument],
    metrics: Mapping[str, Any],
    summarize_transcript_notes: bool = False,
) -> DiligenceScore:
    """Score a record against every criteria category in parallel."""
    dossier = build_dossier(record, notes, documents, metrics, summarize_transcript_notes)
    *categories, thesis = await asyncio.gather(
        *(_score_category(client, cat, dossier) for cat in criteria.categories),
        client.call(THESIS_SYSTEM_PROMPT, dossier),
    )
    categories = recalculate_weighted_scores(list(categories))
    follow_ups = list(dict.fromkeys(
        q for c in categories for crit in c.criteria for q in crit.follow_up_questions
    ))[:10]
    return DiligenceScore(
        overall=recalculate_overall(categories),
        categories=categories,
        data_quality=compute_data_quality(record, notes, documents, metrics),
        thesis_answers=thesis or None,
        scored_at=datetime.now(UTC),
        follow_up_questions=follow_ups,
    )
