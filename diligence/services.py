"""Shared business logic for the diligence API and MCP server."""
from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from diligence.calculator import (
    ai_overall, apply_override, category_deltas, merge_category, override_count,
    preserve_overrides, remove_override,
)
from diligence.config import Settings
from diligence.fingerprint import FingerprintInput, compute_fingerprint
from diligence.models import CriteriaCategoryRow, DiligenceDocument, DiligenceRecord
from diligence.schemas import (
    Criteria, CriteriaCategory, Criterion, DiligenceScore, MetricValue, OverrideRequest,
)
from diligence.scorer import SCORER_VERSION, LLMClient, score_diligence
from diligence.utils import json_parse

log = logging.getLogger(__name__)


class NoScoreError(Exception):
    """The record has not been scored yet."""


class UnknownCategoryError(LookupError):
    """The category is not part of the record's score or the criteria."""


# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

UPDATABLE_FIELDS = (
    "company_name", "company_url", "company_description", "industry", "notes",
    "status", "recommendation", "hubspot_deal_id",
)

_STATUS_ORDER = {"in_progress": 0, "completed": 1, "passed": 2, "declined": 3}

# ---------------------------------------------------------------------------
# Stored JSON columns
# ---------------------------------------------------------------------------


def load_score(record: DiligenceRecord) -> DiligenceScore | None:
    if not record.score_json:
        return None
    return DiligenceScore.model_validate_json(record.score_json)


def store_score(record: DiligenceRecord, score: DiligenceScore) -> None:
    record.score_json = score.model_dump_json()


def load_metrics(record: DiligenceRecord) -> dict[str, dict[str, Any]]:
    metrics = json_parse(record.metrics_json, {})
    return metrics if isinstance(metrics, dict) else {}


def store_metrics(record: DiligenceRecord, metrics: dict[str, MetricValue]) -> None:
    record.metrics_json = json.dumps({k: v.model_dump(mode="json") for k, v in metrics.items()})


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: int):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def record_summary(record: DiligenceRecord) -> dict:
    score = load_score(record)
    return {
        "id": record.id, "company_name": record.company_name,
        "company_url": record.company_url, "company_description": record.company_description,
        "industry": record.industry, "status": record.status,
        "overall": score.overall if score else None,
        "data_quality": score.data_quality if score else None,
        "override_count": override_count(score) if score else 0,
        "scored_at": score.scored_at.isoformat() if score and score.scored_at else None,
        "updated_at": record.updated_at.isoformat(),
    }


def record_detail(record: DiligenceRecord) -> dict:
    base = record_summary(record)
    score = load_score(record)
    base.update({
        "notes": record.notes, "recommendation": record.recommendation,
        "hubspot_deal_id": record.hubspot_deal_id, "version": record.version,
        "metrics": load_metrics(record),
        "score": score.model_dump(mode="json") if score else None,
    })
    base["categorized_notes"] = [
        {"id": n.id, "category": n.category, "title": n.title, "content": n.content,
         "created_at": n.created_at.isoformat(), "updated_at": n.updated_at.isoformat()}
        for n in record.categorized_notes
    ]
    base["documents"] = [
        {"id": d.id, "name": d.name, "doc_type": d.doc_type, "file_type": d.file_type,
         "external_url": d.external_url, "link_ingest_status": d.link_ingest_status,
         "uploaded_at": d.uploaded_at.isoformat(), "has_text": bool(d.extracted_text.strip())}
        for d in record.documents
    ]
    return base


# ---------------------------------------------------------------------------
# Filtering and sorting
# ---------------------------------------------------------------------------


def filter_and_sort(
    items: list[dict], *, status=None, search=None, sort_by="updated_at", sort_dir="desc",
) -> list[dict]:
    if status:
        ss = {s.strip().lower() for s in status.split(",")}
        items = [i for i in items if i["status"] in ss]
    if search:
        q = search.lower()
        items = [i for i in items if q in i["company_name"].lower()
                 or q in i["company_description"].lower() or q in i["industry"].lower()]

    def sort_key(item: dict):
        if sort_by == "overall":
            return item["overall"] if item["overall"] is not None else -1
        if sort_by == "company_name":
            return item["company_name"].lower()
        if sort_by == "status":
            return _STATUS_ORDER.get(item["status"], -1)
        return item["updated_at"]

    items.sort(key=sort_key, reverse=(sort_dir == "desc"))
    return items


def query_records(session: Session, *, page: int = 1, per_page: int = 100, **filters) -> tuple[list[dict], int]:
    records = session.execute(select(DiligenceRecord)).scalars().all()
    items = filter_and_sort([record_summary(r) for r in records], **filters)
    start = (page - 1) * per_page
    return items[start:start + per_page], len(items)


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for name in fields:
        val = updates.get(name)
        if val is not None:
            setattr(obj, name, val)


_locks_guard = threading.Lock()


@dataclass
class _RecordLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


_record_locks: dict[int, _RecordLock] = {}


@contextmanager
def record_lock(record_id: int) -> Iterator[None]:
    """Serialize score writes for one record within this process.

    Writers in other processes are caught by the record's version column.
    Entries are dropped once no caller holds or waits for them.
    """
    with _locks_guard:
        entry = _record_locks.setdefault(record_id, _RecordLock())
        entry.users += 1
    try:
        with entry.lock:
            yield
    finally:
        with _locks_guard:
            entry.users -= 1
            if entry.users == 0:
                del _record_locks[record_id]


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------


def load_criteria(session: Session) -> Criteria:
    rows = session.execute(
        select(CriteriaCategoryRow).order_by(CriteriaCategoryRow.sort_order, CriteriaCategoryRow.id)
    ).scalars().all()
    return Criteria(categories=[
        CriteriaCategory(
            name=row.name, weight=row.weight,
            criteria=[Criterion(**c) for c in json_parse(row.criteria_json, [])],
        )
        for row in rows
    ])


def resolve_criteria(criteria: Criteria, weights: dict[str, float]) -> Criteria:
    """Apply configured weight overrides by category name."""
    if not weights:
        return criteria
    return Criteria(categories=[
        cat.model_copy(update={"weight": weights[cat.name]}) if cat.name in weights else cat
        for cat in criteria.categories
    ])


def criteria_rows(session: Session) -> list[dict]:
    rows = session.execute(
        select(CriteriaCategoryRow).order_by(CriteriaCategoryRow.sort_order, CriteriaCategoryRow.id)
    ).scalars().all()
    return [
        {"id": r.id, "name": r.name, "weight": r.weight, "sort_order": r.sort_order,
         "criteria": json_parse(r.criteria_json, [])}
        for r in rows
    ]


def update_criteria_category(
    session: Session, name: str, *, weight: float | None = None,
    criteria: list[Criterion] | None = None, sort_order: int | None = None,
) -> dict | None:
    row = session.execute(
        select(CriteriaCategoryRow).where(CriteriaCategoryRow.name == name)
    ).scalars().first()
    if row is None:
        return None
    if weight is not None:
        row.weight = weight
    if criteria is not None:
        row.criteria_json = json.dumps([c.model_dump() for c in criteria])
    if sort_order is not None:
        row.sort_order = sort_order
    session.commit()
    return {"id": row.id, "name": row.name, "weight": row.weight, "sort_order": row.sort_order,
            "criteria": json_parse(row.criteria_json, [])}


# ---------------------------------------------------------------------------
# Scoring inputs
# ---------------------------------------------------------------------------


def combine_notes(record: DiligenceRecord) -> str:
    """Legacy notes plus one ``(category) title: content`` line per categorized note."""
    sections: list[str] = []
    if record.notes and record.notes.strip():
        sections.append(record.notes.strip())
    lines = [
        f"({n.category or 'Overall'}) {n.title or 'Note'}: {n.content}"
        for n in record.categorized_notes
        if (n.content or "").strip()
    ]
    if lines:
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


def usable_documents(record: DiligenceRecord) -> list[DiligenceDocument]:
    """Documents whose text may be shown to the scorer."""
    docs = []
    for doc in record.documents:
        if not (doc.extracted_text or "").strip():
            continue
        if doc.file_type in ("link", "url") and doc.link_ingest_status != "ingested":
            continue
        docs.append(doc)
    return docs


def fingerprint_input_for(record: DiligenceRecord, criteria: Criteria, settings: Settings) -> FingerprintInput:
    return FingerprintInput(
        company_name=record.company_name,
        company_url=record.company_url,
        company_description=record.company_description,
        industry=record.industry,
        notes=combine_notes(record),
        categorized_notes=list(record.categorized_notes),
        metrics=load_metrics(record),
        documents=usable_documents(record),
        criteria=criteria,
        scorer_version=SCORER_VERSION,
        summarize_transcript_notes=settings.summarize_transcript_notes,
    )


# ---------------------------------------------------------------------------
# Rescore narrative
# ---------------------------------------------------------------------------


def _is_suppressed(criterion_name: str, topics: list[str] | None) -> bool:
    name = criterion_name.lower()
    return any(t.strip().lower() in name for t in topics or [] if t.strip())


def material_risks(score: DiligenceScore, limit: int = 3) -> list[dict[str, Any]]:
    """Weakest criteria ranked by how much they should worry an investor.

    Criteria matching one of their category's suppressed topics are skipped.
    """
    risks = []
    for cat in score.categories:
        for crit in cat.criteria:
            if _is_suppressed(crit.name, cat.override_suppress_topics):
                continue
            confidence = crit.confidence if crit.confidence is not None else 55
            status = crit.evidence_status or "unknown"
            materiality = (
                (100 - crit.score) * cat.weight / 100
                + (12 if status in ("unknown", "contradicted") else 0)
                + max(0, 70 - confidence) / 5
            )
            risks.append({
                "category": cat.category, "name": crit.name, "score": crit.score,
                "confidence": confidence, "evidence_status": status,
                "evidence": next((e for e in crit.evidence if e), ""),
                "missing_data": crit.missing_data, "materiality": materiality,
            })
    risks.sort(key=lambda r: r["materiality"], reverse=True)
    return risks[:limit]


def build_rescore_narrative(
    previous: DiligenceScore | None, current: DiligenceScore, ai_only_overall: int,
) -> str:
    lines = [
        "## Score Snapshot",
        f"- Previous overall: {previous.overall if previous else 0}/100",
        f"- New AI-only score: {ai_only_overall}/100",
        f"- Final score (after preserved overrides): {current.overall}/100",
        f"- Data quality: {current.data_quality:g}/100",
        "",
        "## Biggest Category Changes",
    ]
    deltas = category_deltas(previous, current)
    if not deltas:
        lines.append("- No category deltas available.")
    for name, before, after, delta in deltas:
        lines.append(f"- {name}: {before:g} -> {after:g} ({'+' if delta >= 0 else ''}{delta})")

    lines += ["", "## Most Material Risks (Top 3)"]
    risks = material_risks(current)
    if not risks:
        lines.append("- No material risk criteria identified.")
    for r in risks:
        lines.append(
            f"- {r['category']} / {r['name']}: {r['score']:g}/100 "
            f"(confidence {r['confidence']:g}/100, status {r['evidence_status']})"
        )
        if r["evidence"]:
            lines.append(f"  Evidence: {r['evidence']}")
        elif r["missing_data"]:
            lines.append(f"  Missing evidence: {r['missing_data'][0]}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@dataclass
class ScoringOutcome:
    score: DiligenceScore | None
    skipped: bool
    message: str


async def run_scoring(
    session: Session,
    record: DiligenceRecord,
    settings: Settings,
    client: LLMClient | None = None,
    *,
    full: bool = False,
    category_name: str | None = None,
) -> ScoringOutcome:
    """Score or re-score a record, skipping the LLM when inputs are unchanged.

    Manual overrides present when the new score is written survive the
    rescore.  Commits the session.
    """
    criteria = resolve_criteria(load_criteria(session), settings.scoring_weights)
    fingerprint = compute_fingerprint(fingerprint_input_for(record, criteria, settings))
    previous = load_score(record)

    if category_name is not None and category_name not in {c.name for c in criteria.categories}:
        raise UnknownCategoryError(category_name)
    if not full and category_name is None and previous and previous.scoring_fingerprint == fingerprint:
        log.info("Skipping rescore of %s: inputs unchanged (%s)", record.company_name, fingerprint[:12])
        return ScoringOutcome(previous, True, "No new information detected. Skipped scoring.")

    if client is None:
        client = LLMClient()
    pass_criteria = criteria
    if category_name is not None:
        pass_criteria = Criteria(categories=[c for c in criteria.categories if c.name == category_name])
    fresh = await score_diligence(
        record, pass_criteria, client,
        notes=list(record.categorized_notes),
        documents=usable_documents(record),
        metrics=load_metrics(record),
        summarize_transcript_notes=settings.summarize_transcript_notes,
    )

    with record_lock(record.id):
        # Pick up overrides committed while the LLM calls were in flight.
        session.refresh(record)
        current = load_score(record)
        if category_name is not None and current is not None:
            fresh = merge_category(current, fresh, category_name)
        ai_only_overall = ai_overall(fresh.categories)
        final = preserve_overrides(current, fresh)
        final = final.model_copy(update={
            "scoring_fingerprint": fingerprint,
            "scoring_mode": "full" if full else "incremental",
            "rescore_explanation": build_rescore_narrative(current, final, ai_only_overall),
        })
        store_score(record, final)
        session.commit()

    log.info("Scored %s: overall %d (AI-only %d)", record.company_name, final.overall, ai_only_overall)
    if category_name is not None:
        message = f"Successfully re-scored {category_name} category"
    else:
        message = f"Successfully {'full' if full else 'incremental'} re-scored diligence"
    return ScoringOutcome(final, False, message)


def apply_score_override(session: Session, record: DiligenceRecord, request: OverrideRequest) -> DiligenceScore:
    """Apply or remove an analyst override and persist the result.

    Raises:
        NoScoreError: the record has no score to override.
        UnknownCategoryError: the category is not in the record's score.
    """
    with record_lock(record.id):
        session.refresh(record)
        score = load_score(record)
        if score is None:
            raise NoScoreError(record.id)
        if request.category_name not in {c.category for c in score.categories}:
            raise UnknownCategoryError(request.category_name)
        if request.action == "remove":
            updated = remove_override(score, request.category_name)
        else:
            updated = apply_override(
                score, request.category_name, request.override_score,
                reason=request.reason, suppress_topics=request.suppress_risk_topics,
            )
        store_score(record, updated)
        session.commit()
    log.info("%s override on %s/%s: overall %d -> %d", request.action.capitalize(),
             record.company_name, request.category_name, score.overall, updated.overall)
    return updated


def compute_stats(session: Session) -> dict:
    records = session.execute(select(DiligenceRecord)).scalars().all()
    by_status: Counter[str] = Counter()
    scored = with_overrides = 0
    for record in records:
        by_status[record.status] += 1
        score = load_score(record)
        if score:
            scored += 1
            if override_count(score):
                with_overrides += 1
    return {"total": len(records), "scored": scored,
            "with_overrides": with_overrides, "by_status": dict(by_status)}
