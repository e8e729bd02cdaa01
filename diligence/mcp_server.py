from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from diligence import services
from diligence.config import load_settings
from diligence.db import init_db, session_scope
from diligence.models import DiligenceRecord
from diligence.schemas import OverrideRequest, RescoreRequest
from diligence.scorer import LLMCallError

log = logging.getLogger(__name__)

_settings = load_settings()


@asynccontextmanager
async def diligence_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db(_settings.db_path)
    yield


mcp = FastMCP(
    "Diligence",
    instructions=(
        "Diligence is a venture deal-diligence workspace. Use these tools to browse "
        "diligence records, read their weighted category scores, re-score them, and "
        "apply analyst overrides. Start with get_stats(), then list_records(), then "
        "get_record(id)."
    ),
    lifespan=diligence_lifespan,
    json_response=True,
)


def _get_or_error(session, record_id: int):
    record = services.get_entity(session, DiligenceRecord, record_id)
    if record is None:
        return None, {"error": f"Diligence record {record_id} not found"}
    return record, None


@mcp.resource("diligence://scoring-model")
def scoring_model() -> str:
    """How overall scores, overrides, and rescore skipping work."""
    return json.dumps({
        "overall": "round(sum(effective_score * weight) / sum(weight)), 0 when all weights are 0.",
        "effective_score": "manual_override when set, otherwise the AI-assigned score.",
        "weighted_score": "effective_score * weight / 100, rounded half-up to 2 decimals.",
        "overrides": "Survive rescoring. Removing one reverts the category to its AI score.",
        "fingerprint": (
            "SHA-256 over company text, notes, metrics, documents, criteria and scorer version. "
            "Rescoring is skipped while it matches the stored fingerprint unless full=True."
        ),
    }, indent=2)


@mcp.tool()
def list_records(status: str | None = None, search: str | None = None,
                 sort_by: str = "updated_at", limit: int = 50) -> list[dict]:
    """List diligence records.

    Args:
        status: Comma-separated from in_progress, completed, passed, declined.
        search: Free-text search across company name, description, and industry.
        sort_by: updated_at, overall, company_name, or status.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        items, _ = services.query_records(
            session, status=status, search=search, sort_by=sort_by,
            page=1, per_page=max(1, min(limit, 500)),
        )
        return items


@mcp.tool()
def get_record(record_id: int) -> dict:
    """Get a record with notes, documents, metrics, and the full category score breakdown."""
    with session_scope() as session:
        record, err = _get_or_error(session, record_id)
        return err if err else services.record_detail(record)


@mcp.tool()
def override_score(record_id: int, category_name: str, action: str = "apply",
                   override_score: float | None = None, reason: str | None = None,
                   suppress_risk_topics: list[str] | None = None) -> dict:
    """Apply (0-100) or remove an analyst override on one category of a record's score."""
    try:
        request = OverrideRequest(
            category_name=category_name, action=action, override_score=override_score,
            reason=reason, suppress_risk_topics=suppress_risk_topics,
        )
    except ValidationError as exc:
        return {"error": str(exc)}
    with session_scope() as session:
        record, err = _get_or_error(session, record_id)
        if err:
            return err
        try:
            score = services.apply_score_override(session, record, request)
        except services.NoScoreError:
            return {"error": "No score found to override"}
        except services.UnknownCategoryError:
            return {"error": f"Category not found: {category_name}"}
        return score.model_dump(mode="json")


@mcp.tool()
async def rescore_record(record_id: int, full: bool = False, category_name: str | None = None) -> dict:
    """Re-score a record. Skipped when nothing changed since the last score unless full=True."""
    request = RescoreRequest(full=full, category_name=category_name)
    with session_scope() as session:
        record, err = _get_or_error(session, record_id)
        if err:
            return err
        try:
            outcome = await services.run_scoring(
                session, record, _settings, full=request.full, category_name=request.category_name,
            )
        except services.UnknownCategoryError:
            return {"error": f"Category not found: {request.category_name}"}
        except LLMCallError as exc:
            return {"error": f"Scoring failed: {exc}"}
        return {
            "record_id": record.id, "company_name": record.company_name,
            "skipped": outcome.skipped, "message": outcome.message,
            "overall": outcome.score.overall if outcome.score else None,
        }


@mcp.tool()
def get_stats() -> dict:
    """Get summary statistics about all diligence records."""
    with session_scope() as session:
        return services.compute_stats(session)


def main():
    """Run the Diligence MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
