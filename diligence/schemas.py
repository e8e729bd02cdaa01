"""Pydantic types for scores, criteria, and the diligence API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


class CriterionScore(BaseModel):
    name: str
    score: float = 0
    reasoning: str = ""
    evidence: list[str] = []
    confidence: float | None = None
    evidence_status: Literal["supported", "weakly_supported", "unknown", "contradicted"] | None = None
    missing_data: list[str] = []
    follow_up_questions: list[str] = []


class CategoryScore(BaseModel):
    """One scored dimension of a diligence assessment.

    ``score`` is what the AI scorer assigned and is never touched by an
    override; ``manual_override`` wins whenever it is set.
    """
    category: str
    score: float
    weight: float
    weighted_score: float = 0
    criteria: list[CriterionScore] = []
    manual_override: float | None = None
    override_reason: str | None = None
    override_suppress_topics: list[str] | None = None
    overrided_at: datetime | None = None


class DiligenceScore(BaseModel):
    overall: int = 0
    categories: list[CategoryScore] = []
    data_quality: float = 0
    thesis_answers: dict[str, Any] | None = None
    scored_at: datetime | None = None
    scoring_fingerprint: str | None = None
    scoring_mode: Literal["incremental", "full"] | None = None
    rescore_explanation: str | None = None
    follow_up_questions: list[str] = []


# ---------------------------------------------------------------------------
# Scoring inputs
# ---------------------------------------------------------------------------


class MetricValue(BaseModel):
    value: str = ""
    source: Literal["auto", "manual"] | None = None
    source_detail: str | None = None
    updated_at: datetime | None = None


class Criterion(BaseModel):
    name: str
    description: str = ""
    scoring_guidance: str = ""


class CriteriaCategory(BaseModel):
    name: str
    weight: float = Field(ge=0, le=100)
    criteria: list[Criterion] = []


class Criteria(BaseModel):
    categories: list[CriteriaCategory] = []


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class NoteOut(BaseModel):
    id: int
    category: str
    title: str
    content: str
    created_at: str
    updated_at: str


class DocumentOut(BaseModel):
    id: int
    name: str
    doc_type: str
    file_type: str
    external_url: str
    link_ingest_status: str | None = None
    uploaded_at: str
    has_text: bool


class RecordOut(BaseModel):
    id: int
    company_name: str
    company_url: str
    company_description: str
    industry: str
    status: str
    overall: int | None = None
    data_quality: float | None = None
    override_count: int = 0
    scored_at: str | None = None
    updated_at: str


class RecordDetail(RecordOut):
    notes: str = ""
    recommendation: str | None = None
    hubspot_deal_id: str = ""
    metrics: dict[str, MetricValue] = {}
    score: DiligenceScore | None = None
    categorized_notes: list[NoteOut] = []
    documents: list[DocumentOut] = []
    version: int


class RecordCreate(BaseModel):
    company_name: str
    company_url: str = ""
    company_description: str = ""
    industry: str = ""
    notes: str = ""
    hubspot_deal_id: str = ""

    @field_validator("company_name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("company_name is required")
        return v


class RecordUpdate(BaseModel):
    company_name: str | None = None
    company_url: str | None = None
    company_description: str | None = None
    industry: str | None = None
    notes: str | None = None
    status: Literal["in_progress", "completed", "passed", "declined"] | None = None
    recommendation: str | None = None
    hubspot_deal_id: str | None = None
    metrics: dict[str, MetricValue] | None = None


class NoteCreate(BaseModel):
    category: str = "Overall"
    title: str = ""
    content: str = ""


class DocumentCreate(BaseModel):
    name: str
    doc_type: Literal["deck", "financial", "legal", "other"] = "other"
    file_type: str = ""
    external_url: str = ""
    extracted_text: str = ""
    link_ingest_status: Literal["ingested", "email_required", "failed"] | None = None


# ---------------------------------------------------------------------------
# Scoring requests
# ---------------------------------------------------------------------------


class OverrideRequest(BaseModel):
    """Apply or remove an analyst override on one category."""
    category_name: str
    action: Literal["apply", "remove"] = "apply"
    override_score: float | None = None
    reason: str | None = None
    suppress_risk_topics: list[Any] | None = None

    @field_validator("category_name")
    @classmethod
    def category_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Category name is required")
        return v

    @field_validator("suppress_risk_topics")
    @classmethod
    def keep_text_topics(cls, v: list[Any] | None) -> list[str] | None:
        if v is None:
            return None
        return [t for t in v if isinstance(t, str) and t.strip()]

    @model_validator(mode="after")
    def score_in_range(self) -> OverrideRequest:
        if self.action == "apply":
            if self.override_score is None or not 0 <= self.override_score <= 100:
                raise ValueError("Override score must be between 0 and 100")
        return self


class RescoreRequest(BaseModel):
    full: bool = False
    category_name: str | None = None

    @field_validator("category_name")
    @classmethod
    def strip_category(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class CriteriaCategoryUpdate(BaseModel):
    weight: float | None = Field(default=None, ge=0, le=100)
    criteria: list[Criterion] | None = None
    sort_order: int | None = None


class CriteriaImportResult(BaseModel):
    categories: int
    criteria: int


class StatsOut(BaseModel):
    total: int
    scored: int
    with_overrides: int
    by_status: dict[str, int]
