from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class DiligenceRecord(Base):
    __tablename__ = "diligence_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    company_url: Mapped[str] = mapped_column(String(500), default="")
    company_description: Mapped[str] = mapped_column(Text, default="")
    industry: Mapped[str] = mapped_column(String(200), default="")
    notes: Mapped[str] = mapped_column(Text, default="")  # legacy single free-text note
    status: Mapped[str] = mapped_column(String(30), default="in_progress")  # in_progress | completed | passed | declined
    recommendation: Mapped[str | None] = mapped_column(Text, nullable=True)
    hubspot_deal_id: Mapped[str] = mapped_column(String(100), default="")
    metrics_json: Mapped[str] = mapped_column(Text, default="{}")
    score_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    categorized_notes: Mapped[list[DiligenceNote]] = relationship(
        "DiligenceNote", back_populates="record", cascade="all, delete-orphan", order_by="DiligenceNote.id",
    )
    documents: Mapped[list[DiligenceDocument]] = relationship(
        "DiligenceDocument", back_populates="record", cascade="all, delete-orphan", order_by="DiligenceDocument.id",
    )

    # Concurrent writers to the same row fail with StaleDataError instead of
    # silently overwriting each other.
    __mapper_args__ = {"version_id_col": version}


class DiligenceNote(Base):
    __tablename__ = "diligence_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[int] = mapped_column(Integer, ForeignKey("diligence_records.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(200), default="Overall")
    title: Mapped[str] = mapped_column(String(300), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    record: Mapped[DiligenceRecord] = relationship("DiligenceRecord", back_populates="categorized_notes")


class DiligenceDocument(Base):
    __tablename__ = "diligence_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[int] = mapped_column(Integer, ForeignKey("diligence_records.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(30), default="other")  # deck | financial | legal | other
    file_type: Mapped[str] = mapped_column(String(30), default="")  # pdf, pptx, link, ...
    external_url: Mapped[str] = mapped_column(String(1000), default="")
    link_ingest_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    extracted_text: Mapped[str] = mapped_column(Text, default="")
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    record: Mapped[DiligenceRecord] = relationship("DiligenceRecord", back_populates="documents")


class CriteriaCategoryRow(Base):
    __tablename__ = "criteria_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    weight: Mapped[float] = mapped_column(Float, default=0.0)
    criteria_json: Mapped[str] = mapped_column(Text, default="[]")
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
