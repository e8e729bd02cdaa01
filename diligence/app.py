from __future__ import annotations

import asyncio
import json
import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

from diligence import services
from diligence.config import Settings, load_settings
from diligence.db import get_session, init_db
from diligence.importer import import_criteria_xlsx
from diligence.models import DiligenceDocument, DiligenceNote, DiligenceRecord
from diligence.schemas import (
    CriteriaCategoryUpdate,
    CriteriaImportResult,
    DocumentCreate,
    NoteCreate,
    OverrideRequest,
    RecordCreate,
    RecordDetail,
    RecordOut,
    RecordUpdate,
    RescoreRequest,
    StatsOut,
)
from diligence.scorer import LLMCallError, LLMClient

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    app.state.settings = settings
    init_db(settings.db_path)
    yield


app = FastAPI(
    title="Diligence",
    version="0.1.0",
    description=(
        "Deal diligence workspace API. Store per-company diligence records, score them "
        "against a weighted criteria rubric, and let analysts override category scores. "
        "Errors are returned as {success: false, error}."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Records", "description": "Create, browse, and update diligence records."},
        {"name": "Evidence", "description": "Categorized notes and documents attached to a record."},
        {"name": "Scoring", "description": "LLM scoring, fingerprint-based rescore skipping, and manual overrides."},
        {"name": "Criteria", "description": "The weighted scoring rubric."},
        {"name": "Stats", "description": "Aggregate statistics."},
    ],
)


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"success": False, "error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    messages = [str(e.get("msg", "")).removeprefix("Value error, ") for e in exc.errors()]
    return JSONResponse({"success": False, "error": "; ".join(messages) or "Invalid request"}, status_code=400)


@app.exception_handler(StaleDataError)
async def stale_write(request: Request, exc: StaleDataError):
    return JSONResponse(
        {"success": False, "error": "Record was modified concurrently, reload and retry"},
        status_code=409,
    )


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Routes: Records
# ---------------------------------------------------------------------------


class RecordListResponse(BaseModel):
    items: list[RecordOut]
    total: int


@app.get("/api/diligence", response_model=RecordListResponse,
         tags=["Records"], summary="List diligence records with filtering, sorting, and pagination")
async def list_records(
    status: str | None = Query(None, description="Comma-separated: in_progress, completed, passed, declined"),
    search: str | None = Query(None, description="Free-text search across company name, description, and industry"),
    sort_by: str = Query("updated_at", description="Sort field: updated_at, overall, company_name, status"),
    sort_dir: str = Query("desc", description="asc or desc"),
    page: int = Query(1, ge=1),
    per_page: int = Query(100, ge=1, le=500),
    session: Session = Depends(db_session),
):
    items, total = services.query_records(
        session, status=status, search=search, sort_by=sort_by, sort_dir=sort_dir,
        page=page, per_page=per_page,
    )
    return {"items": items, "total": total}


@app.post("/api/diligence", response_model=RecordDetail, status_code=201,
          tags=["Records"], summary="Create a diligence record")
async def create_record(body: RecordCreate, session: Session = Depends(db_session)):
    record = DiligenceRecord(**body.model_dump())
    session.add(record)
    session.commit()
    return services.record_detail(record)


@app.get("/api/diligence/{record_id}", response_model=RecordDetail,
         tags=["Records"], summary="Get a record with notes, documents, metrics, and score")
async def get_record(record_id: int, session: Session = Depends(db_session)):
    return services.record_detail(_get_or_404(session, DiligenceRecord, record_id, "Diligence record"))


@app.put("/api/diligence/{record_id}", response_model=RecordDetail,
         tags=["Records"], summary="Update record fields (partial update, null fields ignored)")
async def update_record(record_id: int, body: RecordUpdate, session: Session = Depends(db_session)):
    record = _get_or_404(session, DiligenceRecord, record_id, "Diligence record")
    services.apply_updates(record, body.model_dump(), services.UPDATABLE_FIELDS)
    if body.metrics is not None:
        services.store_metrics(record, body.metrics)
    session.commit()
    return services.record_detail(record)


@app.delete("/api/diligence/{record_id}", tags=["Records"], summary="Delete a record with its notes and documents")
async def delete_record(record_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, DiligenceRecord, record_id, "Diligence record"))
    session.commit()
    return {"success": True}


# ---------------------------------------------------------------------------
# Routes: Evidence
# ---------------------------------------------------------------------------


@app.post("/api/diligence/{record_id}/notes", response_model=RecordDetail, status_code=201,
          tags=["Evidence"], summary="Add a categorized note")
async def add_note(record_id: int, body: NoteCreate, session: Session = Depends(db_session)):
    record = _get_or_404(session, DiligenceRecord, record_id, "Diligence record")
    record.categorized_notes.append(DiligenceNote(**body.model_dump()))
    session.commit()
    return services.record_detail(record)


@app.put("/api/notes/{note_id}", tags=["Evidence"], summary="Edit a categorized note")
async def update_note(note_id: int, body: NoteCreate, session: Session = Depends(db_session)):
    note = _get_or_404(session, DiligenceNote, note_id, "Note")
    services.apply_updates(note, body.model_dump(exclude_unset=True), ("category", "title", "content"))
    session.commit()
    return {"success": True}


@app.delete("/api/notes/{note_id}", tags=["Evidence"], summary="Delete a categorized note")
async def delete_note(note_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, DiligenceNote, note_id, "Note"))
    session.commit()
    return {"success": True}


@app.post("/api/diligence/{record_id}/documents", response_model=RecordDetail, status_code=201,
          tags=["Evidence"], summary="Attach a document with its already-extracted text")
async def add_document(record_id: int, body: DocumentCreate, session: Session = Depends(db_session)):
    record = _get_or_404(session, DiligenceRecord, record_id, "Diligence record")
    record.documents.append(DiligenceDocument(**body.model_dump()))
    session.commit()
    return services.record_detail(record)


@app.delete("/api/documents/{document_id}", tags=["Evidence"], summary="Remove a document")
async def delete_document(document_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, DiligenceDocument, document_id, "Document"))
    session.commit()
    return {"success": True}


# ---------------------------------------------------------------------------
# Routes: Scoring (batch before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.post("/api/diligence/rescore/batch", tags=["Scoring"],
          summary="Re-score records whose inputs changed (SSE progress stream)")
async def rescore_batch(body: dict[str, Any] | None = None, settings: Settings = Depends(app_settings)):
    record_ids = (body or {}).get("record_ids")
    full = bool((body or {}).get("full"))
    client = LLMClient()

    async def stream():
        session = get_session()
        try:
            query = select(DiligenceRecord.id, DiligenceRecord.company_name)
            if record_ids:
                query = query.where(DiligenceRecord.id.in_(record_ids))
            rows = session.execute(query).all()
            scored = skipped = failed = 0
            for idx, (record_id, name) in enumerate(rows):
                yield f"data: {json.dumps({'type': 'progress', 'current': idx + 1, 'total': len(rows), 'name': name})}\n\n"
                try:
                    record = services.get_entity(session, DiligenceRecord, record_id)
                    if record is None:
                        failed += 1
                        continue
                    outcome = await services.run_scoring(session, record, settings, client, full=full)
                    if outcome.skipped:
                        skipped += 1
                    else:
                        scored += 1
                except Exception as exc:
                    log.warning("Batch rescore failed for %s: %s", name, exc)
                    failed += 1
                    session.rollback()
                await asyncio.sleep(0.3)
            stats = {"scored": scored, "skipped": skipped, "failed": failed}
            yield f"data: {json.dumps({'type': 'complete', 'stats': stats})}\n\n"
        finally:
            session.close()

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.post("/api/diligence/{record_id}/rescore", tags=["Scoring"],
          summary="Score a record, skipped when the scoring fingerprint is unchanged")
async def rescore(
    record_id: int,
    body: RescoreRequest | None = None,
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
):
    body = body or RescoreRequest()
    record = _get_or_404(session, DiligenceRecord, record_id, "Diligence record")
    try:
        outcome = await services.run_scoring(
            session, record, settings, full=body.full, category_name=body.category_name,
        )
    except services.UnknownCategoryError as exc:
        raise HTTPException(404, f"Category not found: {exc}") from exc
    except LLMCallError as exc:
        raise HTTPException(500, f"Scoring failed: {exc}") from exc
    return {
        "success": True, "skipped": outcome.skipped, "message": outcome.message,
        "record": services.record_detail(record),
    }


@app.post("/api/diligence/{record_id}/override-score", tags=["Scoring"],
          summary="Apply or remove a manual override on one category score")
async def override_score(record_id: int, body: OverrideRequest, session: Session = Depends(db_session)):
    record = _get_or_404(session, DiligenceRecord, record_id, "Diligence record")
    try:
        score = services.apply_score_override(session, record, body)
    except services.NoScoreError as exc:
        raise HTTPException(400, "No score found to override") from exc
    except services.UnknownCategoryError as exc:
        raise HTTPException(404, f"Category not found: {exc}") from exc
    return {
        "success": True,
        "score": score.model_dump(mode="json"),
        "record": services.record_detail(record),
    }


# ---------------------------------------------------------------------------
# Routes: Criteria
# ---------------------------------------------------------------------------


@app.get("/api/criteria", tags=["Criteria"], summary="List scoring categories with weights and criteria")
async def list_criteria(session: Session = Depends(db_session)):
    return services.criteria_rows(session)


@app.put("/api/criteria/{name}", tags=["Criteria"], summary="Update a category's weight, criteria, or order")
async def update_criteria(name: str, body: CriteriaCategoryUpdate, session: Session = Depends(db_session)):
    result = services.update_criteria_category(
        session, name, weight=body.weight, criteria=body.criteria, sort_order=body.sort_order,
    )
    if result is None:
        raise HTTPException(404, f"Criteria category '{name}' not found")
    return result


@app.post("/api/criteria/import", response_model=CriteriaImportResult,
          tags=["Criteria"], summary="Replace the rubric from an XLSX sheet")
async def import_criteria(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_criteria_xlsx(tmp_path, session)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"], summary="Get aggregate statistics")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("diligence.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
