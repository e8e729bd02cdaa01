from __future__ import annotations

import json
import logging
from pathlib import Path

import openpyxl
from sqlalchemy import delete
from sqlalchemy.orm import Session

from diligence.models import CriteriaCategoryRow

log = logging.getLogger(__name__)

# Header name (lower-cased) -> field
_HEADERS = {
    "category": "category",
    "weight": "weight",
    "criterion": "name",
    "description": "description",
    "scoring guidance": "scoring_guidance",
}


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _weight(value: object) -> float | None:
    """Parse a weight cell, accepting ``30``, ``"30"`` and ``"30%"``."""
    if value is None or _s(value) == "":
        return None
    try:
        weight = float(_s(value).rstrip("%"))
    except ValueError:
        return None
    return weight if 0 <= weight <= 100 else None


def _column_map(header: tuple) -> dict[str, int]:
    cols: dict[str, int] = {}
    for idx, cell in enumerate(header):
        field = _HEADERS.get(_s(cell).lower())
        if field:
            cols[field] = idx
    missing = {"category", "name"} - cols.keys()
    if missing:
        raise ValueError(f"Criteria sheet is missing columns: {', '.join(sorted(missing))}")
    return cols


def parse_criteria_rows(rows: list[tuple]) -> list[dict]:
    """Group sheet rows into ``[{name, weight, criteria: [...]}]`` in sheet order.

    The first row is the header.  A category's weight is taken from the
    first row of that category that has one.
    """
    if not rows:
        return []
    cols = _column_map(rows[0])

    def cell(row: tuple, field: str) -> object:
        idx = cols.get(field)
        return row[idx] if idx is not None and idx < len(row) else None

    categories: dict[str, dict] = {}
    for row in rows[1:]:
        cat_name = _s(cell(row, "category"))
        crit_name = _s(cell(row, "name"))
        if not cat_name or not crit_name:
            continue
        cat = categories.setdefault(cat_name, {"name": cat_name, "weight": None, "criteria": []})
        if cat["weight"] is None:
            cat["weight"] = _weight(cell(row, "weight"))
        cat["criteria"].append({
            "name": crit_name,
            "description": _s(cell(row, "description")),
            "scoring_guidance": _s(cell(row, "scoring_guidance")),
        })
    for cat in categories.values():
        if cat["weight"] is None:
            log.warning("Category %r has no valid weight, defaulting to 0", cat["name"])
            cat["weight"] = 0.0
    return list(categories.values())


def import_criteria_xlsx(path: Path, session: Session) -> dict[str, int]:
    """Replace the scoring criteria with the rubric in the first sheet of *path*."""
    wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    try:
        rows = list(wb.worksheets[0].iter_rows(values_only=True))
    finally:
        wb.close()

    categories = parse_criteria_rows(rows)
    if not categories:
        raise ValueError("Criteria sheet contains no criteria")

    session.execute(delete(CriteriaCategoryRow))
    for order, cat in enumerate(categories):
        session.add(CriteriaCategoryRow(
            name=cat["name"], weight=cat["weight"], sort_order=order,
            criteria_json=json.dumps(cat["criteria"]),
        ))
    session.commit()
    total = sum(len(c["criteria"]) for c in categories)
    log.info("Imported %d criteria in %d categories from %s", total, len(categories), path.name)
    return {"categories": len(categories), "criteria": total}
