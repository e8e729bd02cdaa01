"""Content-addressed fingerprint over everything that can change a scoring pass.

The orchestrator compares the fingerprint of the current inputs with the one
stored on the last score; equal fingerprints mean the expensive LLM pass can
be skipped.  Canonicalization makes the digest independent of the insertion
order of notes and documents, while any change to their text, the metrics,
the criteria or the scorer version yields a new digest.
"""
from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

# Metrics that feed the scorer.  Every name is always present in the
# canonical form so "absent" and "present but empty" hash the same.
FINGERPRINT_METRICS = ("arr", "tam", "acv", "yoy_growth_rate")


class FingerprintError(ValueError):
    """Scoring inputs could not be serialized canonically."""


@dataclass
class FingerprintInput:
    company_name: str = ""
    company_url: str | None = None
    company_description: str | None = None
    industry: str | None = None
    notes: str | None = None
    categorized_notes: list[Any] = field(default_factory=list)
    metrics: Mapping[str, Any] | None = None
    documents: list[Any] = field(default_factory=list)
    criteria: Any = None
    scorer_version: str = ""
    summarize_transcript_notes: bool = False


def _get(obj: Any, name: str) -> Any:
    """Read *name* from a mapping or an attribute-bearing object."""
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def normalize_metrics(metrics: Mapping[str, Any] | None) -> dict[str, dict[str, str]]:
    result: dict[str, dict[str, str]] = {}
    for name in FINGERPRINT_METRICS:
        metric = (metrics or {}).get(name)
        result[name] = {
            "value": _text(_get(metric, "value")) if metric is not None else "",
            "source": _text(_get(metric, "source")) if metric is not None else "",
        }
    return result


def normalize_notes(notes: Iterable[Any] | None) -> list[dict[str, str]]:
    projected = [
        {
            "category": _text(_get(n, "category")),
            "title": _text(_get(n, "title")),
            "content": _text(_get(n, "content")),
        }
        for n in notes or []
    ]
    # Content breaks ties between notes sharing a category and title.
    projected.sort(key=lambda n: (f"{n['category']}:{n['title']}", n["content"]))
    return projected


def normalize_documents(documents: Iterable[Any] | None) -> list[dict[str, str]]:
    projected = [
        {
            "name": _text(_get(d, "name")),
            "type": _text(_get(d, "doc_type") or _get(d, "type")) or "other",
            "extracted_text": _text(_get(d, "extracted_text")),
        }
        for d in documents or []
    ]
    projected.sort(key=lambda d: (d["name"], d["type"], d["extracted_text"]))
    return projected


def canonical_payload(inp: FingerprintInput) -> dict[str, Any]:
    criteria = inp.criteria
    if hasattr(criteria, "model_dump"):
        criteria = criteria.model_dump(mode="json")
    return {
        "company_name": _text(inp.company_name),
        "company_url": _text(inp.company_url),
        "company_description": _text(inp.company_description),
        "industry": _text(inp.industry),
        "notes": _text(inp.notes),
        "categorized_notes": normalize_notes(inp.categorized_notes),
        "metrics": normalize_metrics(inp.metrics),
        "documents": normalize_documents(inp.documents),
        "criteria": criteria,
        "scorer_version": inp.scorer_version,
        "summarize_transcript_notes": bool(inp.summarize_transcript_notes),
    }


def compute_fingerprint(inp: FingerprintInput) -> str:
    """Return the hex SHA-256 digest of the canonical scoring inputs.

    Raises:
        FingerprintError: a value in the inputs (usually inside ``criteria``)
            is not JSON-serializable or is a non-finite float.
    """
    payload = canonical_payload(inp)
    try:
        encoded = json.dumps(
            payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False,
        )
    except (TypeError, ValueError) as exc:
        raise FingerprintError(f"Cannot fingerprint scoring inputs: {exc}") from exc
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
