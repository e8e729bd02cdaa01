"""Runtime settings, resolved once at startup and passed to the orchestrator."""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from diligence.utils import json_parse

log = logging.getLogger(__name__)

_TRUE = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    db_path: Path | None = None
    # Part of the scoring fingerprint: flipping it forces a rescore.
    summarize_transcript_notes: bool = False
    # Category name -> weight, applied over the weights in the criteria table.
    scoring_weights: dict[str, float] = field(default_factory=dict)


def _parse_weights(raw: str | None) -> dict[str, float]:
    parsed = json_parse(raw, {})
    if not isinstance(parsed, dict):
        log.warning("DILIGENCE_SCORING_WEIGHTS must be a JSON object, ignoring %r", raw)
        return {}
    weights: dict[str, float] = {}
    for name, value in parsed.items():
        try:
            weight = float(value)
        except (TypeError, ValueError):
            log.warning("Ignoring non-numeric weight %r for category %r", value, name)
            continue
        if not 0 <= weight <= 100:
            log.warning("Ignoring out-of-range weight %s for category %r", weight, name)
            continue
        weights[str(name)] = weight
    return weights


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    db_path = env.get("DILIGENCE_DB_PATH")
    return Settings(
        db_path=Path(db_path) if db_path else None,
        summarize_transcript_notes=env.get("DILIGENCE_SUMMARIZE_TRANSCRIPT_NOTES", "").strip().lower() in _TRUE,
        scoring_weights=_parse_weights(env.get("DILIGENCE_SCORING_WEIGHTS")),
    )
