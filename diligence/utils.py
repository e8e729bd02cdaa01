"""Shared utility functions used across diligence modules."""
from __future__ import annotations

import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def round_half_up(value: float, places: int = 0) -> float:
    """Round half away from zero on the decimal representation of *value*.

    ``round_half_up(2.5) == 3`` and ``round_half_up(0.125, 2) == 0.13``,
    unlike the builtin ``round`` which rounds half to even.
    """
    exponent = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP))
