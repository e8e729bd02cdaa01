"""Score reconciliation: merge AI category scores with analyst overrides.

Every function here is pure.  Transforms return new ``DiligenceScore``
objects and never modify their arguments, so callers can diff the old
and new score inside their write lock.

Rounding is round-half-up throughout (see ``round_half_up``): the overall
score to a whole number, weighted scores to two decimals.
"""
from __future__ import annotations

from datetime import UTC, datetime

from diligence.schemas import CategoryScore, DiligenceScore
from diligence.utils import round_half_up

_OVERRIDE_FIELDS = ("manual_override", "override_reason", "override_suppress_topics", "overrided_at")


def effective_score(category: CategoryScore) -> float:
    """The score used for aggregation: the analyst override if set, else the AI score."""
    if category.manual_override is not None:
        return category.manual_override
    return category.score


def weighted_score(category: CategoryScore) -> float:
    return round_half_up(effective_score(category) * category.weight / 100, 2)


def recalculate_overall(categories: list[CategoryScore]) -> int:
    """Weighted mean of effective scores, rounded to an integer.

    Weights are relative and need not sum to 100.  A set whose weights sum
    to zero has an overall score of 0.
    """
    total_weight = sum(c.weight for c in categories)
    if total_weight == 0:
        return 0
    total = sum(effective_score(c) * c.weight for c in categories)
    return int(round_half_up(total / total_weight))


def ai_overall(categories: list[CategoryScore]) -> int:
    """Overall score from the AI scores alone, ignoring any overrides."""
    return recalculate_overall([c.model_copy(update={"manual_override": None}) for c in categories])


def recalculate_weighted_scores(categories: list[CategoryScore]) -> list[CategoryScore]:
    return [c.model_copy(update={"weighted_score": weighted_score(c)}) for c in categories]


def _reconcile(score: DiligenceScore, categories: list[CategoryScore]) -> DiligenceScore:
    categories = recalculate_weighted_scores(categories)
    return score.model_copy(update={
        "categories": categories,
        "overall": recalculate_overall(categories),
    })


def _find(score: DiligenceScore, category_name: str) -> CategoryScore | None:
    return next((c for c in score.categories if c.category == category_name), None)


def apply_override(
    score: DiligenceScore,
    category_name: str,
    override_value: float,
    reason: str | None = None,
    suppress_topics: list[str] | None = None,
    now: datetime | None = None,
) -> DiligenceScore:
    """Set an analyst override on one category and recompute the set.

    ``override_value`` must already be validated to lie in [0, 100].  An
    unknown ``category_name`` returns *score* unchanged.
    """
    if _find(score, category_name) is None:
        return score
    stamp = now or datetime.now(UTC)
    categories = [
        c.model_copy(update={
            "manual_override": override_value,
            "override_reason": reason,
            "override_suppress_topics": list(suppress_topics) if suppress_topics else None,
            "overrided_at": stamp,
        }) if c.category == category_name else c
        for c in score.categories
    ]
    return _reconcile(score, categories)


def remove_override(score: DiligenceScore, category_name: str) -> DiligenceScore:
    """Clear the override on one category, reverting it to the AI score."""
    if _find(score, category_name) is None:
        return score
    cleared = dict.fromkeys(_OVERRIDE_FIELDS)
    categories = [
        c.model_copy(update=cleared) if c.category == category_name else c
        for c in score.categories
    ]
    return _reconcile(score, categories)


def has_overrides(score: DiligenceScore) -> bool:
    return any(c.manual_override is not None for c in score.categories)


def override_count(score: DiligenceScore) -> int:
    return sum(1 for c in score.categories if c.manual_override is not None)


# ---------------------------------------------------------------------------
# Rescore helpers
# ---------------------------------------------------------------------------


def preserve_overrides(previous: DiligenceScore | None, fresh: DiligenceScore) -> DiligenceScore:
    """Carry analyst overrides from *previous* onto a freshly scored set.

    Overrides follow the category name; categories that no longer exist in
    *fresh* drop their overrides.  The overall score is recomputed either way.
    """
    carried = {
        c.category: {f: getattr(c, f) for f in _OVERRIDE_FIELDS}
        for c in (previous.categories if previous else [])
        if c.manual_override is not None
    }
    categories = [
        c.model_copy(update=carried[c.category]) if c.category in carried else c
        for c in fresh.categories
    ]
    return _reconcile(fresh, categories)


def merge_category(previous: DiligenceScore, fresh: DiligenceScore, category_name: str) -> DiligenceScore:
    """Replace a single category of *previous* with its rescored version.

    Everything outside that category (data quality, thesis answers when the
    fresh pass has none) is kept from *previous*.
    """
    rescored = _find(fresh, category_name)
    if rescored is None:
        return previous
    categories = [rescored if c.category == category_name else c for c in previous.categories]
    if _find(previous, category_name) is None:
        categories.append(rescored)
    merged = fresh.model_copy(update={
        "data_quality": previous.data_quality,
        "thesis_answers": fresh.thesis_answers or previous.thesis_answers,
    })
    return _reconcile(merged, categories)


def category_deltas(
    previous: DiligenceScore | None, current: DiligenceScore, limit: int = 3,
) -> list[tuple[str, float, float, int]]:
    """Largest effective-score changes as ``(category, before, after, delta)``."""
    before = {c.category: effective_score(c) for c in (previous.categories if previous else [])}
    deltas = []
    for c in current.categories:
        prev = before.get(c.category, 0)
        now = effective_score(c)
        deltas.append((c.category, prev, now, int(round_half_up(now - prev))))
    deltas.sort(key=lambda d: abs(d[3]), reverse=True)
    return deltas[:limit]
