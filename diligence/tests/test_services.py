"""Tests for the scoring orchestrator, overrides, and supporting services."""
from __future__ import annotations

import logging
import threading
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from diligence import services
from diligence.calculator import recalculate_overall, recalculate_weighted_scores
from diligence.config import Settings, _parse_weights, load_settings
from diligence.db import seed_default_criteria
from diligence.models import Base, DiligenceDocument, DiligenceNote, DiligenceRecord
from diligence.schemas import (
    CategoryScore, Criteria, CriteriaCategory, CriterionScore, DiligenceScore, MetricValue, OverrideRequest,
    RescoreRequest,
)
from diligence.scorer import build_dossier

WEIGHTS = {"Team": 30, "Market": 25, "Product": 20, "Traction": 15, "Deal Terms": 10}

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    seed_default_criteria(sess)
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def record(session: Session) -> DiligenceRecord:
    rec = DiligenceRecord(
        company_name="Acme Robotics", company_url="https://acme.dev",
        company_description="Warehouse picking robots", industry="Robotics",
        notes="Met at demo day",
    )
    rec.categorized_notes.append(DiligenceNote(category="Team", title="Founders", content="Ex-Kiva engineers"))
    session.add(rec)
    session.commit()
    return rec


@pytest.fixture()
def settings() -> Settings:
    return Settings()


def _fresh(scores: dict[str, float], **kw) -> DiligenceScore:
    categories = recalculate_weighted_scores([
        CategoryScore(category=name, score=value, weight=WEIGHTS[name]) for name, value in scores.items()
    ])
    return DiligenceScore(overall=recalculate_overall(categories), categories=categories,
                          data_quality=50, **kw)


ALL_70 = {name: 70 for name in WEIGHTS}


def _category(score: DiligenceScore, name: str) -> CategoryScore:
    return next(c for c in score.categories if c.category == name)


# =========================================================================
# run_scoring
# =========================================================================


class TestRunScoring:
    @pytest.mark.asyncio
    async def test_first_score_is_stored(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))) as mock:
            outcome = await services.run_scoring(session, record, settings, MagicMock())
        mock.assert_awaited_once()
        assert not outcome.skipped
        assert outcome.message == "Successfully incremental re-scored diligence"
        stored = services.load_score(record)
        assert stored.overall == 70
        assert stored.scoring_mode == "incremental"
        assert stored.scoring_fingerprint and len(stored.scoring_fingerprint) == 64
        assert stored.rescore_explanation.startswith("## Score Snapshot")

    @pytest.mark.asyncio
    async def test_unchanged_inputs_skip_llm(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))) as mock:
            await services.run_scoring(session, record, settings, MagicMock())
            first = record.score_json
            outcome = await services.run_scoring(session, record, settings, MagicMock())
        assert mock.await_count == 1
        assert outcome.skipped
        assert outcome.message == "No new information detected. Skipped scoring."
        assert record.score_json == first

    @pytest.mark.asyncio
    async def test_full_rescore_ignores_fingerprint(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))) as mock:
            await services.run_scoring(session, record, settings, MagicMock())
            outcome = await services.run_scoring(session, record, settings, MagicMock(), full=True)
        assert mock.await_count == 2
        assert not outcome.skipped
        assert outcome.score.scoring_mode == "full"
        assert outcome.message == "Successfully full re-scored diligence"

    @pytest.mark.asyncio
    async def test_new_note_triggers_rescore(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))) as mock:
            await services.run_scoring(session, record, settings, MagicMock())
            record.categorized_notes.append(DiligenceNote(category="Market", title="TAM", content="$12B"))
            session.commit()
            outcome = await services.run_scoring(session, record, settings, MagicMock())
        assert mock.await_count == 2
        assert not outcome.skipped

    @pytest.mark.asyncio
    async def test_transcript_setting_changes_fingerprint(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))) as mock:
            await services.run_scoring(session, record, settings, MagicMock())
            outcome = await services.run_scoring(
                session, record, Settings(summarize_transcript_notes=True), MagicMock(),
            )
        assert mock.await_count == 2
        assert not outcome.skipped

    @pytest.mark.asyncio
    async def test_version_increments_on_each_write(self, session, record, settings):
        start = record.version
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))):
            await services.run_scoring(session, record, settings, MagicMock())
        assert record.version == start + 1

    @pytest.mark.asyncio
    async def test_configured_weights_reach_scorer(self, session, record):
        mock = AsyncMock(return_value=_fresh(ALL_70))
        with patch("diligence.services.score_diligence", new=mock):
            await services.run_scoring(session, record, Settings(scoring_weights={"Team": 50}), MagicMock())
        criteria = mock.call_args.args[1]
        assert {c.name: c.weight for c in criteria.categories}["Team"] == 50

    @pytest.mark.asyncio
    async def test_creates_default_client(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))), \
                patch("diligence.services.LLMClient") as MockClient:
            await services.run_scoring(session, record, settings)
        MockClient.assert_called_once()


class TestScorerInputCoverage:
    """Anything that changes the dossier must change the fingerprint."""

    @staticmethod
    def _dossier(record):
        return build_dossier(record, list(record.categorized_notes), services.usable_documents(record),
                             services.load_metrics(record))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("change", ["industry", "metric"])
    async def test_dossier_change_triggers_rescore(self, session, record, settings, change):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))) as mock:
            await services.run_scoring(session, record, settings, MagicMock())
            before = self._dossier(record)
            if change == "industry":
                record.industry = "Fintech"
            else:
                services.store_metrics(record, {"tam": MetricValue(value="$12B", source="manual")})
            session.commit()
            assert self._dossier(record) != before
            outcome = await services.run_scoring(session, record, settings, MagicMock())
        assert not outcome.skipped
        assert mock.await_count == 2

    @pytest.mark.asyncio
    async def test_metric_outside_scoring_set_is_not_sent_or_hashed(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))) as mock:
            await services.run_scoring(session, record, settings, MagicMock())
            before = self._dossier(record)
            services.store_metrics(record, {"valuation": MetricValue(value="$40M", source="manual")})
            session.commit()
            assert self._dossier(record) == before
            outcome = await services.run_scoring(session, record, settings, MagicMock())
        assert outcome.skipped
        assert mock.await_count == 1


class TestOverridesSurviveRescore:
    @pytest.mark.asyncio
    async def test_override_kept_with_fresh_ai_score(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))):
            await services.run_scoring(session, record, settings, MagicMock())
        services.apply_score_override(session, record, OverrideRequest(
            category_name="Team", override_score=95, reason="Strong references",
            suppress_risk_topics=["hiring"],
        ))

        fresh = _fresh({**ALL_70, "Team": 40})
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=fresh)):
            outcome = await services.run_scoring(session, record, settings, MagicMock(), full=True)

        team = _category(outcome.score, "Team")
        assert team.score == 40
        assert team.manual_override == 95
        assert team.override_reason == "Strong references"
        assert team.override_suppress_topics == ["hiring"]
        # 95*30 + 70*70 = 7750 over a total weight of 100
        assert outcome.score.overall == 78
        assert "New AI-only score: 61/100" in outcome.score.rescore_explanation
        assert "Final score (after preserved overrides): 78/100" in outcome.score.rescore_explanation

    @pytest.mark.asyncio
    async def test_override_during_llm_call_is_not_lost(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))):
            await services.run_scoring(session, record, settings, MagicMock())

        async def override_mid_flight(*args, **kwargs):
            services.apply_score_override(session, record, OverrideRequest(category_name="Market", override_score=10))
            return _fresh(ALL_70)

        with patch("diligence.services.score_diligence", new=AsyncMock(side_effect=override_mid_flight)):
            outcome = await services.run_scoring(session, record, settings, MagicMock(), full=True)
        assert _category(outcome.score, "Market").manual_override == 10
        assert _category(services.load_score(record), "Market").manual_override == 10

    @pytest.mark.asyncio
    async def test_skipped_rescore_keeps_override(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))):
            await services.run_scoring(session, record, settings, MagicMock())
            services.apply_score_override(session, record, OverrideRequest(category_name="Team", override_score=0))
            outcome = await services.run_scoring(session, record, settings, MagicMock())
        assert outcome.skipped
        assert _category(outcome.score, "Team").manual_override == 0


class TestCategoryRescore:
    @pytest.mark.asyncio
    async def test_only_named_category_changes(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))):
            await services.run_scoring(session, record, settings, MagicMock())

        mock = AsyncMock(return_value=_fresh({"Team": 20}))
        with patch("diligence.services.score_diligence", new=mock):
            outcome = await services.run_scoring(session, record, settings, MagicMock(), category_name="Team")

        assert [c.name for c in mock.call_args.args[1].categories] == ["Team"]
        assert outcome.message == "Successfully re-scored Team category"
        assert _category(outcome.score, "Team").score == 20
        assert _category(outcome.score, "Market").score == 70
        assert outcome.score.overall == 55  # (20*30 + 70*70) / 100
        assert outcome.score.data_quality == 50

    @pytest.mark.asyncio
    async def test_category_rescore_ignores_fingerprint(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))):
            await services.run_scoring(session, record, settings, MagicMock())
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh({"Team": 20}))) as mock:
            outcome = await services.run_scoring(session, record, settings, MagicMock(), category_name="Team")
        mock.assert_awaited_once()
        assert not outcome.skipped

    @pytest.mark.asyncio
    async def test_unknown_category_raises(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock()) as mock:
            with pytest.raises(services.UnknownCategoryError):
                await services.run_scoring(session, record, settings, MagicMock(), category_name="Nope")
        mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ai_only_score_ignores_kept_overrides(self, session, record, settings):
        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh(ALL_70))):
            await services.run_scoring(session, record, settings, MagicMock())
        services.apply_score_override(session, record, OverrideRequest(category_name="Market", override_score=10))

        with patch("diligence.services.score_diligence", new=AsyncMock(return_value=_fresh({"Team": 20}))):
            outcome = await services.run_scoring(session, record, settings, MagicMock(), category_name="Team")

        text = outcome.score.rescore_explanation
        # AI scores only: (20*30 + 70*70) / 100
        assert "New AI-only score: 55/100" in text
        # Market override kept: (20*30 + 10*25 + 70*45) / 100
        assert "Final score (after preserved overrides): 40/100" in text
        assert outcome.score.overall == 40


# =========================================================================
# apply_score_override
# =========================================================================


class TestApplyScoreOverride:
    def test_no_score(self, session, record):
        with pytest.raises(services.NoScoreError):
            services.apply_score_override(session, record, OverrideRequest(category_name="Team", override_score=50))

    def test_unknown_category(self, session, record):
        services.store_score(record, _fresh(ALL_70))
        session.commit()
        with pytest.raises(services.UnknownCategoryError):
            services.apply_score_override(session, record, OverrideRequest(category_name="Nope", override_score=50))

    def test_apply_then_remove_persists(self, session, record):
        services.store_score(record, _fresh(ALL_70))
        session.commit()
        applied = services.apply_score_override(
            session, record, OverrideRequest(category_name="Team", override_score=100),
        )
        assert applied.overall == 79  # 100*30 + 70*70 over 100
        assert services.load_score(record).overall == 79

        removed = services.apply_score_override(
            session, record, OverrideRequest(category_name="Team", action="remove"),
        )
        assert removed.overall == 70
        assert _category(services.load_score(record), "Team").manual_override is None


class TestOverrideRequest:
    def test_apply_requires_score(self):
        with pytest.raises(ValueError):
            OverrideRequest(category_name="Team")

    @pytest.mark.parametrize("value", [-1, 100.5])
    def test_apply_score_range(self, value):
        with pytest.raises(ValueError):
            OverrideRequest(category_name="Team", override_score=value)

    def test_remove_needs_no_score(self):
        assert OverrideRequest(category_name="Team", action="remove").override_score is None

    def test_blank_category(self):
        with pytest.raises(ValueError):
            OverrideRequest(category_name="  ", override_score=10)

    def test_topics_filtered(self):
        req = OverrideRequest(category_name="Team", override_score=10, suppress_risk_topics=["a", "", 3, "  ", "b"])
        assert req.suppress_risk_topics == ["a", "b"]


class TestRescoreRequest:
    def test_category_trimmed(self):
        assert RescoreRequest(category_name="  Team ").category_name == "Team"

    def test_blank_category_means_whole_record(self):
        assert RescoreRequest(category_name="   ").category_name is None
        assert RescoreRequest().category_name is None


# =========================================================================
# Concurrency control
# =========================================================================


class TestRecordLock:
    def test_entry_dropped_after_release(self):
        with services.record_lock(4242):
            assert services._record_locks[4242].lock.locked()
        assert 4242 not in services._record_locks

    def test_entry_dropped_after_error(self):
        with pytest.raises(RuntimeError):
            with services.record_lock(4243):
                raise RuntimeError("boom")
        assert 4243 not in services._record_locks

    def test_waiting_caller_keeps_entry(self):
        waiter_done = threading.Event()
        with services.record_lock(4244):
            entry = services._record_locks[4244]

            def wait_for_lock():
                with services.record_lock(4244):
                    waiter_done.set()

            waiter = threading.Thread(target=wait_for_lock)
            waiter.start()
            while entry.users < 2:
                time.sleep(0.01)
            assert not waiter_done.is_set()
        waiter.join(timeout=5)
        assert waiter_done.is_set()
        assert 4244 not in services._record_locks


class TestOptimisticLocking:
    def test_stale_write_rejected(self, tmp_path):
        eng = create_engine(f"sqlite:///{tmp_path / 'locking.db'}")
        Base.metadata.create_all(eng)
        Factory = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
        with Factory() as setup:
            rec = DiligenceRecord(company_name="Acme")
            setup.add(rec)
            setup.commit()
            record_id = rec.id

        first, second = Factory(), Factory()
        try:
            a = services.get_entity(first, DiligenceRecord, record_id)
            b = services.get_entity(second, DiligenceRecord, record_id)
            b.status = "completed"
            second.commit()
            a.status = "passed"
            with pytest.raises(StaleDataError):
                first.commit()
        finally:
            first.close()
            second.close()


# =========================================================================
# Scoring inputs
# =========================================================================


class TestScoringInputs:
    def test_combine_notes(self, record):
        assert services.combine_notes(record) == "Met at demo day\n\n(Team) Founders: Ex-Kiva engineers"

    def test_combine_notes_skips_blank(self, session):
        rec = DiligenceRecord(company_name="Blank", notes="  ")
        rec.categorized_notes.append(DiligenceNote(category="", title="", content="Call recap"))
        rec.categorized_notes.append(DiligenceNote(category="Team", title="Empty", content="   "))
        session.add(rec)
        session.flush()
        assert services.combine_notes(rec) == "(Overall) Note: Call recap"

    def test_usable_documents(self, session, record):
        record.documents.extend([
            DiligenceDocument(name="deck.pdf", doc_type="deck", file_type="pdf", extracted_text="Slides"),
            DiligenceDocument(name="empty.pdf", file_type="pdf", extracted_text=""),
            DiligenceDocument(name="gated", file_type="link", link_ingest_status="email_required",
                              extracted_text="teaser"),
            DiligenceDocument(name="site", file_type="url", link_ingest_status="ingested", extracted_text="Site"),
        ])
        session.flush()
        assert [d.name for d in services.usable_documents(record)] == ["deck.pdf", "site"]

    def test_resolve_criteria(self):
        criteria = Criteria(categories=[CriteriaCategory(name="Team", weight=30),
                                        CriteriaCategory(name="Market", weight=25)])
        resolved = services.resolve_criteria(criteria, {"Market": 60, "Ghost": 10})
        assert [(c.name, c.weight) for c in resolved.categories] == [("Team", 30), ("Market", 60)]
        assert services.resolve_criteria(criteria, {}) is criteria

    def test_load_criteria_in_sort_order(self, session):
        assert [c.name for c in services.load_criteria(session).categories] == list(WEIGHTS)

    def test_update_criteria_category(self, session):
        updated = services.update_criteria_category(session, "Team", weight=40)
        assert updated["weight"] == 40
        assert services.update_criteria_category(session, "Nope", weight=1) is None


# =========================================================================
# Rescore narrative
# =========================================================================


def _with_criteria(topics=None) -> DiligenceScore:
    team = CategoryScore(
        category="Team", score=50, weight=30, override_suppress_topics=topics,
        criteria=[
            CriterionScore(name="Hiring velocity", score=10, confidence=80, evidence_status="supported",
                           evidence=["Two hires in 2025"]),
            CriterionScore(name="Founder-market fit", score=40, missing_data=["Reference calls"]),
        ],
    )
    return DiligenceScore(overall=50, categories=recalculate_weighted_scores([team]), data_quality=40)


class TestRescoreNarrative:
    def test_materiality_ranking(self):
        risks = services.material_risks(_with_criteria())
        # Hiring: 90*30/100 = 27; Founder fit: 18 + 12 (unknown) + 3 (confidence 55) = 33
        assert [r["name"] for r in risks] == ["Founder-market fit", "Hiring velocity"]
        assert risks[0]["materiality"] == pytest.approx(33)
        assert risks[1]["materiality"] == pytest.approx(27)

    def test_suppressed_topics_hidden(self):
        risks = services.material_risks(_with_criteria(topics=["HIRING"]))
        assert [r["name"] for r in risks] == ["Founder-market fit"]

    def test_narrative_sections(self):
        text = services.build_rescore_narrative(None, _with_criteria(), ai_only_overall=50)
        assert "- Previous overall: 0/100" in text
        assert "## Biggest Category Changes" in text
        assert "- Team / Founder-market fit: 40/100" in text
        assert "  Missing evidence: Reference calls" in text
        assert "  Evidence: Two hires in 2025" in text

    def test_narrative_deltas(self):
        previous = _fresh(ALL_70)
        current = _fresh({**ALL_70, "Team": 50})
        text = services.build_rescore_narrative(previous, current, ai_only_overall=current.overall)
        assert "- Team: 70 -> 50 (-20)" in text
        assert "No material risk criteria identified." in text


# =========================================================================
# Listing and stats
# =========================================================================


class TestQueryAndStats:
    @pytest.fixture()
    def records(self, session):
        scored = DiligenceRecord(company_name="Beta Bank", industry="Fintech", status="completed")
        services.store_score(scored, services.apply_override(_fresh(ALL_70), "Team", 90))
        session.add_all([
            scored,
            DiligenceRecord(company_name="alpha health", company_description="Clinic software"),
            DiligenceRecord(company_name="Gamma", status="passed"),
        ])
        session.commit()

    def test_filter_by_status(self, session, records):
        items, total = services.query_records(session, status="completed,passed")
        assert total == 2
        assert {i["company_name"] for i in items} == {"Beta Bank", "Gamma"}

    def test_search(self, session, records):
        items, _ = services.query_records(session, search="clinic")
        assert [i["company_name"] for i in items] == ["alpha health"]

    def test_sort_by_name(self, session, records):
        items, _ = services.query_records(session, sort_by="company_name", sort_dir="asc")
        assert [i["company_name"] for i in items] == ["alpha health", "Beta Bank", "Gamma"]

    def test_sort_by_overall_puts_unscored_last(self, session, records):
        items, _ = services.query_records(session, sort_by="overall", sort_dir="desc")
        assert items[0]["company_name"] == "Beta Bank"
        assert items[0]["override_count"] == 1

    def test_pagination(self, session, records):
        items, total = services.query_records(session, page=2, per_page=2)
        assert total == 3
        assert len(items) == 1

    def test_stats(self, session, records):
        assert services.compute_stats(session) == {
            "total": 3, "scored": 1, "with_overrides": 1,
            "by_status": {"completed": 1, "in_progress": 1, "passed": 1},
        }


# =========================================================================
# Settings
# =========================================================================


class TestSettings:
    def test_defaults(self):
        settings = load_settings({})
        assert settings.db_path is None
        assert settings.summarize_transcript_notes is False
        assert settings.scoring_weights == {}

    def test_from_environment(self, tmp_path):
        settings = load_settings({
            "DILIGENCE_DB_PATH": str(tmp_path / "d.db"),
            "DILIGENCE_SUMMARIZE_TRANSCRIPT_NOTES": "Yes",
            "DILIGENCE_SCORING_WEIGHTS": '{"Team": 40}',
        })
        assert settings.db_path == tmp_path / "d.db"
        assert settings.summarize_transcript_notes is True
        assert settings.scoring_weights == {"Team": 40.0}

    def test_invalid_weights_dropped(self, caplog):
        with caplog.at_level(logging.WARNING, logger="diligence.config"):
            weights = _parse_weights('{"Team": 50, "Market": "lots", "Product": 150}')
        assert weights == {"Team": 50.0}
        assert "Market" in caplog.text

    @pytest.mark.parametrize("raw", [None, "", "not json", "[1, 2]"])
    def test_unusable_weights(self, raw):
        assert _parse_weights(raw) == {}
