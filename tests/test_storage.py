import asyncio
from datetime import datetime

import pytest

from funding_discovery.core.domain_models import CacheRecord, CacheStatus
from funding_discovery.core.errors import MissingDataError, PersistenceError
from funding_discovery.core.utils import stable_id_from_url
from funding_discovery.scoring.fit_scorer import FitScorer
from funding_discovery.storage.opportunity_store import AI_DISCOVERY_SOURCE, OpportunityStore
from funding_discovery.storage.profile_repository import ProfileRepository
from funding_discovery.storage.scoring_cache import (
    ProfileInvalidationPolicy,
    ScoringCache,
    has_significant_profile_change,
    has_significant_project_change,
)

from conftest import NOW, FlakyDatabase, make_candidate, make_scored


PROJECT = {"id": "p1", "name": "Solar schools", "funding_request_amount": 75_000, "internal_notes": "draft"}
PROFILE = {"organization_type": "nonprofit", "ein": "12-3456789", "sam_registration": "active"}


@pytest.fixture
def store(db, clock):
    return OpportunityStore(db, clock=clock)


@pytest.fixture
def repository(db):
    repo = ProfileRepository(db)
    repo.save_project("u1", PROJECT)
    repo.save_profile("u1", PROFILE)
    return repo


@pytest.fixture
def opportunity_id(store):
    return store.upsert(make_scored())


def make_cache(db, clock, repository, store, **kwargs):
    scorer = FitScorer(llm=None, clock=clock)
    return ScoringCache(db, scorer, repository, store, batch_delay=0, clock=clock, **kwargs)


@pytest.fixture
def cache(db, clock, repository, store):
    return make_cache(db, clock, repository, store)


class TestOpportunityStore:

    def test_round_trip(self, store):
        scored = make_scored(fit_score=62.0)
        opportunity_id = store.upsert(scored, organization_type="nonprofit", project_type="clean energy")

        row = store.get(opportunity_id)

        assert opportunity_id == stable_id_from_url(scored.url)
        assert row["title"] == "Clean Energy Community Grants"
        assert (row["amount_min"], row["amount_max"]) == (50_000.0, 200_000.0)
        assert row["deadline_date"] == "2025-07-31"
        assert row["organization_types"] == ["nonprofit"]
        assert row["type"] == "grant"
        assert row["fit_score"] == 62.0
        assert row["needs_review"] is True
        assert row["organization_type"] == "nonprofit"
        assert isinstance(row["created_at"], datetime)

    def test_upsert_is_idempotent_on_url(self, store):
        first = store.upsert(make_scored(fit_score=50.0))
        second = store.upsert(make_scored(
            make_candidate(url="https://www.greenfund.example.org/grants/clean-energy/?utm_source=mail"),
            fit_score=75.0,
        ))

        rows = store.list_opportunities()
        assert first == second
        assert len(rows) == 1
        assert rows[0]["fit_score"] == 75.0
        assert rows[0]["needs_review"] is False

    def test_failed_upsert_retries_as_insert(self, tmp_path, clock):
        store = OpportunityStore(FlakyDatabase(str(tmp_path / "flaky.db"), failing=("ON CONFLICT",)), clock=clock)

        opportunity_id = store.upsert(make_scored())

        assert store.get(opportunity_id)["title"] == "Clean Energy Community Grants"

    def test_failed_insert_raises(self, tmp_path, clock):
        flaky = FlakyDatabase(str(tmp_path / "flaky.db"), failing=("INSERT INTO opportunities",))
        store = OpportunityStore(flaky, clock=clock)

        with pytest.raises(PersistenceError):
            store.upsert(make_scored())
        assert store.list_opportunities() == []

    def test_other_sources_get_prefixed_ids(self, store):
        scored = make_scored()
        assert store.upsert(scored, source="manual") == f"manual-{stable_id_from_url(scored.url)}"
        assert store.exists(f"manual-{stable_id_from_url(scored.url)}")
        assert not store.exists(stable_id_from_url(scored.url))

    def test_reclassify(self, store, opportunity_id):
        assert store.reclassify(opportunity_id, True, ["cloud_credits"])

        row = store.get(opportunity_id)
        assert row["is_non_monetary_resource"] is True
        assert row["type"] == "resource"
        assert row["resource_types"] == ["cloud_credits"]

        assert store.reclassify(opportunity_id, False, ["cloud_credits"])
        assert store.get(opportunity_id)["resource_types"] == []

    def test_reclassify_unknown(self, store):
        assert not store.reclassify("ai-web-missing", True)

    def test_list_recent_respects_freshness(self, store, clock, opportunity_id):
        assert [r["id"] for r in store.list_recent(30)] == [opportunity_id]

        clock.advance(days=40)
        assert store.list_recent(30) == []

    def test_list_recent_filters(self, store):
        store.upsert(make_scored(), organization_type="nonprofit")

        assert store.list_recent(30, organization_type="nonprofit")
        assert store.list_recent(30, organization_type="for_profit") == []
        assert store.list_recent(30, source="manual") == []


class TestProfileRepository:

    def test_projects(self, repository):
        repository.save_project("u1", {"id": "p2", "name": "Heat pumps"})

        project = repository.get_project("p1")
        assert project["name"] == "Solar schools"
        assert project["user_id"] == "u1"
        assert {p["id"] for p in repository.list_projects("u1")} == {"p1", "p2"}
        assert repository.list_projects("someone-else") == []
        assert repository.get_project("nope") is None

    def test_project_requires_id(self, repository):
        with pytest.raises(ValueError):
            repository.save_project("u1", {"name": "No id"})

    def test_profiles(self, repository):
        assert repository.get_profile("u1")["organization_type"] == "nonprofit"
        assert repository.get_profile("u1")["user_id"] == "u1"
        assert repository.get_profile("u2") is None


class TestScoringCache:

    def test_get_or_calculate_then_hit(self, cache, opportunity_id):
        first = cache.get_or_calculate("u1", "p1", opportunity_id)
        second = cache.get_or_calculate("u1", "p1", opportunity_id)

        assert first["cached"] is False
        assert second["cached"] is True
        assert second["score"] == first["score"]
        assert second["analysis"]["method"] == "rule_based_fallback"

    def test_expires_after_ttl(self, cache, clock, opportunity_id):
        cache.get_or_calculate("u1", "p1", opportunity_id)

        clock.advance(days=6, hours=23)
        assert cache.get_or_calculate("u1", "p1", opportunity_id)["cached"] is True

        clock.advance(hours=2)
        assert cache.get_or_calculate("u1", "p1", opportunity_id)["cached"] is False

    def test_force_recalculate(self, cache, opportunity_id):
        cache.get_or_calculate("u1", "p1", opportunity_id)
        assert cache.get_or_calculate("u1", "p1", opportunity_id, force_recalculate=True)["cached"] is False

    def test_missing_data(self, cache, opportunity_id):
        with pytest.raises(MissingDataError):
            cache.get_or_calculate("u1", "p1", "ai-web-000000000000")
        with pytest.raises(MissingDataError):
            cache.get_or_calculate("u2", "p1", opportunity_id)

    def test_insignificant_change_keeps_scores(self, cache, opportunity_id):
        cache.get_or_calculate("u1", "p1", opportunity_id)

        changed = cache.invalidate_on_project_update(
            "u1", "p1", PROJECT, dict(PROJECT, internal_notes="final")
        )

        assert changed is False
        assert cache.get_record("u1", "p1", opportunity_id).status == CacheStatus.SCORED

    def test_significant_change_invalidates(self, cache, opportunity_id):
        cache.get_or_calculate("u1", "p1", opportunity_id)

        changed = cache.invalidate_on_project_update(
            "u1", "p1", PROJECT, dict(PROJECT, funding_request_amount=300_000)
        )

        record = cache.get_record("u1", "p1", opportunity_id)
        assert changed is True
        assert record.status == CacheStatus.NEEDS_SCORING
        assert record.calculated_at is None
        assert cache.get_or_calculate("u1", "p1", opportunity_id)["cached"] is False

    def test_invalidation_is_idempotent(self, cache, opportunity_id):
        cache.get_or_calculate("u1", "p1", opportunity_id)

        assert cache.invalidate_project_scores("u1", "p1") == 1
        assert cache.invalidate_project_scores("u1", "p1") == 1
        assert cache.get_record("u1", "p1", opportunity_id).status == CacheStatus.NEEDS_SCORING

    def test_profile_change_invalidates_all_user_scores(self, cache, repository, opportunity_id):
        repository.save_project("u1", {"id": "p2", "name": "Heat pumps", "funding_request_amount": 60_000})
        cache.get_or_calculate("u1", "p1", opportunity_id)
        cache.get_or_calculate("u1", "p2", opportunity_id)

        assert cache.invalidate_on_profile_update("u1", PROFILE, dict(PROFILE, organization_type="tribal_government"))
        assert cache.get_record("u1", "p1", opportunity_id).status == CacheStatus.NEEDS_SCORING
        assert cache.get_record("u1", "p2", opportunity_id).status == CacheStatus.NEEDS_SCORING

    def test_profile_policy_none(self, db, clock, repository, store, opportunity_id):
        cache = make_cache(db, clock, repository, store, profile_policy=ProfileInvalidationPolicy.NONE)
        cache.get_or_calculate("u1", "p1", opportunity_id)

        assert cache.invalidate_on_profile_update("u1", PROFILE, dict(PROFILE, organization_type="university"))
        assert cache.get_record("u1", "p1", opportunity_id).status == CacheStatus.SCORED

    def test_batch_isolates_failures(self, cache, opportunity_id):
        ticks = []

        summary = asyncio.run(cache.batch_calculate_scores(
            "u1", "p1", [opportunity_id, "ai-web-000000000000"], progress=lambda: ticks.append(1)
        ))

        assert (summary["total"], summary["successful"], summary["failed"]) == (2, 1, 1)
        assert summary["results"][0]["success"] is True
        assert "Missing opportunity" in summary["results"][1]["error"]
        assert len(ticks) == 2

    def test_save_retries_as_insert(self, tmp_path, clock, repository, store):
        flaky = FlakyDatabase(str(tmp_path / "flaky.db"), failing=("ON CONFLICT",))
        cache = make_cache(flaky, clock, repository, store)

        cache.save(CacheRecord("u1", "p1", "ai-web-1", 70.0, {"method": "hybrid"}, NOW))

        record = cache.get_record("u1", "p1", "ai-web-1")
        assert record.fit_score == 70.0
        assert record.analysis_payload == {"method": "hybrid"}

    def test_save_raises_when_insert_fails(self, tmp_path, clock, repository, store, opportunity_id):
        flaky = FlakyDatabase(str(tmp_path / "flaky.db"), failing=("INSERT INTO scoring_cache",))
        cache = make_cache(flaky, clock, repository, store)

        with pytest.raises(PersistenceError):
            cache.save(CacheRecord("u1", "p1", opportunity_id, 70.0))
        with pytest.raises(PersistenceError):
            cache.get_or_calculate("u1", "p1", opportunity_id)

    def test_project_scores_report_staleness(self, cache, clock, opportunity_id):
        cache.get_or_calculate("u1", "p1", opportunity_id)

        fresh = cache.get_project_scores("u1", "p1")
        assert len(fresh) == 1
        assert fresh[0]["is_stale"] is False
        assert fresh[0]["score_age"] == "Just now"

        clock.advance(days=8)
        stale = cache.get_project_scores("u1", "p1")
        assert stale[0]["is_stale"] is True
        assert stale[0]["score_age"] == "8 days ago"

    def test_cleanup_old_scores(self, cache, clock, opportunity_id):
        cache.get_or_calculate("u1", "p1", opportunity_id)

        assert cache.cleanup_old_scores(30) == 0
        clock.advance(days=31)
        assert cache.cleanup_old_scores(30) == 1
        assert cache.get_record("u1", "p1", opportunity_id) is None


class TestChangeDetection:

    def test_numeric_strings_compare_as_numbers(self):
        assert not has_significant_project_change({"funding_request_amount": 75000}, {"funding_request_amount": "75000"})
        assert has_significant_project_change({"funding_request_amount": 75000}, {"funding_request_amount": 76000})

    def test_unlisted_fields_ignored(self):
        assert not has_significant_project_change({"internal_notes": "a"}, {"internal_notes": "b"})
        assert not has_significant_profile_change({"logo_url": "a"}, {"logo_url": "b"})

    def test_boolean_flags(self):
        assert not has_significant_profile_change({}, {"veteran_owned": False})
        assert has_significant_profile_change({}, {"veteran_owned": True})
