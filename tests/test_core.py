import ast
import asyncio
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

import funding_discovery
from funding_discovery.config import DiscoveryConfig, Settings
from funding_discovery.core.batching import run_in_batches
from funding_discovery.core.domain_models import ProjectSummary, SearchDepth, TimelineUrgency
from funding_discovery.core.errors import ConfigurationError
from funding_discovery.core.money import coerce_amount, format_usd_amount, parse_usd_range
from funding_discovery.core.parsing import ParseFailure, ParseSuccess, parse_llm_json, require_fields
from funding_discovery.core.resources import Monetary, NonMonetaryResource, classify_resource
from funding_discovery.core.time_utils import age_description, days_until, timeline_urgency
from funding_discovery.core.utils import (
    host_matches,
    normalize_url,
    parse_date_maybe,
    stable_id_from_url,
    truncate,
)

from conftest import NOW


class TestUrls:

    def test_normalize_strips_tracking_and_www(self):
        assert normalize_url("HTTPS://www.Example.org/Grants/?utm_source=x#top") == "https://example.org/Grants"

    def test_normalize_sorts_query(self):
        assert normalize_url("https://a.org/p?b=2&a=1") == normalize_url("https://a.org/p?a=1&b=2")

    def test_stable_id_same_for_equivalent_urls(self):
        a = stable_id_from_url("https://www.example.org/grant/")
        b = stable_id_from_url("https://example.org/grant?utm_campaign=spring")
        assert a == b
        assert a.startswith("ai-web-")

    def test_host_matches_subdomains_only(self):
        assert host_matches("https://apply.grants.gov/x", {"grants.gov"})
        assert not host_matches("https://notgrants.gov/x", {"grants.gov"})
        assert not host_matches("not a url", {"grants.gov"})


class TestMoney:

    def test_range(self):
        assert parse_usd_range("Awards from $50,000 - $200,000") == (50_000, 200_000)

    def test_up_to_is_max_only(self):
        assert parse_usd_range("up to $75K per project") == (None, 75_000)

    def test_magnitudes(self):
        assert parse_usd_range("a $1.5 million award") == (1_500_000, 1_500_000)

    def test_coerce_amount(self):
        assert coerce_amount(5000) == 5000.0
        assert coerce_amount("25,000") == 25000.0
        assert coerce_amount("$2M") == 2_000_000.0
        assert coerce_amount(0) is None
        assert coerce_amount(True) is None
        assert coerce_amount("n/a") is None

    def test_format(self):
        assert format_usd_amount(4_000_000) == "$4.0M"
        assert format_usd_amount(750_000) == "$750K"
        assert format_usd_amount(None) == "Not specified"


class TestProjectSummary:

    def test_formatted_funding_amounts(self):
        assert ProjectSummary.from_row({"funding_request_amount": "75,000"}).funding_needed == 75_000.0
        assert ProjectSummary.from_row({"funding_needed": "$75,000"}).funding_needed == 75_000.0
        assert ProjectSummary.from_row({"total_project_budget": 120000}).funding_needed == 120_000.0

    def test_unparseable_amount_is_unknown(self):
        assert ProjectSummary.from_row({"funding_request_amount": "tbd"}).funding_needed is None

    def test_string_term_lists_are_split(self):
        project = ProjectSummary.from_row({
            "preferred_funding_types": "grants, in-kind",
            "keywords": "solar,schools",
        })
        assert project.preferred_funding_types == ["grants", "in-kind"]
        assert project.keywords == ["solar", "schools"]

    def test_single_funding_type_string(self):
        assert ProjectSummary.from_row({"preferred_funding_types": "grants"}).preferred_funding_types == ["grants"]


class TestParsing:

    def test_fenced_json(self):
        result = parse_llm_json('Here you go:\n```json\n{"a": 1}\n```')
        assert result == ParseSuccess({"a": 1})

    def test_prose_is_failure(self):
        result = parse_llm_json("Sorry, I cannot analyze this page.")
        assert isinstance(result, ParseFailure)
        assert not result.ok

    def test_empty_is_failure(self):
        assert not parse_llm_json("   ").ok

    def test_array_is_failure(self):
        assert not parse_llm_json("[1, 2]").ok

    def test_require_fields(self):
        result = require_fields(parse_llm_json('{"a": 1}'), ["a", "b"])
        assert isinstance(result, ParseFailure)
        assert "b" in result.reason


class TestResources:

    def test_credits_are_resources(self):
        result = classify_resource("Get $5,000 in AWS credits for nonprofits")
        assert isinstance(result, NonMonetaryResource)
        assert "cloud_credits" in result.types

    def test_cash_grants_are_monetary(self):
        assert classify_resource("Grants of up to $50,000 for community projects") == Monetary()

    def test_llm_flag_wins(self):
        assert not classify_resource("Free mentorship program", llm_flag=False).is_resource
        result = classify_resource("Program page", llm_flag=True, llm_types=["software_grant"])
        assert result.types == ("software_grant",)


class TestTime:

    def test_days_until(self):
        assert days_until(date(2025, 6, 11), NOW) == 10
        assert days_until(date(2025, 5, 31), NOW) == -1
        assert days_until(None, NOW) is None

    @pytest.mark.parametrize("days,expected", [
        (-1, TimelineUrgency.EXPIRED),
        (0, TimelineUrgency.CRITICAL),
        (7, TimelineUrgency.CRITICAL),
        (30, TimelineUrgency.URGENT),
        (90, TimelineUrgency.MODERATE),
        (91, TimelineUrgency.COMFORTABLE),
        (None, TimelineUrgency.COMFORTABLE),
    ])
    def test_urgency_buckets(self, days, expected):
        assert timeline_urgency(days) == expected

    def test_age_description(self):
        assert age_description(NOW - timedelta(days=3), NOW) == "3 days ago"
        assert age_description(NOW - timedelta(hours=1), NOW) == "1 hour ago"
        assert age_description(None, NOW) == "Unknown"

    def test_parse_date_maybe(self):
        assert parse_date_maybe("March 15, 2026") == date(2026, 3, 15)
        assert parse_date_maybe("Rolling") is None
        assert parse_date_maybe(datetime(2025, 1, 2, tzinfo=timezone.utc)) == date(2025, 1, 2)


def test_truncate_prefers_word_boundary():
    text = "alpha beta gamma delta"
    assert truncate(text, 100) == text
    assert truncate(text, 18) == "alpha beta gamma"


class TestBatching:

    def test_failures_are_isolated(self):
        async def worker(n):
            if n == 2:
                raise ValueError("bad item")
            return n * 10

        outcomes = asyncio.run(run_in_batches([1, 2, 3, 4], worker, batch_size=2))

        assert [o.item for o in outcomes] == [1, 2, 3, 4]
        assert [o.value for o in outcomes if o.ok] == [10, 30, 40]
        assert isinstance(outcomes[1].error, ValueError)

    def test_batches_bound_concurrency(self):
        running = 0
        peak = 0

        async def worker(n):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0)
            running -= 1
            return n

        asyncio.run(run_in_batches(list(range(7)), worker, batch_size=3))
        assert peak <= 3

    def test_timeout_becomes_error(self):
        async def worker(n):
            await asyncio.sleep(1)
            return n

        outcomes = asyncio.run(run_in_batches([1], worker, batch_size=1, item_timeout=0.01))
        assert not outcomes[0].ok
        assert isinstance(outcomes[0].error, asyncio.TimeoutError)

    def test_invalid_batch_size(self):
        async def worker(n):
            return n

        with pytest.raises(ValueError):
            asyncio.run(run_in_batches([1], worker, batch_size=0))


class TestConfig:

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("FUNDING_DB_PATH", "/tmp/f.db")
        monkeypatch.setenv("FETCH_CACHE_PATH", "")
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

        settings = Settings.from_env()

        assert settings.openai_api_key == "sk-test"
        assert settings.openai_model == "gpt-4o-mini"
        assert settings.db_path == "/tmp/f.db"
        assert settings.fetch_cache_path is None
        settings.require_llm()

    def test_require_llm(self):
        with pytest.raises(ConfigurationError):
            Settings(openai_api_key="sk-placeholder").require_llm()
        Settings(anthropic_api_key="sk-ant").require_llm()

    def test_exclusion_overrides_are_copies(self):
        config = DiscoveryConfig()
        extended = config.with_exclusions([" Example.ORG ", ""])

        assert "example.org" in extended.exclusion_domains
        assert "example.org" not in config.exclusion_domains
        assert config.replace_exclusions(["a.org"]).exclusion_domains == frozenset({"a.org"})

    def test_query_cap(self):
        config = DiscoveryConfig()
        assert [config.query_cap(d) for d in SearchDepth] == [5, 10, 15]


def test_package_uses_absolute_imports():
    package_dir = Path(funding_discovery.__file__).parent
    relative = [
        f"{path.relative_to(package_dir)}:{node.lineno}"
        for path in sorted(package_dir.rglob("*.py"))
        for node in ast.walk(ast.parse(path.read_text()))
        if isinstance(node, ast.ImportFrom) and node.level
    ]
    assert relative == []
