import asyncio

import pytest

from funding_discovery.config import DiscoveryConfig
from funding_discovery.core.domain_models import SearchIntent, SearchResult
from funding_discovery.core.errors import ProviderError
from funding_discovery.enhance.content_extractor import ContentExtractor
from funding_discovery.enhance.eligibility_extractor import extract_eligibility
from funding_discovery.enhance.relevance_scorer import RelevanceFilter
from funding_discovery.ingest.resource_fetcher import FALLBACK_HEADERS, PRIMARY_HEADERS, ResourceFetcher
from funding_discovery.storage.fetch_cache import FetchCache

from conftest import FakeClock, FakeFetcher


FUNDING_PAGE = """
<html>
<head><title>Clean Energy Community Grants</title><script>var x = 1;</script></head>
<body>
<nav>Home | About | Contact</nav>
<main>
  <h1>Clean Energy Community Grants</h1>
  <p>The Green Future Fund awards grants of $50,000 to $200,000 to community organizations that install
     solar panels, heat pumps and battery storage in public buildings.</p>
  <h2>Eligibility</h2>
  <p>Eligibility: registered 501(c)(3) nonprofit organizations based in the United States with at least
     two years of renewable energy programming.</p>
  <h2>Deadline</h2>
  <p>Applications are due by the deadline of August 1, 2025 and every proposal is reviewed by an
     independent panel of energy experts.</p>
  <p>Our staff enjoy hiking and kayaking on weekends.</p>
</main>
<footer>Copyright Green Future Fund</footer>
</body>
</html>
"""

PLAIN_PAGE = "<html><body><main>" + "<p>Community gardens bring neighbors together every season.</p>" * 10 + "</main></body></html>"

SHORT_PAGE = "<html><body><p>Grants available.</p></body></html>"


class TestRelevanceFilter:

    GOOD = SearchResult(
        title="Clean Energy Community Grants",
        url="https://greenfund.example.org/grants",
        snippet="Apply by the deadline: grants up to $200,000 for nonprofit clean energy projects. Check eligibility.",
    )
    NEWS = SearchResult(
        title="Solar grants news roundup",
        url="https://news.example.com/solar",
        snippet="Latest news about grant programs and jobs.",
    )
    DIRECTORY = SearchResult(
        title="Top 10 Grant Databases for Nonprofits",
        url="https://lists.example.com/top-10",
        snippet="Find grants and funding in these databases.",
    )
    OFF_TOPIC = SearchResult(
        title="Weather forecast for Ohio",
        url="https://weather.example.com/ohio",
        snippet="Sunny with a chance of rain.",
    )

    def test_weighted_score(self):
        scored = RelevanceFilter().score(self.GOOD, SearchIntent(keywords=frozenset({"clean energy"})))

        assert scored.keyword_matches == ["clean energy"]
        assert scored.funding_matches == ["grant"]
        assert scored.indicator_matches == ["apply", "deadline", "eligibility"]
        assert scored.score == pytest.approx(0.65)

    def test_plural_counts_once(self):
        scored = RelevanceFilter().score(SearchResult(title="Community grants", url="https://a.example.org"))

        assert scored.funding_matches == ["grant"]
        assert scored.score == pytest.approx(0.15)

    def test_terms_match_whole_words(self):
        newsletter = SearchResult(
            title="Community grants newsletter",
            url="https://a.example.org/letter",
            snippet="Funding roundup for applicants.",
        )
        scored = RelevanceFilter().score(newsletter)

        assert scored.negative_matches == []
        assert scored.funding_matches == ["grant", "funding"]
        assert scored.indicator_matches == []

    def test_negative_terms_clamp_to_zero(self):
        assert RelevanceFilter().score(self.NEWS).score == 0.0

    def test_score_is_bounded(self):
        for result in (self.GOOD, self.NEWS, self.DIRECTORY, self.OFF_TOPIC):
            assert 0.0 <= RelevanceFilter().score(result, SearchIntent(keywords=frozenset({"grants", "clean"}))).score <= 1.0

    def test_prefilter(self):
        f = RelevanceFilter()
        assert f.passes_prefilter(self.GOOD)
        assert not f.passes_prefilter(self.DIRECTORY)
        assert not f.passes_prefilter(self.OFF_TOPIC)

    def test_filter_sorts_and_caps(self):
        other = SearchResult(
            title="Community fund",
            url="https://community.example.org/fund",
            snippet="Grants for local groups.",
        )
        kept = RelevanceFilter(threshold=0.1, max_results=1).filter(
            [other, self.GOOD, self.NEWS, self.DIRECTORY]
        )

        assert [s.url for s in kept] == [self.GOOD.url]

    def test_filter_respects_exclusions(self):
        kept = RelevanceFilter(threshold=0.1).filter([self.GOOD], exclusion_domains=["example.org"])
        assert kept == []

    def test_resource_mode(self):
        credits = SearchResult(
            title="Free AWS credits for nonprofits",
            url="https://cloud.example.com/credits",
            snippet="Get $5,000 in cloud credits and apply online.",
        )
        f = RelevanceFilter(threshold=0.1)

        assert f.passes_resource_mode(credits)
        assert not f.passes_resource_mode(self.GOOD)
        assert [s.url for s in f.filter([self.GOOD, credits], resource_only=True)] == [credits.url]


class TestEligibility:

    def test_statements_are_deduplicated(self):
        text = (
            "Eligibility: registered 501(c)(3) organizations in Ohio. "
            "Applicants must be based in Ohio with fewer than 50 employees."
        )
        assert extract_eligibility(text) == [
            "Registered 501(c)(3) organizations in Ohio",
            "Based in Ohio with fewer than 50 employees",
        ]

    def test_cap_and_empty(self):
        text = ". ".join(f"Open to residents of county number {i} in the state" for i in range(20))
        assert len(extract_eligibility(text, max_criteria=3)) == 3
        assert extract_eligibility("") == []


class TestContentExtractor:

    def extractor(self, pages=None):
        return ContentExtractor(FakeFetcher(pages or {}), DiscoveryConfig().without_delays())

    def test_funding_sections_preferred(self):
        text = self.extractor().extract_text(FUNDING_PAGE)

        assert "$50,000 to $200,000" in text
        assert "Eligibility" in text
        assert "hiking" not in text
        assert "Home | About" not in text
        assert "var x" not in text

    def test_main_content_fallback(self):
        text = self.extractor().extract_text(PLAIN_PAGE)
        assert text.startswith("Community gardens")
        assert len(text) >= 300

    def test_text_is_capped(self):
        page = "<html><body>" + "<p>Grants of $10,000 are available to every applicant this year.</p>" * 100 + "</body></html>"
        assert len(self.extractor().extract_text(page)) <= 2000

    def test_extract_short_page_is_dropped(self):
        result = SearchResult(title="Short", url="https://short.example.org")
        extractor = self.extractor({result.url: SHORT_PAGE})
        assert asyncio.run(extractor.extract(result)) is None

    def test_extract_collects_eligibility(self):
        result = SearchResult(title="Green", url="https://greenfund.example.org/grants")
        content = asyncio.run(self.extractor({result.url: FUNDING_PAGE}).extract(result))

        assert content.url == result.url
        assert any("501(c)(3)" in c for c in content.eligibility_criteria)

    def test_extract_many_skips_failures(self):
        good = SearchResult(title="Green", url="https://greenfund.example.org/grants")
        missing = SearchResult(title="Gone", url="https://gone.example.org/404")
        short = SearchResult(title="Short", url="https://short.example.org")
        extractor = self.extractor({good.url: FUNDING_PAGE, short.url: SHORT_PAGE})

        contents = asyncio.run(extractor.extract_many([missing, good, short]))

        assert [c.url for c in contents] == [good.url]


class FakeResponse:
    def __init__(self, status_code=200, text="<html><body>ok</body></html>",
                 content_type="text/html; charset=utf-8"):
        self.status_code = status_code
        self.text = text
        self.headers = {"content-type": content_type}


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.headers_sent = []

    def get(self, url, headers=None, timeout=None):
        self.headers_sent.append(headers)
        return self.responses.pop(0)


class FrozenTime:
    """Stands in for the time module: a fixed clock that records sleeps."""

    def __init__(self, now):
        self.now = now
        self.sleeps = []

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)


class TestResourceFetcher:

    def test_retries_with_fallback_headers(self):
        session = FakeSession([FakeResponse(403), FakeResponse(200, "<html>page</html>")])
        fetcher = ResourceFetcher(session=session, min_interval=0)

        assert fetcher.fetch_html("https://fund.example.org/a") == "<html>page</html>"
        assert session.headers_sent == [PRIMARY_HEADERS, FALLBACK_HEADERS]

    def test_http_error_raises(self):
        fetcher = ResourceFetcher(session=FakeSession([FakeResponse(404)]), min_interval=0)
        with pytest.raises(ProviderError):
            fetcher.fetch_html("https://fund.example.org/missing")

    def test_non_html_raises(self):
        session = FakeSession([FakeResponse(200, "%PDF", "application/pdf")])
        fetcher = ResourceFetcher(session=session, min_interval=0)
        with pytest.raises(ProviderError):
            fetcher.fetch_html("https://fund.example.org/guide.pdf")

    def test_cache_hit_skips_network(self, tmp_path):
        cache = FetchCache(str(tmp_path / "fetch.db"))
        session = FakeSession([FakeResponse(200, "<html>cached</html>")])
        fetcher = ResourceFetcher(cache=cache, session=session, min_interval=0)

        fetcher.fetch_html("https://fund.example.org/a")
        assert fetcher.fetch_html("https://fund.example.org/a") == "<html>cached</html>"
        assert len(session.headers_sent) == 1

    def test_concurrent_requests_to_one_host_are_spaced(self, monkeypatch):
        clock = FrozenTime(100.0)
        monkeypatch.setattr("funding_discovery.ingest.resource_fetcher.time", clock)
        session = FakeSession([FakeResponse() for _ in range(4)])
        fetcher = ResourceFetcher(session=session, min_interval=1.0)

        async def fetch_all():
            return await asyncio.gather(
                *(fetcher.afetch_html(f"https://fund.example.org/{i}") for i in range(3)),
                fetcher.afetch_html("https://other.example.org/a"),
            )

        asyncio.run(fetch_all())

        assert sorted(clock.sleeps) == [1.0, 2.0]
        assert fetcher.last_request_time["fund.example.org"] == 102.0
        assert fetcher.last_request_time["other.example.org"] == 100.0


def test_fetch_cache_expiry(tmp_path):
    clock = FakeClock()
    cache = FetchCache(str(tmp_path / "fetch.db"), ttl_days=7, clock=clock)
    cache.set("https://fund.example.org/a", "<html></html>", metadata={"status": 200})

    assert cache.get("https://fund.example.org/a")["metadata"] == {"status": 200}

    clock.advance(days=8)
    assert cache.get("https://fund.example.org/a") is None
    assert cache.cleanup_expired() == 1
