"""
Shared fixtures: a fixed clock, a temporary database, and scripted fakes for
the LLM, search and fetch layers so no test touches the network.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from funding_discovery.core.domain_models import (
    ExtractedContent,
    OpportunityCandidate,
    ScoredOpportunity,
    SearchResult,
)
from funding_discovery.core.errors import ProviderError
from funding_discovery.llm.client import LLMChain
from funding_discovery.storage.db import Database


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class ScriptedProvider:
    """LLM provider whose reply is computed from the prompt."""

    name = "scripted"
    model = "fake-1"

    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def complete(self, system, user, max_tokens=1000, temperature=0.3):
        self.calls.append((system, user))
        return self.responder(system, user)


class FailingProvider:
    name = "failing"
    model = "fake-0"

    def complete(self, system, user, max_tokens=1000, temperature=0.3):
        raise RuntimeError("service unavailable")


class FakeSearchProvider:
    """Search provider returning canned results for every query."""

    def __init__(self, results=None, by_query=None, fail_on=()):
        self.results = list(results or [])
        self.by_query = dict(by_query or {})
        self.fail_on = set(fail_on)
        self.queries = []

    name = "fake-search"

    def search(self, query, count=10):
        self.queries.append(query)
        if query in self.fail_on:
            raise ProviderError(self.name, f"boom for {query}")
        return list(self.by_query.get(query, self.results))[:count]


class FakeFetcher:
    """Stands in for ResourceFetcher; serves HTML from a dict."""

    def __init__(self, pages):
        self.pages = dict(pages)
        self.cache = None
        self.fetched = []

    async def afetch_html(self, url):
        self.fetched.append(url)
        if url not in self.pages:
            raise ProviderError("fetch", f"HTTP 404 for {url}")
        return self.pages[url]


class FlakyConnection:
    """Connection proxy whose execute fails for statements containing a marker."""

    def __init__(self, conn, failing):
        self._conn = conn
        self._failing = failing

    def execute(self, sql, *args):
        if any(marker in sql for marker in self._failing):
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


class FlakyDatabase(Database):
    """Database whose writes fail once `failing` markers are set."""

    def __init__(self, path, failing=()):
        self.failing = ()
        super().__init__(path)
        self.failing = tuple(failing)

    @contextmanager
    def get_connection(self):
        with super().get_connection() as conn:
            yield FlakyConnection(conn, self.failing)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "funding.db"))


def llm_chain(responder):
    return LLMChain([ScriptedProvider(responder)])


def make_candidate(url="https://greenfund.example.org/grants/clean-energy", **overrides):
    content = ExtractedContent(
        result=SearchResult(title="Clean Energy Community Grants", url=url, snippet=""),
        text="The Green Future Fund awards grants of $50,000 to $200,000 for community clean energy.",
    )
    fields = dict(
        content=content,
        is_valid=True,
        program_name="Clean Energy Community Grants",
        sponsor="Green Future Fund",
        amount_min=50_000.0,
        amount_max=200_000.0,
        deadline=(NOW + timedelta(days=60)).date(),
        eligibility=["Registered 501(c)(3) nonprofits"],
        project_types=["clean energy"],
        match_score=85.0,
        confidence=80.0,
        organization_types=["nonprofit"],
        focus_areas=["renewable energy"],
    )
    fields.update(overrides)
    return OpportunityCandidate(**fields)


def make_scored(candidate=None, fit_score=62.0, **overrides):
    return ScoredOpportunity(candidate=candidate or make_candidate(), fit_score=fit_score, **overrides)
