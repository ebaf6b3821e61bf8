import asyncio
import json
from datetime import date

from funding_discovery.analyze.opportunity_analyzer import OpportunityAnalyzer
from funding_discovery.config import DiscoveryConfig
from funding_discovery.core.domain_models import ExtractedContent, ProjectSummary, SearchResult
from funding_discovery.llm.client import LLMChain

from conftest import FailingProvider, ScriptedProvider, llm_chain


CONFIG = DiscoveryConfig().without_delays()

GOOD_URL = "https://greenfund.example.org/grants"
CREDITS_URL = "https://cloud.example.com/nonprofits"
BROKEN_URL = "https://broken.example.org/page"


def content(url, text="The Green Future Fund awards grants of $50,000 to $200,000 for clean energy.",
            eligibility=()):
    return ExtractedContent(
        result=SearchResult(title="Clean Energy Community Grants", url=url),
        text=text,
        eligibility_criteria=list(eligibility),
    )


def analysis(**overrides):
    payload = {
        "isValidOpportunity": True,
        "isRelevantOpportunity": True,
        "opportunityTitle": "Clean Energy Community Grants",
        "fundingAgency": "Green Future Fund",
        "fundingAmountMin": 50000,
        "fundingAmountMax": 200000,
        "deadline": "2025-08-01",
        "eligibilityRequirements": ["Registered 501(c)(3) nonprofits"],
        "organizationTypes": ["Nonprofit", "Tribal Government"],
        "focusAreas": ["renewable energy"],
        "projectTypes": ["clean energy"],
        "isNonMonetaryResource": False,
        "resourceTypes": [],
        "relevanceScore": 85,
        "confidence": 75,
        "matchFactors": ["mission alignment"],
        "keyInformation": "Two funding rounds per year.",
    }
    payload.update(overrides)
    return json.dumps(payload)


def responder_by_url(replies):
    def respond(system, user):
        for url, reply in replies.items():
            if f"URL: {url}" in user:
                return reply
        return "no reply scripted"
    return respond


class TestOpportunityAnalyzer:

    def test_non_json_reply_drops_only_that_page(self):
        chain = llm_chain(responder_by_url({
            GOOD_URL: analysis(),
            BROKEN_URL: "I'm sorry, I can't determine whether this page is a grant.",
        }))
        analyzer = OpportunityAnalyzer(chain, CONFIG)

        candidates = asyncio.run(analyzer.analyze_many(
            [content(BROKEN_URL), content(GOOD_URL)], "clean energy nonprofit"
        ))

        assert [c.url for c in candidates] == [GOOD_URL]

    def test_candidate_fields(self):
        chain = llm_chain(responder_by_url({GOOD_URL: analysis()}))
        page = content(GOOD_URL, eligibility=["Based in Ohio"])

        candidate = asyncio.run(OpportunityAnalyzer(chain, CONFIG).analyze(page, "clean energy"))

        assert candidate.program_name == "Clean Energy Community Grants"
        assert candidate.sponsor == "Green Future Fund"
        assert (candidate.amount_min, candidate.amount_max) == (50_000.0, 200_000.0)
        assert candidate.deadline == date(2025, 8, 1)
        assert candidate.eligibility == ["Registered 501(c)(3) nonprofits", "Based in Ohio"]
        assert candidate.organization_types == ["nonprofit", "tribal_government"]
        assert candidate.match_score == 85.0
        assert not candidate.is_non_monetary_resource

    def test_amounts_fall_back_to_page_text_and_are_ordered(self):
        analyzer = OpportunityAnalyzer(llm_chain(lambda s, u: ""), CONFIG)

        from_text = analyzer.build_candidate(
            content(GOOD_URL), json.loads(analysis(fundingAmountMin=None, fundingAmountMax=None))
        )
        swapped = analyzer.build_candidate(
            content(GOOD_URL), json.loads(analysis(fundingAmountMin="$2M", fundingAmountMax=100000))
        )

        assert (from_text.amount_min, from_text.amount_max) == (50_000.0, 200_000.0)
        assert (swapped.amount_min, swapped.amount_max) == (100_000.0, 2_000_000.0)

    def test_resource_flag_and_types(self):
        chain = llm_chain(responder_by_url({
            CREDITS_URL: analysis(isNonMonetaryResource=True, resourceTypes=["software_grant"],
                                  fundingAmountMin=None, fundingAmountMax=None),
        }))
        page = content(CREDITS_URL, text="Get $5,000 in AWS credits and free licenses for nonprofits.")

        candidate = asyncio.run(OpportunityAnalyzer(chain, CONFIG).analyze(page, "cloud credits"))

        assert candidate.is_non_monetary_resource
        assert candidate.resource_types == ["software_grant", "cloud_credits"]

    def test_dropped_when_invalid_irrelevant_or_low_scoring(self):
        replies = {
            "https://a.example.org": analysis(isValidOpportunity=False),
            "https://b.example.org": analysis(isRelevantOpportunity=False),
            "https://c.example.org": analysis(relevanceScore=39),
            "https://d.example.org": json.dumps({"opportunityTitle": "Missing fields"}),
        }
        analyzer = OpportunityAnalyzer(llm_chain(responder_by_url(replies)), CONFIG)

        candidates = asyncio.run(analyzer.analyze_many([content(url) for url in replies], "grants"))

        assert candidates == []

    def test_provider_failure_drops_page(self):
        analyzer = OpportunityAnalyzer(LLMChain([FailingProvider()]), CONFIG)
        assert asyncio.run(analyzer.analyze(content(GOOD_URL), "grants")) is None

    def test_sorted_by_match_score(self):
        replies = {
            "https://low.example.org": analysis(relevanceScore=55),
            "https://high.example.org": analysis(relevanceScore=95),
        }
        analyzer = OpportunityAnalyzer(llm_chain(responder_by_url(replies)), CONFIG)

        candidates = asyncio.run(analyzer.analyze_many([content(url) for url in replies], "grants"))

        assert [c.match_score for c in candidates] == [95.0, 55.0]

    def test_prompt_includes_projects_and_eligibility(self):
        provider = ScriptedProvider(lambda s, u: analysis())
        analyzer = OpportunityAnalyzer(LLMChain([provider]), CONFIG)
        projects = [ProjectSummary(name="Solar schools", project_type="clean_energy", funding_needed=80_000)]

        asyncio.run(analyzer.analyze(content(GOOD_URL, eligibility=["Based in Ohio"]), "solar", projects))

        system, user = provider.calls[0]
        assert "Solar schools (clean_energy), needs $80,000" in user
        assert "- Based in Ohio" in user
        assert "valid JSON only" in system
