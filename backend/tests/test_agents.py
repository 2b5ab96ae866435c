"""
Tests for agents.py - the five-agent research pool.

A failing, slow or unparseable agent must degrade on its own without
holding up the other four.
"""
import asyncio
import json
import time

import pytest

from prospector.models.agent_memory import AgentMemory
from prospector.models.research_request import ResearchRequest, RequestStatus
from prospector.services.agents import (
    AGENT_SPECS,
    AGENT_SPECS_BY_TYPE,
    AgentDegraded,
    AgentOk,
    ResearchAgentPool,
    ResearchContext,
    conform_to_default,
    normalize_citations,
    run_agent,
)

from tests.fixtures.fakes import AsyncFakeChatClient, make_completion, user_prompt

AGENT_REPLIES = {
    "org_profile": {"overview": "Largest district in Central Texas", "size": "73,000 students", "leadership": [{"name": "Dr. A", "title": "Superintendent"}]},
    "people_intel": {"people": [{"name": "Jane Doe", "title": "CIO"}]},
    "procurement": {"contracts": [{"vendor": "Legacy Corp", "amount": "$1.2M"}], "rfps": []},
    "competitive_intel": {"incumbentVendors": ["Legacy Corp"], "displacementOpportunities": ["Contract ends 2026"]},
    "news_timing": {"signals": [{"date": "2026-11-03", "event": "Bond election", "relevance": "Funds technology"}]},
}


def _agent_of(kwargs):
    prompt = user_prompt(kwargs)
    return next(s.memory_type for s in AGENT_SPECS if f"RESEARCH TASK ({s.label})" in prompt)


def _responder(fail=(), slow=(), garbage=(), delay=0.5, base_delay=0.0):
    async def respond(kwargs):
        agent = _agent_of(kwargs)
        if base_delay:
            await asyncio.sleep(base_delay)
        if agent in fail:
            raise RuntimeError(f"{agent} exploded")
        if agent in slow:
            await asyncio.sleep(delay)
        if agent in garbage:
            return make_completion("Sorry, I cannot help with that.", citations=["https://example.org/x"])
        return make_completion(
            json.dumps(AGENT_REPLIES[agent]),
            citations=[f"https://www.{agent}.example.gov/page", {"url": "https://news.test/a", "title": "News", "snippet": "Quote"}],
        )
    return respond


CTX = ResearchContext(
    target_account="Austin ISD",
    product_description="Student safety platform",
    territory_states=("Texas",),
    target_categories=("K-12",),
    competitors=("Legacy Corp",),
)


@pytest.fixture
def request_row(db):
    r = ResearchRequest(target_account="Austin ISD", status=RequestStatus.RESEARCHING)
    db.add(r)
    db.commit()
    return r


class TestConform:
    def test_wrong_types_take_defaults(self):
        default = AGENT_SPECS_BY_TYPE["org_profile"].default
        out = conform_to_default({"overview": 12, "leadership": "nobody", "extra": 1}, default)
        assert out["overview"] == "12"
        assert out["leadership"] == []
        assert "extra" not in out
        assert set(out) == set(default)

    def test_non_dict_gives_default(self):
        default = AGENT_SPECS_BY_TYPE["people_intel"].default
        assert conform_to_default(["x"], default) == {"people": []}

    def test_default_is_not_shared(self):
        spec = AGENT_SPECS_BY_TYPE["news_timing"]
        payload = spec.default_payload()
        payload["signals"].append("x")
        assert spec.default["signals"] == []


class TestCitations:
    def test_strings_and_objects(self):
        out = normalize_citations([
            "https://www.austinisd.org/board",
            {"url": "https://texastribune.org/a", "title": "Tribune", "snippet": "Quoted"},
            {"url": "https://www.kxan.com/b"},
            "",
        ])
        assert out == [
            {"url": "https://www.austinisd.org/board", "title": "austinisd.org", "excerpt": "Source"},
            {"url": "https://texastribune.org/a", "title": "Tribune", "excerpt": "Quoted"},
            {"url": "https://www.kxan.com/b", "title": "kxan.com", "excerpt": "Source"},
        ]

    def test_none(self):
        assert normalize_citations(None) == []


class TestRunAgent:
    def test_ok(self):
        client = AsyncFakeChatClient(_responder())
        outcome = asyncio.run(run_agent(AGENT_SPECS_BY_TYPE["people_intel"], CTX, client))
        assert isinstance(outcome, AgentOk)
        assert outcome.data == {"people": [{"name": "Jane Doe", "title": "CIO"}]}
        assert outcome.citations[0]["title"] == "people_intel.example.gov"

    def test_search_filters_are_sent(self):
        client = AsyncFakeChatClient(_responder())
        asyncio.run(run_agent(AGENT_SPECS_BY_TYPE["procurement"], CTX, client))
        extra = client.calls[0]["extra_body"]
        assert "-reddit.com" in extra["search_domain_filter"]
        assert extra["search_recency_filter"] == "year"

    def test_unparseable_reply_degrades_but_keeps_citations(self):
        client = AsyncFakeChatClient(_responder(garbage={"news_timing"}))
        outcome = asyncio.run(run_agent(AGENT_SPECS_BY_TYPE["news_timing"], CTX, client))
        assert isinstance(outcome, AgentDegraded)
        assert outcome.data == {"signals": [], "recentNews": []}
        assert outcome.citations[0]["url"] == "https://example.org/x"
        assert "unparseable" in outcome.reason

    def test_timeout_degrades(self):
        client = AsyncFakeChatClient(_responder(slow={"org_profile"}))
        outcome = asyncio.run(run_agent(AGENT_SPECS_BY_TYPE["org_profile"], CTX, client, timeout=0.05))
        assert isinstance(outcome, AgentDegraded)
        assert outcome.reason.startswith("timeout")


class TestPool:
    def test_all_agents_succeed(self, db, request_row):
        pool = ResearchAgentPool(db, client_factory=lambda: AsyncFakeChatClient(_responder()))
        outcomes = asyncio.run(pool.run(request_row.id, CTX))

        assert set(outcomes) == {s.memory_type for s in AGENT_SPECS}
        assert all(isinstance(o, AgentOk) for o in outcomes.values())
        rows = db.query(AgentMemory).filter_by(request_id=request_row.id).all()
        assert sorted(r.memory_type for r in rows) == sorted(outcomes)
        assert all(r.content["status"] == "ok" for r in rows)

    def test_one_failing_agent_does_not_block_others(self, db, request_row):
        client = AsyncFakeChatClient(_responder(fail={"people_intel"}))
        pool = ResearchAgentPool(db, client_factory=lambda: client)
        outcomes = asyncio.run(pool.run(request_row.id, CTX))

        assert isinstance(outcomes["people_intel"], AgentDegraded)
        assert outcomes["people_intel"].data == {"people": []}
        others = [o for k, o in outcomes.items() if k != "people_intel"]
        assert len(others) == 4
        assert all(isinstance(o, AgentOk) for o in others)

        rows = {r.memory_type: r for r in db.query(AgentMemory).all()}
        assert len(rows) == 5
        assert rows["people_intel"].content["status"] == "degraded"
        assert "exploded" in rows["people_intel"].content["reason"]

    def test_slow_agent_times_out_alone(self, db, request_row):
        client = AsyncFakeChatClient(_responder(slow={"competitive_intel"}))
        pool = ResearchAgentPool(db, client_factory=lambda: client, timeout=0.1)
        outcomes = asyncio.run(pool.run(request_row.id, CTX))

        assert isinstance(outcomes["competitive_intel"], AgentDegraded)
        assert sum(isinstance(o, AgentOk) for o in outcomes.values()) == 4

    def test_unconfigured_search_client_degrades_everything(self, db, request_row):
        def factory():
            raise RuntimeError("No search model API key configured.")

        outcomes = asyncio.run(ResearchAgentPool(db, client_factory=factory).run(request_row.id, CTX))
        assert all(isinstance(o, AgentDegraded) for o in outcomes.values())
        assert db.query(AgentMemory).count() == 5

    def test_all_agents_are_in_flight_together(self, db, request_row):
        client = AsyncFakeChatClient(_responder(base_delay=0.3))
        pool = ResearchAgentPool(db, client_factory=lambda: client, timeout=1.0)
        outcomes = asyncio.run(pool.run(request_row.id, CTX))

        assert client.max_in_flight == len(AGENT_SPECS)
        assert all(isinstance(o, AgentOk) for o in outcomes.values())
        assert client.closed

    def test_hung_agent_is_cancelled_at_its_timeout(self, db, request_row):
        client = AsyncFakeChatClient(_responder(slow={"people_intel"}, delay=3.0))
        pool = ResearchAgentPool(db, client_factory=lambda: client, timeout=0.3)

        started = time.monotonic()
        outcomes = asyncio.run(pool.run(request_row.id, CTX))
        elapsed = time.monotonic() - started

        assert elapsed < 1.5
        assert isinstance(outcomes["people_intel"], AgentDegraded)
        assert outcomes["people_intel"].reason.startswith("timeout")
        assert client.in_flight == 0
