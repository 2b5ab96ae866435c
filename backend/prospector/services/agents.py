"""
Five specialised research agents for one target account.

Each agent asks the search-augmented model one focused question and parses
the answer into a fixed per-specialty shape. Agents never raise: any failure
(timeout, provider error, unparseable reply) produces a degraded outcome that
carries the specialty's empty default, so the synthesizer always has five
well-typed inputs.
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence
from urllib.parse import urlparse
from uuid import UUID

from openai import AsyncOpenAI
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..models.agent_memory import AgentMemory
from ..models.research_request import ResearchRequest
from .extraction import ParseFailure, extract_json
from .llm import acreate_chat_completion, get_search_client

logger = logging.getLogger(__name__)

settings = get_settings()

SEARCH_DOMAIN_FILTER = ["-reddit.com", "-twitter.com", "-pinterest.com", "-quora.com"]

SYSTEM_PROMPT = (
    "You are a B2B sales intelligence analyst. Respond ONLY with valid JSON that "
    "matches the requested structure. No markdown, no extra text."
)


@dataclass(frozen=True)
class ResearchContext:
    target_account: str
    product_description: str | None = None
    territory_states: Sequence[str] = ()
    target_categories: Sequence[str] = ()
    competitors: Sequence[str] = ()
    additional_context: str | None = None

    @classmethod
    def from_request(cls, request: ResearchRequest) -> "ResearchContext":
        return cls(
            target_account=request.target_account,
            product_description=request.product_description,
            territory_states=tuple(request.territory_states or ()),
            target_categories=tuple(request.target_categories or ()),
            competitors=tuple(request.competitors or ()),
            additional_context=request.additional_context,
        )

    def describe(self) -> str:
        def _join(items: Sequence[str]) -> str:
            return ", ".join(items) or "Not specified"

        return (
            f"TARGET ACCOUNT: {self.target_account}\n\n"
            "CONTEXT:\n"
            f"- Our client sells: {self.product_description or 'Not specified'}\n"
            f"- Target territory: {_join(self.territory_states)}\n"
            f"- Target buyers: {_join(self.target_categories)}\n"
            f"- Key competitors: {_join(self.competitors)}\n"
            f"- Additional context: {self.additional_context or 'None'}"
        )


@dataclass(frozen=True)
class AgentSpec:
    memory_type: str
    label: str
    task: str
    default: Dict[str, Any]

    def default_payload(self) -> Dict[str, Any]:
        return copy.deepcopy(self.default)

    def build_prompt(self, ctx: ResearchContext) -> str:
        return (
            f"{ctx.describe()}\n\n"
            f"RESEARCH TASK ({self.label}):\n{self.task}\n\n"
            "Return ONLY valid JSON with exactly this structure:\n"
            f"{json.dumps(self.default, indent=2)}"
        )


AGENT_SPECS: Sequence[AgentSpec] = (
    AgentSpec(
        memory_type="org_profile",
        label="Organization profile",
        task=(
            "Describe the organization: mission, size (staff, students or residents served), "
            "annual budget signals, location, governing jurisdiction, senior leadership and "
            "initiatives announced in the last two years."
        ),
        default={
            "overview": "",
            "mission": "",
            "size": "",
            "budget": "",
            "location": "",
            "jurisdiction": "",
            "leadership": [],
            "recentInitiatives": [],
        },
    ),
    AgentSpec(
        memory_type="people_intel",
        label="Decision-makers",
        task=(
            "Identify the decision-makers and influencers for a purchase of our client's product. "
            "For each person give name, title, their likely role in the buying process and any "
            "public statements relevant to our product."
        ),
        default={"people": []},
    ),
    AgentSpec(
        memory_type="procurement",
        label="Procurement activity",
        task=(
            "Find contracts, RFPs, bids and budget line items related to our client's product "
            "category. Note procurement rules such as thresholds, cooperative purchasing "
            "vehicles and board approval requirements."
        ),
        default={"contracts": [], "rfps": [], "budgetItems": [], "procurementNotes": []},
    ),
    AgentSpec(
        memory_type="competitive_intel",
        label="Competitive landscape",
        task=(
            "Identify the vendors currently serving this account for our product category, where "
            "the named competitors are present, and any signs of dissatisfaction or contract "
            "expiry that create a displacement opportunity."
        ),
        default={"incumbentVendors": [], "competitorPresence": [], "displacementOpportunities": []},
    ),
    AgentSpec(
        memory_type="news_timing",
        label="News and timing signals",
        task=(
            "List dated timing signals: leadership changes, budget cycles, board meetings, funding "
            "awards, modernization initiatives and recent news. Each signal needs a date, the "
            "event and why it matters for outreach."
        ),
        default={"signals": [], "recentNews": []},
    ),
)

AGENT_SPECS_BY_TYPE: Dict[str, AgentSpec] = {s.memory_type: s for s in AGENT_SPECS}


@dataclass
class AgentOk:
    memory_type: str
    data: Dict[str, Any]
    citations: List[Dict[str, str]] = field(default_factory=list)
    status: str = "ok"


@dataclass
class AgentDegraded:
    memory_type: str
    data: Dict[str, Any]
    reason: str
    citations: List[Dict[str, str]] = field(default_factory=list)
    status: str = "degraded"


AgentOutcome = AgentOk | AgentDegraded


def conform_to_default(data: Any, default: Dict[str, Any]) -> Dict[str, Any]:
    """
    Coerce a parsed agent payload to its specialty's shape.

    Keys from ``default`` whose value has the wrong type (or is missing) take
    the default; unknown keys are dropped.
    """
    out = copy.deepcopy(default)
    if not isinstance(data, dict):
        return out
    for key, default_value in default.items():
        value = data.get(key)
        if isinstance(default_value, list):
            if isinstance(value, list):
                out[key] = value
        elif isinstance(default_value, str):
            if isinstance(value, str):
                out[key] = value
            elif isinstance(value, (int, float)):
                out[key] = str(value)
        elif value is not None:
            out[key] = value
    return out


def hostname_of(url: str) -> str | None:
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    return host[4:] if host.startswith("www.") else host


def normalize_citations(raw: Any) -> List[Dict[str, str]]:
    """
    Normalise provider citations to ``{url, title, excerpt}``.

    Providers return either bare URL strings or objects with url/title/snippet.
    """
    out: List[Dict[str, str]] = []
    for item in raw or []:
        if isinstance(item, str):
            url = item.strip()
            if not url:
                continue
            out.append({"url": url, "title": hostname_of(url) or "Source", "excerpt": "Source"})
        elif isinstance(item, dict):
            url = str(item.get("url") or "")
            out.append(
                {
                    "url": url,
                    "title": item.get("title") or hostname_of(url) or "Source",
                    "excerpt": item.get("snippet") or item.get("excerpt") or "Source",
                }
            )
    return out


def _completion_citations(completion: Any) -> Any:
    citations = getattr(completion, "citations", None)
    if citations is None:
        extra = getattr(completion, "model_extra", None) or {}
        citations = extra.get("citations")
    return citations


async def _query_agent(client: AsyncOpenAI, spec: AgentSpec, ctx: ResearchContext) -> tuple[str, Any]:
    completion = await acreate_chat_completion(
        client,
        model=settings.SEARCH_MODEL,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": spec.build_prompt(ctx)},
        ],
        extra_body={
            "search_domain_filter": SEARCH_DOMAIN_FILTER,
            "search_recency_filter": settings.SEARCH_RECENCY_FILTER,
        },
    )
    choices = getattr(completion, "choices", None) or []
    content = choices[0].message.content if choices else ""
    return content or "", _completion_citations(completion)


async def run_agent(
    spec: AgentSpec,
    ctx: ResearchContext,
    client: AsyncOpenAI,
    timeout: float | None = None,
) -> AgentOutcome:
    """
    Run one agent to a tagged outcome. Never raises.

    On timeout the in-flight request is cancelled, so a hung provider call
    never outlives ``timeout``.
    """
    timeout = timeout or settings.AGENT_TIMEOUT_SECONDS
    log_extra = {"agent": spec.memory_type, "step": "agent"}
    try:
        content, raw_citations = await asyncio.wait_for(
            _query_agent(client, spec, ctx),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Agent timed out after %ss", timeout, extra=log_extra)
        return AgentDegraded(spec.memory_type, spec.default_payload(), f"timeout after {timeout}s")
    except Exception as e:  # noqa: BLE001
        logger.warning("Agent call failed: %s", e, extra=log_extra)
        return AgentDegraded(spec.memory_type, spec.default_payload(), f"error: {e}")

    citations = normalize_citations(raw_citations)
    parsed = extract_json(content)
    if isinstance(parsed, ParseFailure):
        logger.warning("Agent reply unparseable (%s)", parsed.reason, extra=log_extra)
        return AgentDegraded(
            spec.memory_type,
            spec.default_payload(),
            f"unparseable reply: {parsed.reason}",
            citations=citations,
        )

    return AgentOk(spec.memory_type, conform_to_default(parsed.records, spec.default), citations)


def persist_outcome(db: Session, request_id: UUID, outcome: AgentOutcome) -> None:
    """Append one AgentMemory row. Failures are logged, never raised."""
    content = {
        "data": outcome.data,
        "sources": outcome.citations,
        "status": outcome.status,
        "reason": getattr(outcome, "reason", None),
    }
    try:
        db.add(AgentMemory(request_id=request_id, memory_type=outcome.memory_type, content=content))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Failed to persist agent memory",
            extra={"request_id": str(request_id), "agent": outcome.memory_type},
        )


class ResearchAgentPool:
    """
    Fan out every agent at once and wait for all of them.

    All agents share one async client and run on the event loop, so every
    agent is in flight at the same time and each is bounded only by its own
    timeout. Memory rows are written as each agent finishes, one at a time.
    """

    def __init__(
        self,
        db: Session,
        specs: Sequence[AgentSpec] = AGENT_SPECS,
        client_factory: Callable[[], AsyncOpenAI] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.db = db
        self.specs = specs
        self.client_factory = client_factory or get_search_client
        self.timeout = timeout

    async def run(self, request_id: UUID, ctx: ResearchContext) -> Dict[str, AgentOutcome]:
        try:
            client = self.client_factory()
        except RuntimeError as e:
            logger.warning("Search client unavailable: %s", e, extra={"request_id": str(request_id)})
            client = None

        async def _one(spec: AgentSpec) -> AgentOutcome:
            if client is None:
                outcome: AgentOutcome = AgentDegraded(
                    spec.memory_type, spec.default_payload(), "search model not configured"
                )
            else:
                outcome = await run_agent(spec, ctx, client, timeout=self.timeout)
            persist_outcome(self.db, request_id, outcome)
            return outcome

        try:
            outcomes = await asyncio.gather(*(_one(spec) for spec in self.specs))
        finally:
            if client is not None:
                await client.close()

        degraded = [o.memory_type for o in outcomes if isinstance(o, AgentDegraded)]
        logger.info(
            "Agents finished (%d ok, %d degraded)",
            len(outcomes) - len(degraded),
            len(degraded),
            extra={"request_id": str(request_id), "step": "agents", "degraded": degraded},
        )
        return {o.memory_type: o for o in outcomes}
