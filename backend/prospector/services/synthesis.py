from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping
from uuid import UUID

from openai import OpenAI
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..models.agent_memory import AgentMemory
from ..models.research_report import ResearchReport
from ..models.research_request import ResearchRequest
from ..schemas.playbook import Playbook
from .agents import AGENT_SPECS, AgentDegraded, AgentOutcome, ResearchContext, hostname_of
from .extraction import ParseFailure, extract_json
from .llm import create_chat_completion, get_llm_client

logger = logging.getLogger(__name__)

settings = get_settings()

MAX_BULLETS_PER_SECTION = 8

# Keys tried, in order, to name an entity in an agent's list items
_ENTITY_NAME_KEYS = ("name", "title", "vendor", "event", "headline", "description")
_ENTITY_DETAIL_KEYS = ("title", "role", "status", "date", "amount", "relevance")

PLAYBOOK_SHAPE = {
    "title": "string",
    "topInsight": "string",
    "accountSnapshot": {
        "type": "string",
        "size": "string",
        "budget": "string",
        "location": "string",
        "jurisdiction": "string",
    },
    "sections": [
        {"id": "string", "heading": "string", "content": "string", "bullets": ["string"], "sources": ["url"]}
    ],
    "playbook": {
        "outreachSequence": ["string"],
        "talkingPoints": ["string"],
        "whatToAvoid": ["string"],
        "keyDates": [{"date": "string", "event": "string", "relevance": "string"}],
    },
    "recommendedActions": ["string"],
}


def _build_prompt(ctx: ResearchContext, outcomes: Mapping[str, AgentOutcome]) -> str:
    findings = {
        memory_type: {
            "status": outcome.status,
            "data": outcome.data,
            "sources": [c["url"] for c in outcome.citations if c.get("url")],
        }
        for memory_type, outcome in outcomes.items()
    }
    return (
        f"{ctx.describe()}\n\n"
        "Five research agents investigated this account. Their findings:\n"
        f"{json.dumps(findings, indent=2, default=str)}\n\n"
        "Write a sales playbook for approaching this account. Use only facts from the "
        "findings; say 'Unknown' where they are silent. Return ONLY valid JSON with "
        "exactly this structure:\n"
        f"{json.dumps(PLAYBOOK_SHAPE, indent=2)}"
    )


# ---------------------------------------------------------------------------
# Deterministic fallback
# ---------------------------------------------------------------------------


def _describe_entity(item: Any) -> str | None:
    if isinstance(item, str):
        return item.strip() or None
    if not isinstance(item, dict):
        return None
    name = next((str(item[k]) for k in _ENTITY_NAME_KEYS if item.get(k)), None)
    if not name:
        return None
    detail = next(
        (str(item[k]) for k in _ENTITY_DETAIL_KEYS if item.get(k) and str(item[k]) != name),
        None,
    )
    return f"{name} ({detail})" if detail else name


def _entity_bullets(data: Mapping[str, Any]) -> List[str]:
    bullets: List[str] = []
    for value in data.values():
        if not isinstance(value, list):
            continue
        for item in value:
            text = _describe_entity(item)
            if text and text not in bullets:
                bullets.append(text)
    return bullets[:MAX_BULLETS_PER_SECTION]


def _key_dates(news: Mapping[str, Any]) -> List[Dict[str, str]]:
    dates: List[Dict[str, str]] = []
    for signal in news.get("signals") or []:
        if isinstance(signal, dict) and signal.get("event"):
            dates.append(
                {
                    "date": str(signal.get("date") or "TBD"),
                    "event": str(signal["event"]),
                    "relevance": str(signal.get("relevance") or ""),
                }
            )
        elif isinstance(signal, str) and signal.strip():
            dates.append({"date": "TBD", "event": signal.strip(), "relevance": ""})
    return dates


def build_fallback_playbook(
    ctx: ResearchContext,
    outcomes: Mapping[str, AgentOutcome],
) -> Dict[str, Any]:
    """
    Compose a complete playbook from agent data alone. Never raises.

    One section per agent, in agent order, whether or not it degraded.
    """
    def data_for(memory_type: str) -> Dict[str, Any]:
        outcome = outcomes.get(memory_type)
        return outcome.data if outcome is not None else {}

    profile = data_for("org_profile")
    news = data_for("news_timing")
    people = data_for("people_intel").get("people") or []

    sections = []
    for spec in AGENT_SPECS:
        outcome = outcomes.get(spec.memory_type)
        data = outcome.data if outcome is not None else spec.default_payload()
        if spec.memory_type == "org_profile" and profile.get("overview"):
            content = str(profile["overview"])
        elif outcome is None or isinstance(outcome, AgentDegraded):
            content = "No findings were returned for this area."
        else:
            content = f"Findings from {spec.label.lower()} research."
        sections.append(
            {
                "id": spec.memory_type,
                "heading": spec.label,
                "content": content,
                "bullets": _entity_bullets(data),
                "sources": [c["url"] for c in (outcome.citations if outcome else []) if c.get("url")],
            }
        )

    first_signal = next(iter(_key_dates(news)), None)
    top_insight = (
        str(profile.get("overview") or "").strip()
        or (first_signal and f"{first_signal['event']} ({first_signal['date']})")
        or "Research completed with limited structured output."
    )

    actions: List[str] = []
    first_person = next((p for p in people if isinstance(p, dict) and p.get("name")), None)
    if first_person:
        actions.append(f"Reach out to {_describe_entity(first_person)}")
    if data_for("procurement").get("rfps"):
        actions.append("Review open RFPs and their deadlines")
    if data_for("competitive_intel").get("displacementOpportunities"):
        actions.append("Prepare a displacement pitch against the incumbent vendor")

    playbook = Playbook.model_validate(
        {
            "title": f"Account Playbook: {ctx.target_account}",
            "topInsight": top_insight,
            "accountSnapshot": {
                "type": ", ".join(ctx.target_categories) or "Unknown",
                "size": profile.get("size"),
                "budget": profile.get("budget"),
                "location": profile.get("location"),
                "jurisdiction": profile.get("jurisdiction"),
            },
            "sections": sections,
            "playbook": {"keyDates": _key_dates(news)},
            "recommendedActions": actions,
        }
    )
    return playbook.model_dump()


# ---------------------------------------------------------------------------
# Model synthesis
# ---------------------------------------------------------------------------


def synthesize_playbook(
    ctx: ResearchContext,
    outcomes: Mapping[str, AgentOutcome],
    client_factory: Callable[[], OpenAI] | None = None,
) -> Dict[str, Any]:
    """
    Merge agent outcomes into one playbook.

    The result carries ``synthesis: "model"`` or ``synthesis: "fallback"``.
    Any model, parse or validation failure uses the fallback.
    """
    try:
        completion = create_chat_completion(
            (client_factory or get_llm_client)(),
            model=settings.SYNTHESIS_MODEL or settings.LLM_MODEL,
            messages=[
                {
                    "role": "system",
                    "content": "You are a senior B2B sales strategist. Respond ONLY with valid JSON.",
                },
                {"role": "user", "content": _build_prompt(ctx, outcomes)},
            ],
            temperature=0.3,
        )
        choices = getattr(completion, "choices", None) or []
        content = choices[0].message.content if choices else ""
        parsed = extract_json(content)
        if isinstance(parsed, ParseFailure):
            raise ValueError(f"unparseable playbook: {parsed.reason}")
        playbook = Playbook.model_validate(parsed.records).model_dump()
        playbook["synthesis"] = "model"
        return playbook
    except (ValidationError, ValueError, RuntimeError) as e:
        logger.warning("Playbook synthesis failed, using fallback: %s", e, extra={"step": "synthesis"})
    except Exception as e:  # noqa: BLE001
        logger.warning("Synthesis model call failed, using fallback: %s", e, extra={"step": "synthesis"})

    playbook = build_fallback_playbook(ctx, outcomes)
    playbook["synthesis"] = "fallback"
    return playbook


# ---------------------------------------------------------------------------
# Sources and persistence
# ---------------------------------------------------------------------------


def aggregate_sources(db: Session, request_id: UUID) -> List[Dict[str, str]]:
    """
    Flatten citations from the latest memory row of each agent.

    Earlier rows from retried runs are ignored; URLs appear once.
    """
    rows = (
        db.query(AgentMemory)
        .filter(AgentMemory.request_id == request_id)
        .order_by(AgentMemory.id.desc())
        .all()
    )
    latest: Dict[str, AgentMemory] = {}
    for row in rows:
        latest.setdefault(row.memory_type, row)

    order = {spec.memory_type: i for i, spec in enumerate(AGENT_SPECS)}
    sources: List[Dict[str, str]] = []
    seen: set[str] = set()
    for memory_type in sorted(latest, key=lambda t: order.get(t, len(order))):
        for citation in (latest[memory_type].content or {}).get("sources") or []:
            url = (citation.get("url") or "").strip() if isinstance(citation, dict) else str(citation)
            if not url or url in seen:
                continue
            seen.add(url)
            title = citation.get("title") if isinstance(citation, dict) else None
            excerpt = citation.get("excerpt") if isinstance(citation, dict) else None
            sources.append(
                {
                    "url": url,
                    "title": title or hostname_of(url) or "Source",
                    "excerpt": excerpt or "Source",
                    "memoryType": memory_type,
                }
            )
    return sources


def save_report(
    db: Session,
    request: ResearchRequest,
    playbook: Dict[str, Any],
    sources: List[Dict[str, str]],
) -> ResearchReport:
    report = ResearchReport(
        request_id=request.id,
        user_id=request.user_id,
        content=playbook,
        summary=playbook.get("topInsight"),
        sources=sources,
        generated_at=datetime.utcnow(),
    )
    report = db.merge(report)
    db.commit()
    return report
