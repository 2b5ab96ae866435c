"""
Discovery pipeline: sales criteria in, geocoded and persisted prospects out.

    session check -> cache check -> model call -> extraction
        -> geocoding (batches) -> dossier upsert -> job enqueue
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict

from openai import OpenAI
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.errors import AccessDenied, MissingParameter, SessionNotFound
from ..models.discovery_session import DiscoverySession, SessionStatus
from ..schemas.discovery import CandidateProspect, CreateSessionRequest, DiscoveryRequest
from .dossiers import (
    dossier_to_prospect,
    get_dossiers,
    mark_session_discovered,
    prospect_key,
    upsert_dossiers,
)
from .extraction import extract_candidates, model_reply_from_completion
from .geocoding import GeocodeTarget, GeocodingEnricher
from .llm import create_chat_completion, get_llm_client
from .scheduler import enqueue_dossier_jobs

logger = logging.getLogger(__name__)

settings = get_settings()

DEFAULT_SCORE = 75
DEFAULT_ANGLES = ["Potential opportunity"]
PENDING_SUMMARY = "Pending deep research"
NO_PROSPECTS_MESSAGE = "No prospects found for the given criteria. Try broadening your territory or categories."
MISSING_TERRITORY_MESSAGE = "Missing territory: at least one state is required"

SUBMIT_PROSPECTS_TOOL = {
    "type": "function",
    "function": {
        "name": "submit_prospects",
        "description": "Submit the list of prospect organizations found.",
        "parameters": {
            "type": "object",
            "properties": {
                "prospects": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string", "description": "Full organization name"},
                            "city": {"type": "string"},
                            "state": {"type": "string", "description": "Full state name from the territory"},
                            "score": {"type": "integer", "minimum": 0, "maximum": 100},
                            "angles": {"type": "array", "items": {"type": "string"}},
                            "reasoning": {"type": "string"},
                        },
                        "required": ["name", "state"],
                    },
                }
            },
            "required": ["prospects"],
        },
    },
}


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def criteria_hash(criteria: CreateSessionRequest) -> str:
    """Order-insensitive fingerprint of the criteria, used for session dedupe."""
    normalised = {
        "states": sorted(s.lower() for s in criteria.territory.states),
        "categories": sorted(c.lower() for c in criteria.target_categories),
        "competitors": sorted(c.lower() for c in criteria.competitors),
        "productDescription": (criteria.product_description or "").lower(),
    }
    return hashlib.sha256(json.dumps(normalised, sort_keys=True).encode("utf-8")).hexdigest()


def create_session(db: Session, payload: CreateSessionRequest, user_id: str | None) -> dict:
    """
    Create a discovery session, or return the caller's recent one with the
    same criteria. Anonymous callers always get a new session.
    """
    digest = criteria_hash(payload)

    if user_id:
        cutoff = datetime.utcnow() - timedelta(hours=settings.SESSION_DEDUPE_HOURS)
        existing = (
            db.query(DiscoverySession)
            .filter(
                DiscoverySession.user_id == user_id,
                DiscoverySession.criteria_hash == digest,
                DiscoverySession.created_at >= cutoff,
            )
            .order_by(DiscoverySession.created_at.desc())
            .first()
        )
        if existing:
            logger.info(
                "Reusing discovery session",
                extra={"session_id": str(existing.id), "step": "create_session"},
            )
            return {
                "sessionId": str(existing.id),
                "status": existing.status.value,
                "isExisting": True,
                "isAnonymous": False,
            }

    session = DiscoverySession(
        user_id=user_id,
        criteria=payload.to_criteria_json(),
        criteria_hash=digest,
        status=SessionStatus.CREATED,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info("Created discovery session", extra={"session_id": str(session.id), "step": "create_session"})
    return {
        "sessionId": str(session.id),
        "status": session.status.value,
        "isExisting": False,
        "isAnonymous": user_id is None,
    }


def load_session(db: Session, session_id, user_id: str | None) -> DiscoverySession:
    """Fetch a session the caller may read; anonymous sessions are open to all."""
    session = db.get(DiscoverySession, session_id)
    if session is None:
        raise SessionNotFound()
    if session.user_id and session.user_id != user_id:
        raise AccessDenied()
    return session


# ---------------------------------------------------------------------------
# Prospect discovery
# ---------------------------------------------------------------------------


def _effective_criteria(payload: DiscoveryRequest, session: DiscoverySession) -> Dict[str, Any]:
    """Request fields win; empty ones fall back to what the session was created with."""
    stored = session.criteria or {}
    return {
        "productDescription": payload.product_description or stored.get("productDescription"),
        "states": list(payload.territory.states or (stored.get("territory") or {}).get("states") or []),
        "targetCategories": list(payload.target_categories or stored.get("targetCategories") or []),
        "competitors": list(payload.competitors or stored.get("competitors") or []),
    }


def build_discovery_prompt(criteria: Dict[str, Any], limit: int) -> str:
    states = ", ".join(criteria["states"])
    categories = ", ".join(criteria["targetCategories"]) or "government agencies"
    competitors = ", ".join(criteria["competitors"]) or "incumbent vendors"
    product = criteria["productDescription"] or "enterprise software"
    return (
        'You are a B2B sales intelligence researcher finding high-value "rip and replace" opportunities.\n\n'
        f"Find {limit} government/enterprise accounts that:\n"
        f"1. Are located ONLY in these states: {states}\n"
        f"2. Fall into these categories: {categories}\n"
        f"3. Currently use or likely use: {competitors}\n"
        f"4. Would be excellent prospects for: {product}\n\n"
        "For each prospect, provide:\n"
        '- name: Full organization name (e.g., "Boston Police Department")\n'
        "- city: City name (required for accurate geolocation)\n"
        "- state: Full state name, from the specified states only\n"
        "- score: Initial confidence score 60-100\n"
        '- angles: 1-2 short "how to win" tags like ["Renewal window", "Budget approved"]\n'
        "- reasoning: Brief explanation of why they're a good target\n\n"
        "Focus on REAL organizations. No fictional entities. "
        "Submit the results with the submit_prospects tool."
    )


def _call_discovery_model(client: OpenAI, prompt: str):
    return create_chat_completion(
        client,
        model=settings.LLM_MODEL,
        messages=[
            {"role": "system", "content": "You are a B2B market research expert. Return only valid JSON."},
            {"role": "user", "content": prompt},
        ],
        tools=[SUBMIT_PROSPECTS_TOOL],
        tool_choice={"type": "function", "function": {"name": "submit_prospects"}},
    )


def _dossier_record(candidate: CandidateProspect, key: str, coords) -> dict:
    return {
        "prospect_key": key,
        "name": candidate.name,
        "state": candidate.state,
        "city": candidate.city,
        "lat": coords.lat,
        "lng": coords.lng,
        "dossier": {
            "score": candidate.score if candidate.score is not None else DEFAULT_SCORE,
            "anglesForList": candidate.angles or list(DEFAULT_ANGLES),
            "summary": candidate.reasoning or PENDING_SUMMARY,
        },
    }


def resolve_limit(limit: int | None) -> int:
    if not limit or limit < 1:
        return settings.DISCOVERY_DEFAULT_LIMIT
    return min(limit, settings.DISCOVERY_MAX_LIMIT)


def discover_prospects(
    db: Session,
    payload: DiscoveryRequest,
    user_id: str | None,
    client_factory: Callable[[], OpenAI] | None = None,
    enricher: GeocodingEnricher | None = None,
) -> dict:
    """
    Discover, geocode and persist prospects for a session.

    A session that already has dossiers is answered from storage without
    calling the model or the geocoder. Upstream model errors propagate as
    AppError subclasses.
    """
    started = time.monotonic()
    session = load_session(db, payload.session_id, user_id)
    log_extra = {"session_id": str(session.id)}

    cached = get_dossiers(db, session.id)
    if cached:
        logger.info("Returning cached prospects", extra={**log_extra, "step": "cache_hit"})
        return {"prospects": [dossier_to_prospect(d) for d in cached], "jobs": [], "cached": True}

    limit = resolve_limit(payload.limit)
    criteria = _effective_criteria(payload, session)
    if not criteria["states"]:
        raise MissingParameter(MISSING_TERRITORY_MESSAGE)

    client = (client_factory or get_llm_client)()
    completion = _call_discovery_model(client, build_discovery_prompt(criteria, limit))
    candidates = extract_candidates(model_reply_from_completion(completion), criteria["states"])[:limit]

    if not candidates:
        logger.warning("Discovery returned no usable prospects", extra={**log_extra, "step": "extract"})
        return {"prospects": [], "jobs": [], "message": NO_PROSPECTS_MESSAGE}

    keyed = [(prospect_key(c.name, c.state), c) for c in candidates]
    targets = [GeocodeTarget(key=k, name=c.name, state=c.state, city=c.city) for k, c in keyed]
    coordinates = asyncio.run((enricher or GeocodingEnricher()).enrich(targets))

    dossiers = upsert_dossiers(
        db,
        session.id,
        [_dossier_record(c, k, coordinates[k]) for k, c in keyed],
    )
    jobs = enqueue_dossier_jobs(db, session, [d.prospect_key for d in dossiers])
    mark_session_discovered(db, session)

    latency_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Discovered %d prospects in %dms",
        len(dossiers),
        latency_ms,
        extra={**log_extra, "step": "discovered"},
    )
    return {
        "prospects": [dossier_to_prospect(d) for d in dossiers],
        "jobs": [
            {"jobId": str(j.id), "prospectId": j.prospect_key, "status": j.status.value}
            for j in jobs
        ],
        "latency": latency_ms,
    }
