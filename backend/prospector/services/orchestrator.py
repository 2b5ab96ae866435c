from __future__ import annotations

import asyncio
import logging
from typing import Callable
from uuid import UUID

from openai import AsyncOpenAI, OpenAI
from sqlalchemy.orm import Session

from ..core.celery_app import celery_app
from ..core.db import SessionLocal
from ..models.research_request import ResearchRequest, RequestStatus
from .agents import ResearchAgentPool, ResearchContext
from .scheduler import begin_research, complete_research, fail_research
from .synthesis import aggregate_sources, save_report, synthesize_playbook

logger = logging.getLogger(__name__)


def run_account_research(
    db: Session,
    request: ResearchRequest,
    search_client_factory: Callable[[], AsyncOpenAI] | None = None,
    llm_client_factory: Callable[[], OpenAI] | None = None,
) -> dict:
    """
    Deep research for one target account.

    pending -> researching -> (five agents) -> playbook -> report -> completed.
    Degraded agents and a fallback playbook still complete the request; only
    an unexpected exception marks it failed (and is re-raised).
    """
    log_extra = {"request_id": str(request.id)}
    try:
        begin_research(db, request)
        logger.info("Starting deep research", extra={**log_extra, "step": "start"})

        ctx = ResearchContext.from_request(request)
        pool = ResearchAgentPool(db, client_factory=search_client_factory)
        outcomes = asyncio.run(pool.run(request.id, ctx))

        playbook = synthesize_playbook(ctx, outcomes, client_factory=llm_client_factory)
        sources = aggregate_sources(db, request.id)
        save_report(db, request, playbook, sources)

        complete_research(db, request)
        logger.info(
            "Deep research completed (%s synthesis, %d sources)",
            playbook.get("synthesis"),
            len(sources),
            extra={**log_extra, "step": "completed"},
        )
        return playbook
    except Exception as e:
        db.rollback()
        db.refresh(request)
        if request.status in (RequestStatus.PENDING, RequestStatus.RESEARCHING):
            fail_research(db, request, str(e))
        logger.exception("Deep research failed", extra={**log_extra, "step": "failed"})
        raise


@celery_app.task(name="prospector.services.orchestrator.run_research_request", bind=True, queue="research")
def run_research_request(self, request_id: str):
    db: Session = SessionLocal()
    try:
        request = db.get(ResearchRequest, UUID(request_id))
        if not request:
            logger.warning("Research request not found", extra={"request_id": request_id})
            return
        run_account_research(db, request)
    finally:
        db.close()
