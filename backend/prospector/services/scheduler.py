from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Sequence

from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.errors import InvalidStatusTransition
from ..models.discovery_session import DiscoverySession
from ..models.prospect_dossier import DossierStatus
from ..models.research_job import ResearchJob, JobStatus
from ..models.research_request import ResearchRequest, RequestStatus
from .dossiers import dossier_to_prospect, get_dossiers

logger = logging.getLogger(__name__)

settings = get_settings()

DOSSIER_JOB_TYPE = "dossier"
STUCK_JOB_ERROR = "Timeout - automatically retrying"

_TERMINAL_JOB_STATUSES = {JobStatus.DONE, JobStatus.FAILED}
_TERMINAL_DOSSIER_STATUSES = {DossierStatus.READY, DossierStatus.FAILED}


# ---------------------------------------------------------------------------
# Per-prospect dossier jobs
# ---------------------------------------------------------------------------


def enqueue_dossier_jobs(
    db: Session,
    session: DiscoverySession,
    prospect_keys: Iterable[str],
) -> List[ResearchJob]:
    """
    Queue one dossier job per prospect key.

    Callers pass only the keys they just persisted, so prospects served from
    the session cache never get a second job.
    """
    jobs = [
        ResearchJob(
            session_id=session.id,
            prospect_key=key,
            job_type=DOSSIER_JOB_TYPE,
            status=JobStatus.QUEUED,
            user_id=session.user_id,
        )
        for key in dict.fromkeys(prospect_keys)
    ]
    if not jobs:
        return []
    db.add_all(jobs)
    db.commit()
    logger.info(
        "Queued %d dossier jobs",
        len(jobs),
        extra={"session_id": str(session.id), "step": "enqueue_jobs"},
    )
    return jobs


def reset_stuck_jobs(db: Session, session_id, now: datetime | None = None) -> int:
    """Put jobs that have been running past JOB_TIMEOUT_SECONDS back in the queue."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(seconds=settings.JOB_TIMEOUT_SECONDS)
    stuck = (
        db.query(ResearchJob)
        .filter(
            ResearchJob.session_id == session_id,
            ResearchJob.status == JobStatus.RUNNING,
            ResearchJob.started_at < cutoff,
        )
        .all()
    )
    for job in stuck:
        job.status = JobStatus.QUEUED
        job.error = STUCK_JOB_ERROR
        job.started_at = None
    if stuck:
        db.commit()
        logger.warning(
            "Re-queued %d stuck jobs",
            len(stuck),
            extra={"session_id": str(session_id), "step": "reset_stuck_jobs"},
        )
    return len(stuck)


def session_progress(jobs: Sequence[ResearchJob]) -> int:
    """Percentage of jobs that reached done or failed (0 when there are none)."""
    if not jobs:
        return 0
    finished = sum(1 for j in jobs if j.status in _TERMINAL_JOB_STATUSES)
    return round(finished / len(jobs) * 100)


def _job_to_dict(job: ResearchJob) -> dict:
    return {
        "jobId": str(job.id),
        "prospectId": job.prospect_key,
        "jobType": job.job_type,
        "status": job.status.value,
        "error": job.error,
    }


def build_session_snapshot(db: Session, session: DiscoverySession) -> dict:
    """
    Everything a poller needs for one session.

    Stuck jobs are re-queued first so the snapshot reflects the retry.
    """
    reset_stuck_jobs(db, session.id)
    dossiers = get_dossiers(db, session.id)
    jobs = (
        db.query(ResearchJob)
        .filter(ResearchJob.session_id == session.id)
        .order_by(ResearchJob.created_at)
        .all()
    )
    progress = session_progress(jobs)
    return {
        "session": {
            "id": str(session.id),
            "status": session.status.value,
            "criteria": session.criteria,
            "createdAt": session.created_at.isoformat() if session.created_at else None,
        },
        "prospects": [dossier_to_prospect(d) for d in dossiers],
        "jobs": [_job_to_dict(j) for j in jobs],
        "progress": progress,
        "complete": bool(
            jobs
            and dossiers
            and (
                progress >= 100
                or (
                    all(j.status in _TERMINAL_JOB_STATUSES for j in jobs)
                    and all(d.status in _TERMINAL_DOSSIER_STATUSES for d in dossiers)
                )
            )
        ),
    }


# ---------------------------------------------------------------------------
# ResearchRequest state machine
# ---------------------------------------------------------------------------


def begin_research(db: Session, request: ResearchRequest) -> None:
    """
    Move a request into ``researching``.

    Any non-pending request (a retry) is first reset to ``pending``; earlier
    agent memory is left in place.
    """
    if request.status != RequestStatus.PENDING:
        logger.info(
            "Resetting research request for retry (was %s)",
            request.status.value,
            extra={"request_id": str(request.id), "step": "retry_reset"},
        )
        request.status = RequestStatus.PENDING
        request.error_message = None
        request.research_completed_at = None
        db.commit()

    request.status = RequestStatus.RESEARCHING
    request.research_started_at = datetime.utcnow()
    db.commit()


def complete_research(db: Session, request: ResearchRequest) -> None:
    if request.status != RequestStatus.RESEARCHING:
        raise InvalidStatusTransition(
            f"Cannot complete research request in status {request.status.value}"
        )
    request.status = RequestStatus.COMPLETED
    request.research_completed_at = datetime.utcnow()
    db.commit()


def fail_research(db: Session, request: ResearchRequest, error: str | None = None) -> None:
    if request.status not in (RequestStatus.PENDING, RequestStatus.RESEARCHING):
        raise InvalidStatusTransition(
            f"Cannot fail research request in status {request.status.value}"
        )
    request.status = RequestStatus.FAILED
    request.error_message = (error or "")[:500] or None
    request.research_completed_at = datetime.utcnow()
    db.commit()
