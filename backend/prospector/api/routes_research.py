from typing import Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.celery_app import celery_app
from ..core.db import get_db
from ..core.errors import AccessDenied, AuthenticationRequired, MissingParameter, RequestNotFound
from ..models.research_report import ResearchReport
from ..models.research_request import ResearchRequest, RequestStatus
from ..schemas.research import CreateResearchRequest, DeepResearchRequest
from ..services.orchestrator import run_account_research
from .deps import get_optional_user_id, verify_api_key

router = APIRouter(tags=["research"])

logger = logging.getLogger(__name__)

RUN_RESEARCH_TASK = "prospector.services.orchestrator.run_research_request"


def _load_owned_request(db: Session, raw_id, user_id: str | None) -> ResearchRequest:
    """
    Fetch a research request the caller may act on.

    Requests without an owner are open; owned requests need a valid bearer
    token for the same user.
    """
    try:
        request_id = raw_id if isinstance(raw_id, UUID) else UUID(str(raw_id))
    except ValueError:
        raise RequestNotFound()

    request = db.get(ResearchRequest, request_id)
    if request is None:
        raise RequestNotFound()
    if request.user_id:
        if user_id is None:
            raise AuthenticationRequired()
        if request.user_id != user_id:
            raise AccessDenied()
    return request


def _iso(value):
    return value.isoformat() if value else None


def _request_to_dict(request: ResearchRequest, report: ResearchReport | None = None) -> dict:
    return {
        "id": str(request.id),
        "targetAccount": request.target_account,
        "status": request.status.value,
        "errorMessage": request.error_message,
        "createdAt": _iso(request.created_at),
        "researchStartedAt": _iso(request.research_started_at),
        "researchCompletedAt": _iso(request.research_completed_at),
        "report": (
            {
                "content": report.content,
                "summary": report.summary,
                "sources": report.sources or [],
                "generatedAt": _iso(report.generated_at),
            }
            if report
            else None
        ),
    }


@router.post("/research-requests", status_code=201)
def create_research_request(
    payload: CreateResearchRequest,
    db: Session = Depends(get_db),
    user_id: str | None = Depends(get_optional_user_id),
    _: None = Depends(verify_api_key),
):
    request = ResearchRequest(
        user_id=user_id,
        target_account=payload.target_account,
        product_description=payload.product_description,
        territory_states=payload.territory_states,
        target_categories=payload.target_categories,
        competitors=payload.competitors,
        additional_context=payload.additional_context,
        status=RequestStatus.PENDING,
    )
    db.add(request)
    db.commit()
    db.refresh(request)

    logger.info(
        "Research request created",
        extra={"request_id": str(request.id), "step": "request_created"},
    )

    if payload.run_now:
        celery_app.send_task(RUN_RESEARCH_TASK, args=[str(request.id)], queue="research")

    return _request_to_dict(request)


@router.get("/research-requests/{request_id}")
def get_research_request(
    request_id: str,
    db: Session = Depends(get_db),
    user_id: str | None = Depends(get_optional_user_id),
    _: None = Depends(verify_api_key),
):
    request = _load_owned_request(db, request_id, user_id)
    report = db.get(ResearchReport, request.id)
    return _request_to_dict(request, report)


@router.post("/research/deep")
def run_deep_research(
    payload: Optional[DeepResearchRequest] = None,
    db: Session = Depends(get_db),
    user_id: str | None = Depends(get_optional_user_id),
    _: None = Depends(verify_api_key),
):
    if payload is None or not payload.request_id:
        raise MissingParameter("Missing requestId")

    request = _load_owned_request(db, payload.request_id, user_id)
    report = run_account_research(db, request)
    return {"success": True, "report": report}
