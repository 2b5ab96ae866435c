from uuid import UUID
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.db import get_db
from ..schemas.discovery import CreateSessionRequest, DiscoveryRequest
from ..services.discovery import create_session, discover_prospects, load_session
from ..services.scheduler import build_session_snapshot
from .deps import get_optional_user_id, verify_api_key

router = APIRouter(tags=["discovery"])

logger = logging.getLogger(__name__)


@router.post("/discovery/sessions", status_code=201)
def create_discovery_session(
    payload: CreateSessionRequest,
    db: Session = Depends(get_db),
    user_id: str | None = Depends(get_optional_user_id),
    _: None = Depends(verify_api_key),
):
    return create_session(db, payload, user_id)


@router.post("/discovery/prospects")
def discover(
    payload: DiscoveryRequest,
    db: Session = Depends(get_db),
    user_id: str | None = Depends(get_optional_user_id),
    _: None = Depends(verify_api_key),
):
    logger.info(
        "Discovery requested",
        extra={"session_id": str(payload.session_id), "step": "discover"},
    )
    return discover_prospects(db, payload, user_id)


@router.get("/discovery/sessions/{session_id}")
def get_discovery_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    user_id: str | None = Depends(get_optional_user_id),
    _: None = Depends(verify_api_key),
):
    session = load_session(db, session_id, user_id)
    return build_session_snapshot(db, session)
