from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Iterable, List
from uuid import UUID

from sqlalchemy.orm import Session

from ..models.discovery_session import DiscoverySession, SessionStatus
from ..models.prospect_dossier import ProspectDossier, DossierStatus

logger = logging.getLogger(__name__)

_NON_SLUG_RE = re.compile(r"[^a-z0-9]")


def slugify(value: str) -> str:
    return _NON_SLUG_RE.sub("_", (value or "").lower())


def prospect_key(name: str, state: str) -> str:
    """
    Stable identifier of an organization within a session.

        >>> prospect_key("Austin ISD", "Texas")
        'austin_isd_texas'
    """
    return f"{slugify(name)}_{slugify(state)}"


def _score_of(dossier: ProspectDossier) -> int:
    data = dossier.dossier or {}
    try:
        return int(data.get("score", 0))
    except (TypeError, ValueError):
        return 0


def get_dossiers(db: Session, session_id: UUID) -> List[ProspectDossier]:
    """Return the dossiers already stored for a session, best score first."""
    rows = db.query(ProspectDossier).filter(ProspectDossier.session_id == session_id).all()
    return sorted(rows, key=lambda d: (-_score_of(d), d.prospect_key))


def upsert_dossiers(db: Session, session_id: UUID, records: Iterable[dict]) -> List[ProspectDossier]:
    """
    Insert-or-replace dossiers keyed by (session_id, prospect_key).

    Each record needs name, state, lat, lng; city, dossier and status are
    optional. Repeating a call with the same records leaves one row per key.
    """
    merged: List[ProspectDossier] = []
    now = datetime.utcnow()
    for record in records:
        key = record.get("prospect_key") or prospect_key(record["name"], record["state"])
        row = ProspectDossier(
            session_id=session_id,
            prospect_key=key,
            name=record["name"],
            state=record["state"],
            city=record.get("city"),
            lat=float(record["lat"]),
            lng=float(record["lng"]),
            dossier=record.get("dossier"),
            status=record.get("status") or DossierStatus.QUEUED,
            last_updated=now,
        )
        merged.append(db.merge(row))
    db.commit()
    logger.info(
        "Upserted %d dossiers",
        len(merged),
        extra={"session_id": str(session_id), "step": "upsert_dossiers"},
    )
    return merged


def mark_session_discovered(db: Session, session: DiscoverySession) -> None:
    if session.status == SessionStatus.PROSPECTS_DISCOVERED:
        return
    session.status = SessionStatus.PROSPECTS_DISCOVERED
    session.updated_at = datetime.utcnow()
    db.commit()


def dossier_to_prospect(dossier: ProspectDossier) -> dict:
    """Render a dossier the way discovery responses list prospects."""
    data = dossier.dossier or {}
    status = dossier.status.value if isinstance(dossier.status, DossierStatus) else dossier.status
    return {
        "prospectId": dossier.prospect_key,
        "name": dossier.name,
        "state": dossier.state,
        "city": dossier.city,
        "lat": dossier.lat,
        "lng": dossier.lng,
        "initialScore": data.get("score"),
        "angles": data.get("anglesForList") or [],
        "summary": data.get("summary"),
        "researchStatus": status,
    }
