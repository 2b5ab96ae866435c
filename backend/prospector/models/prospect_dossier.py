from sqlalchemy import Column, String, Float, JSON, Enum, DateTime, ForeignKey, Uuid
from datetime import datetime
import enum
from ..core.db import Base

class DossierStatus(str, enum.Enum):
    QUEUED = "queued"
    RESEARCHING = "researching"
    READY = "ready"
    FAILED = "failed"

class ProspectDossier(Base):
    __tablename__ = "prospect_dossiers"

    # Composite key: one row per (session, organization)
    session_id = Column(Uuid, ForeignKey("discovery_sessions.id"), primary_key=True)
    prospect_key = Column(String, primary_key=True)

    name = Column(String, nullable=False)
    state = Column(String, nullable=False)
    city = Column(String, nullable=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    dossier = Column(JSON, nullable=True)  # {score, anglesForList, summary}
    status = Column(Enum(DossierStatus), nullable=False, default=DossierStatus.QUEUED)
    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
