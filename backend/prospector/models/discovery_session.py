from sqlalchemy import Column, String, JSON, Enum, DateTime, Uuid
from datetime import datetime
import uuid
import enum
from ..core.db import Base

class SessionStatus(str, enum.Enum):
    CREATED = "created"
    PROSPECTS_DISCOVERED = "prospects_discovered"

class DiscoverySession(Base):
    __tablename__ = "discovery_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=True, index=True)  # null = anonymous session
    criteria = Column(JSON, nullable=False)  # {productDescription, territory: {states}, targetCategories, competitors}
    criteria_hash = Column(String(64), nullable=False, index=True)
    status = Column(Enum(SessionStatus), nullable=False, default=SessionStatus.CREATED)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
