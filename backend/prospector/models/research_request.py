from sqlalchemy import Column, String, Text, JSON, Enum, DateTime, Uuid
from datetime import datetime
import uuid
import enum
from ..core.db import Base

class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    RESEARCHING = "researching"
    COMPLETED = "completed"
    FAILED = "failed"

class ResearchRequest(Base):
    __tablename__ = "research_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=True, index=True)  # null = not owner-scoped
    target_account = Column(String, nullable=False)
    product_description = Column(Text, nullable=True)
    territory_states = Column(JSON, nullable=True)  # List[str]
    target_categories = Column(JSON, nullable=True)  # List[str]
    competitors = Column(JSON, nullable=True)  # List[str]
    additional_context = Column(Text, nullable=True)
    status = Column(Enum(RequestStatus), nullable=False, default=RequestStatus.PENDING)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    research_started_at = Column(DateTime, nullable=True)
    research_completed_at = Column(DateTime, nullable=True)
