from sqlalchemy import Column, Integer, String, JSON, DateTime, ForeignKey, Uuid
from datetime import datetime

from ..core.db import Base

class AgentMemory(Base):
    """
    One row per agent run. Append-only: retries add rows, nothing is overwritten.
    """
    __tablename__ = "agent_memory"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Uuid,
                        ForeignKey("research_requests.id"),
                        index=True,
                        nullable=False)
    memory_type = Column(String(32), nullable=False)  # org_profile, people_intel, …
    content = Column(JSON, nullable=False)  # {data, sources, status, reason}
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
