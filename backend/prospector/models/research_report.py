from sqlalchemy import Column, String, Text, JSON, DateTime, ForeignKey, Uuid
from datetime import datetime
from ..core.db import Base

class ResearchReport(Base):
    __tablename__ = "research_reports"

    # One report per request; re-runs replace it
    request_id = Column(Uuid, ForeignKey("research_requests.id"), primary_key=True)
    user_id = Column(String, nullable=True)
    content = Column(JSON, nullable=False)
    summary = Column(Text, nullable=True)
    sources = Column(JSON, nullable=True)  # [{url, title, excerpt, memoryType}]
    generated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
