from sqlalchemy import Column, String, Enum, DateTime, ForeignKey, Uuid
from datetime import datetime
import uuid
import enum
from ..core.db import Base

class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

class ResearchJob(Base):
    __tablename__ = "research_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("discovery_sessions.id"), index=True, nullable=False)
    prospect_key = Column(String, nullable=False)
    job_type = Column(String(32), nullable=False, default="dossier")
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.QUEUED)
    user_id = Column(String, nullable=True)
    error = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
