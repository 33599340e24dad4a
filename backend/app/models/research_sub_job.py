from sqlalchemy import Column, Integer, String, JSON, Enum, DateTime, ForeignKey, UniqueConstraint, Uuid
import uuid
import enum

from ..core.db import Base


class SubJobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ResearchSubJob(Base):
    __tablename__ = "research_sub_jobs"
    __table_args__ = (UniqueConstraint("research_id", "stage", name="uq_research_sub_jobs_research_stage"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    research_id = Column(Uuid(as_uuid=True),
                         ForeignKey("research_jobs.id", ondelete="CASCADE"),
                         index=True,
                         nullable=False)
    stage = Column(String, nullable=False)            # "foundation", "exec_summary", …
    position = Column(Integer, nullable=False)        # execution order within the job
    status = Column(Enum(SubJobStatus), nullable=False, default=SubJobStatus.PENDING)
    dependencies = Column(JSON, nullable=False, default=list)  # in-job dependencies at creation
    output = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)
    confidence = Column(String, nullable=True)        # HIGH | MEDIUM | LOW
    attempts = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
