from sqlalchemy import Column, String, JSON, Enum, DateTime, Float, Uuid
from datetime import datetime
import uuid
import enum
from ..core.db import Base


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReportType(str, enum.Enum):
    GENERIC = "GENERIC"
    INDUSTRIALS = "INDUSTRIALS"
    PE = "PE"
    FS = "FS"
    INSURANCE = "INSURANCE"


class VisibilityScope(str, enum.Enum):
    PRIVATE = "PRIVATE"
    SHARED = "SHARED"


class ResearchJob(Base):
    __tablename__ = "research_jobs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_name = Column(String, nullable=False)
    normalized_company = Column(String, nullable=False, index=True)
    geography = Column(String, nullable=False, default="Global")
    normalized_geography = Column(String, nullable=False, default="global")
    industry = Column(String, nullable=True)
    focus_areas = Column(JSON, nullable=True)
    report_type = Column(Enum(ReportType), nullable=False, default=ReportType.GENERIC)
    selected_sections = Column(JSON, nullable=False, default=list)
    user_id = Column(String, nullable=False, index=True)
    visibility_scope = Column(Enum(VisibilityScope), nullable=False, default=VisibilityScope.PRIVATE)

    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.QUEUED, index=True)
    progress = Column(Float, nullable=False, default=0.0)  # terminal sub-jobs / all sub-jobs
    overall_confidence_score = Column(Float, nullable=True)
    overall_confidence = Column(String, nullable=True)  # HIGH | MEDIUM | LOW
    current_stage = Column(String, nullable=True)
    error_message = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # One structured output per stage, named by STAGE_OUTPUT_FIELDS
    foundation = Column(JSON, nullable=True)
    financial_snapshot = Column(JSON, nullable=True)
    company_overview = Column(JSON, nullable=True)
    key_execs_and_board = Column(JSON, nullable=True)
    segment_analysis = Column(JSON, nullable=True)
    investment_strategy = Column(JSON, nullable=True)
    portfolio_snapshot = Column(JSON, nullable=True)
    deal_activity = Column(JSON, nullable=True)
    deal_team = Column(JSON, nullable=True)
    portfolio_maturity = Column(JSON, nullable=True)
    leadership_and_governance = Column(JSON, nullable=True)
    strategic_priorities = Column(JSON, nullable=True)
    operating_capabilities = Column(JSON, nullable=True)
    distribution_analysis = Column(JSON, nullable=True)
    trends = Column(JSON, nullable=True)
    peer_benchmarking = Column(JSON, nullable=True)
    sku_opportunities = Column(JSON, nullable=True)
    recent_news = Column(JSON, nullable=True)
    exec_summary = Column(JSON, nullable=True)
    conversation_starters = Column(JSON, nullable=True)
    appendix = Column(JSON, nullable=True)
