# backend/app/schemas/research.py
from typing import Literal, Type
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..models.research_job import JobStatus

ConfidenceLevel = Literal["HIGH", "MEDIUM", "LOW"]


# ---------------------------------------------------------------------------
# Stage output schemas (what the LLM must return for each stage)
# ---------------------------------------------------------------------------

class StageConfidence(BaseModel):
    level: ConfidenceLevel
    reason: str | None = None


class StageOutput(BaseModel):
    """
    Common envelope for every stage. Section-specific fields are kept as-is.
    """
    confidence: StageConfidence | None = None
    sources_used: list[str] = []

    model_config = ConfigDict(extra="allow")


class CompanyBasics(BaseModel):
    legal_name: str
    ticker: str | None = None
    ownership: str | None = None
    headquarters: str | None = None
    global_revenue_usd: float | None = None
    global_employees: int | None = None
    fiscal_year_end: str | None = None

    model_config = ConfigDict(extra="allow")


class SourceCatalogEntry(BaseModel):
    id: str
    citation: str
    url: str | None = None
    type: str | None = None
    date: str | None = None


class FoundationOutput(StageOutput):
    company_basics: CompanyBasics
    geography_specifics: dict = {}
    source_catalog: list[SourceCatalogEntry] = []


class ExecSummaryOutput(StageOutput):
    bullet_points: list[dict] = Field(min_length=1)


class ConversationStartersOutput(StageOutput):
    conversation_starters: list[dict] = Field(min_length=1)


STAGE_SCHEMAS: dict[str, Type[StageOutput]] = {
    "foundation": FoundationOutput,
    "exec_summary": ExecSummaryOutput,
    "conversation_starters": ConversationStartersOutput,
}


def get_stage_schema(stage: str) -> Type[StageOutput]:
    return STAGE_SCHEMAS.get(stage, StageOutput)


# ---------------------------------------------------------------------------
# Orchestrator results
# ---------------------------------------------------------------------------

class JobCreated(BaseModel):
    job_id: UUID
    status: JobStatus = JobStatus.QUEUED
    queue_position: int


class CancelResult(BaseModel):
    success: bool = True
    job_id: UUID
    status: JobStatus = JobStatus.CANCELLED


class RerunResult(BaseModel):
    accepted: bool = True
    job_id: UUID
    stages: list[str]


class JobStatusOut(BaseModel):
    job_id: UUID
    status: JobStatus
    confidence: ConfidenceLevel | None = None
    confidence_score: float | None = None
    terminal_progress: float
    completed_stages: list[str]
    queue_position: int | None = None
    current_stage: str | None = None

