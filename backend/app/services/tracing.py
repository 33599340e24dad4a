# backend/app/services/tracing.py
from __future__ import annotations

from typing import Any, Callable
from uuid import UUID
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from ..models.research_trace_event import ResearchTraceEvent

logger = logging.getLogger(__name__)

def trace_job_step(
    session_factory: Callable[[], Session],
    job_id: UUID,
    *,
    phase: str,
    step: str | None = None,
    label: str,
    detail: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """
    Best-effort, fire-and-forget trace writer.
    Failure must NEVER break the research job.
    """
    db = session_factory()
    try:
        evt = ResearchTraceEvent(
            job_id=job_id,
            phase=phase,
            step=step,
            label=label,
            detail=detail,
            meta=meta or {},
            created_at=datetime.utcnow(),
        )
        db.add(evt)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to write research trace event", extra={"job_id": str(job_id)})
    finally:
        db.close()
