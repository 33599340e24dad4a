"""
SQLAlchemy persistence for research jobs and their sub-jobs.

Every public method runs in its own short session and returns frozen
snapshots, never live ORM rows. Writes that finalise a sub-job are
compare-and-swap operations: they re-read the job inside the transaction and
do nothing when the job has been cancelled (or otherwise moved on) meanwhile.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.research_job import ResearchJob, JobStatus
from ..models.research_sub_job import ResearchSubJob, SubJobStatus
from .aggregation import (
    compute_final_status,
    compute_overall_confidence,
    compute_terminal_progress,
    is_terminal_status,
)
from .dependencies import collect_blocked_stages
from .errors import InvalidJobStateError, JobNotFoundError

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LEN = 500

_ACTIVE_SUB_JOB_STATUSES = (SubJobStatus.PENDING, SubJobStatus.RUNNING)


def _value(enum_or_str: Any) -> Any:
    return getattr(enum_or_str, "value", enum_or_str)


@dataclass(frozen=True)
class SubJobRecord:
    id: UUID
    stage: str
    status: str
    dependencies: tuple[str, ...]
    output: Any
    error_message: str | None
    confidence: str | None
    attempts: int
    started_at: datetime | None
    completed_at: datetime | None
    duration_ms: int | None


@dataclass(frozen=True)
class JobRecord:
    id: UUID
    company_name: str
    geography: str
    industry: str | None
    focus_areas: tuple[str, ...]
    report_type: str
    selected_sections: tuple[str, ...]
    user_id: str
    visibility_scope: str
    status: str
    progress: float
    overall_confidence: str | None
    overall_confidence_score: float | None
    current_stage: str | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    sub_jobs: tuple[SubJobRecord, ...]

    def sub_job(self, stage: str) -> SubJobRecord | None:
        for sub_job in self.sub_jobs:
            if sub_job.stage == stage:
                return sub_job
        return None

    @property
    def stages(self) -> list[str]:
        return [s.stage for s in self.sub_jobs]

    def completed_outputs(self) -> Mapping[str, Any]:
        """Read-only snapshot of completed stage outputs keyed by stage id."""
        return MappingProxyType({
            s.stage: s.output
            for s in self.sub_jobs
            if s.status == SubJobStatus.COMPLETED.value and s.output is not None
        })

    def prompt_context(self) -> dict[str, Any]:
        return {
            "company_name": self.company_name,
            "geography": self.geography,
            "industry": self.industry,
            "focus_areas": list(self.focus_areas),
            "report_type": self.report_type,
        }


def _sub_job_record(row: ResearchSubJob) -> SubJobRecord:
    return SubJobRecord(
        id=row.id,
        stage=row.stage,
        status=_value(row.status),
        dependencies=tuple(row.dependencies or ()),
        output=row.output,
        error_message=row.error_message,
        confidence=row.confidence,
        attempts=row.attempts or 0,
        started_at=row.started_at,
        completed_at=row.completed_at,
        duration_ms=row.duration_ms,
    )


def _job_record(job: ResearchJob, sub_jobs: Iterable[ResearchSubJob]) -> JobRecord:
    return JobRecord(
        id=job.id,
        company_name=job.company_name,
        geography=job.geography,
        industry=job.industry,
        focus_areas=tuple(job.focus_areas or ()),
        report_type=_value(job.report_type),
        selected_sections=tuple(job.selected_sections or ()),
        user_id=job.user_id,
        visibility_scope=_value(job.visibility_scope),
        status=_value(job.status),
        progress=job.progress or 0.0,
        overall_confidence=job.overall_confidence,
        overall_confidence_score=job.overall_confidence_score,
        current_stage=job.current_stage,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        sub_jobs=tuple(_sub_job_record(s) for s in sub_jobs),
    )


def _truncate(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_MESSAGE_LEN]


class ResearchRepository:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Helpers (inside an open session)
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_job(db: Session, job_id: UUID) -> ResearchJob | None:
        return (
            db.query(ResearchJob)
            .filter(ResearchJob.id == job_id)
            .with_for_update()
            .first()
        )

    @staticmethod
    def _sub_jobs(db: Session, job_id: UUID) -> list[ResearchSubJob]:
        return (
            db.query(ResearchSubJob)
            .filter(ResearchSubJob.research_id == job_id)
            .order_by(ResearchSubJob.position)
            .all()
        )

    @staticmethod
    def _apply_aggregates(job: ResearchJob, sub_jobs: Sequence[ResearchSubJob]) -> None:
        """Recompute progress, confidence and status from the sub-jobs."""
        job.progress = compute_terminal_progress(sub_jobs)
        confidence = compute_overall_confidence(sub_jobs)
        job.overall_confidence_score = confidence.score
        job.overall_confidence = confidence.label

        previous = _value(job.status)
        status = compute_final_status(previous, sub_jobs)
        if status != previous:
            job.status = JobStatus(status)
        if is_terminal_status(status):
            job.current_stage = None
            if job.completed_at is None:
                job.completed_at = datetime.utcnow()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(
        self,
        fields: Mapping[str, Any],
        stages: Sequence[str],
        graph: Mapping[str, Sequence[str]],
    ) -> tuple[JobRecord, int]:
        """
        Insert a queued job and one pending sub-job per stage in a single
        transaction. Returns the job and the number of queued/running jobs
        created before it.
        """
        with self._session() as db:
            job = ResearchJob(
                **fields,
                status=JobStatus.QUEUED,
                progress=0.0,
                created_at=datetime.utcnow(),
            )
            db.add(job)
            db.flush()

            sub_jobs = []
            for position, stage in enumerate(stages):
                sub_job = ResearchSubJob(
                    research_id=job.id,
                    stage=stage,
                    position=position,
                    status=SubJobStatus.PENDING,
                    dependencies=list(graph.get(stage, ())),
                    attempts=0,
                )
                db.add(sub_job)
                sub_jobs.append(sub_job)
            db.flush()

            ahead = (
                db.query(func.count(ResearchJob.id))
                .filter(
                    ResearchJob.status.in_([JobStatus.QUEUED, JobStatus.RUNNING]),
                    ResearchJob.created_at < job.created_at,
                )
                .scalar()
            )
            return _job_record(job, sub_jobs), int(ahead or 0)

    def get_job(self, job_id: UUID) -> JobRecord | None:
        with self._session() as db:
            job = db.query(ResearchJob).filter(ResearchJob.id == job_id).first()
            if not job:
                return None
            return _job_record(job, self._sub_jobs(db, job_id))

    def get_job_status(self, job_id: UUID) -> str | None:
        with self._session() as db:
            status = db.query(ResearchJob.status).filter(ResearchJob.id == job_id).scalar()
            return _value(status) if status is not None else None

    def get_job_output(self, job_id: UUID, output_field: str) -> Any:
        with self._session() as db:
            job = db.query(ResearchJob).filter(ResearchJob.id == job_id).first()
            if not job:
                raise JobNotFoundError(job_id)
            return getattr(job, output_field)

    def queued_rank(self, job_id: UUID, created_at: datetime) -> int:
        """1-indexed position among queued jobs ordered by creation time."""
        with self._session() as db:
            ahead = (
                db.query(func.count(ResearchJob.id))
                .filter(
                    ResearchJob.status == JobStatus.QUEUED,
                    ResearchJob.created_at < created_at,
                    ResearchJob.id != job_id,
                )
                .scalar()
            )
            return int(ahead or 0) + 1

    def claim_next_job(self, exclude: Iterable[UUID] = ()) -> JobRecord | None:
        """
        Pick the job to drive next and mark it running.

        Jobs already ``running`` that nobody in this process owns (left over
        from a crash) come first, then the oldest ``queued`` job. Sub-jobs left
        ``running`` by a crashed attempt are reset to ``pending``.
        """
        excluded = [e for e in exclude if e is not None]
        with self._session() as db:
            job = None
            for status in (JobStatus.RUNNING, JobStatus.QUEUED):
                query = db.query(ResearchJob).filter(ResearchJob.status == status)
                if excluded:
                    query = query.filter(ResearchJob.id.notin_(excluded))
                job = (
                    query.order_by(ResearchJob.created_at)
                    .with_for_update(skip_locked=True)
                    .first()
                )
                if job:
                    break
            if not job:
                return None

            if _value(job.status) == JobStatus.RUNNING.value:
                logger.warning("Resuming orphaned running job", extra={"job_id": str(job.id)})

            job.status = JobStatus.RUNNING
            if job.started_at is None:
                job.started_at = datetime.utcnow()

            sub_jobs = self._sub_jobs(db, job.id)
            for sub_job in sub_jobs:
                if sub_job.status == SubJobStatus.RUNNING:
                    sub_job.status = SubJobStatus.PENDING
                    sub_job.started_at = None
            db.flush()
            return _job_record(job, sub_jobs)

    def cancel_job(self, job_id: UUID) -> list[str]:
        """
        Cancel a queued or running job and its non-terminal sub-jobs.
        Returns the cancelled stages.
        """
        with self._session() as db:
            job = self._lock_job(db, job_id)
            if not job:
                raise JobNotFoundError(job_id)

            status = _value(job.status)
            if status == JobStatus.CANCELLED.value:
                raise InvalidJobStateError("already cancelled", status=status)
            if is_terminal_status(status):
                raise InvalidJobStateError("terminal state", status=status)

            job.status = JobStatus.CANCELLED
            job.current_stage = None
            job.completed_at = datetime.utcnow()

            sub_jobs = self._sub_jobs(db, job_id)
            cancelled = []
            for sub_job in sub_jobs:
                if sub_job.status in _ACTIVE_SUB_JOB_STATUSES:
                    sub_job.status = SubJobStatus.CANCELLED
                    cancelled.append(sub_job.stage)
            self._apply_aggregates(job, sub_jobs)
            return cancelled

    def reset_for_rerun(
        self,
        job_id: UUID,
        stages: Sequence[str],
        output_fields: Mapping[str, str],
    ) -> dict[str, str | None]:
        """
        Reset ``stages`` to pending in place and put the job back in the queue.
        Returns the previous error message per reset stage.
        """
        wanted = set(stages)
        with self._session() as db:
            job = self._lock_job(db, job_id)
            if not job:
                raise JobNotFoundError(job_id)

            status = _value(job.status)
            if not is_terminal_status(status):
                raise InvalidJobStateError("job is still in progress", status=status)

            sub_jobs = self._sub_jobs(db, job_id)
            previous_errors: dict[str, str | None] = {}
            for sub_job in sub_jobs:
                if sub_job.stage not in wanted:
                    continue
                previous_errors[sub_job.stage] = sub_job.error_message
                sub_job.status = SubJobStatus.PENDING
                sub_job.output = None
                sub_job.error_message = None
                sub_job.confidence = None
                sub_job.started_at = None
                sub_job.completed_at = None
                sub_job.duration_ms = None
                field = output_fields.get(sub_job.stage)
                if field:
                    setattr(job, field, None)

            job.status = JobStatus.QUEUED
            job.completed_at = None
            job.current_stage = None
            job.error_message = None
            self._apply_aggregates(job, sub_jobs)
            return previous_errors

    def mark_job_failed(self, job_id: UUID, message: str) -> None:
        with self._session() as db:
            job = self._lock_job(db, job_id)
            if not job or is_terminal_status(job.status):
                return
            job.status = JobStatus.FAILED
            job.error_message = _truncate(message)
            job.current_stage = None
            job.completed_at = datetime.utcnow()
            for sub_job in self._sub_jobs(db, job_id):
                if sub_job.status in _ACTIVE_SUB_JOB_STATUSES:
                    sub_job.status = SubJobStatus.CANCELLED

    def recover_stale_jobs(self) -> list[UUID]:
        """Reset sub-jobs left ``running`` on ``running`` jobs back to ``pending``."""
        with self._session() as db:
            jobs = db.query(ResearchJob).filter(ResearchJob.status == JobStatus.RUNNING).all()
            recovered = []
            for job in jobs:
                for sub_job in self._sub_jobs(db, job.id):
                    if sub_job.status == SubJobStatus.RUNNING:
                        sub_job.status = SubJobStatus.PENDING
                        sub_job.started_at = None
                job.current_stage = None
                recovered.append(job.id)
            return recovered

    # ------------------------------------------------------------------
    # Sub-jobs (compare-and-swap on job status)
    # ------------------------------------------------------------------

    def _running_job_and_sub_job(
        self,
        db: Session,
        job_id: UUID,
        stage: str,
        expected: SubJobStatus,
        attempt: int | None = None,
    ) -> tuple[ResearchJob, list[ResearchSubJob], ResearchSubJob] | None:
        job = self._lock_job(db, job_id)
        if not job or job.status != JobStatus.RUNNING:
            return None
        sub_jobs = self._sub_jobs(db, job_id)
        sub_job = next((s for s in sub_jobs if s.stage == stage), None)
        if sub_job is None or sub_job.status != expected:
            return None
        # A rerun may have started a newer attempt of the same stage
        if attempt is not None and sub_job.attempts != attempt:
            return None
        return job, sub_jobs, sub_job

    def mark_sub_job_running(self, job_id: UUID, stage: str) -> int | None:
        """Start a new attempt of ``stage``. Returns its attempt number, or None."""
        with self._session() as db:
            found = self._running_job_and_sub_job(db, job_id, stage, SubJobStatus.PENDING)
            if not found:
                return None
            job, _, sub_job = found
            sub_job.status = SubJobStatus.RUNNING
            sub_job.attempts = (sub_job.attempts or 0) + 1
            sub_job.started_at = datetime.utcnow()
            job.current_stage = stage
            return sub_job.attempts

    def complete_sub_job(
        self,
        job_id: UUID,
        stage: str,
        output: Any,
        confidence: str | None,
        output_field: str | None,
        duration_ms: int | None = None,
        attempt: int | None = None,
    ) -> bool:
        """
        Store a stage result. No-op (returns False) if the job left ``running``
        or ``attempt`` is no longer the current attempt of the stage.
        """
        with self._session() as db:
            found = self._running_job_and_sub_job(
                db, job_id, stage, SubJobStatus.RUNNING, attempt
            )
            if not found:
                return False
            job, sub_jobs, sub_job = found
            sub_job.status = SubJobStatus.COMPLETED
            sub_job.output = output
            sub_job.confidence = confidence
            sub_job.error_message = None
            sub_job.completed_at = datetime.utcnow()
            sub_job.duration_ms = duration_ms
            if output_field:
                setattr(job, output_field, output)
            self._apply_aggregates(job, sub_jobs)
            return True

    def fail_sub_job(
        self,
        job_id: UUID,
        stage: str,
        error_message: str,
        graph: Mapping[str, Sequence[str]],
        duration_ms: int | None = None,
        attempt: int | None = None,
    ) -> list[str] | None:
        """
        Mark a stage failed and cancel every stage it blocks, atomically.
        Returns the blocked stages, or None when the job left ``running`` or
        ``attempt`` was superseded.
        """
        with self._session() as db:
            found = self._running_job_and_sub_job(
                db, job_id, stage, SubJobStatus.RUNNING, attempt
            )
            if not found:
                return None
            job, sub_jobs, sub_job = found
            sub_job.status = SubJobStatus.FAILED
            sub_job.error_message = _truncate(error_message)
            sub_job.completed_at = datetime.utcnow()
            sub_job.duration_ms = duration_ms

            blocked = collect_blocked_stages([stage], sub_jobs, graph)
            for other in sub_jobs:
                if other.stage in blocked:
                    other.status = SubJobStatus.CANCELLED
                    other.error_message = None
            self._apply_aggregates(job, sub_jobs)
            return blocked

    def cancel_blocked_sub_jobs(self, job_id: UUID, stages: Sequence[str]) -> list[str]:
        """Cancel pending stages whose prerequisites can no longer complete."""
        wanted = set(stages)
        with self._session() as db:
            job = self._lock_job(db, job_id)
            if not job or job.status != JobStatus.RUNNING:
                return []
            sub_jobs = self._sub_jobs(db, job_id)
            cancelled = []
            for sub_job in sub_jobs:
                if sub_job.stage in wanted and sub_job.status in _ACTIVE_SUB_JOB_STATUSES:
                    sub_job.status = SubJobStatus.CANCELLED
                    sub_job.error_message = None
                    cancelled.append(sub_job.stage)
            self._apply_aggregates(job, sub_jobs)
            return cancelled

    def finalize_job(self, job_id: UUID) -> JobRecord | None:
        """
        Settle a job after its stage loop: recompute status from the sub-jobs
        and cancel anything still pending on a running job.
        """
        with self._session() as db:
            job = self._lock_job(db, job_id)
            if not job:
                return None
            sub_jobs = self._sub_jobs(db, job_id)
            if job.status == JobStatus.RUNNING:
                for sub_job in sub_jobs:
                    if sub_job.status in _ACTIVE_SUB_JOB_STATUSES:
                        logger.warning(
                            "Cancelling stage that never became ready",
                            extra={"job_id": str(job_id), "stage": sub_job.stage},
                        )
                        sub_job.status = SubJobStatus.CANCELLED
            self._apply_aggregates(job, sub_jobs)
            return _job_record(job, sub_jobs)
