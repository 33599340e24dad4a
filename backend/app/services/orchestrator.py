from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable
from uuid import UUID
import asyncio
import logging
import time

from celery.signals import worker_ready

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..core.db import SessionLocal, init_db
from ..models.research_job import JobStatus
from ..models.research_sub_job import SubJobStatus
from ..schemas.research import (
    CancelResult,
    JobCreated,
    JobStatusOut,
    RerunResult,
    get_stage_schema,
)
from .aggregation import build_completed_stages, extract_confidence_label, is_terminal_status
from .dependencies import classify_stages, compute_rerun_stages, filter_graph
from .errors import CircuitOpenError, InvalidJobStateError, JobNotFoundError, JobValidationError
from .intent import normalize_job_request
from .llm import ResearchLLMClient
from .prompts import build_stage_prompt
from .repository import JobRecord, ResearchRepository
from .retry import CircuitBreaker, RetryOptions, with_retry
from .stages import (
    STAGE_DEPENDENCIES,
    STAGE_OUTPUT_FIELDS,
    get_report_blueprint,
    get_stage,
    resolve_job_stages,
)
from .tracing import trace_job_step

logger = logging.getLogger(__name__)

QUEUE_TASK_NAME = "app.services.orchestrator.process_research_queue"

Dispatch = Callable[[bool], None]


class ResearchOrchestrator:
    """
    Drives research jobs through their stages, one job at a time.

    Only one drain of the queue is active per orchestrator. ``process_queue``
    is safe to call redundantly: job creation, cancellation and reruns all
    nudge it, and extra calls return immediately while a drain is running.
    """

    def __init__(
        self,
        repository: ResearchRepository,
        llm_client: Any,
        *,
        breaker: CircuitBreaker | None = None,
        retry_options: RetryOptions | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        dispatch: Dispatch | None = None,
    ) -> None:
        self.repository = repository
        self.llm_client = llm_client
        self.breaker = breaker or CircuitBreaker("llm")
        self.retry_options = retry_options or RetryOptions()
        self._sleep = sleep
        self._dispatch = dispatch or self._schedule_in_loop

        self._draining = False
        self._generation = 0
        self._active_job_id: UUID | None = None
        self._background_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create_job(
        self,
        company_name: str | None,
        geography: str | None = None,
        *,
        user_id: str,
        industry: str | None = None,
        focus_areas: Iterable[str] | None = None,
        report_type: str = "GENERIC",
        selected_sections: Iterable[str] | None = None,
        visibility_scope: str = "PRIVATE",
    ) -> JobCreated:
        if not user_id:
            raise JobValidationError("user_id is required")
        normalized = normalize_job_request(company_name, geography, industry, focus_areas)
        stages = resolve_job_stages(report_type, selected_sections)
        graph = filter_graph(STAGE_DEPENDENCIES, stages)

        job, ahead = self.repository.create_job(
            {
                **normalized,
                "report_type": report_type,
                "selected_sections": [s for s in stages if s != "foundation"],
                "user_id": user_id,
                "visibility_scope": visibility_scope,
            },
            stages,
            graph,
        )

        logger.info(
            "Research job created",
            extra={"job_id": str(job.id), "step": "job_created"},
        )
        trace_job_step(
            self.repository.session_factory,
            job.id,
            phase="QUEUE",
            step="job:queued",
            label="Research job queued",
            detail=f"{len(stages)} stages scheduled for {job.company_name}.",
            meta={"stages": stages, "report_type": report_type},
        )

        self._nudge(force=False)
        return JobCreated(job_id=job.id, status=JobStatus.QUEUED, queue_position=ahead + 1)

    async def cancel(self, job_id: UUID) -> CancelResult:
        cancelled = self.repository.cancel_job(job_id)

        logger.info(
            "Research job cancelled",
            extra={"job_id": str(job_id), "step": "cancelled"},
        )
        trace_job_step(
            self.repository.session_factory,
            job_id,
            phase="CANCEL",
            step="job:cancelled",
            label="Research job cancelled",
            detail=f"{len(cancelled)} unfinished stages cancelled.",
            meta={"cancelled_stages": cancelled},
        )

        # Let the next job start without waiting for an in-flight call to return
        self._nudge(force=True)
        return CancelResult(job_id=job_id)

    async def rerun(self, job_id: UUID, stages: Iterable[str]) -> RerunResult:
        requested = [s for s in dict.fromkeys(stages or []) if s]
        if not requested:
            raise JobValidationError("At least one stage must be selected for rerun")

        job = self._require_job(job_id)
        if not is_terminal_status(job.status):
            raise InvalidJobStateError("job is still in progress", status=job.status)

        unknown = [s for s in requested if job.sub_job(s) is None]
        if unknown:
            raise JobValidationError(f"Stages not part of this job: {', '.join(unknown)}")

        graph = filter_graph(STAGE_DEPENDENCIES, job.stages)
        rerun_stages = compute_rerun_stages(requested, job.sub_jobs, graph)
        previous_errors = self.repository.reset_for_rerun(job_id, rerun_stages, STAGE_OUTPUT_FIELDS)

        logger.info(
            "Research job queued for rerun",
            extra={"job_id": str(job_id), "step": "rerun"},
        )
        trace_job_step(
            self.repository.session_factory,
            job_id,
            phase="RERUN",
            step="job:rerun",
            label="Stages queued for rerun",
            detail=f"Rerunning {', '.join(rerun_stages)}.",
            meta={
                "requested": requested,
                "stages": rerun_stages,
                "previous_errors": {k: v for k, v in previous_errors.items() if v},
            },
        )

        self._nudge(force=False)
        return RerunResult(job_id=job_id, stages=rerun_stages)

    async def get_queue_position(self, job_id: UUID) -> int:
        job = self._require_job(job_id)
        return self._queue_position(job)

    async def get_status(self, job_id: UUID) -> JobStatusOut:
        job = self._require_job(job_id)
        blueprint = get_report_blueprint(job.report_type)
        order = [section.id for section in blueprint.sections]

        return JobStatusOut(
            job_id=job.id,
            status=JobStatus(job.status),
            confidence=job.overall_confidence,
            confidence_score=job.overall_confidence_score,
            terminal_progress=job.progress,
            completed_stages=build_completed_stages(job.sub_jobs, order),
            queue_position=None if is_terminal_status(job.status) else self._queue_position(job),
            current_stage=job.current_stage,
        )

    def recover_stale_jobs(self) -> list[UUID]:
        recovered = self.repository.recover_stale_jobs()
        if recovered:
            logger.warning(
                "Recovered %s research jobs left running",
                len(recovered),
                extra={"step": "recover"},
            )
        return recovered

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def wait_idle(self) -> None:
        """Wait for queue drains scheduled by nudges to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def process_queue(self, force: bool = False) -> None:
        """
        Drain the queue one job at a time.

        Returns immediately if a drain is already active, unless ``force`` is
        set and the active job is no longer running (e.g. it was cancelled
        while a stage call is still in flight). A superseded drain stops driving
        its job before the next stage.
        """
        if self._draining:
            if not force:
                return
            if (
                self._active_job_id is not None
                and self.repository.get_job_status(self._active_job_id) == JobStatus.RUNNING.value
            ):
                return

        # No await between the check above and claiming the drain
        self._generation += 1
        generation = self._generation
        self._draining = True

        try:
            while generation == self._generation:
                job = self.repository.claim_next_job(exclude=[self._active_job_id])
                if job is None:
                    break

                self._active_job_id = job.id
                try:
                    await self._execute_job(job, generation)
                except Exception as e:
                    logger.exception(
                        "Research job failed",
                        extra={"job_id": str(job.id), "step": "failed"},
                    )
                    if not self._superseded(generation):
                        self.repository.mark_job_failed(job.id, str(e))
        finally:
            if generation == self._generation:
                self._draining = False
                self._active_job_id = None

    def _nudge(self, force: bool) -> None:
        try:
            self._dispatch(force)
        except Exception:
            # The periodic queue task picks the job up later
            logger.exception("Failed to dispatch research queue", extra={"step": "dispatch"})

    def _schedule_in_loop(self, force: bool) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; queue left for the worker")
            return
        task = loop.create_task(self.process_queue(force=force))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    def _superseded(self, generation: int) -> bool:
        """A newer drain took over; the job may already belong to it."""
        return generation != self._generation

    async def _execute_job(self, job: JobRecord, generation: int) -> None:
        graph = filter_graph(STAGE_DEPENDENCIES, job.stages)

        logger.info(
            "Starting research job",
            extra={"job_id": str(job.id), "step": "start"},
        )
        trace_job_step(
            self.repository.session_factory,
            job.id,
            phase="INIT",
            step="job:started",
            label="Job picked up by the research queue",
            detail=f"Running {len(job.stages)} stages for {job.company_name}.",
        )

        for stage in job.stages:
            if self._superseded(generation):
                logger.info(
                    "Queue drain superseded; leaving job to the new drain",
                    extra={"job_id": str(job.id), "stage": stage},
                )
                return

            current = self.repository.get_job(job.id)
            if current is None or current.status != JobStatus.RUNNING.value:
                logger.info(
                    "Job left running state; stopping",
                    extra={"job_id": str(job.id), "stage": stage},
                )
                break

            sub_job = current.sub_job(stage)
            if sub_job is None or sub_job.status != SubJobStatus.PENDING.value:
                continue

            readiness = classify_stages(current.sub_jobs, graph)
            if stage in readiness.blocked:
                self.repository.cancel_blocked_sub_jobs(job.id, [stage])
                logger.info(
                    "Stage blocked by failed dependency",
                    extra={"job_id": str(job.id), "stage": stage},
                )
                trace_job_step(
                    self.repository.session_factory,
                    job.id,
                    phase="STAGE",
                    step=f"{stage}:blocked",
                    label=f"{get_stage(stage).title} skipped",
                    detail="A required earlier section did not complete.",
                )
                continue
            if stage not in readiness.ready:
                continue

            await self._run_stage(current, stage, graph)

        if self._superseded(generation):
            return

        final = self.repository.finalize_job(job.id)
        if final is None:
            return

        logger.info(
            "Research job finished",
            extra={"job_id": str(job.id), "step": final.status},
        )
        trace_job_step(
            self.repository.session_factory,
            job.id,
            phase="DONE",
            step=f"job:{final.status}",
            label="Research job finished",
            detail=f"Final status: {final.status}.",
            meta={
                "progress": final.progress,
                "confidence": final.overall_confidence,
            },
        )

    async def _run_stage(self, job: JobRecord, stage: str, graph) -> None:
        definition = get_stage(stage)
        attempt = self.repository.mark_sub_job_running(job.id, stage)
        if attempt is None:
            return

        log_extra = {"job_id": str(job.id), "stage": stage}
        logger.info("Stage started", extra=log_extra)
        trace_job_step(
            self.repository.session_factory,
            job.id,
            phase="STAGE",
            step=f"{stage}:start",
            label=f"Generating {definition.title}",
        )

        prompt = build_stage_prompt(definition, job.prompt_context(), job.completed_outputs())
        schema = get_stage_schema(stage)
        started = time.monotonic()

        try:
            output = await self._call_llm(prompt, schema)
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            message = str(e) or e.__class__.__name__
            blocked = self.repository.fail_sub_job(
                job.id, stage, message, graph, duration_ms, attempt=attempt
            )
            if blocked is None:
                logger.info("Discarding failure for cancelled or superseded attempt", extra=log_extra)
                return
            logger.warning("Stage failed: %s", message, extra=log_extra)
            trace_job_step(
                self.repository.session_factory,
                job.id,
                phase="STAGE",
                step=f"{stage}:failed",
                label=f"{definition.title} failed",
                detail=message[:500],
                meta={"blocked_stages": blocked, "error_type": e.__class__.__name__},
            )
            return

        duration_ms = int((time.monotonic() - started) * 1000)
        confidence = extract_confidence_label(output)
        recorded = self.repository.complete_sub_job(
            job.id, stage, output, confidence, definition.output_field, duration_ms,
            attempt=attempt,
        )
        if not recorded:
            logger.info("Discarding result for cancelled or superseded attempt", extra=log_extra)
            return

        logger.info("Stage completed", extra=log_extra)
        trace_job_step(
            self.repository.session_factory,
            job.id,
            phase="STAGE",
            step=f"{stage}:completed",
            label=f"{definition.title} ready",
            meta={"confidence": confidence, "duration_ms": duration_ms},
        )

    async def _call_llm(self, prompt, schema) -> dict[str, Any]:
        async def attempt() -> dict[str, Any]:
            if self.breaker.is_circuit_open():
                raise CircuitOpenError(self.breaker.name, self.breaker.remaining_cooldown_ms())
            try:
                result = await self.llm_client.complete(prompt, schema)
            except Exception as e:
                if self.retry_options.is_retryable(e):
                    self.breaker.record_failure()
                raise
            self.breaker.record_success()
            return result

        return await with_retry(attempt, self.retry_options, sleep=self._sleep)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_job(self, job_id: UUID) -> JobRecord:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _queue_position(self, job: JobRecord) -> int:
        if job.status == JobStatus.RUNNING.value:
            return 0
        if job.status != JobStatus.QUEUED.value:
            raise InvalidJobStateError("terminal state", status=job.status)
        return self.repository.queued_rank(job.id, job.created_at)


# ----------------------------------------------------------------------
# Process-wide wiring
# ----------------------------------------------------------------------

_orchestrator: ResearchOrchestrator | None = None


def dispatch_queue_task(force: bool = False) -> None:
    """Nudge the worker-owned queue from another process (e.g. the API)."""
    celery_app.send_task(QUEUE_TASK_NAME, kwargs={"force": force}, queue="research")


def get_research_orchestrator(dispatch: Dispatch | None = None) -> ResearchOrchestrator:
    """
    Process-wide orchestrator built from settings. The first caller decides
    how nudges are dispatched.
    """
    global _orchestrator
    if _orchestrator is None:
        settings = get_settings()
        init_db()
        _orchestrator = ResearchOrchestrator(
            ResearchRepository(SessionLocal),
            ResearchLLMClient(),
            breaker=CircuitBreaker(
                "llm",
                failure_threshold=settings.LLM_CIRCUIT_FAILURE_THRESHOLD,
                cooldown_ms=settings.LLM_CIRCUIT_COOLDOWN_MS,
            ),
            retry_options=RetryOptions(
                max_retries=settings.LLM_MAX_RETRIES,
                base_delay_ms=settings.LLM_RETRY_BASE_DELAY_MS,
                max_delay_ms=settings.LLM_RETRY_MAX_DELAY_MS,
            ),
            dispatch=dispatch,
        )
    return _orchestrator


@celery_app.task(name=QUEUE_TASK_NAME, bind=True, queue="research")
def process_research_queue(self, force: bool = False):
    orchestrator = get_research_orchestrator()
    asyncio.run(orchestrator.process_queue(force=force))


@worker_ready.connect
def _resume_after_restart(**_: Any) -> None:
    orchestrator = get_research_orchestrator()
    if orchestrator.recover_stale_jobs():
        dispatch_queue_task(force=False)
