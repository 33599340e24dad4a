"""
Derive job-level status, progress and confidence from sub-job outcomes.

Everything here is a pure function of the sub-job list so a job's state can
always be reconstructed from its sub-jobs.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from .dependencies import TERMINAL_SUB_JOB_STATUSES, sub_job_field

TERMINAL_JOB_STATUSES = frozenset({"completed", "completed_with_errors", "failed", "cancelled"})

CONFIDENCE_SCORES: Mapping[str, float] = {"HIGH": 1.0, "MEDIUM": 0.6, "LOW": 0.3}
FAILED_STAGE_SCORE = 0.3
HIGH_THRESHOLD = 0.8
MEDIUM_THRESHOLD = 0.5


@dataclass(frozen=True)
class ConfidenceSummary:
    score: float | None
    label: str | None


def _value(status: Any) -> Any:
    return getattr(status, "value", status)


def is_terminal_status(status: Any) -> bool:
    """True for terminal job statuses."""
    return _value(status) in TERMINAL_JOB_STATUSES


def compute_terminal_progress(sub_jobs: Sequence[Any]) -> float:
    if not sub_jobs:
        return 0.0
    terminal = sum(1 for s in sub_jobs if sub_job_field(s, "status") in TERMINAL_SUB_JOB_STATUSES)
    return terminal / len(sub_jobs)


def compute_final_status(current_status: Any, sub_jobs: Sequence[Any]) -> str:
    status = _value(current_status)

    if status in ("cancelled", "failed"):
        return status

    # Foundation feeds every other stage
    if any(
        sub_job_field(s, "stage") == "foundation" and sub_job_field(s, "status") == "failed"
        for s in sub_jobs
    ):
        return "failed"

    if not all(sub_job_field(s, "status") in TERMINAL_SUB_JOB_STATUSES for s in sub_jobs):
        return status

    if any(sub_job_field(s, "status") == "failed" for s in sub_jobs):
        return "completed_with_errors"

    if any(sub_job_field(s, "status") == "cancelled" for s in sub_jobs):
        return "cancelled"

    return "completed"


def label_for_score(score: float) -> str:
    if score >= HIGH_THRESHOLD:
        return "HIGH"
    if score >= MEDIUM_THRESHOLD:
        return "MEDIUM"
    return "LOW"


def compute_overall_confidence(sub_jobs: Sequence[Any]) -> ConfidenceSummary:
    """
    Average stage confidence over completed stages that reported a label and
    failed stages (which count as LOW). No evidence means no confidence.
    """
    scores: list[float] = []
    for sub_job in sub_jobs:
        status = sub_job_field(sub_job, "status")
        if status == "failed":
            scores.append(FAILED_STAGE_SCORE)
        elif status == "completed":
            label = _value(sub_job_field(sub_job, "confidence"))
            if label in CONFIDENCE_SCORES:
                scores.append(CONFIDENCE_SCORES[label])

    if not scores:
        return ConfidenceSummary(score=None, label=None)

    score = sum(scores) / len(scores)
    return ConfidenceSummary(score=score, label=label_for_score(score))


def extract_confidence_label(output: Any) -> str | None:
    """
    Pull a HIGH/MEDIUM/LOW label out of a stage output, which reports it as
    ``{"confidence": {"level": "HIGH", ...}}`` or ``{"confidence": "HIGH"}``.
    """
    if not isinstance(output, Mapping):
        return None
    confidence = output.get("confidence")
    if isinstance(confidence, Mapping):
        confidence = confidence.get("level")
    if isinstance(confidence, str) and confidence.upper() in CONFIDENCE_SCORES:
        return confidence.upper()
    return None


def build_completed_stages(sub_jobs: Iterable[Any], order: Sequence[str] | None = None) -> list[str]:
    """
    Completed report sections in ``order`` when given, alphabetical otherwise.
    Foundation is internal context and never listed.
    """
    completed = {
        sub_job_field(s, "stage")
        for s in sub_jobs
        if sub_job_field(s, "status") == "completed" and sub_job_field(s, "stage") != "foundation"
    }
    if order:
        return [stage for stage in order if stage in completed]
    return sorted(completed)
