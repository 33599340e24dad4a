"""
Pure dependency resolution over a stage graph and a job's sub-jobs.

Sub-jobs may be ORM rows or plain mappings; only ``stage`` and ``status`` are read.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

Graph = Mapping[str, Sequence[str]]

TERMINAL_SUB_JOB_STATUSES = frozenset({"completed", "failed", "cancelled"})
BLOCKING_STATUSES = frozenset({"failed", "cancelled"})


def sub_job_field(sub_job: Any, name: str) -> Any:
    if isinstance(sub_job, Mapping):
        value = sub_job.get(name)
    else:
        value = getattr(sub_job, name, None)
    # str-based enums hash by name, not value; normalise for set lookups
    return getattr(value, "value", value)


def stage_statuses(sub_jobs: Iterable[Any]) -> dict[str, str]:
    return {sub_job_field(s, "stage"): sub_job_field(s, "status") for s in sub_jobs}


def filter_graph(graph: Graph, stages: Iterable[str]) -> dict[str, tuple[str, ...]]:
    """Restrict ``graph`` to ``stages``; dependencies outside the set are dropped."""
    present = set(stages)
    return {
        stage: tuple(dep for dep in graph.get(stage, ()) if dep in present)
        for stage in present
    }


def collect_blocked_stages(
    failed_stages: Iterable[str],
    sub_jobs: Sequence[Any],
    graph: Graph,
) -> list[str]:
    """
    Stages that can no longer run because a dependency (directly or
    transitively) failed. Only non-terminal sub-jobs are returned, in sub-job
    order, and the failed stages themselves are never included.
    """
    failed = set(failed_stages)
    blocked: set[str] = set()

    changed = True
    while changed:
        changed = False
        unavailable = failed | blocked
        for sub_job in sub_jobs:
            stage = sub_job_field(sub_job, "stage")
            if stage in unavailable:
                continue
            if sub_job_field(sub_job, "status") in TERMINAL_SUB_JOB_STATUSES:
                continue
            if unavailable.intersection(graph.get(stage, ())):
                blocked.add(stage)
                changed = True

    return [sub_job_field(s, "stage") for s in sub_jobs if sub_job_field(s, "stage") in blocked]


def compute_rerun_stages(
    requested_stages: Iterable[str],
    sub_jobs: Sequence[Any],
    graph: Graph,
) -> list[str]:
    """
    Expand a rerun request with every (transitive) dependency whose sub-job
    is ``failed``. Dependencies that already completed are left alone.
    """
    statuses = stage_statuses(sub_jobs)
    requested = list(dict.fromkeys(requested_stages))
    result = set(requested)
    pending = list(requested)

    while pending:
        stage = pending.pop()
        for dep in graph.get(stage, ()):
            if dep in result:
                continue
            if statuses.get(dep) == "failed":
                result.add(dep)
                pending.append(dep)

    ordered = [sub_job_field(s, "stage") for s in sub_jobs if sub_job_field(s, "stage") in result]
    ordered.extend(s for s in requested if s not in ordered)
    return ordered


@dataclass
class StageReadiness:
    ready: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    waiting: list[str] = field(default_factory=list)


def classify_stages(sub_jobs: Sequence[Any], graph: Graph) -> StageReadiness:
    """
    Split the job's pending stages into ready (every in-job dependency
    completed), blocked (some in-job dependency failed or cancelled) and
    waiting (dependencies still pending or running).
    """
    statuses = stage_statuses(sub_jobs)
    readiness = StageReadiness()

    for sub_job in sub_jobs:
        stage = sub_job_field(sub_job, "stage")
        if statuses[stage] != "pending":
            continue
        dep_statuses = [statuses[d] for d in graph.get(stage, ()) if d in statuses]
        if any(s in BLOCKING_STATUSES for s in dep_statuses):
            readiness.blocked.append(stage)
        elif all(s == "completed" for s in dep_statuses):
            readiness.ready.append(stage)
        else:
            readiness.waiting.append(stage)

    return readiness


def validate_graph(graph: Graph, order: Sequence[str] | None = None) -> None:
    """
    Raise ``ValueError`` if the graph references unknown stages, contains a
    cycle, or (when ``order`` is given) declares a dependency after its
    dependent.
    """
    for stage, deps in graph.items():
        unknown = [d for d in deps if d not in graph]
        if unknown:
            raise ValueError(f"Stage {stage} depends on unknown stages: {unknown}")

    visiting: set[str] = set()
    done: set[str] = set()

    def visit(stage: str, path: tuple[str, ...]) -> None:
        if stage in done:
            return
        if stage in visiting:
            raise ValueError(f"Dependency cycle: {' -> '.join(path + (stage,))}")
        visiting.add(stage)
        for dep in graph[stage]:
            visit(dep, path + (stage,))
        visiting.discard(stage)
        done.add(stage)

    for stage in graph:
        visit(stage, ())

    if order is not None:
        position = {stage: i for i, stage in enumerate(order)}
        for stage, deps in graph.items():
            if stage not in position:
                raise ValueError(f"Stage {stage} missing from declaration order")
            for dep in deps:
                if position[dep] > position[stage]:
                    raise ValueError(f"Stage {stage} is declared before its dependency {dep}")
