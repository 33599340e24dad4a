from __future__ import annotations


class ResearchError(Exception):
    """Base class for errors raised by the research orchestrator."""


class JobValidationError(ResearchError):
    """Bad caller input (empty company name, unknown section, ...). Never retried."""


class JobNotFoundError(ResearchError):
    def __init__(self, job_id) -> None:
        super().__init__(f"Research job {job_id} not found")
        self.job_id = job_id


class InvalidJobStateError(ResearchError):
    """Operation attempted on a job in a terminal or incompatible state. Nothing is mutated."""

    def __init__(self, message: str, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status


class ProviderError(ResearchError):
    """Failure talking to the LLM provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Rate limits, 5xx and network trouble. Retried by ``with_retry``."""


class FatalProviderError(ProviderError):
    """Auth failures and malformed or unparseable responses. Not retried."""


class CircuitOpenError(ProviderError):
    """The provider's circuit breaker is open; the call was skipped, not attempted."""

    def __init__(self, name: str, remaining_ms: float) -> None:
        super().__init__(f"Circuit {name} is open; retry in {round(remaining_ms / 1000)}s")
        self.name = name
        self.remaining_ms = remaining_ms
