from typing import Optional


class EngineError(RuntimeError):
    """An external engine returned a non-success status or unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ContentValidityError(ValueError):
    """Well-formed engine output that lacks the required content."""


class InvalidTransition(RuntimeError):
    def __init__(self, job_id: str, current: Optional[str], target: str):
        super().__init__(f"Job {job_id}: cannot move from {current!r} to {target!r}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobNotFound(LookupError):
    pass


class ConfigurationError(RuntimeError):
    """A required key, template or setting is missing."""


def failure_reason(stage: str, exc: Exception) -> str:
    """User-facing reason stored on the job when ``stage`` fails with ``exc``."""
    if isinstance(exc, ContentValidityError):
        return f"Content validation failed: {exc}"
    return f"{stage} failed: {exc}"
