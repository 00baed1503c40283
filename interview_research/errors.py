"""Error taxonomy for research jobs.

Only job-level failures reach the client, as a failed status plus message.
Everything below the coordinator is converted to ``None`` or a fallback value.
"""
from typing import Optional


class ResearchError(Exception):
    """Base class for research job errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(ResearchError):
    """Missing credential or capability. Fatal, never retried."""
    pass


class TransientNetworkError(ResearchError):
    """Timeout, connection failure or retryable HTTP status."""

    def __init__(self, message: str, service: Optional[str] = None, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, kwargs)
        self.service = service
        self.status_code = status_code


class MalformedResponseError(ResearchError):
    """Completion output that could not be parsed as the expected structure."""
    pass


class PersistenceError(ResearchError):
    """A store checkpoint failed or timed out."""

    def __init__(self, message: str, checkpoint: Optional[str] = None, **kwargs):
        super().__init__(message, kwargs)
        self.checkpoint = checkpoint


class SynthesisFailure(ResearchError):
    """The synthesis completion call did not produce a result."""
    pass
