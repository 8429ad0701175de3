"""Failure taxonomy for the receipt pipeline.

Adapters translate library exceptions into these at the boundary so the
worker can decide, by type alone, what is terminal for a job and what is
swallowed.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for every failure raised by the pipeline."""


class NotFound(PipelineError):
    """Receipt id unknown to the store."""


class Unauthenticated(PipelineError):
    """No authenticated caller."""


class MissingCredential(PipelineError):
    """No extraction-service credential could be resolved."""


class TransferFailure(PipelineError):
    """Image upload or download failed."""


class UpstreamFailure(PipelineError):
    """An external service answered with a non-success response or nothing at all."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DispatchFailure(UpstreamFailure):
    """A worker function could not be invoked."""


class MalformedOutput(PipelineError):
    """JSON recovery was exhausted."""

    def __init__(self, message: str, length: int = 0, context: Optional[str] = None):
        super().__init__(message)
        self.length = length
        self.context = context


class PersistenceFailure(PipelineError):
    """A write to the receipt store failed."""
