"""
Engine-internal conditions. None of these reach the caller of an API.
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for engine flow conditions."""


class NoProviderAvailable(DispatchError):
    """Every provider is busy, degraded or inactive; the job stays pending."""


class UnknownCorrelationId(DispatchError):
    """An inbound event names a job this system does not know."""

    def __init__(self, correlation_id: str | None, external_call_id: str | None = None) -> None:
        super().__init__(f"No job for correlation id {correlation_id!r}")
        self.correlation_id = correlation_id
        self.external_call_id = external_call_id


class StaleEvent(DispatchError):
    """An inbound event arrived for a job that is no longer in flight."""

    def __init__(self, job_id: int, status: str) -> None:
        super().__init__(f"Job {job_id} is {status}; event ignored")
        self.job_id = job_id
        self.status = status
