"""
Exception hierarchy for the queue core.
"""


class QueueError(Exception):
    """Base exception for the image queue."""


class FatalJobError(QueueError):
    """
    Raised by a handler when retrying cannot help.

    The job is marked terminally failed regardless of its remaining attempts.
    """


class UnknownJobTypeError(FatalJobError):
    """Raised when a job carries a type no pipeline stage matches."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")


class HandlerRegistryError(QueueError):
    """Raised when the handler registry is misconfigured."""
