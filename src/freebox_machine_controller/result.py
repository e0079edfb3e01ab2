"""Outcome of a single reconcile invocation."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ReconcileResult:
    """What the driver should do after an invocation.

    ``done()`` waits for the next change, ``requeue(after)`` schedules a retry,
    ``failed(error)`` hands the error to the driver's backoff.
    """

    requeue_after: float | None = None
    error: Exception | None = None

    @classmethod
    def done(cls) -> "ReconcileResult":
        return cls()

    @classmethod
    def requeue(cls, after: float) -> "ReconcileResult":
        return cls(requeue_after=after)

    @classmethod
    def failed(cls, error: Exception) -> "ReconcileResult":
        return cls(error=error)

    @property
    def is_done(self) -> bool:
        return self.requeue_after is None and self.error is None

    @property
    def is_failed(self) -> bool:
        return self.error is not None

    def describe(self) -> str:
        """Human-readable summary for logs and the CLI."""
        if self.error is not None:
            return f"failed: {self.error}"
        if self.requeue_after is not None:
            return f"requeue after {self.requeue_after:g}s"
        return "done"
