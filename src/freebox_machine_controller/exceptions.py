"""Exception hierarchy for the Freebox machine controller."""

NOT_FOUND_ERROR_CODES = frozenset({"noent", "not_found", "no_such_vm", "invalid_id"})


class ControllerError(Exception):
    """Base class for controller errors."""


class FreeboxAPIError(ControllerError):
    """A Freebox API call failed at the transport or application level."""

    def __init__(
        self,
        operation: str,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        self.operation = operation
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        details = message
        if error_code:
            details = f"{details} (error_code={error_code})"
        if status_code is not None:
            details = f"{details} [HTTP {status_code}]"
        super().__init__(f"{operation}: {details}")

    @property
    def is_not_found(self) -> bool:
        """Check if the appliance reported a missing object."""
        return self.status_code == 404 or self.error_code in NOT_FOUND_ERROR_CODES


class StoreError(ControllerError):
    """A Kubernetes API call failed."""


class ConflictError(StoreError):
    """An optimistic-concurrency write lost against a newer resourceVersion."""


class BootstrapDataError(ControllerError):
    """The bootstrap data secret exists but cannot be used."""


class PhaseDecodeError(ControllerError):
    """The persisted progress marker cannot be decoded."""


class RemoteTaskFailed(ControllerError):
    """A remote task reported a terminal error state."""

    def __init__(self, step: str, reason: str, detail: str = "") -> None:
        self.step = step
        self.reason = reason
        self.detail = detail
        message = f"{step} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
