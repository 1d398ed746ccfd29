from __future__ import annotations


class GateError(Exception):
    """Base class for errors raised by the integrity gate."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(GateError):
    status_code = 404


class InvalidOperationError(GateError):
    status_code = 422


class ConflictError(GateError):
    """The target record is not in the state the caller expected."""

    status_code = 409


class GateInfrastructureError(GateError):
    """Storage or collaborator failure. Safe to retry; never a policy outcome."""

    status_code = 503

    def __init__(self, message: str = "Export check could not be completed. Please retry.") -> None:
        super().__init__(message)
