from __future__ import annotations

from typing import Optional


class NotifierError(Exception):
    pass


class ConfigurationError(NotifierError):
    pass


class TransientNetworkError(NotifierError):
    pass


class ValidationError(NotifierError):
    def __init__(self, message: str, errors: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class UnknownStatusError(NotifierError):
    def __init__(self, status: str) -> None:
        super().__init__(f"unmapped order status: {status!r}")
        self.status = status


class CircuitOpenError(NotifierError):
    def __init__(self, *, label: str, dependency: str) -> None:
        super().__init__(f"{label}: circuit open for {dependency}")
        self.label = label
        self.dependency = dependency


class RetryExhaustedError(NotifierError):
    def __init__(self, *, label: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


class DispatchQueueError(NotifierError):
    pass


class CycleAlreadyRunningError(NotifierError):
    pass
