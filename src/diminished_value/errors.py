from __future__ import annotations


class DiminishedValueError(Exception):
    """Base class for every modeled failure raised by the valuation core."""


class InvalidInput(DiminishedValueError):
    """Input failed validation. Correctable by the caller, never retried."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class InvalidStatusTransition(InvalidInput):
    pass


class DependencyUnavailable(DiminishedValueError):
    """An external lookup failed or timed out. The caller may retry with backoff."""

    def __init__(self, message: str, dependency: str) -> None:
        super().__init__(message)
        self.message = message
        self.dependency = dependency
