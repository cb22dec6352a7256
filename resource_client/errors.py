"""Errors raised by the resource client."""

from __future__ import annotations


class ResourceClientError(Exception):
    """Base class for resource client failures."""


class ProviderCallError(ResourceClientError):
    """A provider API call failed (after retries, if the error was retryable)."""

    def __init__(self, operation: str, attempts: int, cause: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{operation} failed after {attempts} attempt(s): {cause}")


class ConvergenceError(ResourceClientError):
    """An instance could not reach the requested state."""

    def __init__(self, instance_id: str, target_state: str, message: str):
        self.instance_id = instance_id
        self.target_state = target_state
        super().__init__(message)


class ConvergenceTimeout(ConvergenceError):
    """An instance did not reach the requested state within the time budget."""

    def __init__(self, instance_id: str, target_state: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            instance_id,
            target_state,
            f"Instance {instance_id} did not reach {target_state} state "
            f"within {timeout_seconds:g} seconds",
        )
