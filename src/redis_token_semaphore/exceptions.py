"""Exceptions for redis-token-semaphore."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class SemaphoreConfigError(SemaphoreError, ValueError):
    """Raised when a semaphore is configured with an invalid option.

    Subclasses ValueError so callers validating input the usual way still
    catch it.
    """

    def __init__(self, option: str, value: object, reason: str) -> None:
        self.option = option
        self.value = value
        super().__init__(f"Invalid semaphore option {option}={value!r}: {reason}")


class SemaphoreAcquireError(SemaphoreError):
    """Raised by ``with semaphore:`` when no token could be acquired."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Semaphore '{key}' could not acquire a token")
