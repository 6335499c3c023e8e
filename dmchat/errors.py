"""
Error kinds and the operation result type for the chat service.

Store functions raise a ChatError subclass; the chat handler converts every
failure into an Err result so that no ChatError crosses the request boundary.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ChatError(Exception):
    """Base class for chat failures. Carries the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    """Malformed or missing input, detected before any store access."""

    status_code = 400


class NotFoundError(ChatError):
    """A referenced chat, message or identity does not exist."""

    status_code = 404


class PersistenceError(ChatError):
    """A store operation failed or returned an unexpected shape."""

    status_code = 500


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: ChatError

    @property
    def status_code(self) -> int:
        return self.error.status_code


Result = Union[Ok[T], Err]
