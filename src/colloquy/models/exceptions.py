"""
Custom exceptions raised by the conversation-session core.

These errors describe why a session operation failed so the calling layer
can pick user-facing messaging and retry policy while the root cause stays
attached for operators.
"""
from __future__ import annotations

from typing import Optional


class ColloquyError(Exception):
    """
    Base exception for failures that originate in the session core.

    Args:
        message: Human-readable description of the error.
        session_id: Optional session identifier associated with the failure.
        cause: Optional underlying exception that triggered the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.__cause__ = cause


class InvalidOwner(ColloquyError, ValueError):
    """Raised when an owner identifier is missing or blank."""


class EmptyContent(ColloquyError, ValueError):
    """Raised when a message would be committed without textual content."""


class InvalidRole(ColloquyError, ValueError):
    """Raised when a message role is not one of the persisted roles."""


class InvalidTitle(ColloquyError, ValueError):
    """Raised when a session title is blank."""


class InvalidMetadata(ColloquyError, ValueError):
    """Raised when message metadata cannot be stored as JSON."""


class SessionNotFound(ColloquyError):
    """Raised by mutation paths when the target session does not exist."""


class Forbidden(ColloquyError):
    """Raised when the caller does not own the session it is operating on."""


class StoreUnavailable(ColloquyError):
    """Raised when the document store cannot complete a read or write."""


class ProviderUnavailable(ColloquyError):
    """
    Raised when the AI completion provider call cannot be completed.

    Args:
        provider_name: Optional provider identifier associated with the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        provider_name: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, session_id=session_id, cause=cause)
        self.provider_name = provider_name


class ProviderRateLimitError(ProviderUnavailable):
    """
    Raised when the provider signals that the client exceeded a rate limit
    or quota threshold.
    """


class ProviderTimeoutError(ProviderUnavailable):
    """
    Raised when a provider request exceeds the allotted timeout window.
    """


class ProviderConnectionError(ProviderUnavailable):
    """
    Raised when the client cannot reach the provider due to network
    connectivity issues.
    """


class CompletionCancelled(ColloquyError):
    """Raised when the caller abandons a pending completion."""
