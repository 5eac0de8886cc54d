"""cloudauth exception hierarchy.

All cloudauth-specific exceptions inherit from CloudAuthException, enabling
catch-all handling while supporting specific error types.

The authentication entry points never let these escape: the flow
orchestrator converts them into an ``AuthResult``. They are raised by the
pluggable collaborators (user agents, token stores) and by programming
errors such as an illegal connection-state transition.
"""

from __future__ import annotations

from typing import Any


class CloudAuthException(Exception):
    """Base exception for all cloudauth errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize cloudauth exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, user_id, flow_id, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class AuthenticationError(CloudAuthException):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    OAuth2 flows, token validation, or token refresh.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The provider identifier (e.g., "google_drive", "dropbox").
        flow_id : str, optional
            The CSRF state of the auth flow that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class AuthFlowCancelled(AuthenticationError):
    """Authentication flow was cancelled by the user.

    Raised by a user agent when the platform reports that the user closed
    the browser/web view or explicitly aborted the login.
    """


class AuthFlowTimeout(AuthenticationError):
    """Authentication flow timed out.

    Raised when the bounded wait for the redirect callback expires.
    """

    def __init__(
        self,
        message: str,
        timeout: float,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        provider : str, optional
            The provider identifier.
        flow_id : str, optional
            The CSRF state of the auth flow.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, timeout=timeout, **context)
        self.timeout = timeout


class AuthorizationDenied(AuthenticationError):
    """The provider returned an ``error`` / ``error_description`` pair."""

    def __init__(
        self,
        message: str,
        error: str,
        error_description: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authorization denied error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        error : str
            The OAuth2 error code (e.g. ``access_denied``).
        error_description : str, optional
            The provider's description of the error.
        **context : Any
            Additional context.
        """
        super().__init__(message, error=error, **context)
        self.error = error
        self.error_description = error_description


class StateMismatchError(AuthenticationError):
    """The redirect carried a state that does not belong to the flow."""


class TokenError(AuthenticationError):
    """Base exception for token-related failures."""


class TokenRefreshError(TokenError):
    """Token refresh failed.

    Raised when attempting to refresh an expired access token
    using a refresh token fails.
    """


class NetworkFailure(CloudAuthException):
    """An HTTP request failed at the transport or status level."""

    def __init__(self, message: str, status_code: int | None = None, **context: Any) -> None:
        """Initialize network failure.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status_code : int, optional
            The HTTP status code, if a response was received.
        **context : Any
            Additional context.
        """
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class InvalidServerResponse(CloudAuthException):
    """A token endpoint returned malformed JSON or lacked a required field."""


class PermissionInsufficient(CloudAuthException):
    """A downstream provider API call failed for lack of authorization.

    This is detected after the fact by the provider API layer and handed to
    ``AccountLifecycleController.report_permission_error`` as the cause.
    """

    def __init__(
        self,
        message: str,
        provider_id: str | None = None,
        user_id: str | None = None,
        status_code: int | None = None,
        **context: Any,
    ) -> None:
        """Initialize permission error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider_id : str, optional
            The provider the failing call was made against.
        user_id : str, optional
            The account whose credential was used.
        status_code : int, optional
            The HTTP status code of the failing call.
        **context : Any
            Additional context.
        """
        super().__init__(
            message, provider_id=provider_id, user_id=user_id, status_code=status_code, **context
        )
        self.provider_id = provider_id
        self.user_id = user_id
        self.status_code = status_code


class TokenStoreError(CloudAuthException):
    """Token persistence operation failed."""


class CorruptedPersistedData(TokenStoreError):
    """A persisted record could not be decoded.

    Token stores catch this themselves, discard the record and report it as
    absent.
    """

    def __init__(self, message: str, key: str | None = None, **context: Any) -> None:
        """Initialize corrupted data error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        key : str, optional
            The storage key of the unreadable record.
        **context : Any
            Additional context.
        """
        super().__init__(message, key=key, **context)
        self.key = key


class AccountNotFoundError(TokenStoreError):
    """No credential is stored for the requested account."""

    def __init__(self, message: str, provider_id: str, user_id: str, **context: Any) -> None:
        """Initialize account not found error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider_id : str
            The provider identifier.
        user_id : str
            The user identifier.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider_id=provider_id, user_id=user_id, **context)
        self.provider_id = provider_id
        self.user_id = user_id


class InvalidStateTransition(CloudAuthException):
    """A connection-state change that the lifecycle does not allow."""

    def __init__(self, message: str, current: str, target: str, **context: Any) -> None:
        """Initialize transition error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        current : str
            The state the account was in.
        target : str
            The state that was requested.
        **context : Any
            Additional context.
        """
        super().__init__(message, current=current, target=target, **context)
        self.current = current
        self.target = target
