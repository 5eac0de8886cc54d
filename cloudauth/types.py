"""Type definitions for cloudauth.

Shared records passed between the flow orchestrator, the token stores and
the account lifecycle controller.
"""

from __future__ import annotations

import time

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

from .exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    AuthorizationDenied,
    InvalidServerResponse,
    NetworkFailure,
    StateMismatchError,
)


ProviderId = str
UserId = str
ExtraValue = Union[str, int, float, bool, None]

#: Maximum number of entries kept in a credential's ``extra`` map.
MAX_EXTRA_FIELDS = 32

#: Token response fields that have a named slot and never land in ``extra``.
TOKEN_FIELDS = frozenset(
    {
        "access_token",
        "refresh_token",
        "expires_in",
        "token_type",
        "scope",
        "error",
        "error_description",
        "hid",
    }
)


def bound_extra(
    data: dict[str, Any] | None, exclude: frozenset[str] = TOKEN_FIELDS
) -> dict[str, ExtraValue]:
    """Reduce an open-ended metadata bag to a bounded scalar map.

    Parameters
    ----------
    data : dict or None
        Raw fields returned by a token endpoint or a redirect.
    exclude : frozenset[str]
        Keys that are modelled as named fields and must be dropped.

    Returns
    -------
    dict[str, ExtraValue]
        At most ``MAX_EXTRA_FIELDS`` entries with scalar values.
    """
    result: dict[str, ExtraValue] = {}
    if not data:
        return result
    for key, value in data.items():
        if len(result) >= MAX_EXTRA_FIELDS:
            break
        if not isinstance(key, str) or key in exclude:
            continue
        if value is None or isinstance(value, (str, int, float, bool)):
            result[key] = value
    return result


def parse_expires_in(value: Any, now: float | None = None) -> float | None:
    """Turn an ``expires_in`` value into an absolute unix timestamp.

    Accepts ints and numeric strings; anything else yields ``None``.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    return (time.time() if now is None else now) + seconds


class ConnectionState(str, Enum):
    """Observable health of a provider/account pairing."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TOKEN_EXPIRED = "token_expired"
    NEEDS_REAUTH = "needs_reauth"
    ERROR = "error"

    @property
    def is_connected(self) -> bool:
        """Whether the account can be used for API calls."""
        return self is ConnectionState.CONNECTED

    @property
    def requires_action(self) -> bool:
        """Whether the user has to act to repair the account."""
        return self in (ConnectionState.NEEDS_REAUTH, ConnectionState.ERROR)


class AuthFlowPhase(str, Enum):
    """Phase of a single authentication attempt."""

    IDLE = "idle"
    LAUNCHING = "launching"
    AWAITING_REDIRECT = "awaiting_redirect"
    POLLING = "polling"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        """Whether the flow has finished."""
        return self in (
            AuthFlowPhase.SUCCESS,
            AuthFlowPhase.ERROR,
            AuthFlowPhase.CANCELLED,
            AuthFlowPhase.TIMED_OUT,
        )


class AuthErrorKind(str, Enum):
    """Category of a failed authentication or refresh."""

    USER_CANCELLED = "user_cancelled"
    TIMED_OUT = "timed_out"
    NETWORK_FAILURE = "network_failure"
    INVALID_SERVER_RESPONSE = "invalid_server_response"
    AUTHORIZATION_DENIED = "authorization_denied"
    STATE_MISMATCH = "state_mismatch"


@dataclass(frozen=True)
class AccountKey:
    """Identity of a stored credential.

    Attributes
    ----------
    provider_id : str
        Provider type identifier. Must not contain ``:``.
    user_id : str
        User identifier within the provider.
    """

    provider_id: ProviderId
    user_id: UserId

    def __post_init__(self) -> None:
        """Validate the key components."""
        if not self.provider_id or not self.user_id:
            msg = "provider_id and user_id must be non-empty"
            raise ValueError(msg)
        if ":" in self.provider_id:
            msg = f"provider_id may not contain ':' (got {self.provider_id!r})"
            raise ValueError(msg)

    def __str__(self) -> str:
        """Render as ``provider:user``."""
        return f"{self.provider_id}:{self.user_id}"


@dataclass
class UserProfile:
    """Display profile cached alongside a credential.

    Attributes
    ----------
    name : str or None
        Display name.
    email : str or None
        Email address.
    picture_url : str or None
        Avatar URL.
    updated_at : float
        Unix timestamp when the profile was captured.
    """

    name: str | None = None
    email: str | None = None
    picture_url: str | None = None
    updated_at: float = field(default_factory=time.time)


@dataclass
class AuthResult:
    """Result of an authentication or refresh attempt.

    Attributes
    ----------
    success : bool
        Whether a usable access token was obtained.
    access_token : str or None
        The access token.
    refresh_token : str or None
        The refresh token, if any.
    expires_at : float or None
        Unix timestamp when the access token expires.
    token_type : str
        Token type, typically "Bearer".
    scope : str
        Space-separated granted scopes, when the server reports them.
    error : str or None
        Error code or message on failure.
    error_description : str or None
        Provider-supplied description of the error.
    error_kind : AuthErrorKind or None
        Category of the failure.
    cancelled : bool
        Whether the user cancelled the flow.
    extra : dict[str, ExtraValue]
        Bounded map of additional scalar fields.
    """

    success: bool
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None
    token_type: str = "Bearer"  # noqa: S105
    scope: str = ""
    error: str | None = None
    error_description: str | None = None
    error_kind: AuthErrorKind | None = None
    cancelled: bool = False
    extra: dict[str, ExtraValue] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        access_token: str,
        refresh_token: str | None = None,
        expires_at: float | None = None,
        token_type: str | None = None,
        scope: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> AuthResult:
        """Build a successful result."""
        return cls(
            success=True,
            access_token=access_token,
            refresh_token=refresh_token or None,
            expires_at=expires_at,
            token_type=token_type or "Bearer",
            scope=scope or "",
            extra=bound_extra(extra),
        )

    @classmethod
    def failure(
        cls,
        error: str,
        kind: AuthErrorKind | None = None,
        description: str | None = None,
    ) -> AuthResult:
        """Build a failed result."""
        return cls(success=False, error=error, error_description=description, error_kind=kind)

    @classmethod
    def user_cancelled(cls) -> AuthResult:
        """Build the result of a user-driven cancellation."""
        return cls(
            success=False,
            error="Authentication was cancelled by the user",
            error_kind=AuthErrorKind.USER_CANCELLED,
            cancelled=True,
        )

    @classmethod
    def timeout(cls, seconds: float) -> AuthResult:
        """Build the result of an expired redirect wait."""
        return cls(
            success=False,
            error=f"Authentication timed out after {seconds}s",
            error_kind=AuthErrorKind.TIMED_OUT,
            extra={"timeout_seconds": seconds},
        )

    @property
    def timed_out(self) -> bool:
        """Whether the flow ended because the redirect never arrived."""
        return self.error_kind is AuthErrorKind.TIMED_OUT

    @property
    def message(self) -> str:
        """Best human-readable explanation of a failure."""
        return self.error_description or self.error or ""

    @property
    def granted_scopes(self) -> frozenset[str]:
        """Scopes reported by the server, as a set."""
        return frozenset(self.scope.split())

    def raise_for_error(self, provider: str | None = None) -> None:
        """Raise the exception matching a failed result.

        Does nothing for a successful result.

        Raises
        ------
        AuthenticationError
            A subclass chosen from ``error_kind``.
        NetworkFailure
            For transport and status failures.
        InvalidServerResponse
            For malformed token endpoint responses.
        """
        if self.success:
            return
        message = self.message or "Authentication failed"
        kind = self.error_kind
        if kind is AuthErrorKind.USER_CANCELLED:
            raise AuthFlowCancelled(message, provider=provider)
        if kind is AuthErrorKind.TIMED_OUT:
            raise AuthFlowTimeout(message, timeout=self.timeout_seconds, provider=provider)
        if kind is AuthErrorKind.AUTHORIZATION_DENIED:
            raise AuthorizationDenied(
                message,
                error=self.error or "",
                error_description=self.error_description,
                provider=provider,
            )
        if kind is AuthErrorKind.STATE_MISMATCH:
            raise StateMismatchError(message, provider=provider)
        if kind is AuthErrorKind.NETWORK_FAILURE:
            raise NetworkFailure(message, provider=provider)
        if kind is AuthErrorKind.INVALID_SERVER_RESPONSE:
            raise InvalidServerResponse(message, provider=provider)
        raise AuthenticationError(message, provider=provider)

    @property
    def timeout_seconds(self) -> float:
        """The wait that expired, for timed-out results (0.0 otherwise)."""
        value = self.extra.get("timeout_seconds")
        return float(value) if isinstance(value, (int, float)) else 0.0


@dataclass
class Credential:
    """Persisted credential for one (provider, user) pair.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    refresh_token : str or None
        Optional refresh token.
    expires_at : float or None
        Unix timestamp when the access token expires.
    token_type : str
        Token type, typically "Bearer".
    scope : str
        Space-separated granted scopes.
    extra : dict[str, ExtraValue]
        Bounded map of extra scalar fields from the token endpoint.
    has_permission_issues : bool
        A downstream call failed for lack of scope/authorization.
    needs_reauth : bool
        The credential cannot be refreshed and the user must sign in again.
    profile : UserProfile or None
        Display profile captured at authentication time.
    last_error : str or None
        Message of the last permission or refresh failure.
    created_at : float
        Unix timestamp when the account was first stored.
    updated_at : float
        Unix timestamp of the last modification.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None
    token_type: str = "Bearer"  # noqa: S105
    scope: str = ""
    extra: dict[str, ExtraValue] = field(default_factory=dict)
    has_permission_issues: bool = False
    needs_reauth: bool = False
    profile: UserProfile | None = None
    last_error: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def is_expired(self, skew: float = 0.0) -> bool:
        """Check whether the access token is past (or within ``skew`` of) expiry."""
        if self.expires_at is None:
            return False
        return time.time() + skew >= self.expires_at

    @property
    def requires_action(self) -> bool:
        """Whether the account needs user attention."""
        return self.has_permission_issues or self.needs_reauth

    @classmethod
    def from_auth_result(
        cls, result: AuthResult, profile: UserProfile | None = None
    ) -> Credential:
        """Create a fresh credential from a successful result."""
        if not result.success or not result.access_token:
            msg = "Cannot build a credential from a failed AuthResult"
            raise ValueError(msg)
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_at=result.expires_at,
            token_type=result.token_type,
            scope=result.scope,
            extra=dict(result.extra),
            profile=profile,
        )

    def with_refreshed(self, result: AuthResult) -> Credential:
        """Apply refreshed tokens, keeping flags, profile and metadata."""
        return replace(
            self,
            access_token=result.access_token or self.access_token,
            refresh_token=result.refresh_token or self.refresh_token,
            expires_at=result.expires_at,
            token_type=result.token_type or self.token_type,
            scope=result.scope or self.scope,
            extra={**self.extra, **result.extra} if result.extra else dict(self.extra),
            updated_at=time.time(),
        )

    def with_permission_issue(self, message: str | None) -> Credential:
        """Flag the credential as lacking permissions."""
        return replace(
            self, has_permission_issues=True, last_error=message, updated_at=time.time()
        )

    def with_needs_reauth(self, message: str | None) -> Credential:
        """Flag the credential as requiring a new sign-in."""
        return replace(self, needs_reauth=True, last_error=message, updated_at=time.time())

    def with_profile(self, profile: UserProfile | None) -> Credential:
        """Attach or replace the cached display profile."""
        return replace(self, profile=profile, updated_at=time.time())


@dataclass
class FlowState:
    """Ephemeral bookkeeping for one in-flight authentication attempt.

    Attributes
    ----------
    state : str
        The CSRF state string.
    redirect_scheme : str
        The redirect scheme the user agent watches for.
    created_at : float
        Unix timestamp when the flow started.
    used : bool
        Whether a redirect has already been matched to this flow.
    phase : AuthFlowPhase
        Current phase.
    account : AccountKey or None
        The account being re-authenticated, if any.
    """

    state: str
    redirect_scheme: str
    created_at: float = field(default_factory=time.time)
    used: bool = False
    phase: AuthFlowPhase = AuthFlowPhase.IDLE
    account: AccountKey | None = None


@dataclass
class Account:
    """Enumerable account entry for display collaborators.

    Attributes
    ----------
    provider_id : str
        Provider identifier.
    user_id : str
        User identifier.
    name : str
        Display name (placeholder when unknown).
    email : str
        Email (placeholder when unknown).
    picture_url : str or None
        Avatar URL.
    state : ConnectionState
        Connection state of this account.
    is_active : bool
        Whether this is the provider's active account.
    has_permission_issues : bool
        Stored permission flag.
    needs_reauth : bool
        Stored re-authentication flag.
    """

    provider_id: ProviderId
    user_id: UserId
    name: str
    email: str
    picture_url: str | None = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    is_active: bool = False
    has_permission_issues: bool = False
    needs_reauth: bool = False

    @property
    def requires_action(self) -> bool:
        """Whether the account should be shown with a corrective action."""
        return self.has_permission_issues or self.needs_reauth or self.state.requires_action
