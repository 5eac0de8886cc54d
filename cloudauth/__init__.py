"""cloudauth - OAuth account connections for cloud storage providers.

This package runs browser-based OAuth2 flows against a token broker,
persists the resulting credentials across pluggable backends, and tracks
the connection state of every provider account.
"""

from .auth import (
    AccountLifecycleController,
    AuthFlowOrchestrator,
    LoopbackUserAgent,
    OAuthConfig,
    ReplicatedTokenStore,
    SecureStateGenerator,
    TokenStore,
    UserAgent,
    create_token_store,
    get_token_store,
)
from .config import CloudAuthSettings, get_settings
from .exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    AuthorizationDenied,
    CloudAuthException,
    CorruptedPersistedData,
    InvalidServerResponse,
    InvalidStateTransition,
    NetworkFailure,
    PermissionInsufficient,
    StateMismatchError,
    TokenError,
    TokenRefreshError,
    TokenStoreError,
)
from .log import enable_debug, get_logger, set_level
from .types import (
    Account,
    AccountKey,
    AuthErrorKind,
    AuthFlowPhase,
    AuthResult,
    ConnectionState,
    Credential,
    FlowState,
    UserProfile,
)


__version__ = "0.1.0"

__all__ = [
    "Account",
    "AccountKey",
    "AccountLifecycleController",
    "AccountNotFoundError",
    "AuthErrorKind",
    "AuthFlowCancelled",
    "AuthFlowOrchestrator",
    "AuthFlowPhase",
    "AuthFlowTimeout",
    "AuthResult",
    "AuthenticationError",
    "AuthorizationDenied",
    "CloudAuthException",
    "CloudAuthSettings",
    "ConnectionState",
    "CorruptedPersistedData",
    "Credential",
    "FlowState",
    "InvalidServerResponse",
    "InvalidStateTransition",
    "LoopbackUserAgent",
    "NetworkFailure",
    "OAuthConfig",
    "PermissionInsufficient",
    "ReplicatedTokenStore",
    "SecureStateGenerator",
    "StateMismatchError",
    "TokenError",
    "TokenRefreshError",
    "TokenStore",
    "TokenStoreError",
    "UserAgent",
    "UserProfile",
    "__version__",
    "create_token_store",
    "enable_debug",
    "get_logger",
    "get_settings",
    "set_level",
]
