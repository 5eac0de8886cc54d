"""OAuth2 authentication system for cloudauth.

Provides the auth flow orchestrator, CSRF state generation, user agents,
pluggable credential storage, and the account connection-state lifecycle.
"""

from __future__ import annotations

from .config import OAuthConfig
from .flow import AuthFlowOrchestrator
from .lifecycle import ALLOWED_TRANSITIONS, AccountLifecycleController
from .state import SecureStateGenerator, SequenceStateGenerator, StateGenerator
from .token_store import (
    AccountDeletion,
    FileTokenStore,
    KeyringTokenStore,
    KeyValueTokenStore,
    MemoryTokenStore,
    RedisTokenStore,
    ReplicatedTokenStore,
    TokenStore,
    create_token_store,
    get_token_store,
    reset_token_store,
)
from .user_agent import LoopbackUserAgent, UserAgent


__all__ = [
    "ALLOWED_TRANSITIONS",
    "AccountDeletion",
    "AccountLifecycleController",
    "AuthFlowOrchestrator",
    "FileTokenStore",
    "KeyValueTokenStore",
    "KeyringTokenStore",
    "LoopbackUserAgent",
    "MemoryTokenStore",
    "OAuthConfig",
    "RedisTokenStore",
    "ReplicatedTokenStore",
    "SecureStateGenerator",
    "SequenceStateGenerator",
    "StateGenerator",
    "TokenStore",
    "UserAgent",
    "create_token_store",
    "get_token_store",
    "reset_token_store",
]
