"""Account connection-state lifecycle.

Provides AccountLifecycleController, which owns the ConnectionState of every
(provider, user) pairing. It coordinates the flow orchestrator and the
token store for sign-in, silent refresh, permission problems, account
switching and logout, and notifies listeners on every state change.
"""

# pylint: disable=logging-too-many-args,too-many-public-methods

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time

from typing import TYPE_CHECKING, Any

from ..exceptions import InvalidStateTransition, PermissionInsufficient, TokenRefreshError
from ..types import Account, AccountKey, ConnectionState, Credential
from .token_store import AccountDeletion


if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from ..types import AuthResult
    from .config import OAuthConfig
    from .flow import AuthFlowOrchestrator
    from .token_store import TokenStore

    StateListener = Callable[[str, "str | None", ConnectionState], None]
    RemoveCallback = Callable[[str, str], "Awaitable[None] | None"]


logger = logging.getLogger("cloudauth.auth")

_S = ConnectionState

#: Legal state changes. Anything else is a programming error.
ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    _S.DISCONNECTED: frozenset({_S.CONNECTING}),
    _S.CONNECTING: frozenset(
        {_S.CONNECTED, _S.DISCONNECTED, _S.NEEDS_REAUTH, _S.ERROR, _S.TOKEN_EXPIRED}
    ),
    _S.CONNECTED: frozenset({_S.TOKEN_EXPIRED, _S.ERROR, _S.CONNECTING, _S.DISCONNECTED}),
    _S.TOKEN_EXPIRED: frozenset({_S.CONNECTED, _S.NEEDS_REAUTH, _S.CONNECTING, _S.DISCONNECTED}),
    _S.NEEDS_REAUTH: frozenset({_S.CONNECTING, _S.ERROR, _S.DISCONNECTED}),
    _S.ERROR: frozenset({_S.CONNECTING, _S.DISCONNECTED}),
}

#: Body fragments that mark a failed API call as an authorization problem.
PERMISSION_ERROR_MARKERS = ("insufficient", "permission", "scope", "unauthorized")

UNKNOWN_USER_NAME = "Unknown User"


def _derive_state(credential: Credential) -> ConnectionState:
    """Connection state implied by a stored credential's flags."""
    if credential.needs_reauth:
        return ConnectionState.NEEDS_REAUTH
    if credential.has_permission_issues:
        return ConnectionState.ERROR
    return ConnectionState.CONNECTED


class AccountLifecycleController:
    """Tracks and drives the connection state of provider accounts.

    Parameters
    ----------
    token_store : TokenStore
        Where credentials and active pointers live.
    orchestrator : AuthFlowOrchestrator
        Runs authentication flows and token refreshes.
    refresh_skew : float
        Seconds before expiry at which a token counts as expired (default ``60``).
    """

    def __init__(
        self,
        token_store: TokenStore,
        orchestrator: AuthFlowOrchestrator,
        refresh_skew: float = 60.0,
    ) -> None:
        """Initialize the controller."""
        self.token_store = token_store
        self.orchestrator = orchestrator
        self.refresh_skew = refresh_skew

        self._configs: dict[str, OAuthConfig] = {}
        self._states: dict[AccountKey, ConnectionState] = {}
        self._active: dict[str, str | None] = {}
        self._connecting: dict[str, int] = {}
        self._listeners: list[StateListener] = []
        self._account_locks: dict[AccountKey, asyncio.Lock] = {}
        self._lock_users: dict[AccountKey, int] = {}

    # ── Registration & observation ───────────────────────────────────

    def register(self, config: OAuthConfig) -> None:
        """Register (or replace) the flow configuration of a provider."""
        self._configs[config.provider_id] = config

    def get_config(self, provider_id: str) -> OAuthConfig:
        """Return a registered provider configuration.

        Raises
        ------
        KeyError
            If the provider was never registered.
        """
        try:
            return self._configs[provider_id]
        except KeyError:
            msg = f"Provider {provider_id!r} is not registered"
            raise KeyError(msg) from None

    def add_listener(self, listener: StateListener) -> None:
        """Call ``listener(provider_id, user_id, state)`` on every state change.

        ``user_id`` is None for provider-level changes (a flow starting or
        ending before an account is known).
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        """Stop notifying ``listener``."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, provider_id: str, user_id: str | None, state: ConnectionState) -> None:
        for listener in list(self._listeners):
            try:
                listener(provider_id, user_id, state)
            except Exception:
                logger.exception("Connection state listener failed")

    def _transition(self, key: AccountKey, target: ConnectionState) -> None:
        """Move an account to ``target`` along an allowed edge."""
        current = self._states.get(key, ConnectionState.DISCONNECTED)
        if current is target:
            return
        if target not in ALLOWED_TRANSITIONS[current]:
            msg = f"Illegal connection state change for {key}"
            raise InvalidStateTransition(msg, current=current.value, target=target.value)
        self._set_state(key, target)

    def _set_state(self, key: AccountKey, state: ConnectionState) -> None:
        """Record a state without edge checking (loading from storage)."""
        self._states[key] = state
        logger.debug("Account %s is now %s", key, state.value)
        self._notify(key.provider_id, key.user_id, state)

    # ── Queries ──────────────────────────────────────────────────────

    def connection_state(self, provider_id: str) -> ConnectionState:
        """Provider-level state: its active account's, or connecting during a flow."""
        if self._connecting.get(provider_id):
            return ConnectionState.CONNECTING
        active = self._active.get(provider_id)
        if active is None:
            return ConnectionState.DISCONNECTED
        return self._states.get(AccountKey(provider_id, active), ConnectionState.DISCONNECTED)

    def account_state(self, provider_id: str, user_id: str) -> ConnectionState:
        """State of one account."""
        return self._states.get(AccountKey(provider_id, user_id), ConnectionState.DISCONNECTED)

    async def active_user(self, provider_id: str) -> str | None:
        """The provider's active user id, as persisted."""
        user_id = await self.token_store.get_active_user(provider_id)
        self._active[provider_id] = user_id
        return user_id

    async def list_accounts(self, provider_id: str) -> list[Account]:
        """Every stored account of a provider, for display."""
        tokens = await self.token_store.get_all_tokens(provider_id)
        active = await self.active_user(provider_id)
        accounts = []
        for user_id, credential in tokens.items():
            profile = credential.profile
            key = AccountKey(provider_id, user_id)
            if key not in self._states:
                self._set_state(key, _derive_state(credential))
            accounts.append(
                Account(
                    provider_id=provider_id,
                    user_id=user_id,
                    name=(profile.name if profile and profile.name else UNKNOWN_USER_NAME),
                    email=(profile.email if profile and profile.email else ""),
                    picture_url=profile.picture_url if profile else None,
                    state=self._states[key],
                    is_active=user_id == active,
                    has_permission_issues=credential.has_permission_issues,
                    needs_reauth=credential.needs_reauth,
                )
            )
        return accounts

    # ── Lifecycle operations ─────────────────────────────────────────

    async def initialize(self, provider_id: str) -> ConnectionState:
        """Load a provider's accounts from storage and derive their states.

        If no valid active pointer is stored, the first account that needs
        no user action (or else the first account) becomes active.

        Returns
        -------
        ConnectionState
            The provider-level state after loading.
        """
        tokens = await self.token_store.get_all_tokens(provider_id)
        for user_id, credential in tokens.items():
            self._set_state(AccountKey(provider_id, user_id), _derive_state(credential))

        active = await self.token_store.get_active_user(provider_id)
        if active is None and tokens:
            usable = [uid for uid, cred in tokens.items() if not cred.requires_action]
            active = (usable or list(tokens))[0]
            logger.info("No valid active account for %s, selecting %s", provider_id, active)
            await self.token_store.set_active_user(provider_id, active)

        self._active[provider_id] = active
        state = self.connection_state(provider_id)
        logger.info("Initialized %s with %d account(s): %s", provider_id, len(tokens), state.value)
        return state

    async def authenticate(self, provider_id: str, user_id: str | None = None) -> AuthResult:
        """Sign in a new account or re-authenticate an existing one.

        Parameters
        ----------
        provider_id : str
            A registered provider.
        user_id : str, optional
            The stored account to re-authenticate.

        Returns
        -------
        AuthResult
            The flow's result. On failure nothing is persisted and the
            account returns to its previous state.
        """
        config = self.get_config(provider_id)
        reauth_key = AccountKey(provider_id, user_id) if user_id else None
        previous = self._states.get(reauth_key, ConnectionState.DISCONNECTED) if reauth_key else None

        if reauth_key is not None:
            self._transition(reauth_key, ConnectionState.CONNECTING)
        self._connecting[provider_id] = self._connecting.get(provider_id, 0) + 1
        self._notify(provider_id, None, ConnectionState.CONNECTING)
        try:
            result = await self.orchestrator.authenticate(config, reauth_key)
        finally:
            self._connecting[provider_id] -= 1

        if not result.success:
            logger.info("Authentication for %s did not succeed: %s", provider_id, result.message)
            if reauth_key is not None and previous is not None:
                self._transition(reauth_key, previous)
            self._notify(provider_id, None, self.connection_state(provider_id))
            return result

        resolved_user_id, credential = await self._build_credential(config, result, user_id)
        key = AccountKey(provider_id, resolved_user_id)
        prior = (
            previous
            if key == reauth_key and previous is not None
            else self._states.get(key, ConnectionState.DISCONNECTED)
        )
        self._transition(key, ConnectionState.CONNECTING)

        missing = config.missing_scopes(result.scope)
        target = ConnectionState.CONNECTED
        if missing:
            message = f"Missing required scopes: {', '.join(sorted(missing))}"
            logger.warning("Account %s: %s", key, message)
            credential = credential.with_permission_issue(message).with_needs_reauth(message)
            target = ConnectionState.NEEDS_REAUTH

        try:
            async with self._account_lock(key):
                await self.token_store.store_token(provider_id, resolved_user_id, credential)
                await self.token_store.set_active_user(provider_id, resolved_user_id)
        except Exception:
            self._transition(key, prior)
            raise

        self._active[provider_id] = resolved_user_id
        self._transition(key, target)
        logger.info("Account %s authenticated", key)
        return result

    async def _build_credential(
        self, config: OAuthConfig, result: AuthResult, user_id: str | None
    ) -> tuple[str, Credential]:
        """Resolve the account id and build the credential to persist."""
        profile = None
        profile_user_id = None
        if config.userinfo_url and result.access_token:
            fetched = await self.orchestrator.fetch_profile(result.access_token, config.userinfo_url)
            if fetched is not None:
                profile_user_id, profile = fetched

        extra_user_id = result.extra.get("user_id")
        resolved = (
            user_id
            or profile_user_id
            or (str(extra_user_id) if extra_user_id else None)
            or f"user_{int(time.time() * 1000)}"
        )
        if profile is None:
            stored = await self.token_store.get_token(config.provider_id, resolved)
            if stored is not None:
                profile = stored.profile
        return resolved, Credential.from_auth_result(result, profile)

    async def ensure_fresh(self, provider_id: str, user_id: str | None = None) -> Credential | None:
        """Return a usable credential, refreshing it if it has expired.

        Only connected accounts are refreshed; other accounts' credentials
        are returned unchanged.

        Parameters
        ----------
        provider_id : str
            Provider identifier.
        user_id : str, optional
            The account; defaults to the active account.

        Returns
        -------
        Credential or None
            The (possibly refreshed) credential, or None if there is no
            account or the refresh failed and the user must sign in again.
        """
        user_id = user_id or await self.active_user(provider_id)
        if user_id is None:
            return None
        key = AccountKey(provider_id, user_id)

        async with self._account_lock(key):
            credential = await self.token_store.get_token(provider_id, user_id)
            if credential is None:
                return None
            if self.account_state(provider_id, user_id) is not ConnectionState.CONNECTED:
                return credential
            if not credential.is_expired(self.refresh_skew):
                return credential

            self._transition(key, ConnectionState.TOKEN_EXPIRED)
            config = self._configs.get(provider_id)
            if not credential.refresh_token or config is None or not config.refresh_url:
                cause = TokenRefreshError("No refresh token available", provider=provider_id)
                await self._mark_needs_reauth(key, cause)
                return None

            result = await self.orchestrator.refresh(
                credential.refresh_token, config.refresh_url, config.client_id
            )
            if not result.success:
                cause = TokenRefreshError(
                    f"Token refresh failed: {result.message}", provider=provider_id
                )
                await self._mark_needs_reauth(key, cause)
                return None

            # The stored copy may have changed while the refresh was in flight
            latest = await self.token_store.get_token(provider_id, user_id)
            if latest is None:
                logger.info("Account %s was removed during refresh", key)
                return None
            refreshed = latest.with_refreshed(result)
            await self.token_store.store_token(provider_id, user_id, refreshed)
            self._transition(key, ConnectionState.CONNECTED)
            logger.info("Tokens refreshed for %s", key)
            return refreshed

    async def _mark_needs_reauth(self, key: AccountKey, cause: TokenRefreshError) -> None:
        latest = await self.token_store.get_token(key.provider_id, key.user_id)
        if latest is None:
            logger.info("Account %s was removed during refresh", key)
            return
        logger.warning("Account %s needs re-authentication: %s", key, cause.message)
        await self.token_store.store_token(
            key.provider_id, key.user_id, latest.with_needs_reauth(cause.message)
        )
        self._transition(key, ConnectionState.NEEDS_REAUTH)

    async def report_permission_error(
        self, provider_id: str, user_id: str, cause: BaseException | str | None = None
    ) -> None:
        """Record that a downstream call failed for lack of authorization.

        The credential is kept and flagged; the account moves to ``error``.
        A report arriving during a refresh of the same account is applied
        after the refresh completes.
        """
        if isinstance(cause, BaseException):
            message = getattr(cause, "message", None) or str(cause)
        else:
            message = cause or "Insufficient permissions"

        key = AccountKey(provider_id, user_id)
        async with self._account_lock(key):
            credential = await self.token_store.get_token(provider_id, user_id)
            if credential is None:
                logger.warning(
                    "Permission error reported for unknown account %s:%s", provider_id, user_id
                )
                return
            await self.token_store.store_token(
                provider_id, user_id, credential.with_permission_issue(message)
            )

            current = self._states.get(key)
            if current is None:
                self._set_state(key, ConnectionState.ERROR)
            elif ConnectionState.ERROR in ALLOWED_TRANSITIONS[current]:
                self._transition(key, ConnectionState.ERROR)
            elif current is not ConnectionState.ERROR:
                logger.info("Account %s flagged while %s; state unchanged", key, current.value)
        logger.warning("Account %s has permission issues: %s", key, message)

    @staticmethod
    def is_permission_error(status_code: int | None, body: Any = None) -> bool:
        """Whether an API failure indicates missing authorization."""
        if status_code in (401, 403):
            return True
        text = str(body or "").lower()
        return any(marker in text for marker in PERMISSION_ERROR_MARKERS)

    async def handle_api_error(
        self,
        provider_id: str,
        user_id: str,
        status_code: int | None,
        body: Any = None,
        operation: str | None = None,
    ) -> bool:
        """Route a failed provider API call.

        Returns
        -------
        bool
            True if it was an authorization failure and has been reported.
        """
        if not self.is_permission_error(status_code, body):
            return False
        msg = f"{operation or 'API call'} failed: insufficient permissions"
        cause = PermissionInsufficient(
            msg, provider_id=provider_id, user_id=user_id, status_code=status_code
        )
        await self.report_permission_error(provider_id, user_id, cause)
        return True

    async def switch_account(self, provider_id: str, user_id: str) -> bool:
        """Make ``user_id`` the provider's active account.

        Returns
        -------
        bool
            False if no credential is stored for the account.
        """
        credential = await self.token_store.get_token(provider_id, user_id)
        if credential is None:
            logger.warning("Cannot switch to unknown account %s:%s", provider_id, user_id)
            return False

        await self.token_store.set_active_user(provider_id, user_id)
        self._active[provider_id] = user_id
        key = AccountKey(provider_id, user_id)
        if self._states.get(key, ConnectionState.DISCONNECTED) is ConnectionState.DISCONNECTED:
            self._set_state(key, _derive_state(credential))
        self._notify(provider_id, None, self.connection_state(provider_id))
        logger.info("Switched %s to account %s", provider_id, user_id)
        return True

    async def remove_account(
        self,
        provider_id: str,
        user_id: str,
        on_remove: RemoveCallback | None = None,
    ) -> None:
        """Log an account out and delete its credential.

        Parameters
        ----------
        provider_id : str
            Provider identifier.
        user_id : str
            The account to remove.
        on_remove : callable, optional
            ``on_remove(provider_id, user_id)`` run after deletion, sync or async.
        """
        await self.token_store.remove_token(provider_id, user_id)
        self._forget(AccountKey(provider_id, user_id))
        if self._active.get(provider_id) == user_id:
            self._active[provider_id] = None
        logger.info("Removed account %s:%s", provider_id, user_id)

        if on_remove is not None:
            outcome = on_remove(provider_id, user_id)
            if inspect.isawaitable(outcome):
                await outcome

    async def remove_all_accounts(self, provider_id: str) -> int:
        """Delete every account of a provider.

        Returns
        -------
        int
            How many accounts were removed.
        """
        if isinstance(self.token_store, AccountDeletion):
            count = await self.token_store.delete_all_accounts_for_provider(provider_id)
        else:
            user_ids = list(await self.token_store.get_all_tokens(provider_id))
            for user_id in user_ids:
                await self.token_store.remove_token(provider_id, user_id)
            await self.token_store.clear_active_user(provider_id)
            count = len(user_ids)

        for key in [k for k in self._states if k.provider_id == provider_id]:
            self._forget(key)
        self._active[provider_id] = None
        logger.info("Removed %d account(s) of %s", count, provider_id)
        return count

    def _forget(self, key: AccountKey) -> None:
        """Move an account to disconnected and stop tracking it."""
        if key in self._states:
            self._transition(key, ConnectionState.DISCONNECTED)
            del self._states[key]

    @contextlib.asynccontextmanager
    async def _account_lock(self, key: AccountKey) -> AsyncIterator[None]:
        """Serialize credential read-modify-write cycles of one account."""
        lock = self._account_locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._account_locks[key]
