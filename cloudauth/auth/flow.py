"""OAuth2 authentication flow orchestrator.

Provides AuthFlowOrchestrator, which drives one authentication attempt
end-to-end: it generates the CSRF state, hands the authorization URL to a
user agent, interprets the redirect and, when the redirect carries no
token, polls the caller's token endpoint.

Every failure is converted into an ``AuthResult``; nothing raised by the
user agent or the HTTP layer crosses the ``authenticate``/``refresh``
boundary. Persistence is left to the caller.
"""

# pylint: disable=logging-too-many-args,too-many-return-statements

from __future__ import annotations

import asyncio
import contextlib
import logging

from collections import deque
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlsplit

import httpx

from ..exceptions import AuthFlowCancelled, AuthFlowTimeout
from ..log import redact_sensitive_data
from ..types import (
    AccountKey,
    AuthErrorKind,
    AuthFlowPhase,
    AuthResult,
    FlowState,
    UserProfile,
    parse_expires_in,
)
from .state import SecureStateGenerator


if TYPE_CHECKING:
    from .config import OAuthConfig
    from .state import StateGenerator
    from .user_agent import UserAgent


logger = logging.getLogger("cloudauth.auth")

#: Attempts at drawing a state that is not already in use.
_STATE_ATTEMPTS = 8


def _short(state: str) -> str:
    """Abbreviate a state for log lines."""
    return f"{state[:6]}..."


def _query_params(url: str) -> dict[str, str]:
    """Extract the query parameters of a redirect URL (first value wins)."""
    params: dict[str, str] = {}
    for key, value in parse_qsl(urlsplit(url).query, keep_blank_values=True):
        params.setdefault(key, value)
    return params


def _str_or_none(value: Any) -> str | None:
    """Return ``value`` if it is a non-empty string."""
    return value if isinstance(value, str) and value else None


def _parse_token_response(
    response: httpx.Response,
    *,
    status_prefix: str,
    invalid_message: str,
    missing_message: str,
) -> AuthResult:
    """Interpret a token endpoint response.

    Parameters
    ----------
    response : httpx.Response
        The HTTP response.
    status_prefix : str
        Message prefix used when the status is not 200.
    invalid_message : str
        Message used when the body is not a JSON object.
    missing_message : str
        Message used when no access token is present.

    Returns
    -------
    AuthResult
        A success carrying the tokens, or a typed failure.
    """
    if response.status_code != 200:
        return AuthResult.failure(
            f"{status_prefix}: {response.status_code} {response.reason_phrase}",
            AuthErrorKind.NETWORK_FAILURE,
        )

    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        return AuthResult.failure(invalid_message, AuthErrorKind.INVALID_SERVER_RESPONSE)

    logger.debug("Token endpoint response: %s", redact_sensitive_data(data))

    if "error" in data:
        error = _str_or_none(data.get("error")) or "Unknown error"
        return AuthResult.failure(
            error,
            AuthErrorKind.AUTHORIZATION_DENIED,
            description=_str_or_none(data.get("error_description")),
        )

    access_token = _str_or_none(data.get("access_token"))
    if access_token is None:
        return AuthResult.failure(missing_message, AuthErrorKind.INVALID_SERVER_RESPONSE)

    return AuthResult.ok(
        access_token=access_token,
        refresh_token=_str_or_none(data.get("refresh_token")),
        expires_at=parse_expires_in(data.get("expires_in")),
        token_type=_str_or_none(data.get("token_type")),
        scope=_str_or_none(data.get("scope")),
        extra=data,
    )


class AuthFlowOrchestrator:
    """Orchestrates OAuth2 authentication flows.

    Flows for different accounts may run concurrently; each owns its own
    CSRF state. Flows for the same account are serialized.

    Parameters
    ----------
    user_agent : UserAgent
        Presents the authorization page and returns the redirect URL.
    state_generator : StateGenerator, optional
        CSRF state source (default ``SecureStateGenerator(32)``).
    auth_timeout : float
        Seconds to wait for the redirect (default ``120``).
    http_timeout : float
        Seconds allowed for each token request (default ``30``).
    http_client : httpx.AsyncClient, optional
        Client used for token requests. One is created lazily when omitted.
    """

    def __init__(
        self,
        user_agent: UserAgent,
        state_generator: StateGenerator | None = None,
        auth_timeout: float = 120.0,
        http_timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the orchestrator."""
        self.user_agent = user_agent
        self.state_generator = state_generator or SecureStateGenerator()
        self.auth_timeout = auth_timeout
        self.http_timeout = http_timeout

        self._http_client = http_client
        self._owns_client = http_client is None
        self._flows: dict[str, FlowState] = {}
        self._waits: dict[str, asyncio.Future[str]] = {}
        self._cancel_requested: set[str] = set()
        self._retired: deque[str] = deque(maxlen=256)
        self._account_locks: dict[AccountKey, asyncio.Lock] = {}
        self._lock_users: dict[AccountKey, int] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.http_timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this orchestrator created it."""
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def active_flows(self) -> list[FlowState]:
        """Snapshot of the flows currently in progress."""
        return list(self._flows.values())

    def get_flow(self, state: str) -> FlowState | None:
        """Look up an in-flight flow by its CSRF state."""
        return self._flows.get(state)

    def cancel(self, state: str | None = None) -> bool:
        """Cancel an in-flight flow.

        The flow terminates with a cancelled ``AuthResult``.

        Parameters
        ----------
        state : str, optional
            The flow to cancel. When omitted, every in-flight flow is cancelled.

        Returns
        -------
        bool
            True if at least one flow was waiting and got cancelled.
        """
        targets = [state] if state is not None else list(self._waits)
        cancelled = False
        for target in targets:
            wait = self._waits.get(target)
            if wait is not None and not wait.done():
                self._cancel_requested.add(target)
                wait.cancel()
                cancelled = True
        return cancelled

    async def authenticate(
        self, config: OAuthConfig, account: AccountKey | None = None
    ) -> AuthResult:
        """Run one authentication flow.

        Parameters
        ----------
        config : OAuthConfig
            The provider's flow configuration.
        account : AccountKey, optional
            The stored account being re-authenticated. Flows for the same
            account wait for each other.

        Returns
        -------
        AuthResult
            Success with tokens, or a typed failure. Never raises.
        """
        if account is None:
            return await self._run_flow(config, None)
        lock = self._account_locks.setdefault(account, asyncio.Lock())
        self._lock_users[account] = self._lock_users.get(account, 0) + 1
        try:
            async with lock:
                return await self._run_flow(config, account)
        finally:
            self._lock_users[account] -= 1
            if not self._lock_users[account]:
                del self._lock_users[account]
                del self._account_locks[account]

    async def _run_flow(self, config: OAuthConfig, account: AccountKey | None) -> AuthResult:
        """Register a flow, drive it to a terminal phase and release it."""
        flow: FlowState | None = None
        try:
            flow = self._register_flow(config, account)
            result = await self._drive(flow, config)
        except asyncio.CancelledError:
            if flow is not None:
                flow.phase = AuthFlowPhase.CANCELLED
            raise
        except Exception as exc:
            logger.exception("Authentication flow for %s failed", config.provider_id)
            if flow is not None:
                flow.phase = AuthFlowPhase.ERROR
            return AuthResult.failure(f"Authentication failed: {exc}", None)
        finally:
            if flow is not None:
                self._release(flow)

        logger.info(
            "Auth flow %s for %s finished: %s",
            _short(flow.state),
            config.provider_id,
            flow.phase.value,
        )
        return result

    def _register_flow(self, config: OAuthConfig, account: AccountKey | None) -> FlowState:
        """Create and register a FlowState with a fresh, unused state."""
        for _ in range(_STATE_ATTEMPTS):
            state = self.state_generator.generate()
            if state and state not in self._flows and state not in self._retired:
                flow = FlowState(state=state, redirect_scheme=config.redirect_scheme, account=account)
                self._flows[state] = flow
                return flow
            logger.warning("Discarding a state that is already in use")
        msg = "Could not generate an unused CSRF state"
        raise RuntimeError(msg)

    def _release(self, flow: FlowState) -> None:
        """Drop every reference to a finished flow."""
        self._flows.pop(flow.state, None)
        self._waits.pop(flow.state, None)
        self._cancel_requested.discard(flow.state)
        self._retired.append(flow.state)

    async def _drive(self, flow: FlowState, config: OAuthConfig) -> AuthResult:
        """Walk a registered flow through its phases."""
        flow.phase = AuthFlowPhase.LAUNCHING
        authorize_url = config.auth_url(flow.state)
        if not authorize_url.strip():
            flow.phase = AuthFlowPhase.ERROR
            return AuthResult.failure("Authorization URL is empty", None)
        if flow.state not in authorize_url:
            flow.phase = AuthFlowPhase.ERROR
            return AuthResult.failure("Authorization URL does not carry the state parameter", None)

        logger.debug(
            "Auth flow %s for %s: waiting for %s:// redirect",
            _short(flow.state),
            config.provider_id,
            config.callback_scheme,
        )
        flow.phase = AuthFlowPhase.AWAITING_REDIRECT
        try:
            redirect_url = await self._await_redirect(flow, config, authorize_url)
        except AuthFlowCancelled:
            flow.phase = AuthFlowPhase.CANCELLED
            return AuthResult.user_cancelled()
        except AuthFlowTimeout:
            flow.phase = AuthFlowPhase.TIMED_OUT
            return AuthResult.timeout(self.auth_timeout)

        flow.used = True
        params = _query_params(redirect_url)
        logger.debug("Redirect parameters: %s", redact_sensitive_data(dict(params)))

        if "error" in params:
            flow.phase = AuthFlowPhase.ERROR
            return AuthResult.failure(
                params["error"] or "Unknown error",
                AuthErrorKind.AUTHORIZATION_DENIED,
                description=params.get("error_description") or None,
            )

        returned_state = params.get("state")
        if returned_state is not None and returned_state != flow.state:
            flow.phase = AuthFlowPhase.ERROR
            return AuthResult.failure(
                "State parameter mismatch (possible CSRF attack)", AuthErrorKind.STATE_MISMATCH
            )

        direct_token = params.get("hid")
        if direct_token:
            flow.phase = AuthFlowPhase.SUCCESS
            return AuthResult.ok(
                access_token=direct_token,
                refresh_token=params.get("refresh_token"),
                expires_at=parse_expires_in(params.get("expires_in")),
                token_type=params.get("token_type"),
                scope=params.get("scope"),
                extra=params,
            )

        flow.phase = AuthFlowPhase.POLLING
        result = await self._poll_tokens(config, flow.state)
        flow.phase = AuthFlowPhase.SUCCESS if result.success else AuthFlowPhase.ERROR
        return result

    async def _await_redirect(self, flow: FlowState, config: OAuthConfig, url: str) -> str:
        """Wait for the user agent, mapping cancellation and timeout."""
        wait = asyncio.ensure_future(
            self.user_agent.authorize(url, config.callback_scheme, self.auth_timeout)
        )
        self._waits[flow.state] = wait
        try:
            return await asyncio.wait_for(wait, timeout=self.auth_timeout)
        except asyncio.TimeoutError:
            msg = f"Authentication timed out after {self.auth_timeout}s"
            raise AuthFlowTimeout(
                msg, timeout=self.auth_timeout, provider=config.provider_id, flow_id=flow.state
            ) from None
        except asyncio.CancelledError:
            if flow.state in self._cancel_requested:
                msg = "Authentication flow was cancelled"
                raise AuthFlowCancelled(
                    msg, provider=config.provider_id, flow_id=flow.state
                ) from None
            raise
        finally:
            if not wait.done():
                wait.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await wait

    async def _poll_tokens(self, config: OAuthConfig, state: str) -> AuthResult:
        """Fetch the tokens the broker stored for ``state``."""
        token_url = config.token_url(state)
        if not token_url.strip():
            return AuthResult.failure("Token URL is empty", None)

        logger.debug("Auth flow %s: polling token endpoint", _short(state))
        client = await self._get_client()
        try:
            response = await client.get(
                token_url,
                headers={"Accept": "application/json"},
                timeout=self.http_timeout,
            )
        except httpx.HTTPError as exc:
            return AuthResult.failure(
                f"Failed to retrieve tokens: {exc}", AuthErrorKind.NETWORK_FAILURE
            )

        return _parse_token_response(
            response,
            status_prefix="Failed to retrieve tokens",
            invalid_message="Invalid response format from token endpoint",
            missing_message="No access token received",
        )

    async def refresh(
        self, refresh_token: str, refresh_url: str, client_id: str | None = None
    ) -> AuthResult:
        """Exchange a refresh token for a new access token.

        Parameters
        ----------
        refresh_token : str
            The refresh token.
        refresh_url : str
            The refresh endpoint.
        client_id : str, optional
            Client ID, for endpoints that require it.

        Returns
        -------
        AuthResult
            The refreshed tokens, or a typed failure. Never raises. When the
            server does not rotate the refresh token, the one sent is kept.
        """
        body = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if client_id:
            body["client_id"] = client_id

        try:
            client = await self._get_client()
            response = await client.post(
                refresh_url,
                data=body,
                headers={"Accept": "application/json"},
                timeout=self.http_timeout,
            )
            result = _parse_token_response(
                response,
                status_prefix="Token refresh failed",
                invalid_message="Invalid response format from refresh endpoint",
                missing_message="No access token received from refresh",
            )
        except httpx.HTTPError as exc:
            logger.warning("Token refresh request failed: %s", exc)
            return AuthResult.failure(f"Token refresh failed: {exc}", AuthErrorKind.NETWORK_FAILURE)
        except Exception as exc:
            logger.exception("Unexpected error during token refresh")
            return AuthResult.failure(f"Token refresh failed: {exc}", None)

        if not result.success:
            logger.warning("Token refresh failed: %s", result.message)
            return result

        if result.refresh_token is None:
            result.refresh_token = refresh_token
        logger.debug("Token refresh succeeded")
        return result

    async def fetch_profile(
        self, access_token: str, userinfo_url: str
    ) -> tuple[str | None, UserProfile] | None:
        """Fetch the signed-in user's id and display profile.

        Best effort: failures are logged and ``None`` is returned.

        Parameters
        ----------
        access_token : str
            A valid access token.
        userinfo_url : str
            The provider's profile endpoint.

        Returns
        -------
        tuple or None
            ``(user_id, profile)``; ``user_id`` is None when the response
            carries no ``id``, ``sub`` or ``email``.
        """
        try:
            client = await self._get_client()
            resp = await client.get(
                userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=10.0,
            )
            resp.raise_for_status()
            info = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to fetch user info: %s", exc)
            return None

        if not isinstance(info, dict):
            logger.warning("User info endpoint returned %s, expected an object", type(info).__name__)
            return None

        user_id = info.get("id") or info.get("sub") or info.get("email")
        profile = UserProfile(
            name=_str_or_none(info.get("name")) or _str_or_none(info.get("display_name")),
            email=_str_or_none(info.get("email")),
            picture_url=_str_or_none(info.get("picture")) or _str_or_none(info.get("avatar_url")),
        )
        return (str(user_id) if user_id else None, profile)
