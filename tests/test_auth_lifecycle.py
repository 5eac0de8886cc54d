"""Unit tests for the account connection-state lifecycle."""

# pylint: disable=redefined-outer-name,protected-access

from __future__ import annotations

import asyncio
import logging
import time

from unittest.mock import AsyncMock, MagicMock

import pytest

from cloudauth.auth.config import OAuthConfig
from cloudauth.auth.lifecycle import (
    ALLOWED_TRANSITIONS,
    UNKNOWN_USER_NAME,
    AccountLifecycleController,
)
from cloudauth.auth.token_store import MemoryTokenStore, TokenStore
from cloudauth.exceptions import InvalidStateTransition, PermissionInsufficient
from cloudauth.types import AccountKey, AuthResult, ConnectionState, Credential, UserProfile


BROKER = "https://broker.test"
S = ConnectionState


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def store() -> MemoryTokenStore:
    """Fresh in-memory token store."""
    return MemoryTokenStore()


@pytest.fixture()
def orchestrator() -> MagicMock:
    """Orchestrator double returning a successful sign-in without a profile."""
    mock = MagicMock()
    mock.authenticate = AsyncMock(
        return_value=AuthResult.ok(
            "at_new", "rt_new", expires_at=time.time() + 3600, scope="files.read"
        )
    )
    mock.fetch_profile = AsyncMock(return_value=None)
    mock.refresh = AsyncMock(return_value=AuthResult.ok("at_refreshed", expires_at=time.time() + 3600))
    return mock


@pytest.fixture()
def events() -> list[tuple[str, str | None, ConnectionState]]:
    """Listener call log."""
    return []


@pytest.fixture()
def controller(store, orchestrator, oauth_config, events) -> AccountLifecycleController:
    """Controller with the "drive" provider registered and a recording listener."""
    ctrl = AccountLifecycleController(store, orchestrator)
    ctrl.register(oauth_config)
    ctrl.add_listener(lambda p, u, s: events.append((p, u, s)))
    return ctrl


def seed(store: TokenStore, user_id: str, **fields) -> Credential:
    """Store a credential for ``drive:<user_id>``."""
    values = {
        "access_token": f"at_{user_id}",
        "refresh_token": f"rt_{user_id}",
        "expires_at": time.time() + 3600,
    }
    values.update(fields)
    credential = Credential(**values)
    asyncio.run(store.store_token("drive", user_id, credential))
    return credential


# ── Registration ────────────────────────────────────────────────────


class TestRegistration:
    """Provider registration and listeners."""

    def test_unregistered_provider(self, controller) -> None:
        """get_config raises KeyError for unknown providers."""
        with pytest.raises(KeyError, match="not registered"):
            controller.get_config("dropbox")

    def test_listener_failure_is_logged(self, controller, store, events, caplog) -> None:
        """A raising listener does not stop the others."""

        def broken(*_args):
            msg = "listener bug"
            raise RuntimeError(msg)

        controller._listeners.insert(0, broken)
        seed(store, "alice")

        with caplog.at_level(logging.ERROR, logger="cloudauth.auth"):
            asyncio.run(controller.initialize("drive"))

        assert ("drive", "alice", S.CONNECTED) in events
        assert "listener failed" in caplog.text

    def test_remove_listener(self, controller, store, events) -> None:
        """Removed listeners are no longer called."""
        listener = MagicMock()
        controller.add_listener(listener)
        controller.remove_listener(listener)
        controller.remove_listener(listener)
        seed(store, "alice")
        asyncio.run(controller.initialize("drive"))
        listener.assert_not_called()


# ── Transitions ─────────────────────────────────────────────────────


class TestTransitions:
    """The connection state machine."""

    def test_every_state_can_disconnect_or_reconnect(self) -> None:
        """Logout and a new sign-in are reachable from every non-initial state."""
        for state, targets in ALLOWED_TRANSITIONS.items():
            if state is S.DISCONNECTED:
                assert targets == frozenset({S.CONNECTING})
                continue
            assert S.DISCONNECTED in targets

    def test_illegal_transition_raises(self, controller) -> None:
        """Skipping CONNECTING is rejected."""
        with pytest.raises(InvalidStateTransition) as exc_info:
            controller._transition(AccountKey("drive", "x"), S.CONNECTED)
        assert exc_info.value.current == "disconnected"
        assert exc_info.value.target == "connected"

    def test_same_state_is_noop(self, controller, events) -> None:
        """Re-entering the current state does not notify."""
        controller._transition(AccountKey("drive", "x"), S.DISCONNECTED)
        assert events == []


# ── Initialize / list ───────────────────────────────────────────────


class TestInitialize:
    """Loading persisted accounts."""

    def test_no_accounts(self, controller) -> None:
        """An empty store leaves the provider disconnected."""
        assert asyncio.run(controller.initialize("drive")) is S.DISCONNECTED

    def test_states_derived_from_flags(self, controller, store) -> None:
        """Stored flags map to needs_reauth / error / connected."""
        seed(store, "a", needs_reauth=True)
        seed(store, "b", has_permission_issues=True)
        seed(store, "c")

        asyncio.run(controller.initialize("drive"))

        assert controller.account_state("drive", "a") is S.NEEDS_REAUTH
        assert controller.account_state("drive", "b") is S.ERROR
        assert controller.account_state("drive", "c") is S.CONNECTED

    def test_picks_usable_active_account(self, controller, store) -> None:
        """Without a stored pointer the first healthy account becomes active."""
        seed(store, "a", needs_reauth=True)
        seed(store, "b")

        state = asyncio.run(controller.initialize("drive"))

        assert state is S.CONNECTED
        assert asyncio.run(store.get_active_user("drive")) == "b"

    def test_keeps_stored_active_account(self, controller, store) -> None:
        """A valid stored pointer is respected."""
        seed(store, "a")
        seed(store, "b", has_permission_issues=True)
        asyncio.run(store.set_active_user("drive", "b"))

        state = asyncio.run(controller.initialize("drive"))

        assert state is S.ERROR
        assert asyncio.run(controller.active_user("drive")) == "b"

    def test_list_accounts(self, controller, store) -> None:
        """Accounts carry profile data or placeholders."""
        seed(store, "a", profile=UserProfile(name="Ann", email="ann@example.com"))
        seed(store, "b", needs_reauth=True)
        asyncio.run(store.set_active_user("drive", "a"))

        accounts = {a.user_id: a for a in asyncio.run(controller.list_accounts("drive"))}

        assert accounts["a"].name == "Ann"
        assert accounts["a"].is_active
        assert accounts["b"].name == UNKNOWN_USER_NAME
        assert accounts["b"].email == ""
        assert accounts["b"].state is S.NEEDS_REAUTH
        assert accounts["b"].requires_action


# ── Authenticate ────────────────────────────────────────────────────


class TestAuthenticate:
    """Sign-in and re-authentication."""

    def test_new_account(self, controller, store, orchestrator, events) -> None:
        """Scenario: a successful sign-in stores, activates and connects the account."""
        orchestrator.fetch_profile.return_value = (
            "alice",
            UserProfile(name="Alice", email="alice@example.com"),
        )

        result = asyncio.run(controller.authenticate("drive"))

        assert result.success
        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored is not None
        assert stored.access_token == "at_new"
        assert stored.profile is not None
        assert stored.profile.name == "Alice"
        assert controller.account_state("drive", "alice") is S.CONNECTED
        assert controller.connection_state("drive") is S.CONNECTED
        assert asyncio.run(store.get_active_user("drive")) == "alice"
        assert events == [
            ("drive", None, S.CONNECTING),
            ("drive", "alice", S.CONNECTING),
            ("drive", "alice", S.CONNECTED),
        ]
        orchestrator.fetch_profile.assert_awaited_once_with("at_new", f"{BROKER}/userinfo")
        assert orchestrator.authenticate.await_args.args[1] is None

    def test_user_id_from_token_response(self, controller, store, orchestrator) -> None:
        """Without a profile the token response's user_id names the account."""
        orchestrator.authenticate.return_value = AuthResult.ok("at", extra={"user_id": "u42"})
        asyncio.run(controller.authenticate("drive"))
        assert asyncio.run(store.get_active_user("drive")) == "u42"

    def test_generated_user_id(self, controller, store) -> None:
        """With no identity at all a synthetic id is generated."""
        asyncio.run(controller.authenticate("drive"))
        (user_id,) = asyncio.run(store.get_all_tokens("drive"))
        assert user_id.startswith("user_")

    def test_connecting_while_flow_runs(self, controller, orchestrator) -> None:
        """The provider reports CONNECTING during the flow."""
        seen = []

        async def flow(*_args):
            seen.append(controller.connection_state("drive"))
            return AuthResult.user_cancelled()

        orchestrator.authenticate.side_effect = flow
        asyncio.run(controller.authenticate("drive"))

        assert seen == [S.CONNECTING]
        assert controller.connection_state("drive") is S.DISCONNECTED

    def test_failure_persists_nothing(self, controller, store, orchestrator, events) -> None:
        """Scenario: a cancelled sign-in returns to the previous state."""
        orchestrator.authenticate.return_value = AuthResult.user_cancelled()

        result = asyncio.run(controller.authenticate("drive"))

        assert result.cancelled
        assert asyncio.run(store.get_all_tokens("drive")) == {}
        assert events == [("drive", None, S.CONNECTING), ("drive", None, S.DISCONNECTED)]
        orchestrator.fetch_profile.assert_not_awaited()

    def test_reauth_failure_restores_state(self, controller, store, orchestrator) -> None:
        """A failed re-authentication leaves the account needing reauth."""
        seed(store, "alice", needs_reauth=True)
        asyncio.run(controller.initialize("drive"))
        orchestrator.authenticate.return_value = AuthResult.timeout(120.0)

        asyncio.run(controller.authenticate("drive", "alice"))

        assert controller.account_state("drive", "alice") is S.NEEDS_REAUTH
        assert orchestrator.authenticate.await_args.args[1] == AccountKey("drive", "alice")

    def test_reauth_success_clears_flags(self, controller, store) -> None:
        """Re-authenticating replaces the flagged credential."""
        seed(store, "alice", needs_reauth=True, has_permission_issues=True)
        asyncio.run(controller.initialize("drive"))

        asyncio.run(controller.authenticate("drive", "alice"))

        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored is not None
        assert not stored.requires_action
        assert controller.account_state("drive", "alice") is S.CONNECTED

    def test_reauth_keeps_cached_profile(self, controller, store, orchestrator) -> None:
        """Without a fresh profile the stored display profile is carried over."""
        seed(store, "alice", needs_reauth=True, profile=UserProfile(name="Ana"))
        asyncio.run(controller.initialize("drive"))

        asyncio.run(controller.authenticate("drive", "alice"))

        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored is not None
        assert stored.access_token == "at_new"
        assert stored.profile is not None
        assert stored.profile.name == "Ana"
        orchestrator.fetch_profile.assert_awaited_once()

    def test_reauth_replaces_profile_when_fetched(self, controller, store, orchestrator) -> None:
        """A freshly fetched profile wins over the cached one."""
        seed(store, "alice", needs_reauth=True, profile=UserProfile(name="Ana"))
        asyncio.run(controller.initialize("drive"))
        orchestrator.fetch_profile.return_value = ("alice", UserProfile(name="Ana Lima"))

        asyncio.run(controller.authenticate("drive", "alice"))

        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored is not None
        assert stored.profile is not None
        assert stored.profile.name == "Ana Lima"

    def test_missing_scopes(self, store, orchestrator) -> None:
        """A grant lacking required scopes is stored flagged as needing reauth."""
        config = OAuthConfig.for_server(
            "drive",
            BROKER,
            "myapp://oauth",
            required_scopes=frozenset({"files.read", "files.write"}),
        )
        ctrl = AccountLifecycleController(store, orchestrator)
        ctrl.register(config)
        orchestrator.authenticate.return_value = AuthResult.ok(
            "at", scope="files.read", extra={"user_id": "alice"}
        )

        asyncio.run(ctrl.authenticate("drive"))

        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored is not None
        assert stored.needs_reauth
        assert stored.has_permission_issues
        assert "files.write" in (stored.last_error or "")
        assert ctrl.account_state("drive", "alice") is S.NEEDS_REAUTH

    def test_store_failure_restores_state(self, controller, store, orchestrator) -> None:
        """If persisting fails the account goes back to its prior state."""
        orchestrator.authenticate.return_value = AuthResult.ok("at", extra={"user_id": "alice"})
        store.store_token = AsyncMock(side_effect=OSError("disk full"))

        with pytest.raises(OSError, match="disk full"):
            asyncio.run(controller.authenticate("drive"))

        assert controller.account_state("drive", "alice") is S.DISCONNECTED


# ── Refresh ─────────────────────────────────────────────────────────


class TestEnsureFresh:
    """Silent refresh of expired credentials."""

    @pytest.fixture()
    def expired(self, controller, store) -> Credential:
        """A connected account whose token has expired."""
        credential = seed(store, "alice", expires_at=time.time() - 10)
        asyncio.run(controller.initialize("drive"))
        return credential

    def test_no_account(self, controller) -> None:
        """Nothing to refresh."""
        assert asyncio.run(controller.ensure_fresh("drive")) is None

    def test_valid_token_untouched(self, controller, store, orchestrator) -> None:
        """An unexpired credential is returned as-is."""
        credential = seed(store, "alice")
        asyncio.run(controller.initialize("drive"))

        assert asyncio.run(controller.ensure_fresh("drive")) == credential
        orchestrator.refresh.assert_not_awaited()

    def test_refresh(self, controller, store, orchestrator, events, expired) -> None:
        """Scenario: an expired token is refreshed and the account stays connected."""
        refreshed = asyncio.run(controller.ensure_fresh("drive", "alice"))

        assert refreshed is not None
        assert refreshed.access_token == "at_refreshed"
        assert refreshed.refresh_token == expired.refresh_token
        assert asyncio.run(store.get_token("drive", "alice")) == refreshed
        orchestrator.refresh.assert_awaited_once_with("rt_alice", f"{BROKER}/auth/refresh", "client-1")
        assert events[-2:] == [("drive", "alice", S.TOKEN_EXPIRED), ("drive", "alice", S.CONNECTED)]

    def test_refresh_failure(self, controller, store, orchestrator, expired) -> None:
        """A failed refresh flags the account for re-authentication."""
        orchestrator.refresh.return_value = AuthResult.failure("Token refresh failed: 400 Bad Request")

        assert asyncio.run(controller.ensure_fresh("drive")) is None

        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored is not None
        assert stored.needs_reauth
        assert stored.access_token == expired.access_token
        assert (stored.last_error or "").startswith("Token refresh failed")
        assert controller.account_state("drive", "alice") is S.NEEDS_REAUTH

    def test_no_refresh_token(self, controller, store, orchestrator) -> None:
        """Without a refresh token the account needs a new sign-in."""
        seed(store, "alice", refresh_token=None, expires_at=time.time() - 10)
        asyncio.run(controller.initialize("drive"))

        assert asyncio.run(controller.ensure_fresh("drive")) is None
        assert controller.account_state("drive", "alice") is S.NEEDS_REAUTH
        orchestrator.refresh.assert_not_awaited()

    def test_flagged_account_not_refreshed(self, controller, store, orchestrator) -> None:
        """Only connected accounts are refreshed."""
        credential = seed(store, "alice", has_permission_issues=True, expires_at=time.time() - 10)
        asyncio.run(controller.initialize("drive"))

        assert asyncio.run(controller.ensure_fresh("drive")) == credential
        orchestrator.refresh.assert_not_awaited()

    def test_concurrent_refresh_runs_once(self, controller, orchestrator, expired) -> None:
        """Parallel callers share one refresh."""

        async def run():
            return await asyncio.gather(
                controller.ensure_fresh("drive", "alice"),
                controller.ensure_fresh("drive", "alice"),
            )

        first, second = asyncio.run(run())
        assert first == second
        orchestrator.refresh.assert_awaited_once()
        assert controller._account_locks == {}

    def test_permission_report_during_refresh_is_kept(self, controller, store, orchestrator, expired) -> None:
        """Scenario: a 403 arrives while the token is being refreshed."""

        async def run():
            gate = asyncio.Event()

            async def slow_refresh(*_args):
                await gate.wait()
                return AuthResult.ok("at_refreshed", expires_at=time.time() + 3600)

            orchestrator.refresh.side_effect = slow_refresh
            refreshing = asyncio.create_task(controller.ensure_fresh("drive", "alice"))
            while not orchestrator.refresh.await_count:
                await asyncio.sleep(0)
            reporting = asyncio.create_task(
                controller.report_permission_error("drive", "alice", "403 Forbidden")
            )
            await asyncio.sleep(0)
            gate.set()
            return await refreshing, await reporting

        refreshed, _ = asyncio.run(run())

        assert refreshed is not None
        assert refreshed.access_token == "at_refreshed"
        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored is not None
        assert stored.access_token == "at_refreshed"
        assert stored.has_permission_issues
        assert stored.last_error == "403 Forbidden"
        assert controller.account_state("drive", "alice") is S.ERROR
        assert controller._account_locks == {}

    def test_account_removed_during_refresh(self, controller, store, orchestrator, expired) -> None:
        """A logout during the refresh is not undone by the refreshed write."""

        async def run():
            gate = asyncio.Event()

            async def slow_refresh(*_args):
                await gate.wait()
                return AuthResult.ok("at_refreshed", expires_at=time.time() + 3600)

            orchestrator.refresh.side_effect = slow_refresh
            refreshing = asyncio.create_task(controller.ensure_fresh("drive", "alice"))
            while not orchestrator.refresh.await_count:
                await asyncio.sleep(0)
            await controller.remove_account("drive", "alice")
            gate.set()
            return await refreshing

        assert asyncio.run(run()) is None
        assert asyncio.run(store.get_all_tokens("drive")) == {}
        assert controller.account_state("drive", "alice") is S.DISCONNECTED


# ── Permission errors ───────────────────────────────────────────────


class TestPermissionErrors:
    """Reporting downstream authorization failures."""

    def test_report_moves_to_error(self, controller, store) -> None:
        """Scenario: a 403 on a connected account flags it and moves it to error."""
        seed(store, "alice")
        asyncio.run(controller.initialize("drive"))

        asyncio.run(controller.report_permission_error("drive", "alice", "403 listing files"))

        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored is not None
        assert stored.has_permission_issues
        assert stored.last_error == "403 listing files"
        assert controller.account_state("drive", "alice") is S.ERROR
        assert controller.connection_state("drive") is S.ERROR

    def test_default_message(self, controller, store) -> None:
        """Without a cause a generic message is recorded."""
        seed(store, "alice")
        asyncio.run(controller.report_permission_error("drive", "alice"))
        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored.last_error == "Insufficient permissions"
        assert controller.account_state("drive", "alice") is S.ERROR

    def test_exception_cause(self, controller, store) -> None:
        """Exception causes contribute their message."""
        seed(store, "alice")
        cause = PermissionInsufficient("upload denied", provider_id="drive", status_code=403)
        asyncio.run(controller.report_permission_error("drive", "alice", cause))
        assert asyncio.run(store.get_token("drive", "alice")).last_error == "upload denied"

    def test_unknown_account(self, controller, store, caplog) -> None:
        """Reports for unknown accounts are logged and ignored."""
        with caplog.at_level(logging.WARNING, logger="cloudauth.auth"):
            asyncio.run(controller.report_permission_error("drive", "ghost"))
        assert "unknown account" in caplog.text
        assert asyncio.run(store.get_all_tokens("drive")) == {}

    @pytest.mark.parametrize(
        ("status", "body", "expected"),
        [
            (401, None, True),
            (403, "", True),
            (400, '{"error": "insufficient_scope"}', True),
            (400, "Request had insufficient authentication scopes", True),
            (500, "internal error", False),
            (None, None, False),
        ],
    )
    def test_is_permission_error(self, status, body, expected) -> None:
        """Status codes and body markers identify authorization failures."""
        assert AccountLifecycleController.is_permission_error(status, body) is expected

    def test_handle_api_error(self, controller, store) -> None:
        """handle_api_error reports authorization failures only."""
        seed(store, "alice")

        assert not asyncio.run(controller.handle_api_error("drive", "alice", 500, "boom"))
        assert asyncio.run(
            controller.handle_api_error("drive", "alice", 403, operation="list files")
        )

        stored = asyncio.run(store.get_token("drive", "alice"))
        assert stored.last_error == "list files failed: insufficient permissions"


# ── Switch / remove ─────────────────────────────────────────────────


class TestAccountManagement:
    """Switching and logging out."""

    def test_switch(self, controller, store, events) -> None:
        """switch_account changes the active account and notifies."""
        seed(store, "alice")
        seed(store, "bob", has_permission_issues=True)
        asyncio.run(controller.initialize("drive"))

        assert asyncio.run(controller.switch_account("drive", "bob"))

        assert asyncio.run(store.get_active_user("drive")) == "bob"
        assert controller.connection_state("drive") is S.ERROR
        assert events[-1] == ("drive", None, S.ERROR)

    def test_switch_unknown(self, controller, store) -> None:
        """Switching to a missing account fails without side effects."""
        seed(store, "alice")
        asyncio.run(controller.initialize("drive"))

        assert not asyncio.run(controller.switch_account("drive", "ghost"))
        assert asyncio.run(store.get_active_user("drive")) == "alice"

    def test_remove_account(self, controller, store, events) -> None:
        """Logout deletes the credential and disconnects the account."""
        seed(store, "alice")
        asyncio.run(controller.initialize("drive"))
        on_remove = MagicMock(return_value=None)

        asyncio.run(controller.remove_account("drive", "alice", on_remove=on_remove))

        assert asyncio.run(store.get_token("drive", "alice")) is None
        assert controller.connection_state("drive") is S.DISCONNECTED
        assert events[-1] == ("drive", "alice", S.DISCONNECTED)
        on_remove.assert_called_once_with("drive", "alice")

    def test_remove_account_async_callback(self, controller, store) -> None:
        """Async cleanup callbacks are awaited."""
        seed(store, "alice")
        on_remove = AsyncMock()

        asyncio.run(controller.remove_account("drive", "alice", on_remove=on_remove))

        on_remove.assert_awaited_once_with("drive", "alice")

    def test_remove_all_with_bulk_deletion(self, controller, store) -> None:
        """Stores with bulk deletion are cleared in one call."""
        seed(store, "alice")
        seed(store, "bob")
        asyncio.run(controller.initialize("drive"))

        assert asyncio.run(controller.remove_all_accounts("drive")) == 2

        assert asyncio.run(store.get_all_tokens("drive")) == {}
        assert controller.account_state("drive", "alice") is S.DISCONNECTED
        assert controller.connection_state("drive") is S.DISCONNECTED

    def test_remove_all_without_bulk_deletion(self, orchestrator, oauth_config) -> None:
        """Other stores are cleared account by account."""
        basic = MagicMock(spec=TokenStore)
        basic.get_all_tokens = AsyncMock(
            return_value={"a": Credential(access_token="x"), "b": Credential(access_token="y")}
        )
        basic.remove_token = AsyncMock()
        basic.clear_active_user = AsyncMock()
        ctrl = AccountLifecycleController(basic, orchestrator)
        ctrl.register(oauth_config)

        assert asyncio.run(ctrl.remove_all_accounts("drive")) == 2

        assert basic.remove_token.await_count == 2
        basic.clear_active_user.assert_awaited_once_with("drive")
