"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio
import logging
import os

from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from cloudauth.auth.config import OAuthConfig
from cloudauth.auth.token_store import reset_token_store
from cloudauth.auth.user_agent import UserAgent
from cloudauth.config import clear_settings
from cloudauth.log import _LoggerHolder


if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path


BROKER = "https://broker.test"


def state_of(url: str) -> str:
    """Extract the ``state`` query parameter of a URL."""
    return parse_qs(urlsplit(url).query)["state"][0]


class FakeUserAgent(UserAgent):
    """Scripted user agent.

    ``redirect`` is either a fixed URL or a callable receiving the
    authorization URL. ``error`` is raised instead when set.
    """

    def __init__(
        self,
        redirect: str | Callable[[str], str] | None = None,
        error: BaseException | None = None,
        delay: float = 0.0,
    ) -> None:
        self.redirect = redirect
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, str, float]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def authorize(self, url: str, callback_scheme: str, timeout: float) -> str:
        self.calls.append((url, callback_scheme, timeout))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if callable(self.redirect):
                return self.redirect(url)
            assert self.redirect is not None
            return self.redirect
        finally:
            self.in_flight -= 1


def echo_code(url: str) -> str:
    """Redirect carrying an authorization code and the request's state."""
    return f"myapp://oauth?code=auth_code&state={state_of(url)}"


class RecordingTransport:
    """httpx handler returning queued responses and recording requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(404)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def client(self) -> httpx.AsyncClient:
        """An AsyncClient routed through this handler."""
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep tests away from the user's config files, tokens and environment."""
    for name in list(os.environ):
        if name.startswith("CLOUDAUTH_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("cloudauth.config._user_config_dir", lambda: tmp_path / "userconfig")
    clear_settings()
    reset_token_store()
    _LoggerHolder.instance = None
    yield
    clear_settings()
    reset_token_store()
    _LoggerHolder.instance = None
    package_logger = logging.getLogger("cloudauth")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture()
def oauth_config() -> OAuthConfig:
    """Broker-style config for a "drive" provider with a custom scheme."""
    return OAuthConfig.for_server(
        "drive",
        BROKER,
        "myapp://oauth",
        client_id="client-1",
        userinfo_url=f"{BROKER}/userinfo",
    )


@pytest.fixture()
def make_agent() -> type[FakeUserAgent]:
    """The scripted user agent class."""
    return FakeUserAgent


@pytest.fixture()
def make_transport() -> Callable[..., RecordingTransport]:
    """Build a recording httpx handler from queued responses."""

    def _make(*responses: Any) -> RecordingTransport:
        return RecordingTransport(*responses)

    return _make


@pytest.fixture()
def code_redirect() -> Callable[[str], str]:
    """Redirect builder echoing the authorization URL's state with a code."""
    return echo_code
