"""External user agents that present the authorization page.

A user agent opens the authorization URL (system browser, embedded web
view, ...) and hands back the redirect URL once the provider sends the
user to the configured redirect target.

``LoopbackUserAgent`` captures the redirect on a localhost HTTP endpoint
served with ``asyncio.start_server``, so waiting for the user is just
another suspension point of the caller's event loop.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import contextlib
import html
import itertools
import logging
import webbrowser

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlsplit

from ..exceptions import AuthFlowCancelled, AuthFlowTimeout


if TYPE_CHECKING:
    from collections.abc import Callable


logger = logging.getLogger("cloudauth.auth")

_SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head><title>Authentication Complete</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
  p { color: #666; }
</style></head>
<body><div class="card">
  <h1>&#x2705; Account connected</h1>
  <p>You can close this window and return to the application.</p>
</div></body></html>"""

_ERROR_HTML = """<!DOCTYPE html>
<html>
<head><title>Authentication Error</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; color: #cc0000; }}
  p {{ color: #666; }}
</style></head>
<body><div class="card">
  <h1>&#x274C; Authentication Failed</h1>
  <p>{error}</p>
</div></body></html>"""

_WAITING_HTML = """<!DOCTYPE html>
<html>
<head><title>Waiting for Authentication</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
</style></head>
<body><div class="card">
  <h1>Waiting for authentication&hellip;</h1>
  <p>Please complete the login in the browser window.</p>
</div></body></html>"""

_REASONS = {200: "OK", 400: "Bad Request", 404: "Not Found"}

_UNMATCHED = "This sign-in response does not match a login in progress. Please try again."


class UserAgent(ABC):
    """Presents an authorization URL and waits for the redirect."""

    @abstractmethod
    async def authorize(self, url: str, callback_scheme: str, timeout: float) -> str:
        """Open ``url`` and wait for the redirect.

        Parameters
        ----------
        url : str
            The authorization URL.
        callback_scheme : str
            The redirect scheme to watch for (e.g. ``myapp`` or ``http``).
        timeout : float
            Maximum seconds to wait.

        Returns
        -------
        str
            The full redirect URL, including its query string.

        Raises
        ------
        AuthFlowCancelled
            If the platform reports that the user cancelled.
        AuthFlowTimeout
            If no redirect arrives within ``timeout``.
        """

    def cancel(self) -> None:  # noqa: B027
        """Abort a pending ``authorize`` call, if the agent supports it."""


class LoopbackUserAgent(UserAgent):
    """Opens the system browser and captures the redirect on localhost.

    Several flows may wait on one listener. Each callback is routed to the
    flow whose ``state`` it carries; with a single flow pending every
    callback goes to it, and with several pending a callback without a
    known ``state`` is refused.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number. Must match the redirect target registered with the
        provider; ``0`` picks a free port (see ``redirect_uri``).
    path : str
        Callback path (default ``"/callback"``).
    open_browser : callable, optional
        Function that opens a URL; defaults to ``webbrowser.open``.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 8765,
        path: str = "/callback",
        open_browser: Callable[[str], object] | None = None,
    ) -> None:
        """Initialize the loopback user agent."""
        self._host = host
        self._port = port
        self._path = path
        self._open_browser = open_browser or webbrowser.open
        self._server: asyncio.AbstractServer | None = None
        self._start_lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future[str]] = {}
        self._anonymous = itertools.count(1)
        self._actual_port = port

    @property
    def redirect_uri(self) -> str:
        """The redirect URI served by this agent."""
        return f"http://{self._host}:{self._actual_port}{self._path}"

    async def start(self) -> str:
        """Start listening for callbacks, if not already listening.

        Returns
        -------
        str
            The redirect URI to register with the provider.
        """
        async with self._start_lock:
            if self._server is None:
                self._server = await asyncio.start_server(self._handle, self._host, self._port)
                self._actual_port = self._server.sockets[0].getsockname()[1]
                logger.debug("OAuth callback listener started on %s", self.redirect_uri)
        return self.redirect_uri

    async def stop(self) -> None:
        """Stop listening and drop every pending wait."""
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        for waiter in self._pending.values():
            if not waiter.done():
                waiter.cancel()
        self._pending.clear()

    async def authorize(self, url: str, callback_scheme: str, timeout: float) -> str:
        """Open the browser at ``url`` and wait for the loopback redirect."""
        if callback_scheme not in ("http", "https"):
            msg = f"Loopback user agent cannot watch for '{callback_scheme}://' redirects"
            raise ValueError(msg)

        state = parse_qs(urlsplit(url).query).get("state", [None])[0]
        key = state or f"#{next(self._anonymous)}"
        if key in self._pending:
            msg = f"A login with state {key!r} is already waiting on this listener"
            raise RuntimeError(msg)
        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[key] = waiter

        try:
            await self.start()
            if not self._open_browser(url):
                logger.info("Open this URL to authenticate: %s", url)
            try:
                return await asyncio.wait_for(asyncio.shield(waiter), timeout=timeout)
            except asyncio.TimeoutError:
                msg = f"No redirect received within {timeout}s"
                raise AuthFlowTimeout(msg, timeout=timeout) from None
        finally:
            if self._pending.get(key) is waiter:
                del self._pending[key]
            if not self._pending:
                await self.stop()

    def cancel(self) -> None:
        """Abort every pending wait with a user cancellation."""
        for waiter in self._pending.values():
            if not waiter.done():
                waiter.set_exception(AuthFlowCancelled("Authentication window closed by user"))

    def _waiter_for(self, state: str | None) -> asyncio.Future[str] | None:
        """Pick the pending flow a callback belongs to."""
        if state is not None and state in self._pending:
            return self._pending[state]
        if len(self._pending) == 1:
            return next(iter(self._pending.values()))
        return None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve one HTTP request on the loopback listener."""
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            # Drain headers; the request body is never needed
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if line in (b"\r\n", b"\n", b""):
                    break

            parts = request_line.decode("latin-1").split()
            if len(parts) < 2 or parts[0] != "GET":
                await self._respond(writer, 400, "")
                return

            target = parts[1]
            parsed = urlsplit(target)
            if parsed.path == self._path:
                params = parse_qs(parsed.query)
                waiter = self._waiter_for(params.get("state", [None])[0])
                if waiter is None:
                    logger.warning(
                        "Refused OAuth callback: no single pending login matches it (%d pending)",
                        len(self._pending),
                    )
                    await self._respond(writer, 400, _ERROR_HTML.format(error=_UNMATCHED))
                    return
                # Only the first callback of a flow is captured
                if not waiter.done():
                    waiter.set_result(f"http://{self._host}:{self._actual_port}{target}")
                error = params.get("error_description", params.get("error", [None]))[0]
                if error:
                    safe_msg = html.escape(str(error), quote=True)
                    await self._respond(writer, 200, _ERROR_HTML.format(error=safe_msg))
                else:
                    await self._respond(writer, 200, _SUCCESS_HTML)
            elif parsed.path == "/":
                await self._respond(writer, 200, _WAITING_HTML)
            else:
                await self._respond(writer, 404, "")
        except (asyncio.TimeoutError, ConnectionError) as exc:
            logger.debug("OAuth callback listener dropped a connection: %s", exc)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    @staticmethod
    async def _respond(writer: asyncio.StreamWriter, status: int, body: str) -> None:
        """Send an HTML response with security headers."""
        encoded = body.encode("utf-8")
        headers = [
            f"HTTP/1.1 {status} {_REASONS.get(status, '')}",
            "Content-Type: text/html; charset=utf-8",
            f"Content-Length: {len(encoded)}",
            "Cache-Control: no-store",
            "Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'",
            "X-Content-Type-Options: nosniff",
            "Connection: close",
        ]
        writer.write(("\r\n".join(headers) + "\r\n\r\n").encode("latin-1") + encoded)
        await writer.drain()
