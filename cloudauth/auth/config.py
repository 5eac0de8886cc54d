"""Caller-supplied configuration for one provider's OAuth flow."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import quote


UrlGenerator = Callable[[str], str]


@dataclass(frozen=True)
class OAuthConfig:
    """How to run the authentication flow for a provider.

    Attributes
    ----------
    provider_id : str
        Identifier of the provider type (e.g. ``"google_drive"``).
    auth_url : Callable[[str], str]
        Builds the authorization URL for a state. Must be deterministic and
        embed the state so it round-trips.
    token_url : Callable[[str], str]
        Builds the token retrieval URL polled when the redirect carries no
        token.
    redirect_scheme : str
        The redirect target the user agent watches for
        (``myapp://oauth`` or ``http://127.0.0.1:8765/callback``).
    refresh_url : str or None
        Endpoint for ``grant_type=refresh_token`` requests.
    client_id : str or None
        Client ID sent with refresh requests, when the endpoint needs it.
    userinfo_url : str or None
        Endpoint returning the signed-in user's profile.
    required_scopes : frozenset[str]
        Scopes the account must have been granted to be fully usable.
    configuration_id : str or None
        Identifier of the configuration entry this came from.
    """

    provider_id: str
    auth_url: UrlGenerator
    token_url: UrlGenerator
    redirect_scheme: str
    refresh_url: str | None = None
    client_id: str | None = None
    userinfo_url: str | None = None
    required_scopes: frozenset[str] = field(default_factory=frozenset)
    configuration_id: str | None = None

    def __post_init__(self) -> None:
        """Validate required fields."""
        if not self.provider_id:
            msg = "provider_id is required"
            raise ValueError(msg)
        if not self.redirect_scheme.strip():
            msg = "redirect_scheme is required"
            raise ValueError(msg)

    @property
    def callback_scheme(self) -> str:
        """The URL scheme part of ``redirect_scheme`` (before ``://``)."""
        return self.redirect_scheme.split("://", 1)[0]

    def missing_scopes(self, granted: str) -> frozenset[str]:
        """Return the required scopes absent from a granted-scope string.

        An empty ``granted`` string means the server did not report scopes,
        which is not treated as missing anything.
        """
        if not granted.strip() or not self.required_scopes:
            return frozenset()
        return self.required_scopes - frozenset(granted.split())

    @classmethod
    def for_server(
        cls,
        provider_id: str,
        base_url: str,
        redirect_scheme: str,
        client_id: str | None = None,
        userinfo_url: str | None = None,
        required_scopes: frozenset[str] | None = None,
        configuration_id: str | None = None,
    ) -> OAuthConfig:
        """Build a config that talks to an OAuth broker server.

        The broker serves ``/auth/<provider>?state=...`` to start the flow,
        ``/auth/tokens/<state>`` to hand over tokens, and ``/auth/refresh``.
        """
        base = base_url.rstrip("/")
        provider_path = quote(provider_id, safe="")
        return cls(
            provider_id=provider_id,
            auth_url=lambda state: f"{base}/auth/{provider_path}?state={quote(state, safe='')}",
            token_url=lambda state: f"{base}/auth/tokens/{quote(state, safe='')}",
            redirect_scheme=redirect_scheme,
            refresh_url=f"{base}/auth/refresh",
            client_id=client_id,
            userinfo_url=userinfo_url,
            required_scopes=required_scopes or frozenset(),
            configuration_id=configuration_id,
        )
