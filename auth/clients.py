"""
auth/clients.py -- Read-only registry of OAuth clients.

Clients are configured, not managed: the registry is built once from
Settings.oauth_clients (OAUTH_CLIENTS) and never changes at runtime.

A client is valid for a request only together with one of its registered
redirect URIs. Comparison is exact string match -- no prefix matching, no
normalization -- so a registered "https://a/cb" does not admit
"https://a/cb/../evil".

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.errors import InvalidClient
from auth.models import OAuthClient


class ClientRegistry:
    def __init__(self, clients: Iterable[OAuthClient] = ()) -> None:
        self._clients: dict[str, OAuthClient] = {}
        for client in clients:
            if client.client_id in self._clients:
                raise ValueError(f"Duplicate OAuth client_id: {client.client_id!r}")
            self._clients[client.client_id] = client

    @classmethod
    def from_settings(cls, settings) -> ClientRegistry:
        return cls(
            OAuthClient(
                client_id=c.client_id,
                client_name=c.client_name or c.client_id,
                redirect_uris=list(c.redirect_uris),
                allowed_scopes=frozenset(c.allowed_scopes),
            )
            for c in settings.oauth_clients
        )

    def get(self, client_id: str) -> OAuthClient | None:
        return self._clients.get(client_id)

    def validate(self, client_id: str, redirect_uri: str) -> OAuthClient:
        """Return the client if (client_id, redirect_uri) are registered together."""
        client = self._clients.get(client_id)
        if client is None:
            raise InvalidClient("unknown client_id")
        if redirect_uri not in client.redirect_uris:
            raise InvalidClient("redirect_uri not registered for client")
        return client

    def __len__(self) -> int:
        return len(self._clients)
