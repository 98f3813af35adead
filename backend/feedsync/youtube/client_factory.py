from __future__ import annotations

from pathlib import Path
from typing import Protocol

from backend.feedsync.youtube.client import YouTubeClient


class ClientFactory:
    """Hands out one cached `YouTubeClient` per account, plus an anonymous one."""

    def __init__(
        self,
        *,
        api_key: str | None,
        token_dir: Path,
        client_secret_path: Path,
        request_timeout_seconds: float,
        authorization_timeout_seconds: float = 300.0,
    ) -> None:
        self._api_key = api_key
        self._token_dir = token_dir
        self._client_secret_path = client_secret_path
        self._request_timeout_seconds = request_timeout_seconds
        self._authorization_timeout_seconds = authorization_timeout_seconds
        self._clients: dict[str | None, YouTubeClient] = {}

    def get_client_for_user(self, account_id: str) -> YouTubeClient:
        return self._client(account_id)

    def get_anonymous_client(self) -> YouTubeClient:
        return self._client(None)

    def forget(self, account_id: str) -> None:
        self._clients.pop(account_id, None)

    def _client(self, account_id: str | None) -> YouTubeClient:
        client = self._clients.get(account_id)
        if client is None:
            client = YouTubeClient(
                account_id=account_id,
                api_key=self._api_key,
                token_dir=self._token_dir,
                client_secret_path=self._client_secret_path,
                request_timeout_seconds=self._request_timeout_seconds,
                authorization_timeout_seconds=self._authorization_timeout_seconds,
            )
            self._clients[account_id] = client
        return client


class IdentityProvider(Protocol):
    async def current_account_id(self) -> str | None:
        ...


class ConfiguredIdentityProvider:
    """Identity signed in on this installation, as configured."""

    def __init__(self, account_id: str | None) -> None:
        self._account_id = account_id

    async def current_account_id(self) -> str | None:
        return self._account_id
