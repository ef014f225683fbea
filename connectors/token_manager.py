"""
Token manager — the OAuth session of one configuration snapshot.

This is the single interface business logic and the resilient client use
to get an active access token.  The session is rebuilt on every
``connector.set-config``; refreshes mutate it in place and persist the
new token pair through the save callback (which sends a
``connector.config-update`` packet to the peer).

Concurrent refreshes are not serialized: two callers hitting the same
401 each refresh and each persist, last write wins.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

SaveCallback = Callable[[Dict[str, Any]], Awaitable[None]]
# refresh_token -> new access token; the refresher updates the session itself
Refresher = Callable[[str], Awaitable[str]]


class OAuthSession:
    def __init__(
        self,
        data: Optional[Dict[str, Any]] = None,
        save: Optional[SaveCallback] = None,
        refresher: Optional[Refresher] = None,
    ):
        self._data: Dict[str, Any] = dict(data or {})
        self._save = save
        self._refresher = refresher

    def data(self) -> Dict[str, Any]:
        return dict(self._data)

    @property
    def access_token(self) -> Optional[str]:
        return self._data.get("access_token")

    @property
    def refresh_token(self) -> Optional[str]:
        return self._data.get("refresh_token")

    async def update(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Store a new token pair and persist it.  Refresh tokens are only rotated when given."""
        self._data["access_token"] = access_token
        if refresh_token:
            self._data["refresh_token"] = refresh_token

        if self._save is not None:
            await self._save(self.data())

    async def get_access_token(self, force: bool = False) -> str:
        """
        Return the cached access token, refreshing when forced or absent.

        Raises
        ------
        ConfigurationError – no refresh token to obtain a new access token with
        """
        if not force and self.access_token:
            return self.access_token

        refresh_token = self.refresh_token
        if not refresh_token:
            raise ConfigurationError("have no access_token and no refresh_token")
        if self._refresher is None:
            raise ConfigurationError("token refresh is not available for this connector")

        logger.info("Refreshing access token (forced=%s)", force)
        return await self._refresher(refresh_token)

    def get_client(self, **kwargs: Any):
        """Build a ResilientClient that authenticates with this session."""
        from connectors.client import ResilientClient

        return ResilientClient(session=self, **kwargs)
