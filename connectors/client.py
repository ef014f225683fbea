"""
ResilientClient — outbound HTTP for business logic with bearer auth and
bounded retry.

Every failure (network error, status >= 400, token refresh failure)
consumes one unit of the retry budget and, while budget remains, the
call is repeated after a fixed delay.  When the previous attempt failed
with 401 the next one forces a token refresh first, so callers never
re-authenticate by hand.  Configuration errors are not retried.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from base64 import b64encode
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from config.settings import Settings, config
from connectors.token_manager import OAuthSession
from utils.errors import ClientResponseError, ConfigurationError

logger = logging.getLogger(__name__)

TokenGetter = Callable[[bool], Union[str, Awaitable[str]]]

_SLASHES_RE = re.compile(r"/{2,}")


class ResilientClient:
    def __init__(
        self,
        session: Optional[OAuthSession] = None,
        *,
        base_url: Optional[str] = None,
        retry: Optional[int] = None,
        retry_delay: Optional[float] = None,
        get_token: Optional[TokenGetter] = None,
        settings: Optional[Settings] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Parameters
        ----------
        session     : OAuth session supplying (and refreshing) access tokens
        base_url    : prefix for every request path; ``None`` means absolute URLs
        retry       : attempt budget per call (default ``config.default_retry``)
        retry_delay : seconds between attempts (default ``config.retry_delay_seconds``)
        get_token   : ``(force) -> token`` override instead of the session
        """
        settings = settings or config
        self.session = session
        self.base_url = base_url
        self.retry = settings.default_retry if retry is None else retry
        self.retry_delay = settings.retry_delay_seconds if retry_delay is None else retry_delay
        self._get_token = get_token
        self._timeout = settings.http_timeout_seconds
        self._http_transport = http_transport

    async def get_token(self, force: bool = False) -> str:
        if self._get_token is not None:
            token = self._get_token(force)
            if inspect.isawaitable(token):
                token = await token
            return token
        if self.session is None:
            raise ConfigurationError("client has no oauth session and no get_token")
        return await self.session.get_access_token(force)

    def build_url(self, path: str) -> str:
        if not self.base_url:
            return path
        return self.base_url.rstrip("/") + _SLASHES_RE.sub("/", "/" + path)

    async def fetch(
        self,
        path: str,
        *,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        data: Any = None,
        params: Optional[Dict[str, Any]] = None,
        content: Optional[bytes] = None,
        text: bool = False,
        base64: bool = False,
        force_refresh: bool = False,
        retries: Optional[int] = None,
    ) -> Any:
        """
        Issue an authenticated request and return the decoded body.

        The body is parsed as JSON unless ``text`` (str) or ``base64``
        (base64 of the raw bytes) is set.

        Raises
        ------
        ClientResponseError – status >= 400 on the final attempt
        ConfigurationError  – no way to obtain a token (never retried)
        """
        remaining = self.retry if retries is None else retries
        url = self.build_url(path)

        while True:
            try:
                token = await self.get_token(force_refresh)
                request_headers = {**(headers or {}), "Authorization": f"Bearer {token}"}

                async with httpx.AsyncClient(transport=self._http_transport, timeout=self._timeout) as client:
                    resp = await client.request(
                        method,
                        url,
                        headers=request_headers,
                        json=json,
                        data=data,
                        params=params,
                        content=content,
                    )

                if resp.status_code > 399:
                    raise ClientResponseError(resp.status_code, resp.text)

                if text:
                    return resp.text
                if base64:
                    return b64encode(resp.content).decode("ascii")
                return resp.json()

            except ConfigurationError:
                raise
            except Exception as exc:
                remaining -= 1
                status = getattr(exc, "status", None)
                logger.warning(
                    "%s %s failed (status=%s, %d attempt(s) left): %s",
                    method, url, status, max(remaining, 0), exc,
                )
                if remaining <= 0:
                    raise
                force_refresh = status == 401
                await asyncio.sleep(self.retry_delay)
