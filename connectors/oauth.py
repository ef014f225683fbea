"""
OAuth delegation — authorization URL, code exchange and refresh.

The peer drives the flow: it asks for an authorization URL
(``connector.start-oauth``), sends the user there, and hands the returned
code back (``connector.finish-oauth``).  The resulting token set is
encrypted for this connector and returned to the peer, which owns
persistence and sends it back inside the next config snapshot.

Client credentials resolve in a fixed order: explicit ``OAuthConfig``
value, then the settings override (``OAUTH_CLIENT_ID`` …), then the
decrypted config snapshot.
"""

from __future__ import annotations

import base64
import inspect
import json
import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from config.settings import Settings, config
from connectors.encryption import SecretCodec
from connectors.schema import OAUTH_RESULT_FIELD
from connectors.token_manager import OAuthSession, SaveCallback
from utils.errors import ConfigurationError, OAuthExchangeError

logger = logging.getLogger(__name__)

_CLIENT_ID_RE = re.compile(r"\{\{clientId\}\}", re.IGNORECASE)
_SCOPE_RE = re.compile(r"\{\{scope\}\}", re.IGNORECASE)

_TOKEN_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
    "Accept": "application/json",
}


def _encode_component(value: str) -> str:
    # same unreserved set as encodeURIComponent
    return quote(value, safe="!~*'()")


class OAuthConfig(BaseModel):
    """OAuth requirements declared by the connector."""

    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scope: Optional[str] = None
    configurable_client: bool = False
    use_auth_header: bool = False
    additional_token_args: Dict[str, str] = Field(default_factory=dict)
    custom_finish: Optional[Callable[..., Any]] = None
    platform_managed: bool = False

    def check(self) -> None:
        """
        Raises
        ------
        ConfigurationError – neither platform-managed nor a complete provider config
        """
        if self.platform_managed:
            if self.authorization_url or self.token_url or self.custom_finish:
                raise ConfigurationError("platform managed oauth takes no provider settings")
            return
        if not self.authorization_url:
            raise ConfigurationError("need a authorizationURL")
        if not self.token_url and not self.custom_finish:
            raise ConfigurationError("need a tokenURL or finishOAuth()")


class OAuthState(str, Enum):
    UNCONFIGURED = "unconfigured"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    AWAITING_CODE = "awaiting_code"
    AUTHORIZED = "authorized"
    REFRESHING = "refreshing"
    FAILED = "failed"


def _session_data(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring %s that is not a JSON document", OAUTH_RESULT_FIELD)
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class OAuthFlow:
    """
    Per-snapshot OAuth state machine.

    Built fresh for every config snapshot together with its ``OAuthSession``.
    """

    def __init__(
        self,
        oauth_config: Optional[OAuthConfig],
        decrypted: Dict[str, Any],
        codec: SecretCodec,
        *,
        save: Optional[SaveCallback] = None,
        settings: Optional[Settings] = None,
        transport: Any = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Parameters
        ----------
        oauth_config   : declared OAuth config, or None when the connector has none
        decrypted      : decrypted config snapshot (credential fallback + oauthResult)
        codec          : used to encrypt the token set returned to the peer
        save           : persists refreshed tokens (sends connector.config-update)
        transport      : channel handed to a custom finisher
        http_transport : httpx transport override (tests)
        """
        self.oauth_config = oauth_config
        self._decrypted = decrypted
        self._codec = codec
        self._settings = settings or config
        self._transport = transport
        self._http_transport = http_transport

        can_refresh = bool(oauth_config and not oauth_config.platform_managed and oauth_config.token_url)
        self.session = OAuthSession(
            _session_data(decrypted.get(OAUTH_RESULT_FIELD)),
            save=save,
            refresher=self.refresh if can_refresh else None,
        )

        if oauth_config is None:
            self.state = OAuthState.UNCONFIGURED
        elif self.session.access_token:
            self.state = OAuthState.AUTHORIZED
        else:
            self.state = OAuthState.AWAITING_AUTHORIZATION

    # ── credential resolution ───────────────────────────────────────────

    def _require_config(self) -> OAuthConfig:
        if self.oauth_config is None:
            raise ConfigurationError("oauth not configured")
        return self.oauth_config

    def _client_id(self) -> str:
        cfg = self._require_config()
        client_id = cfg.client_id or self._settings.oauth_client_id or self._decrypted.get("clientId")
        if not client_id:
            raise ConfigurationError("clientId not configured")
        return client_id

    def _client_secret(self) -> str:
        cfg = self._require_config()
        secret = cfg.client_secret or self._settings.oauth_client_secret or self._decrypted.get("clientSecret")
        if not secret:
            raise ConfigurationError("clientSecret not configured")
        return secret

    def _scope(self) -> str:
        cfg = self._require_config()
        return cfg.scope or self._settings.oauth_scope or self._decrypted.get("scope") or ""

    def _credentials(self) -> Tuple[str, str]:
        return self._client_id(), self._client_secret()

    # ── flow steps ──────────────────────────────────────────────────────

    async def start_authorization(self, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Return ``{url}`` for the provider's consent page."""
        cfg = self._require_config()
        if cfg.platform_managed:
            return {}

        client_id = self._client_id()
        url = _CLIENT_ID_RE.sub(lambda _: _encode_component(client_id), cfg.authorization_url or "")
        url = _SCOPE_RE.sub(lambda _: _encode_component(self._scope()), url)

        self.state = OAuthState.AWAITING_CODE
        return {"url": url}

    async def finish_authorization(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """
        Exchange the authorization code and return ``{value: <envelope>}``.

        The session is left untouched; the peer stores the encrypted token
        set and sends it back with the next config snapshot.
        """
        cfg = self._require_config()
        if cfg.platform_managed:
            raise ConfigurationError("oauth is managed by the platform")
        if not cfg.token_url and not cfg.custom_finish:
            raise ConfigurationError("need tokenURL or finishOAuth(arg)")

        args = args or {}

        async def do_exchange() -> Dict[str, Any]:
            return await self.exchange_code(args)

        try:
            if cfg.custom_finish is not None:
                data = cfg.custom_finish(args=args, do_exchange=do_exchange, transport=self._transport)
                if inspect.isawaitable(data):
                    data = await data
            else:
                data = await do_exchange()
        except Exception:
            self.state = OAuthState.FAILED
            raise

        self.state = OAuthState.AUTHORIZED
        logger.info("OAuth flow finished for %s", self._codec.connector_id)
        return {"value": self._codec.encrypt(data)}

    async def exchange_code(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Standard authorization-code grant against ``token_url``."""
        code = args.get("code")
        redirect_uri = args.get("redirectURI")
        if not code or not redirect_uri:
            raise ConfigurationError("need code and redirectUri")

        cfg = self._require_config()
        if not cfg.token_url:
            raise ConfigurationError("need tokenURL or finishOAuth(arg)")
        client_id, client_secret = self._credentials()

        body = {
            **cfg.additional_token_args,
            "code": code,
            "redirect_uri": redirect_uri,
        }
        return await self._post_token(body, client_id, client_secret, use_auth_header=cfg.use_auth_header)

    async def refresh(self, refresh_token: str) -> str:
        """
        Exchange *refresh_token* for a new access token, update the session
        and persist it.  Returns the new access token.
        """
        cfg = self._require_config()
        if cfg.platform_managed:
            raise ConfigurationError("token refresh is managed by the platform")
        if not cfg.token_url:
            raise ConfigurationError("need tokenURL to refresh tokens")
        client_id, client_secret = self._credentials()

        self.state = OAuthState.REFRESHING
        try:
            data = await self._post_token(
                {"grant_type": "refresh_token", "refresh_token": refresh_token},
                client_id,
                client_secret,
                use_auth_header=cfg.use_auth_header,
                error_prefix="could not get refresh token ",
            )
            await self.session.update(data["access_token"], data.get("refresh_token"))
        except Exception:
            self.state = OAuthState.FAILED
            raise

        self.state = OAuthState.AUTHORIZED
        logger.info("Refreshed access token for %s", self._codec.connector_id)
        return data["access_token"]

    # ── token endpoint ──────────────────────────────────────────────────

    async def _post_token(
        self,
        body: Dict[str, str],
        client_id: str,
        client_secret: str,
        *,
        use_auth_header: bool,
        error_prefix: str = "",
    ) -> Dict[str, Any]:
        headers = dict(_TOKEN_HEADERS)
        if use_auth_header:
            basic = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
            headers["Authorization"] = f"Basic {basic}"
        else:
            body = {**body, "client_id": client_id, "client_secret": client_secret}

        async with httpx.AsyncClient(
            transport=self._http_transport,
            timeout=self._settings.http_timeout_seconds,
        ) as client:
            resp = await client.post(self.oauth_config.token_url, data=body, headers=headers)

        status = resp.status_code
        text = resp.text

        if not 200 <= status < 300:
            raise OAuthExchangeError(f"{error_prefix}{status} {text}", status)

        try:
            data = resp.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("error"):
            message = f"{error_prefix}{status} {data['error']} {data.get('error_description') or ''}"
            raise OAuthExchangeError(message.strip(), status)
        if not isinstance(data, dict) or not data.get("access_token"):
            raise OAuthExchangeError(f"{error_prefix}{status} response has no access_token - {text}", status)

        return data
