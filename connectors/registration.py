"""
Registration — announces the connector to the orchestration service.

The transport calls ``Registration.run()`` before opening the channel and
uses the returned key to authenticate the connection.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from config.settings import Settings, config
from utils.errors import AuthenticationError

logger = logging.getLogger(__name__)


class Registration:
    def __init__(
        self,
        *,
        connector_id: str,
        name: str,
        version: str,
        public_key: str,
        schema: Callable[[], Dict[str, Any]],
        settings: Optional[Settings] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.connector_id = connector_id
        self.name = name
        self.version = version
        self.public_key = public_key
        self._schema = schema
        self._settings = settings or config
        self._http_transport = http_transport

    def url(self) -> str:
        endpoint = self._settings.device_endpoint
        return (endpoint if endpoint.endswith("/") else endpoint + "/") + "register"

    def payload(self) -> Dict[str, Any]:
        return {
            "deployment": self._settings.deployment,
            "name": self.name,
            "version": self.version,
            "id": self.connector_id,
            "publicKey": self.public_key,
            "schema": self._schema(),
        }

    async def run(self) -> str:
        """
        POST the registration payload and return the connection key.

        Raises
        ------
        AuthenticationError – the service answered anything but 200 with a key
        """
        headers = {"Content-Type": "application/json"}
        if self._settings.registration_token:
            headers["Authorization"] = f"Connector {self._settings.registration_token}"

        async with httpx.AsyncClient(
            transport=self._http_transport,
            timeout=self._settings.http_timeout_seconds,
        ) as client:
            resp = await client.post(self.url(), json=self.payload(), headers=headers)

        key = _connection_key(resp) if resp.status_code == 200 else None
        if key:
            logger.info("Registered connector %s (%s %s)", self.connector_id, self.name, self.version)
            return key

        logger.error("Registration of %s refused with status %d", self.connector_id, resp.status_code)
        raise AuthenticationError("authentication failed")


def _connection_key(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body.get("key") if isinstance(body, dict) else None
