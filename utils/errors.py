"""
Exception hierarchy for the connector runtime.

Every error that can cross the packet boundary derives from
``ConnectorError`` so the dispatcher can turn it into an ``{error: ...}``
reply.  ``str(exc)`` is what the peer sees, so messages are kept short
and verbatim.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for all runtime errors."""


class ConfigurationError(ConnectorError):
    """Missing or malformed configuration (client id, oauth config, keys, …).

    Never retried.
    """


class KeyMaterialError(ConfigurationError):
    """The connector key pair is missing or unusable."""


class DecryptionError(ConnectorError):
    """An encrypted envelope could not be opened."""


class OAuthExchangeError(ConnectorError):
    """The token endpoint rejected a code or refresh-token exchange."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class OperationNotFoundError(ConnectorError):
    """No operation and no ``__default`` handler for a query."""


class UnhandledPacketError(ConnectorError):
    """Inbound packet with a method the dispatcher does not know."""


class ClientResponseError(ConnectorError):
    """Outbound HTTP call answered with status >= 400."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"{status} {body}".strip())
        self.status = status
        self.body = body


class PeerRequestError(ConnectorError):
    """The peer answered an outbound request with an error."""


class PeerTimeoutError(ConnectorError):
    """The peer did not answer an outbound request in time."""


class AuthenticationError(ConnectorError):
    """Registration with the orchestration service was refused."""
