"""
Shared fixtures: one RSA key pair per test session, test settings and an
in-memory transport.
"""

from __future__ import annotations

from typing import List

import pytest

from config.settings import Settings
from connectors.encryption import KeyPair, SecretCodec
from core.transport import Packet

CONNECTOR_ID = "conn-test-1"


class FakeTransport:
    """Records every packet sent through it."""

    def __init__(self) -> None:
        self.sent: List[Packet] = []

    async def send(self, packet: Packet) -> None:
        self.sent.append(packet)

    def replies(self) -> List[Packet]:
        return [p for p in self.sent if p.method is None]

    def requests(self, method: str) -> List[Packet]:
        return [p for p in self.sent if p.method == method]


class FakeServer:
    def __init__(self) -> None:
        self.calls: List[str] = []

    async def start(self) -> None:
        self.calls.append("start")

    async def leaving(self) -> None:
        self.calls.append("leaving")

    async def close(self) -> None:
        self.calls.append("close")


@pytest.fixture(scope="session")
def key_pair() -> KeyPair:
    return KeyPair.generate(2048)


@pytest.fixture
def codec(key_pair) -> SecretCodec:
    return SecretCodec(key_pair, CONNECTOR_ID)


@pytest.fixture
def settings(key_pair) -> Settings:
    return Settings(
        _env_file=None,
        connector_id=CONNECTOR_ID,
        connector_name="test-connector",
        connector_version="1.2.3",
        hostname="",
        deployment="",
        private_key=key_pair.export_private_base64(),
        public_key=key_pair.export_public_base64(),
        oauth_client_id=None,
        oauth_client_secret=None,
        oauth_scope=None,
        registration_token=None,
        retry_delay_seconds=0,
        request_timeout_seconds=1.0,
        shutdown_grace_seconds=0.5,
        key_size=1024,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()
