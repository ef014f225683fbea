"""
Packet model and the interface the duplex transport must provide.

The transport itself (connect / reconnect, framing, heartbeat) lives
outside this repository.  It hands every inbound packet to
``on_message(packet, transport)`` and calls ``on_connect(transport)``
once the channel is up.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from pydantic import BaseModel, Field


class Packet(BaseModel):
    """One protocol message; replies carry no method, only the correlation id."""

    method: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None

    @property
    def is_reply(self) -> bool:
        return self.method is None and bool(self.correlation_id)


def reply_packet(correlation_id: Optional[str], args: Dict[str, Any]) -> Packet:
    return Packet(correlation_id=correlation_id, args=dict(args))


def request_packet(method: str, args: Dict[str, Any], correlation_id: Optional[str] = None) -> Packet:
    return Packet(method=method, args=dict(args), correlation_id=correlation_id)


class Transport(Protocol):
    async def send(self, packet: Packet) -> None: ...


class TransportServer(Protocol):
    async def start(self) -> None: ...

    async def leaving(self) -> None: ...

    async def close(self) -> None: ...


OnConnect = Callable[[Transport], Awaitable[None]]
OnMessage = Callable[[Packet, Transport], Awaitable[None]]

# (registration, on_connect, on_message) -> server
TransportFactory = Callable[[Any, OnConnect, OnMessage], TransportServer]


async def send_packet(transport: Transport, packet: Packet) -> None:
    """Send through *transport*, whether its ``send`` is sync or async."""
    result = transport.send(packet)
    if inspect.isawaitable(result):
        await result
