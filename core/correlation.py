"""
Outbound request / reply correlation over the single channel.

Each outbound request gets a generated id and a future; the reply with
that id resolves exactly that future.  A caller only ever waits on its
own id, with a timeout, so an unresponsive peer cannot leak pending
entries.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from core.transport import Packet, Transport, request_packet, send_packet
from utils.errors import PeerRequestError, PeerTimeoutError

logger = logging.getLogger(__name__)

REQUEST_ID_PREFIX = "_req-"


def new_request_id() -> str:
    return f"{REQUEST_ID_PREFIX}{uuid.uuid4().hex}"


class PendingRequests:
    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._pending: Dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._pending)

    async def request(
        self,
        transport: Transport,
        method: str,
        args: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send a request packet and wait for its reply.

        Raises
        ------
        PeerRequestError – the reply carried an ``error``
        PeerTimeoutError – no reply within *timeout* seconds
        """
        timeout = self.timeout if timeout is None else timeout
        request_id = new_request_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await send_packet(transport, request_packet(method, args, request_id))
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning("No reply to %s (%s) within %.1fs", method, request_id, timeout)
            raise PeerTimeoutError(f"no reply to {method} within {timeout}s") from None
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, packet: Packet) -> bool:
        """Complete the request *packet* answers; False when it answers nothing pending."""
        future = self._pending.get(packet.correlation_id or "")
        if future is None or future.done():
            return False

        error = packet.args.get("error")
        if error:
            future.set_exception(PeerRequestError(str(error)))
        else:
            future.set_result(packet.args)
        return True

    def cancel_all(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
