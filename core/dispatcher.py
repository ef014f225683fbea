"""
PacketDispatcher — routes inbound packets and shapes replies.

Supported methods:
  • connector.introspect    → {configSchema, introspect}
  • connector.start-oauth   → OAuthFlow.start_authorization
  • connector.finish-oauth  → OAuthFlow.finish_authorization
  • connector.query         → MethodRegistry.execute
  • connector.set-config    → decrypt snapshot and (re)start business logic

Every packet runs as its own task, so replies may leave out of order;
the correlation id tells the peer which request they answer.  Errors
never escape a packet task: they are replied as ``{error}`` when the
packet carries a correlation id and only logged otherwise.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from connectors.oauth import OAuthFlow
from core.builder import ConnectorDefinition
from core.transport import Packet, Transport, reply_packet, send_packet
from operations.registry import normalize_path, path_name
from utils.errors import ConfigurationError, ConnectorError, UnhandledPacketError

logger = logging.getLogger(__name__)

INTROSPECT = "connector.introspect"
START_OAUTH = "connector.start-oauth"
FINISH_OAUTH = "connector.finish-oauth"
QUERY = "connector.query"
SET_CONFIG = "connector.set-config"

ConfigHandler = Callable[[Dict[str, Any]], Awaitable[None]]
OAuthProvider = Callable[[], Optional[OAuthFlow]]


class PacketDispatcher:
    def __init__(
        self,
        definition: ConnectorDefinition,
        *,
        on_config: ConfigHandler,
        oauth_flow: OAuthProvider,
    ):
        """
        Parameters
        ----------
        definition : frozen connector declarations
        on_config  : applies a ``secrets`` snapshot (decrypt + restart logic)
        oauth_flow : returns the OAuth flow of the current snapshot, if any
        """
        self.definition = definition
        self._on_config = on_config
        self._oauth_flow = oauth_flow
        self._tasks: Set[asyncio.Task] = set()
        self.stopping = False

    # ── routing ─────────────────────────────────────────────────────────

    async def process_packet(self, packet: Packet) -> Optional[Dict[str, Any]]:
        """Handle one packet and return the reply args (``None`` = no reply)."""
        method = packet.method
        args = packet.args or {}

        if method == INTROSPECT:
            return {
                "configSchema": self.definition.config_schema(),
                "introspect": self.definition.introspect(),
            }

        if method == START_OAUTH:
            return await self._current_oauth().start_authorization(args)

        if method == FINISH_OAUTH:
            return await self._current_oauth().finish_authorization(args)

        if method == QUERY:
            if self.stopping:
                raise ConnectorError("connector is shutting down")
            query = args.get("query")
            result = await self.definition.registry.execute(query, args.get("variables"))
            if isinstance(result, dict):
                return result
            key = query if isinstance(query, str) else path_name(normalize_path(query))
            return {key: result}

        if method == SET_CONFIG:
            await self._on_config(dict(args.get("secrets") or {}))
            return None

        logger.error("Cannot handle packet: %s", packet.model_dump())
        raise UnhandledPacketError("cannot handle packet")

    def _current_oauth(self) -> OAuthFlow:
        flow = self._oauth_flow()
        if flow is None or flow.oauth_config is None:
            raise ConfigurationError("oauth not configured")
        return flow

    # ── packet tasks ────────────────────────────────────────────────────

    def dispatch(self, packet: Packet, transport: Transport) -> asyncio.Task:
        """Handle *packet* in its own task; tracked until it finishes."""
        task = asyncio.create_task(self.handle(packet, transport))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float) -> None:
        """Wait up to *timeout* seconds for in-flight packets, then cancel the rest."""
        if not self._tasks:
            return
        logger.info("Waiting for %d in-flight packet(s)", len(self._tasks))
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d packet(s) still running after %.1fs", len(pending), timeout)
            await asyncio.gather(*pending, return_exceptions=True)

    async def handle(self, packet: Packet, transport: Transport) -> None:
        try:
            result = await self.process_packet(packet)
            if result is not None:
                await self.reply(result, packet, transport)
        except Exception as exc:
            await self.handle_error(packet, exc, transport)

    async def reply(self, args: Dict[str, Any], packet: Packet, transport: Transport) -> None:
        if not packet.correlation_id:
            logger.warning("Cannot reply to %s without correlation id: %s", packet.method, args)
            return
        await send_packet(transport, reply_packet(packet.correlation_id, args))

    async def handle_error(self, packet: Packet, exc: Exception, transport: Transport) -> None:
        if not packet.correlation_id:
            logger.error("Packet error in %s: %s", packet.method, exc, exc_info=exc)
            return

        logger.warning("Packet %s (%s) failed: %s", packet.method, packet.correlation_id, exc)
        try:
            await send_packet(transport, reply_packet(packet.correlation_id, {"error": str(exc)}))
        except Exception:
            logger.exception("Could not send error reply for %s", packet.correlation_id)
