"""
Connector runtime — wires the declarations, the secret codec, the OAuth
flow and the dispatcher to one transport.

Startup order:
  1. build the connector definition (schema + operations are frozen)
  2. load and validate the key pair; on failure print remediation text
     (fresh keys when none are configured) and exit
  3. hand registration and the packet callbacks to the transport

Every ``connector.set-config`` builds a new ``ConnectorContext`` (decrypted
config, OAuth session, peer helpers) and restarts the business logic
with it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import signal
from base64 import b64encode
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from config.logging_setup import setup_logging
from config.settings import Settings, config
from connectors.client import ResilientClient
from connectors.encryption import KeyPair, SecretCodec
from connectors.oauth import OAuthFlow
from connectors.registration import Registration
from connectors.token_manager import OAuthSession
from core.builder import ConnectorBuilder, ConnectorDefinition
from core.correlation import PendingRequests
from core.dispatcher import PacketDispatcher
from core.transport import Packet, Transport, TransportFactory, TransportServer, request_packet, send_packet
from utils.errors import ConfigurationError, KeyMaterialError

logger = logging.getLogger(__name__)

CONFIG_UPDATE = "connector.config-update"
TASK_NEW = "connector.task.new"
TASK_UPDATE = "connector.task.update"
BLOB_CREATE = "connector.blob.create"
BLOB_GET = "connector.blob.get"


@dataclass
class ConnectorContext:
    """Everything business logic gets for one config snapshot."""

    config: Dict[str, Any]
    oauth: Optional[OAuthSession]
    new_task: Callable[[str, Any], Awaitable[Dict[str, Any]]]
    update_task: Callable[[str, Any], Awaitable[Dict[str, Any]]]
    get_client: Callable[..., ResilientClient]
    create_blob: Callable[..., Awaitable[Dict[str, Any]]]
    get_blob: Callable[[str], Awaitable[Dict[str, Any]]]
    stopping: asyncio.Event = field(default_factory=asyncio.Event)


class ConnectorRuntime:
    def __init__(
        self,
        definition: ConnectorDefinition,
        codec: SecretCodec,
        *,
        settings: Optional[Settings] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.definition = definition
        self.codec = codec
        self.settings = settings or config
        self._http_transport = http_transport

        self.pending = PendingRequests(timeout=self.settings.request_timeout_seconds)
        self.dispatcher = PacketDispatcher(
            definition,
            on_config=self.apply_config,
            oauth_flow=lambda: self.oauth_flow,
        )
        self.transport: Optional[Transport] = None
        self.oauth_flow: Optional[OAuthFlow] = None
        self.context: Optional[ConnectorContext] = None
        self._main_task: Optional[asyncio.Task] = None
        self._config_lock = asyncio.Lock()

    # ── transport callbacks ─────────────────────────────────────────────

    async def on_connect(self, transport: Transport) -> None:
        logger.info("Channel connected")
        self.transport = transport

    async def on_message(self, packet: Packet, transport: Transport) -> None:
        self.transport = transport
        if packet.is_reply:
            if not self.pending.resolve(packet):
                logger.warning("Dropping reply %s with no pending request", packet.correlation_id)
            return
        self.dispatcher.dispatch(packet, transport)

    # ── config snapshots ────────────────────────────────────────────────

    async def apply_config(self, secrets: Dict[str, Any]) -> None:
        """Decrypt a snapshot, rebuild the session context and restart business logic."""
        decrypted = self.codec.decrypt_config(secrets, self.definition.schema)
        flow = OAuthFlow(
            self.definition.oauth,
            decrypted,
            self.codec,
            save=self._save_oauth_result,
            settings=self.settings,
            transport=self.transport,
            http_transport=self._http_transport,
        )
        context = ConnectorContext(
            config=decrypted,
            oauth=flow.session if self.definition.oauth is not None else None,
            new_task=self.new_task,
            update_task=self.update_task,
            get_client=lambda **kwargs: self._client(flow, **kwargs),
            create_blob=self.create_blob,
            get_blob=self.get_blob,
        )

        # snapshots apply one at a time: stop the previous logic, swap, start
        async with self._config_lock:
            logger.info("Applied config snapshot with %d field(s)", len(decrypted))
            self.oauth_flow = flow
            await self._restart_main(context)

    def _client(self, flow: OAuthFlow, **kwargs: Any) -> ResilientClient:
        kwargs.setdefault("settings", self.settings)
        kwargs.setdefault("http_transport", self._http_transport)
        session = flow.session if self.definition.oauth is not None else None
        return ResilientClient(session=session, **kwargs)

    async def _save_oauth_result(self, data: Dict[str, Any]) -> None:
        await self._send(request_packet(CONFIG_UPDATE, {"value": self.codec.encrypt(data)}))

    # ── business logic ──────────────────────────────────────────────────

    async def _restart_main(self, context: ConnectorContext) -> None:
        await self._stop_main()
        self.context = context

        if self.dispatcher.stopping:
            logger.info("Shutting down — business logic not started")
            return
        if self.definition.main is None:
            return

        logger.info("Starting business logic")
        self._main_task = asyncio.create_task(self._run_main(context))

    async def _run_main(self, context: ConnectorContext) -> None:
        try:
            result = self.definition.main(context)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Business logic failed")

    async def _stop_main(self, grace: float = 0.0) -> None:
        if self.context is not None:
            self.context.stopping.set()

        task = self._main_task
        self._main_task = None
        if task is None or task.done():
            return
        if grace > 0:
            await asyncio.wait({task}, timeout=grace)
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _stop_main_locked(self, grace: float) -> None:
        async with self._config_lock:
            await self._stop_main(grace)

    # ── peer requests ───────────────────────────────────────────────────

    async def _send(self, packet: Packet) -> None:
        if self.transport is None:
            raise ConfigurationError("channel not connected")
        await send_packet(self.transport, packet)

    async def _request(self, method: str, args: Dict[str, Any]) -> Dict[str, Any]:
        if self.transport is None:
            raise ConfigurationError("channel not connected")
        return await self.pending.request(self.transport, method, args)

    async def new_task(self, name: str, payload: Any) -> Dict[str, Any]:
        return await self._request(TASK_NEW, {"name": name, "a": payload})

    async def update_task(self, task_id: str, payload: Any) -> Dict[str, Any]:
        return await self._request(TASK_UPDATE, {"id": task_id, "a": payload})

    async def create_blob(
        self,
        content: bytes | str,
        *,
        name: Optional[str] = None,
        mimetype: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        raw = content.encode("utf-8") if isinstance(content, str) else content
        return await self._request(BLOB_CREATE, {
            "content": b64encode(raw).decode("ascii"),
            "name": name,
            "mimetype": mimetype,
            "meta": meta or {},
        })

    async def get_blob(self, blob_id: str) -> Dict[str, Any]:
        return await self._request(BLOB_GET, {"id": blob_id})

    # ── shutdown ────────────────────────────────────────────────────────

    async def shutdown(self, server: Optional[TransportServer] = None) -> None:
        """
        Stop taking new work, let in-flight packets and business logic
        finish within the grace period, then release the channel.
        """
        grace = self.settings.shutdown_grace_seconds
        logger.info("Shutting down (grace %.1fs)", grace)
        self.dispatcher.stopping = True

        if server is not None:
            await server.leaving()

        await asyncio.gather(self.dispatcher.drain(grace), self._stop_main_locked(grace))
        self.pending.cancel_all()

        if server is not None:
            await server.close()
        logger.info("Shutdown complete")


def key_remediation_text(settings: Settings) -> str:
    """Operator instructions for missing or broken key material."""
    if not settings.private_key:
        pair = KeyPair.generate(settings.key_size)
        text = (
            "fresh keys generated, set environment variables: \n\n"
            f"PRIVATE_KEY: {pair.export_private_base64()}\n\n"
            f"PUBLIC_KEY: {pair.export_public_base64()}\n"
        )
    else:
        text = "Please double check the env variables"

    return (
        "public (env.PUBLIC_KEY) and private key (env.PRIVATE_KEY) could not be loaded.\n\n"
        f"{text}"
    )


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    logger.error(
        "Unhandled error: %s",
        context.get("message"),
        exc_info=context.get("exception"),
    )


class Connector:
    """Entry point a connector author instantiates."""

    def __init__(
        self,
        *,
        id: Optional[str] = None,
        version: Optional[str] = None,
        name: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or config
        self.id = id or self.settings.connector_id
        self.version = version or self.settings.connector_version
        self.name = name or self.settings.connector_name
        self.builder: Optional[ConnectorBuilder] = None

    def configure(self) -> ConnectorBuilder:
        self.builder = ConnectorBuilder()
        return self.builder

    def load_keys(self, definition: ConnectorDefinition) -> KeyPair:
        """
        Load the configured key pair.

        A connector without config fields never receives secrets, so it
        falls back to an in-memory pair instead of failing.

        Raises
        ------
        KeyMaterialError – keys unusable and the connector declares fields;
                           the message carries the operator instructions
        """
        try:
            return KeyPair.from_settings(self.settings)
        except KeyMaterialError as exc:
            if not definition.schema.has_fields():
                logger.info("No config fields declared — using an in-memory key pair")
                return KeyPair.generate(self.settings.key_size)
            logger.debug("Key material rejected: %s", exc)
            raise KeyMaterialError(key_remediation_text(self.settings)) from exc

    def prepare(self, http_transport: Optional[httpx.AsyncBaseTransport] = None) -> tuple[ConnectorRuntime, Registration]:
        """Build, gate on key material and return the runtime plus its registration."""
        if not self.id:
            raise ConfigurationError("connector id is required")
        if self.builder is None:
            raise ConfigurationError("call configure() before running the connector")

        definition = self.builder.build()
        key_pair = self.load_keys(definition)
        codec = SecretCodec(key_pair, self.id)
        runtime = ConnectorRuntime(definition, codec, settings=self.settings, http_transport=http_transport)
        registration = Registration(
            connector_id=self.id,
            name=self.settings.advertised_name(self.name),
            version=self.version,
            public_key=key_pair.export_public_base64(),
            schema=lambda: {
                "configSchema": definition.config_schema(),
                "introspect": definition.introspect(),
            },
            settings=self.settings,
            http_transport=http_transport,
        )
        return runtime, registration

    async def run(self, transport_factory: TransportFactory) -> None:
        """Serve packets until SIGTERM / SIGINT, then shut down gracefully."""
        setup_logging(self.settings.debug)

        try:
            runtime, registration = self.prepare()
        except KeyMaterialError as exc:
            logger.error("\nError: \n\n%s", exc)
            raise SystemExit(1) from exc

        loop = asyncio.get_running_loop()
        loop.set_exception_handler(_log_loop_exception)

        stop = asyncio.Event()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                logger.debug("Signal %s not supported on this platform", sig)

        server = transport_factory(registration, runtime.on_connect, runtime.on_message)
        logger.info("Starting connector %s (%s %s)", self.id, self.name, self.version)
        await server.start()

        await stop.wait()
        await runtime.shutdown(server)
