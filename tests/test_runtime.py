"""
Tests for the connector runtime: config snapshots, business logic
lifecycle, peer requests, token persistence and shutdown.
"""

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from connectors.oauth import OAuthConfig
from core.builder import ConnectorBuilder
from core.correlation import REQUEST_ID_PREFIX
from core.runtime import CONFIG_UPDATE, TASK_NEW, TASK_UPDATE, Connector, ConnectorRuntime
from core.transport import Packet, reply_packet
from utils.errors import ConfigurationError, KeyMaterialError, PeerRequestError, PeerTimeoutError

CONNECTOR_ID = "conn-test-1"

TOKEN_URL = "https://provider.example/token"


def _oauth_config() -> OAuthConfig:
    return OAuthConfig(
        authorization_url="https://provider.example/authorize?client_id={{clientId}}",
        token_url=TOKEN_URL,
        client_id="cid",
        client_secret="csecret",
    )


async def _wait_for_request(transport, method: str) -> Packet:
    for _ in range(100):
        sent = transport.requests(method)
        if sent:
            return sent[-1]
        await asyncio.sleep(0)
    raise AssertionError(f"{method} was never sent")


class TestConfigSnapshots:
    @pytest.mark.asyncio
    async def test_set_config_starts_business_logic(self, codec, settings, transport):
        seen = []
        started = asyncio.Event()

        async def main(context):
            seen.append(context)
            started.set()

        builder = ConnectorBuilder().config({"apiKey": {"name": "API Key"}}).main(main)
        runtime = ConnectorRuntime(builder.build(), codec, settings=settings)
        await runtime.on_connect(transport)

        await runtime.on_message(
            Packet(method="connector.set-config", args={"secrets": {"apiKey": codec.encrypt("k-1")}}),
            transport,
        )
        await asyncio.wait_for(started.wait(), 1)

        assert seen[0].config == {"apiKey": "k-1"}
        assert seen[0].oauth is None
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_new_snapshot_restarts_business_logic(self, codec, settings, transport):
        contexts = []

        async def main(context):
            contexts.append(context)
            await context.stopping.wait()

        runtime = ConnectorRuntime(ConnectorBuilder().main(main).build(), codec, settings=settings)
        await runtime.on_connect(transport)

        await runtime.apply_config({})
        await asyncio.sleep(0)
        await runtime.apply_config({})
        await asyncio.sleep(0)

        assert len(contexts) == 2
        assert contexts[0].stopping.is_set()
        assert not contexts[1].stopping.is_set()
        assert contexts[0].config == contexts[1].config == {}
        await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_overlapping_snapshots_leave_one_instance(self, codec, settings, transport):
        running = []
        first_started = asyncio.Event()

        async def main(context):
            running.append(context)
            first_started.set()
            try:
                await context.stopping.wait()
            finally:
                running.remove(context)

        builder = ConnectorBuilder().config({"apiKey": {"name": "API Key"}}).main(main)
        runtime = ConnectorRuntime(builder.build(), codec, settings=settings)
        await runtime.on_connect(transport)

        def snapshot(value: str) -> Packet:
            return Packet(method="connector.set-config", args={"secrets": {"apiKey": codec.encrypt(value)}})

        await runtime.on_message(snapshot("k-1"), transport)
        await asyncio.wait_for(first_started.wait(), 1)

        await runtime.on_message(snapshot("k-2"), transport)
        await runtime.on_message(snapshot("k-3"), transport)
        await runtime.dispatcher.drain(1)
        await asyncio.sleep(0.05)

        assert len(running) == 1
        assert running[0] is runtime.context
        assert runtime.oauth_flow is not None
        assert runtime.context.config == {"apiKey": "k-3"}

        await runtime.shutdown()
        await asyncio.sleep(0)

        assert running == []

    @pytest.mark.asyncio
    async def test_business_logic_failure_is_contained(self, codec, settings, transport, caplog):
        async def main(context):
            raise RuntimeError("logic exploded")

        runtime = ConnectorRuntime(ConnectorBuilder().main(main).build(), codec, settings=settings)
        await runtime.apply_config({})
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert "Business logic failed" in caplog.text


class TestPeerRequests:
    @pytest.mark.asyncio
    async def test_new_task_reply_is_correlated(self, codec, settings, transport):
        runtime = ConnectorRuntime(ConnectorBuilder().build(), codec, settings=settings)
        await runtime.on_connect(transport)

        pending = asyncio.create_task(runtime.new_task("Sync contacts", {"page": 1}))
        request = await _wait_for_request(transport, TASK_NEW)

        assert request.args == {"name": "Sync contacts", "a": {"page": 1}}
        assert request.correlation_id.startswith(REQUEST_ID_PREFIX)

        await runtime.on_message(reply_packet("_req-unknown", {"id": "other"}), transport)
        await runtime.on_message(reply_packet(request.correlation_id, {"id": "task-9"}), transport)

        assert await pending == {"id": "task-9"}
        assert len(runtime.pending) == 0

    @pytest.mark.asyncio
    async def test_update_task_peer_error(self, codec, settings, transport):
        runtime = ConnectorRuntime(ConnectorBuilder().build(), codec, settings=settings)
        await runtime.on_connect(transport)

        pending = asyncio.create_task(runtime.update_task("task-9", {"done": True}))
        request = await _wait_for_request(transport, TASK_UPDATE)
        assert request.args == {"id": "task-9", "a": {"done": True}}

        await runtime.on_message(reply_packet(request.correlation_id, {"error": "no such task"}), transport)

        with pytest.raises(PeerRequestError, match="no such task"):
            await pending

    @pytest.mark.asyncio
    async def test_unanswered_request_times_out(self, codec, settings, transport):
        settings.request_timeout_seconds = 0.05
        runtime = ConnectorRuntime(ConnectorBuilder().build(), codec, settings=settings)
        await runtime.on_connect(transport)

        with pytest.raises(PeerTimeoutError):
            await runtime.new_task("t", {})
        assert len(runtime.pending) == 0

    @pytest.mark.asyncio
    async def test_requests_need_a_channel(self, codec, settings):
        runtime = ConnectorRuntime(ConnectorBuilder().build(), codec, settings=settings)
        with pytest.raises(ConfigurationError, match="channel not connected"):
            await runtime.new_task("t", {})

    @pytest.mark.asyncio
    async def test_create_blob_encodes_content(self, codec, settings, transport):
        runtime = ConnectorRuntime(ConnectorBuilder().build(), codec, settings=settings)
        await runtime.on_connect(transport)

        pending = asyncio.create_task(runtime.create_blob("hello", name="a.txt", mimetype="text/plain"))
        request = await _wait_for_request(transport, "connector.blob.create")
        await runtime.on_message(reply_packet(request.correlation_id, {"id": "blob-1"}), transport)

        assert await pending == {"id": "blob-1"}
        assert request.args == {"content": "aGVsbG8=", "name": "a.txt", "mimetype": "text/plain", "meta": {}}


class TestOAuthIntegration:
    @pytest.mark.asyncio
    async def test_refresh_through_client_persists_tokens(self, codec, settings, transport):
        api_calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                form = parse_qs(request.content.decode())
                assert form["grant_type"] == ["refresh_token"]
                return httpx.Response(200, json={"access_token": "new"})
            api_calls.append(request.headers["authorization"])
            if request.headers["authorization"] == "Bearer old":
                return httpx.Response(401, text="expired")
            return httpx.Response(200, json={"ok": True})

        context_ready = asyncio.Event()
        builder = ConnectorBuilder().oauth(_oauth_config()).main(lambda ctx: context_ready.set())
        runtime = ConnectorRuntime(
            builder.build(), codec, settings=settings, http_transport=httpx.MockTransport(handler)
        )
        await runtime.on_connect(transport)
        await runtime.apply_config(
            {"oauthResult": codec.encrypt({"access_token": "old", "refresh_token": "rt"})}
        )
        await asyncio.wait_for(context_ready.wait(), 1)

        client = runtime.context.get_client(base_url="https://api.example.com")
        assert await client.fetch("/items") == {"ok": True}

        assert api_calls == ["Bearer old", "Bearer new"]
        update = transport.requests(CONFIG_UPDATE)[0]
        assert codec.decrypt(update.args["value"]) == {"access_token": "new", "refresh_token": "rt"}

    @pytest.mark.asyncio
    async def test_finish_oauth_packet_replies_encrypted_result(self, codec, settings, transport):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt"})

        builder = ConnectorBuilder().oauth(_oauth_config())
        runtime = ConnectorRuntime(
            builder.build(), codec, settings=settings, http_transport=httpx.MockTransport(handler)
        )
        await runtime.on_connect(transport)
        await runtime.apply_config({})

        await runtime.on_message(
            Packet(
                method="connector.finish-oauth",
                args={"code": "abc", "redirectURI": "https://peer/cb"},
                correlation_id="cb-1",
            ),
            transport,
        )
        await runtime.dispatcher.drain(1)

        reply = transport.replies()[0]
        assert reply.correlation_id == "cb-1"
        assert codec.decrypt(reply.args["value"]) == {"access_token": "at", "refresh_token": "rt"}

    @pytest.mark.asyncio
    async def test_start_oauth_packet_before_config(self, codec, settings, transport):
        runtime = ConnectorRuntime(ConnectorBuilder().oauth(_oauth_config()).build(), codec, settings=settings)

        await runtime.on_message(Packet(method="connector.start-oauth", correlation_id="cb-2"), transport)
        await runtime.dispatcher.drain(1)

        assert transport.replies()[0].args == {"error": "oauth not configured"}


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_stops_logic_and_releases_channel(self, codec, settings, transport, server):
        stopped = []

        async def main(context):
            await context.stopping.wait()
            stopped.append(True)

        runtime = ConnectorRuntime(ConnectorBuilder().main(main).build(), codec, settings=settings)
        await runtime.on_connect(transport)
        await runtime.apply_config({})
        await asyncio.sleep(0)

        await runtime.shutdown(server)

        assert stopped == [True]
        assert server.calls == ["leaving", "close"]
        assert runtime.dispatcher.stopping

    @pytest.mark.asyncio
    async def test_no_business_logic_after_shutdown(self, codec, settings):
        started = []
        runtime = ConnectorRuntime(
            ConnectorBuilder().main(lambda ctx: started.append(ctx)).build(), codec, settings=settings
        )
        await runtime.shutdown()
        await runtime.apply_config({})
        await asyncio.sleep(0)

        assert started == []


class TestConnector:
    def test_prepare_builds_registration(self, settings):
        connector = Connector(id=CONNECTOR_ID, version="2.0.0", name="acme", settings=settings)
        connector.configure().config({"apiKey": {"name": "API Key"}}).operations({"count": lambda v: 1})

        runtime, registration = connector.prepare()

        payload = registration.payload()
        assert payload["id"] == CONNECTOR_ID
        assert payload["name"] == "test-connector"
        assert payload["version"] == "2.0.0"
        assert payload["publicKey"] == settings.public_key
        assert set(payload["schema"]["configSchema"]["fields"]) == {"apiKey"}
        assert isinstance(runtime, ConnectorRuntime)

    def test_missing_keys_with_fields_print_fresh_keys(self, settings):
        settings.private_key = None
        settings.public_key = None
        connector = Connector(id=CONNECTOR_ID, settings=settings)
        connector.configure().config({"apiKey": {"name": "API Key"}})

        with pytest.raises(KeyMaterialError) as exc_info:
            connector.prepare()

        message = str(exc_info.value)
        assert "could not be loaded" in message
        assert "PRIVATE_KEY:" in message
        assert "PUBLIC_KEY:" in message

    def test_broken_keys_ask_to_check_env(self, settings):
        settings.public_key = "broken"
        connector = Connector(id=CONNECTOR_ID, settings=settings)
        connector.configure().config({"apiKey": {"name": "API Key"}})

        with pytest.raises(KeyMaterialError, match="double check"):
            connector.prepare()

    def test_no_fields_falls_back_to_generated_keys(self, settings):
        settings.private_key = None
        settings.public_key = None
        connector = Connector(id=CONNECTOR_ID, settings=settings)
        connector.configure().operations({"count": lambda v: 1})

        runtime, registration = connector.prepare()
        assert registration.public_key
        assert runtime.codec.decrypt(runtime.codec.encrypt("x")) == "x"

    def test_connector_id_is_required(self, settings):
        settings.connector_id = ""
        connector = Connector(settings=settings)
        connector.configure()
        with pytest.raises(ConfigurationError, match="connector id is required"):
            connector.prepare()

    @pytest.mark.asyncio
    async def test_run_exits_on_missing_keys(self, settings, server):
        settings.private_key = None
        connector = Connector(id=CONNECTOR_ID, settings=settings)
        connector.configure().config({"apiKey": {"name": "API Key"}})

        with pytest.raises(SystemExit):
            await connector.run(lambda registration, on_connect, on_message: server)
        assert server.calls == []


class TestBuilder:
    def test_oauth_declares_result_field(self):
        definition = ConnectorBuilder().oauth(_oauth_config()).build()
        schema = definition.config_schema()

        assert schema["oauth"] is True
        assert schema["fields"]["oauthResult"]["type"] == "managed"

    def test_configurable_client_adds_credential_fields(self):
        cfg = _oauth_config().model_copy(update={"configurable_client": True})
        schema = ConnectorBuilder().oauth(cfg).build().config_schema()

        assert {"clientId", "clientSecret", "oauthResult"} <= set(schema["fields"])

    def test_oauth_twice(self):
        builder = ConnectorBuilder().oauth(_oauth_config())
        with pytest.raises(ConfigurationError, match="oauth already configured"):
            builder.oauth(_oauth_config())

    def test_endpoint_adds_plain_token_field(self):
        definition = ConnectorBuilder().endpoint(lambda v: None).build()
        field = definition.config_schema()["fields"]["_endpointToken"]

        assert field["plain"] is True
        assert field["optional"] is True
        assert definition.registry.catalogue() == []

    def test_author_fields_win_over_core_fields(self):
        builder = ConnectorBuilder().config({"oauthResult": {"name": "Custom"}})
        schema = builder.oauth(_oauth_config()).build().config_schema()

        assert schema["fields"]["oauthResult"]["name"] == "Custom"

    def test_build_twice(self):
        builder = ConnectorBuilder()
        builder.build()
        with pytest.raises(ConfigurationError, match="already built"):
            builder.build()
