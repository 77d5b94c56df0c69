"""
Tests for WhatsApp provider adapters and the provider factory
"""

import asyncio
import hashlib
import hmac
import json

import httpx
import pytest

from esferazap.core.config import settings
from esferazap.core.exceptions import (
    ProviderConfigurationError,
    ProviderNotFoundError,
    ProviderRequestError,
    SessionNotConnectedError,
)
from esferazap.integrations.whatsapp.providers import WhatsAppProviderFactory
from esferazap.integrations.whatsapp.providers import baileys as baileys_module
from esferazap.integrations.whatsapp.providers.baileys import BaileysConnection, BaileysProvider
from esferazap.integrations.whatsapp.providers.base import (
    MISSING_CREDENTIALS_MESSAGE,
    BotConnectionConfig,
    GatewayConnection,
    ProviderEventType,
    QRStatus,
)
from esferazap.integrations.whatsapp.providers.evolution import EvolutionAPIProvider
from esferazap.integrations.whatsapp.providers.meta_business import MetaBusinessConnection, MetaBusinessProvider
from esferazap.integrations.whatsapp.providers.twilio import TwilioProvider, compute_twilio_signature


class RecordingTransport:
    """httpx.MockTransport handler that records requests and replays queued responses"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def collect(connection_cls, provider):
    events = []

    async def on_event(event):
        events.append(event)

    connection = connection_cls(provider, "b1", "s1", on_event)
    return connection, events


class GatedSocketClient:
    """Stand-in for socketio.AsyncClient whose connect waits for a gate"""

    instances = []

    def __init__(self, **kwargs):
        self.gate = asyncio.Event()
        self.connected = False
        self.emitted = []
        self.disconnect_calls = 0
        GatedSocketClient.instances.append(self)

    def on(self, event, handler):
        pass

    async def connect(self, url, **kwargs):
        await self.gate.wait()
        self.connected = True

    async def emit(self, event, data=None):
        self.emitted.append(event)

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False


class TestBaileysProvider:
    """Self-hosted Baileys bridge"""

    def _provider(self, transport, **config):
        config.setdefault("server_url", "http://bridge:3001")
        return BaileysProvider(
            BotConnectionConfig(provider="baileys", **config), http_client=transport.client(), bot_id="b1"
        )

    @pytest.mark.asyncio
    async def test_generate_qr_renders_pairing_string(self):
        transport = RecordingTransport(httpx.Response(200, json={"qr": "2@abcdef"}))
        provider = self._provider(transport, api_key="secret")

        result = await provider.generate_qr_code()

        assert result.status == QRStatus.PENDING
        assert result.qr_code.startswith("data:image/png;base64,")
        assert result.expires is not None
        request = transport.requests[0]
        assert request.url == "http://bridge:3001/api/sessions"
        assert json.loads(request.content) == {"sessionId": "b1"}
        assert request.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_generate_qr_already_connected(self):
        transport = RecordingTransport(httpx.Response(200, json={"connected": True}))

        result = await self._provider(transport).generate_qr_code()

        assert result.status == QRStatus.CONNECTED
        assert result.qr_code is None

    @pytest.mark.asyncio
    async def test_generate_qr_never_raises(self):
        transport = RecordingTransport(httpx.Response(500, text="boom"))

        result = await self._provider(transport).generate_qr_code()

        assert result.status == QRStatus.ERROR
        assert "500" in result.message

    @pytest.mark.asyncio
    async def test_send_message_uses_instance_id(self):
        transport = RecordingTransport(httpx.Response(200, json={"key": {"id": "ABC"}}))
        provider = self._provider(transport, instance_id="loja")

        result = await provider.send_message("5511999@s.whatsapp.net", "oi")

        assert result.message_id == "ABC"
        assert json.loads(transport.requests[0].content) == {
            "sessionId": "loja", "to": "5511999@s.whatsapp.net", "text": "oi"
        }

    @pytest.mark.asyncio
    async def test_send_message_failure_is_loud(self):
        transport = RecordingTransport(httpx.Response(503, text="down"))

        with pytest.raises(ProviderRequestError) as exc_info:
            await self._provider(transport).send_message("5511999", "oi")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_check_connection(self):
        transport = RecordingTransport(httpx.Response(200, json={"connected": False}))

        check = await self._provider(transport).check_connection()

        assert check.connected is False
        assert transport.requests[0].url.path == "/api/sessions/b1"

    def test_translate_connection_updates(self):
        provider = BaileysProvider(BotConnectionConfig(provider="baileys"), bot_id="b1")

        opened = provider.translate("connection.update", {"connection": "open"})
        logged_out = provider.translate("connection.update", {
            "connection": "close",
            "lastDisconnect": {"error": {"output": {"statusCode": 401}}},
        })
        dropped = provider.translate("connection.update", {"connection": "close", "statusCode": 428})

        assert [e.type for e in opened] == [ProviderEventType.OPEN]
        assert logged_out[0].logged_out is True
        assert dropped[0].logged_out is False
        assert dropped[0].reason == "status_code=428"

    def test_translate_messages_skips_own(self):
        provider = BaileysProvider(BotConnectionConfig(provider="baileys"), bot_id="b1")

        events = provider.translate("messages.upsert", {"messages": [
            {"key": {"remoteJid": "5511999@s.whatsapp.net", "id": "1"}, "message": {"conversation": "oi"},
             "messageTimestamp": 1700000000},
            {"key": {"remoteJid": "5511999@s.whatsapp.net", "id": "2", "fromMe": True},
             "message": {"conversation": "eco"}},
            {"key": {"remoteJid": "5511888@s.whatsapp.net", "id": "3"},
             "message": {"extendedTextMessage": {"text": "link"}}},
        ]})

        messages = events[0].messages
        assert [(m.message_id, m.text) for m in messages] == [("1", "oi"), ("3", "link")]
        assert messages[0].timestamp.year == 2023

    def test_webhook_signature_optional_without_secret(self):
        provider = BaileysProvider(BotConnectionConfig(provider="baileys"), bot_id="b1")
        assert provider.validate_webhook(b"{}") is True

    def test_webhook_signature_checked_with_secret(self):
        provider = BaileysProvider(BotConnectionConfig(provider="baileys", webhook_secret="s3"), bot_id="b1")

        assert provider.validate_webhook(b"{}", sign("s3", b"{}")) is True
        assert provider.validate_webhook(b"{}", sign("other", b"{}")) is False
        assert provider.validate_webhook(b"{}", None) is False

    def test_parse_webhook_envelope(self):
        provider = BaileysProvider(BotConnectionConfig(provider="baileys"), bot_id="b1")

        events = provider.parse_webhook({"event": "qr", "data": {"qr": "2@abc"}})

        assert events[0].type == ProviderEventType.QR
        assert events[0].qr_code.startswith("data:image/png;base64,")


class TestBaileysConnection:
    """Socket.IO connection lifecycle"""

    @pytest.fixture
    def socket_client(self, monkeypatch):
        GatedSocketClient.instances = []
        monkeypatch.setattr(baileys_module.socketio, "AsyncClient", GatedSocketClient)
        return GatedSocketClient

    @pytest.mark.asyncio
    async def test_connect_then_session_start(self, socket_client):
        provider = BaileysProvider(BotConnectionConfig(provider="baileys", server_url="http://bridge:3001"), bot_id="b1")
        connection, _ = await collect(BaileysConnection, provider)

        task = asyncio.create_task(connection.start())
        await asyncio.sleep(0)
        socket_client.instances[0].gate.set()
        await task

        assert socket_client.instances[0].connected is True
        assert socket_client.instances[0].emitted == ["session:start"]

    @pytest.mark.asyncio
    async def test_close_during_connect_drops_socket(self, socket_client):
        """A connection closed while its socket is still connecting never stays open"""
        provider = BaileysProvider(BotConnectionConfig(provider="baileys", server_url="http://bridge:3001"), bot_id="b1")
        connection, events = await collect(BaileysConnection, provider)

        task = asyncio.create_task(connection.start())
        await asyncio.sleep(0)
        await connection.close()
        socket = socket_client.instances[0]
        socket.gate.set()
        await task

        assert socket.connected is False
        assert socket.disconnect_calls == 1
        assert socket.emitted == []
        assert events == []

    @pytest.mark.asyncio
    async def test_start_after_close_opens_nothing(self, socket_client):
        provider = BaileysProvider(BotConnectionConfig(provider="baileys", server_url="http://bridge:3001"), bot_id="b1")
        connection, _ = await collect(BaileysConnection, provider)

        await connection.close()
        await connection.start()

        assert socket_client.instances == []


class TestEvolutionAPIProvider:
    """Hosted Evolution API gateway"""

    CONFIG = dict(provider="evolution_api", server_url="https://evo.example", instance_id="loja", api_key="k1")

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        provider = EvolutionAPIProvider(BotConnectionConfig(provider="evolution_api"))

        result = await provider.generate_qr_code()

        assert result.status == QRStatus.ERROR
        assert result.message == MISSING_CREDENTIALS_MESSAGE
        with pytest.raises(ProviderConfigurationError):
            await provider.send_message("5511999", "oi")

    @pytest.mark.asyncio
    async def test_generate_qr_passes_image_through(self):
        transport = RecordingTransport(httpx.Response(200, json={"base64": "data:image/png;base64,RVZP"}))
        provider = EvolutionAPIProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())

        result = await provider.generate_qr_code()

        assert result.qr_code == "data:image/png;base64,RVZP"
        request = transport.requests[0]
        assert request.url == "https://evo.example/instance/connect/loja"
        assert request.headers["apikey"] == "k1"

    @pytest.mark.asyncio
    async def test_send_message(self):
        transport = RecordingTransport(httpx.Response(201, json={"key": {"id": "EVO1"}}))
        provider = EvolutionAPIProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())

        result = await provider.send_message("5511999", "oi")

        assert result.message_id == "EVO1"
        assert transport.requests[0].url.path == "/message/sendText/loja"
        assert json.loads(transport.requests[0].content) == {"number": "5511999", "text": "oi"}

    @pytest.mark.asyncio
    async def test_check_connection_finds_instance(self):
        transport = RecordingTransport(httpx.Response(200, json=[
            {"instance": {"instanceName": "other", "state": "open"}},
            {"instance": {"instanceName": "loja", "state": "connecting"}},
        ]))
        provider = EvolutionAPIProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())

        check = await provider.check_connection()

        assert check.connected is False
        assert check.status == "connecting"

    def test_parse_webhook_events(self):
        provider = EvolutionAPIProvider(BotConnectionConfig(**self.CONFIG))

        assert provider.parse_webhook({"event": "connection.update", "data": {"state": "open"}})[0].type == ProviderEventType.OPEN
        closed = provider.parse_webhook({"event": "CONNECTION_UPDATE", "data": {"state": "close", "statusReason": 401}})
        assert closed[0].logged_out is True
        messages = provider.parse_webhook({"event": "messages.upsert", "data": {
            "key": {"remoteJid": "5511999@s.whatsapp.net", "id": "E1"}, "message": {"conversation": "oi"},
        }})
        assert messages[0].messages[0].text == "oi"

    @pytest.mark.asyncio
    async def test_gateway_start_emits_qr(self):
        transport = RecordingTransport(httpx.Response(200, json={"base64": "data:image/png;base64,RVZP"}))
        provider = EvolutionAPIProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())
        connection, events = await collect(GatewayConnection, provider)

        await connection.start()

        assert [e.type for e in events] == [ProviderEventType.QR]

    @pytest.mark.asyncio
    async def test_gateway_start_without_credentials(self):
        provider = EvolutionAPIProvider(BotConnectionConfig(provider="evolution_api"))
        connection, _ = await collect(GatewayConnection, provider)

        with pytest.raises(ProviderConfigurationError):
            await connection.start()


class TestMetaBusinessProvider:
    """Meta WhatsApp Cloud API"""

    CONFIG = dict(provider="meta_business", access_token="EAAG", phone_number_id="1099")

    @pytest.mark.asyncio
    async def test_send_message_request_shape(self):
        transport = RecordingTransport(httpx.Response(200, json={"messages": [{"id": "wamid.1"}]}))
        provider = MetaBusinessProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())

        result = await provider.send_message("5511999", "oi")

        assert result.message_id == "wamid.1"
        request = transport.requests[0]
        assert request.url.path.endswith("/1099/messages")
        assert request.headers["Authorization"] == "Bearer EAAG"
        assert json.loads(request.content) == {
            "messaging_product": "whatsapp", "to": "5511999", "type": "text", "text": {"body": "oi"}
        }

    @pytest.mark.asyncio
    async def test_send_message_retries_rate_limit(self):
        transport = RecordingTransport(
            httpx.Response(429),
            httpx.Response(429),
            httpx.Response(200, json={"messages": [{"id": "wamid.2"}]}),
        )
        provider = MetaBusinessProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())
        provider.retry_base_delay = 0

        result = await provider.send_message("5511999", "oi")

        assert result.message_id == "wamid.2"
        assert len(transport.requests) == 3

    @pytest.mark.asyncio
    async def test_send_message_gives_up_after_retries(self):
        transport = RecordingTransport(httpx.Response(429))
        provider = MetaBusinessProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())
        provider.retry_base_delay = 0

        with pytest.raises(ProviderRequestError):
            await provider.send_message("5511999", "oi")
        assert len(transport.requests) == 4

    @pytest.mark.asyncio
    async def test_qr_requires_oauth_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "META_APP_ID", None)
        provider = MetaBusinessProvider(BotConnectionConfig(provider="meta_business"))

        result = await provider.generate_qr_code()

        assert result.status == QRStatus.ERROR

    @pytest.mark.asyncio
    async def test_qr_encodes_oauth_link(self, monkeypatch):
        monkeypatch.setattr(settings, "META_APP_ID", "42")
        monkeypatch.setattr(settings, "META_REDIRECT_URI", "https://app.example/callback")
        provider = MetaBusinessProvider(BotConnectionConfig(provider="meta_business"))

        result = await provider.generate_qr_code()

        assert result.status == QRStatus.PENDING
        assert "client_id=42" in provider.oauth_url()

    @pytest.mark.asyncio
    async def test_connection_opens_with_valid_token(self):
        transport = RecordingTransport(httpx.Response(200, json={"id": "1099"}))
        provider = MetaBusinessProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())
        connection, events = await collect(MetaBusinessConnection, provider)

        await connection.start()

        assert [e.type for e in events] == [ProviderEventType.OPEN]
        assert connection.is_open is True

    @pytest.mark.asyncio
    async def test_connection_rejects_invalid_token(self):
        transport = RecordingTransport(httpx.Response(401, json={"error": {}}))
        provider = MetaBusinessProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())
        connection, _ = await collect(MetaBusinessConnection, provider)

        with pytest.raises(ProviderRequestError):
            await connection.start()

    def test_parse_webhook_text_messages(self):
        provider = MetaBusinessProvider(BotConnectionConfig(**self.CONFIG))
        payload = {"entry": [{"changes": [{"value": {"messages": [
            {"from": "5511999", "id": "wamid.in", "timestamp": "1700000000", "type": "text", "text": {"body": "oi"}},
            {"from": "5511999", "id": "wamid.img", "type": "image"},
        ]}}]}]}

        events = provider.parse_webhook(payload)

        assert [m.message_id for m in events[0].messages] == ["wamid.in"]

    def test_webhook_signature(self):
        provider = MetaBusinessProvider(BotConnectionConfig(webhook_secret="app-secret", **self.CONFIG))
        body = b'{"entry": []}'

        assert provider.validate_webhook(body, sign("app-secret", body)) is True
        assert provider.validate_webhook(body, "sha256=deadbeef") is False


class TestTwilioProvider:
    """Twilio WhatsApp sandbox"""

    CONFIG = dict(provider="twilio", instance_id="AC123", api_key="token")

    @pytest.mark.asyncio
    async def test_send_message_form_post(self):
        transport = RecordingTransport(httpx.Response(201, json={"sid": "SM1"}))
        provider = TwilioProvider(BotConnectionConfig(**self.CONFIG), http_client=transport.client())

        result = await provider.send_message("+5511999", "oi")

        assert result.message_id == "SM1"
        request = transport.requests[0]
        assert request.url.path.endswith("/Accounts/AC123/Messages.json")
        assert request.headers["Authorization"].startswith("Basic ")
        form = dict(httpx.QueryParams(request.content.decode()))
        assert form == {"From": "whatsapp:+14155238886", "To": "whatsapp:+5511999", "Body": "oi"}

    @pytest.mark.asyncio
    async def test_qr_encodes_join_link(self):
        provider = TwilioProvider(BotConnectionConfig(**self.CONFIG))

        result = await provider.generate_qr_code()

        assert result.status == QRStatus.PENDING
        assert result.qr_code.startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        provider = TwilioProvider(BotConnectionConfig(provider="twilio"))

        assert (await provider.generate_qr_code()).message == MISSING_CREDENTIALS_MESSAGE
        assert (await provider.check_connection()).status == MISSING_CREDENTIALS_MESSAGE

    def test_twilio_signature(self):
        provider = TwilioProvider(BotConnectionConfig(**self.CONFIG))
        url = "https://hub.example/api/webhook/whatsapp/b2"
        body = b"Body=oi&From=whatsapp%3A%2B5511999"
        signature = compute_twilio_signature("token", url, {"Body": "oi", "From": "whatsapp:+5511999"})

        assert provider.validate_webhook(body, signature, url) is True
        assert provider.validate_webhook(body, signature, url + "?x=1") is False
        assert provider.validate_webhook(body, None, url) is False

    def test_signature_rejects_undecodable_form(self):
        provider = TwilioProvider(BotConnectionConfig(**self.CONFIG))
        url = "https://hub.example/api/webhook/whatsapp/b2"

        assert provider.validate_webhook(b"Body=\xff\xfe", "sig", url) is False

    def test_parse_webhook_join_opens_session(self):
        provider = TwilioProvider(BotConnectionConfig(**self.CONFIG))

        joined = provider.parse_webhook({"From": "whatsapp:+5511999", "Body": "join AC123"})
        message = provider.parse_webhook({"From": "whatsapp:+5511999", "Body": "oi", "MessageSid": "SM9"})

        assert joined[0].type == ProviderEventType.OPEN
        assert message[0].messages[0].sender == "+5511999"
        assert message[0].messages[0].message_id == "SM9"


class TestProviderConnection:
    """Send gating on the connection itself"""

    @pytest.mark.asyncio
    async def test_send_requires_open(self):
        transport = RecordingTransport(httpx.Response(201, json={"sid": "SM1"}))
        provider = TwilioProvider(BotConnectionConfig(**TestTwilioProvider.CONFIG), http_client=transport.client())
        connection, _ = await collect(GatewayConnection, provider)

        with pytest.raises(SessionNotConnectedError):
            await connection.send_message("+5511999", "oi")
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_closed_connection_drops_events(self):
        provider = TwilioProvider(BotConnectionConfig(**TestTwilioProvider.CONFIG))
        connection, events = await collect(GatewayConnection, provider)

        await connection.close()
        await connection.close()
        for event in provider.parse_webhook({"From": "whatsapp:+1", "Body": "join x"}):
            await connection.emit(event)

        assert events == []
        assert connection.closed is True


class TestWhatsAppProviderFactory:
    """Provider resolution"""

    @pytest.mark.parametrize("name,expected", [
        ("baileys", BaileysProvider),
        ("evolution_api", EvolutionAPIProvider),
        ("meta_business", MetaBusinessProvider),
        ("twilio", TwilioProvider),
        ("wppconnect", BaileysProvider),
        ("VENOM", BaileysProvider),
    ])
    def test_known_providers(self, name, expected):
        assert WhatsAppProviderFactory.get_provider_class(name) is expected

    def test_unknown_provider_falls_back_to_default(self):
        provider = WhatsAppProviderFactory.create_provider(BotConnectionConfig(provider="carrier-pigeon"), bot_id="b1")

        assert isinstance(provider, BaileysProvider)
        assert provider.bot_id == "b1"

    def test_strict_lookup_raises(self):
        with pytest.raises(ProviderNotFoundError):
            WhatsAppProviderFactory.get_provider_class("carrier-pigeon", strict=True)

    def test_register_provider(self, monkeypatch):
        monkeypatch.setattr(WhatsAppProviderFactory, "_PROVIDER_REGISTRY", dict(WhatsAppProviderFactory._PROVIDER_REGISTRY))

        class CustomProvider(TwilioProvider):
            name = "custom"

        WhatsAppProviderFactory.register_provider("custom", CustomProvider)

        assert "custom" in WhatsAppProviderFactory.get_available_providers()
        with pytest.raises(ProviderConfigurationError):
            WhatsAppProviderFactory.register_provider("broken", object)
