"""Unit tests for the plugin transport facade.

Drives PluginTransport over an in-memory socket, playing the host by
feeding frames and inspecting what the plugin sent.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from plugin_link.config import TransportConfig
from plugin_link.connection import ConnectionState
from plugin_link.errors import (
    CallTimeoutError,
    ConnectionLostError,
    EncodeError,
    NotConnectedError,
    RemoteCallError,
)
from plugin_link.protocol import CommandEnvelope, encode
from plugin_link.transport import PluginTransport


def make_config(**overrides: Any) -> TransportConfig:
    options: dict[str, Any] = {"port": 9999, "plugin_id": "com.example.plugin", "directory": "/tmp"}
    options.update(overrides)
    return TransportConfig(**options)


async def connected_transport(
    socket, connector_factory, fake_sleep, **overrides: Any
) -> PluginTransport:
    transport = PluginTransport(
        make_config(**overrides), connector=connector_factory(socket), sleep=fake_sleep
    )
    await transport.start()
    assert await transport.wait_connected(timeout=1.0)
    return transport


async def next_sent(socket, eventually, index: int) -> dict[str, Any]:
    await eventually(lambda: len(socket.sent) > index)
    return socket.sent_envelopes()[index]


# =============================================================================
# Startup
# =============================================================================


class TestStartup:
    """Tests for connect and the startup announcement."""

    @pytest.mark.asyncio
    async def test_sends_startup_on_open(
        self, fake_socket, connector_factory, fake_sleep, eventually
    ) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)

        startup = await next_sent(fake_socket, eventually, 0)
        assert startup["type"] == "startup"
        assert startup["payload"] == {"pluginID": "com.example.plugin"}
        assert startup["senderID"] == "com.example.plugin"
        assert startup["status"] == "pending"
        assert transport.pending_count == 0
        assert transport.state == ConnectionState.CONNECTED

        await transport.stop()

    @pytest.mark.asyncio
    async def test_startup_resent_after_reconnect(
        self, socket_factory, connector_factory, fake_sleep, eventually
    ) -> None:
        first, second = socket_factory(), socket_factory()
        transport = PluginTransport(
            make_config(), connector=connector_factory(first, second), sleep=fake_sleep
        )
        await transport.start()
        await eventually(lambda: len(first.sent) == 1)

        await first.close()
        await eventually(lambda: len(second.sent) == 1)

        assert second.sent_envelopes()[0]["type"] == "startup"
        await transport.stop()

    @pytest.mark.asyncio
    async def test_connects_to_configured_url(self, fake_socket, connector_factory, fake_sleep):
        connector = connector_factory(fake_socket)
        transport = PluginTransport(make_config(port=4321), connector=connector, sleep=fake_sleep)

        async with transport:
            await transport.wait_connected(timeout=1.0)
            assert connector.urls == ["ws://localhost:4321"]

        assert transport.state == ConnectionState.CLOSED


# =============================================================================
# Outbound calls
# =============================================================================


class TestCall:
    """Tests for call() and notify()."""

    @pytest.mark.asyncio
    async def test_call_resolves_with_reply(
        self, fake_socket, connector_factory, fake_sleep, eventually
    ) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)

        call = asyncio.create_task(transport.call("get-config", {"key": "theme"}))
        request = await next_sent(fake_socket, eventually, 1)
        assert request["type"] == "get-config"
        assert request["payload"] == {"key": "theme"}
        assert transport.has_pending(request["id"])

        fake_socket.feed(encode(CommandEnvelope.reply(request["id"], {"theme": "dark"})))

        assert await call == {"theme": "dark"}
        assert transport.pending_count == 0
        await transport.stop()

    @pytest.mark.asyncio
    async def test_call_rejected_by_host(
        self, fake_socket, connector_factory, fake_sleep, eventually
    ) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)

        call = asyncio.create_task(transport.call("draw", {"x": -1}))
        request = await next_sent(fake_socket, eventually, 1)
        fake_socket.feed(encode(CommandEnvelope.reply(request["id"], error="out of bounds")))

        with pytest.raises(RemoteCallError) as exc_info:
            await call
        assert exc_info.value.command == "draw"
        assert exc_info.value.remote_error == "out of bounds"
        await transport.stop()

    @pytest.mark.asyncio
    async def test_call_times_out(self, fake_socket, connector_factory, fake_sleep) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)

        with pytest.raises(CallTimeoutError) as exc_info:
            await transport.call("slow", {"n": 1}, timeout=0.02)

        assert exc_info.value.command == "slow"
        assert exc_info.value.payload == {"n": 1}
        assert transport.pending_count == 0
        await transport.stop()

    @pytest.mark.asyncio
    async def test_default_timeout_from_config(
        self, fake_socket, connector_factory, fake_sleep
    ) -> None:
        transport = await connected_transport(
            fake_socket, connector_factory, fake_sleep, call_timeout=0.02
        )

        with pytest.raises(CallTimeoutError, match="after 0.02s"):
            await transport.call("slow")
        await transport.stop()

    @pytest.mark.asyncio
    async def test_call_while_disconnected_fails_fast(self, connector_factory, fake_sleep) -> None:
        transport = PluginTransport(make_config(), connector=connector_factory(), sleep=fake_sleep)

        with pytest.raises(NotConnectedError):
            await transport.call("ping")
        assert transport.pending_count == 0

    @pytest.mark.asyncio
    async def test_unencodable_payload(self, fake_socket, connector_factory, fake_sleep) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)

        with pytest.raises(EncodeError):
            await transport.call("draw", object())
        assert transport.pending_count == 0
        await transport.stop()

    @pytest.mark.asyncio
    async def test_connection_loss_fails_pending_calls(
        self, fake_socket, connector_factory, fake_sleep, eventually
    ) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)

        call = asyncio.create_task(transport.call("get-config", timeout=0))
        await next_sent(fake_socket, eventually, 1)
        await fake_socket.close()

        with pytest.raises(ConnectionLostError, match="get-config"):
            await call
        await transport.stop()

    @pytest.mark.asyncio
    async def test_stop_fails_pending_calls(
        self, fake_socket, connector_factory, fake_sleep, eventually
    ) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)

        call = asyncio.create_task(transport.call("get-config"))
        await next_sent(fake_socket, eventually, 1)
        await transport.stop()

        with pytest.raises(ConnectionLostError):
            await call

    @pytest.mark.asyncio
    async def test_notify(self, fake_socket, connector_factory, fake_sleep, eventually) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)

        call_id = await transport.notify("log", {"msg": "hi"})

        sent = await next_sent(fake_socket, eventually, 1)
        assert sent["id"] == call_id
        assert transport.pending_count == 0
        await transport.stop()


# =============================================================================
# Inbound requests
# =============================================================================


class TestHandlers:
    """Tests for answering host requests."""

    @pytest.mark.asyncio
    async def test_handler_reply_sent_to_host(
        self, fake_socket, connector_factory, fake_sleep, eventually
    ) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)
        transport.on("plugin.alive", lambda payload: {"alive": True, "got": payload})

        fake_socket.feed({"id": "host-1", "type": "plugin.alive", "payload": [1]})

        reply = await next_sent(fake_socket, eventually, 1)
        assert reply == {
            "id": "host-1",
            "type": "response",
            "payload": {"alive": True, "got": [1]},
            "timestamp": reply["timestamp"],
            "status": "success",
            "senderID": "com.example.plugin",
        }
        await transport.stop()

    @pytest.mark.asyncio
    async def test_unknown_command_not_answered(
        self, fake_socket, connector_factory, fake_sleep
    ) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)

        fake_socket.feed({"id": "host-1", "type": "nobody-handles-this"})
        fake_socket.feed("garbage")
        await asyncio.sleep(0.01)

        assert [env["type"] for env in fake_socket.sent_envelopes()] == ["startup"]
        assert transport.is_connected
        await transport.stop()

    @pytest.mark.asyncio
    async def test_off_stops_answering(self, fake_socket, connector_factory, fake_sleep) -> None:
        transport = await connected_transport(fake_socket, connector_factory, fake_sleep)
        transport.on("ping", lambda payload: "pong")
        assert transport.off("ping") is True

        fake_socket.feed({"id": "host-1", "type": "ping"})
        await asyncio.sleep(0.01)

        assert len(fake_socket.sent) == 1
        await transport.stop()
