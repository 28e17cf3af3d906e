"""Tests for presence channels and the presence relay."""

import asyncio
import json

import pytest
import websockets

from conftest import FakeCapture, FakeTransportFactory, eventually
from duo_rtc.channel import (
    InMemoryPresenceHub,
    MemberLeft,
    MembershipChanged,
    SignalReceived,
    WebSocketPresenceChannel,
)
from duo_rtc.exceptions import ChannelUnavailableError
from duo_rtc.media import MediaLifecycle
from duo_rtc.presence_server import PresenceServer
from duo_rtc.protocol import MSG_CHAT_MESSAGE, MSG_READY
from duo_rtc.session import RoomSession, SessionState


async def start_relay():
    relay = PresenceServer()
    server = await websockets.serve(relay.handle_client, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return relay, server, f"ws://127.0.0.1:{port}"


async def stop_relay(server):
    server.close()
    await server.wait_closed()


class TestInMemoryPresence:
    """Test the in-process presence hub."""

    def test_membership_counts(self):
        async def scenario():
            hub = InMemoryPresenceHub()
            first, second = hub.channel(), hub.channel()
            first_events, second_events = [], []
            first.bind(first_events.append)
            second.bind(second_events.append)

            await first.join("r1", "A")
            await second.join("r1", "B")

            assert first_events == [
                MembershipChanged(count=1, initial=True),
                MembershipChanged(count=2, initial=False),
            ]
            assert second_events == [MembershipChanged(count=2, initial=True)]
            assert hub.members("r1") == ["A", "B"]

            await second.leave()
            await second.leave()
            assert first_events[-1] == MemberLeft(count=1)
            assert hub.members("r1") == ["A"]

        asyncio.run(scenario())

    def test_rooms_are_isolated(self):
        async def scenario():
            hub = InMemoryPresenceHub()
            first, second = hub.channel(), hub.channel()
            first_events = []
            first.bind(first_events.append)
            second.bind(lambda event: None)

            await first.join("r1", "A")
            await second.join("r2", "B")
            await second.trigger(MSG_READY, {})

            assert first_events == [MembershipChanged(count=1, initial=True)]

        asyncio.run(scenario())

    def test_publish_reaches_only_others(self):
        async def scenario():
            hub = InMemoryPresenceHub()
            first, second = hub.channel(), hub.channel()
            first_events, second_events = [], []
            first.bind(first_events.append)
            second.bind(second_events.append)
            await first.join("r1", "A")
            await second.join("r1", "B")

            payload = {"sender": "B", "text": "hi"}
            await second.trigger(MSG_CHAT_MESSAGE, payload)
            payload["text"] = "changed"

            assert first_events[-1] == SignalReceived(
                name=MSG_CHAT_MESSAGE, payload={"sender": "B", "text": "hi"}
            )
            assert not any(isinstance(event, SignalReceived) for event in second_events)

        asyncio.run(scenario())

    def test_unknown_message_rejected(self):
        async def scenario():
            hub = InMemoryPresenceHub()
            channel = hub.channel()
            channel.bind(lambda event: None)
            await channel.join("r1", "A")
            with pytest.raises(ValueError):
                await channel.trigger("hello", {})

        asyncio.run(scenario())

    def test_unavailable_provider(self):
        async def scenario():
            hub = InMemoryPresenceHub()
            hub.available = False
            channel = hub.channel()
            with pytest.raises(ChannelUnavailableError):
                await channel.join("r1", "A")
            assert hub.members("r1") == []

        asyncio.run(scenario())


class TestWebSocketPresence:
    """Test the WebSocket channel against a local presence relay."""

    def test_join_signal_and_leave(self):
        async def scenario():
            relay, server, url = await start_relay()
            first, second = WebSocketPresenceChannel(url), WebSocketPresenceChannel(url)
            first_events, second_events = [], []
            first.bind(first_events.append)
            second.bind(second_events.append)

            await first.join("r1", "A")
            await second.join("r1", "B")
            assert relay.member_count("presence-r1") == 2
            assert first_events[0] == MembershipChanged(count=1, initial=True)
            assert second_events[0] == MembershipChanged(count=2, initial=True)
            await eventually(lambda: MembershipChanged(count=2) in first_events)

            await second.trigger(MSG_READY, {})
            await eventually(lambda: SignalReceived(name=MSG_READY, payload={}) in first_events)

            await second.leave()
            await eventually(lambda: MemberLeft(count=1) in first_events)
            assert relay.member_count("presence-r1") == 1

            await first.leave()
            await eventually(lambda: relay.member_count("presence-r1") == 0)
            await stop_relay(server)

        asyncio.run(scenario())

    def test_unreachable_relay(self):
        async def scenario():
            channel = WebSocketPresenceChannel("ws://127.0.0.1:1", connect_timeout=2.0)
            channel.bind(lambda event: None)
            with pytest.raises(ChannelUnavailableError):
                await channel.join("r1", "A")

        asyncio.run(scenario())

    def test_trigger_before_join_is_dropped(self):
        async def scenario():
            channel = WebSocketPresenceChannel("ws://127.0.0.1:1")
            await channel.trigger(MSG_READY, {})
            await channel.leave()

        asyncio.run(scenario())

    def test_relay_rejects_bad_subscriptions(self):
        async def scenario():
            _, server, url = await start_relay()
            async with websockets.connect(url) as websocket:
                await websocket.send(json.dumps({"action": "subscribe", "channel": "r1", "member": {"name": "A"}}))
                reply = json.loads(await websocket.recv())
                assert reply["event"] == "subscription_error"

                await websocket.send(json.dumps({"action": "subscribe", "channel": "presence-r1", "member": {}}))
                reply = json.loads(await websocket.recv())
                assert reply["event"] == "subscription_error"
            await stop_relay(server)

        asyncio.run(scenario())

    def test_relay_only_forwards_client_events(self):
        async def scenario():
            _, server, url = await start_relay()
            listener = WebSocketPresenceChannel(url)
            events = []
            listener.bind(events.append)
            await listener.join("r1", "A")

            async with websockets.connect(url) as websocket:
                await websocket.send(json.dumps({"action": "subscribe", "channel": "presence-r1", "member": {"name": "B"}}))
                await websocket.recv()
                await websocket.send(json.dumps({"action": "trigger", "event": "member_removed", "data": {}}))
                await websocket.send(json.dumps({"action": "trigger", "event": "client-ready", "data": {}}))
                await eventually(lambda: SignalReceived(name=MSG_READY, payload={}) in events)

            await eventually(lambda: MemberLeft(count=1) in events)
            assert events.count(MemberLeft(count=1)) == 1
            await listener.leave()
            await stop_relay(server)

        asyncio.run(scenario())

    def test_sessions_connect_through_relay(self):
        async def scenario():
            _, server, url = await start_relay()
            factory = FakeTransportFactory()
            sessions = [
                RoomSession(
                    "r1",
                    name,
                    WebSocketPresenceChannel(url),
                    MediaLifecycle(FakeCapture()),
                    transport_factory=factory,
                )
                for name in ("A", "B")
            ]
            host, guest = sessions
            await host.start()
            await eventually(lambda: host.state is SessionState.ROLE_ELECTION)
            await guest.start()
            await eventually(
                lambda: host.state is SessionState.CONNECTED
                and guest.state is SessionState.CONNECTED
            )

            await guest.send_chat("hi")
            await eventually(lambda: [m.text for m in host.chat.messages] == ["hi"])

            await guest.leave()
            await eventually(lambda: host.state is SessionState.ROLE_ELECTION)
            await host.leave()
            await stop_relay(server)

        asyncio.run(scenario())
