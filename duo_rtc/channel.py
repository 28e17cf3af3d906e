"""Presence-aware signaling channel adapters.

A presence channel is a pub/sub topic scoped to one room that also reports
membership. The room session binds a handler and receives three kinds of
events:

- MembershipChanged: member count on subscribe (initial=True) and when
  another member subscribes (initial=False)
- MemberLeft: another member unsubscribed or disconnected
- SignalReceived: a named signaling message from the other member

Publishing is fire-and-forget. Messages with the same name from one sender
are assumed to arrive in send order; nothing here re-orders or acknowledges.

Two implementations are provided:
- WebSocketPresenceChannel talks to a presence relay (see presence_server.py)
- InMemoryPresenceHub/InMemoryPresenceChannel connect sessions living in the
  same event loop (tests and local demos)
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from duo_rtc.exceptions import ChannelUnavailableError
from duo_rtc.protocol import (
    EVT_MEMBER_ADDED,
    EVT_MEMBER_REMOVED,
    EVT_SUBSCRIPTION_ERROR,
    EVT_SUBSCRIPTION_SUCCEEDED,
    channel_name,
    signal_name,
    wire_event,
)

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection


@dataclass
class MembershipChanged:
    count: int
    initial: bool = False


@dataclass
class MemberLeft:
    count: int = 0


@dataclass
class SignalReceived:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


ChannelEvent = Union[MembershipChanged, MemberLeft, SignalReceived]
EventHandler = Callable[[ChannelEvent], None]


class PresenceChannel(ABC):
    """Base class for presence channel adapters.

    Attributes:
        room: Room name once joined
        identity: Display name used for the presence slot
    """

    def __init__(self):
        self.room: Optional[str] = None
        self.identity: Optional[str] = None
        self._handler: Optional[EventHandler] = None

    def bind(self, handler: EventHandler) -> None:
        """Set the receiver of channel events. Must be called before join."""
        self._handler = handler

    def _emit(self, event: ChannelEvent) -> None:
        if self._handler is None:
            logger.warning(f"Dropping channel event with no handler bound: {event}")
            return
        self._handler(event)

    @abstractmethod
    async def join(self, room: str, identity: str) -> "PresenceChannel":
        """Subscribe to the room's topic.

        Emits MembershipChanged(initial=True) before returning.

        Raises:
            ChannelUnavailableError: If the provider cannot be reached or
                refuses the subscription.
        """

    @abstractmethod
    async def trigger(self, name: str, payload: Dict[str, Any]) -> None:
        """Publish a signaling message to the other member."""

    @abstractmethod
    async def leave(self) -> None:
        """Unsubscribe. Safe to call twice."""


class InMemoryPresenceHub:
    """Presence provider for channels living in one event loop.

    Events are delivered synchronously in publish order. Payloads are copied
    through JSON so they behave like payloads that crossed a network.

    Attributes:
        available: When False, joins fail with ChannelUnavailableError
    """

    def __init__(self):
        self.available = True
        self._topics: Dict[str, List["InMemoryPresenceChannel"]] = {}

    def channel(self) -> "InMemoryPresenceChannel":
        return InMemoryPresenceChannel(self)

    def members(self, room: str) -> List[str]:
        return [member.identity for member in self._topics.get(channel_name(room), [])]

    def _subscribe(self, member: "InMemoryPresenceChannel") -> None:
        if not self.available:
            raise ChannelUnavailableError("Presence provider unavailable")
        topic = self._topics.setdefault(channel_name(member.room), [])
        topic.append(member)
        count = len(topic)
        member._emit(MembershipChanged(count=count, initial=True))
        for other in topic:
            if other is not member:
                other._emit(MembershipChanged(count=count, initial=False))

    def _unsubscribe(self, member: "InMemoryPresenceChannel") -> None:
        name = channel_name(member.room)
        topic = self._topics.get(name, [])
        if member not in topic:
            return
        topic.remove(member)
        for other in topic:
            other._emit(MemberLeft(count=len(topic)))
        if not topic:
            del self._topics[name]

    def _publish(self, sender: "InMemoryPresenceChannel", name: str, payload: Dict[str, Any]) -> None:
        wire_event(name)
        encoded = json.dumps(payload)
        for other in self._topics.get(channel_name(sender.room), []):
            if other is not sender:
                other._emit(SignalReceived(name=name, payload=json.loads(encoded)))


class InMemoryPresenceChannel(PresenceChannel):
    """Channel handle returned by InMemoryPresenceHub.channel()."""

    def __init__(self, hub: InMemoryPresenceHub):
        super().__init__()
        self.hub = hub
        self.joined = False

    async def join(self, room: str, identity: str) -> "InMemoryPresenceChannel":
        self.room = room
        self.identity = identity
        self.hub._subscribe(self)
        self.joined = True
        return self

    async def trigger(self, name: str, payload: Dict[str, Any]) -> None:
        if not self.joined:
            logger.warning(f"Dropping {name}: channel not joined")
            return
        self.hub._publish(self, name, payload)

    async def leave(self) -> None:
        if not self.joined:
            return
        self.joined = False
        self.hub._unsubscribe(self)


class WebSocketPresenceChannel(PresenceChannel):
    """Presence channel backed by a WebSocket presence relay.

    Attributes:
        url: Relay WebSocket URL
        connect_timeout: Seconds to wait for the connection and subscription
        websocket: Open connection while joined
    """

    def __init__(self, url: str, connect_timeout: float = 10.0):
        super().__init__()
        self.url = url
        self.connect_timeout = connect_timeout
        self.websocket: Optional["ClientConnection"] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._leaving = False

    async def join(self, room: str, identity: str) -> "WebSocketPresenceChannel":
        self.room = room
        self.identity = identity

        logger.info(f"Connecting to presence relay at {self.url}...")
        try:
            self.websocket = await websockets.connect(
                self.url, open_timeout=self.connect_timeout
            )
        except (OSError, TimeoutError, InvalidURI, InvalidHandshake) as e:
            raise ChannelUnavailableError(f"Cannot connect to {self.url}: {e}") from e

        try:
            await self.websocket.send(
                json.dumps(
                    {
                        "action": "subscribe",
                        "channel": channel_name(room),
                        "member": {"name": identity},
                    }
                )
            )
            reply = json.loads(
                await asyncio.wait_for(self.websocket.recv(), self.connect_timeout)
            )
        except (ConnectionClosed, TimeoutError, json.JSONDecodeError) as e:
            await self.websocket.close()
            self.websocket = None
            raise ChannelUnavailableError(f"Subscription to {room} failed: {e}") from e

        event = reply.get("event")
        if event != EVT_SUBSCRIPTION_SUCCEEDED:
            reason = reply.get("reason", f"unexpected reply {event!r}")
            await self.websocket.close()
            self.websocket = None
            raise ChannelUnavailableError(f"Subscription to {room} refused: {reason}")

        logger.info(f"Subscribed to {channel_name(room)} as {identity} ({reply.get('count')} members)")
        self._emit(MembershipChanged(count=int(reply.get("count", 0)), initial=True))
        self._reader_task = asyncio.create_task(self._read_loop())
        return self

    async def _read_loop(self) -> None:
        """Dispatch relay frames to the bound handler until the socket closes."""
        try:
            async for message in self.websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.error("Invalid JSON received from presence relay")
                    continue
                self._dispatch(data)
        except ConnectionClosed:
            pass
        if not self._leaving:
            logger.error("Presence relay connection lost; signaling is no longer available")

    def _dispatch(self, data: Dict[str, Any]) -> None:
        event = data.get("event")

        if event == EVT_MEMBER_ADDED:
            self._emit(MembershipChanged(count=int(data.get("count", 0))))
        elif event == EVT_MEMBER_REMOVED:
            self._emit(MemberLeft(count=int(data.get("count", 0))))
        elif event == EVT_SUBSCRIPTION_ERROR:
            logger.error(f"Presence relay error: {data.get('reason')}")
        else:
            name = signal_name(event)
            if name is None:
                logger.warning(f"Unhandled presence event: {event}")
                return
            self._emit(SignalReceived(name=name, payload=data.get("data") or {}))

    async def trigger(self, name: str, payload: Dict[str, Any]) -> None:
        if self.websocket is None:
            logger.warning(f"Dropping {name}: channel not joined")
            return
        try:
            await self.websocket.send(
                json.dumps({"action": "trigger", "event": wire_event(name), "data": payload})
            )
        except ConnectionClosed:
            logger.warning(f"Dropping {name}: presence relay connection closed")

    async def leave(self) -> None:
        if self.websocket is None:
            return
        self._leaving = True
        websocket, self.websocket = self.websocket, None
        try:
            await websocket.send(json.dumps({"action": "unsubscribe"}))
        except ConnectionClosed:
            pass
        await websocket.close()
        if self._reader_task is not None:
            await self._reader_task
            self._reader_task = None
        logger.info(f"Left {channel_name(self.room)}")
