"""Minimal presence relay for duo-rtc rooms.

Relays client events between the members of a presence topic and reports
membership changes, the subset of hosted presence channels a room session
relies on. Capacity is not enforced here: a client that subscribes to a full
room sees the count and leaves on its own.
"""

import asyncio
import json
from typing import Any, Dict

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed

from duo_rtc.protocol import (
    CHANNEL_PREFIX,
    EVT_MEMBER_ADDED,
    EVT_MEMBER_REMOVED,
    EVT_SUBSCRIPTION_ERROR,
    EVT_SUBSCRIPTION_SUCCEEDED,
)


class PresenceServer:
    def __init__(self):
        # channel -> {websocket: member info}, in subscription order
        self.channels: Dict[str, Dict[Any, Dict[str, Any]]] = {}

    def member_count(self, channel: str) -> int:
        return len(self.channels.get(channel, {}))

    async def handle_client(self, websocket):
        """Handle one WebSocket client for its whole lifetime."""
        channel = None
        try:
            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON received from client")
                    continue
                action = data.get("action")

                if action == "subscribe":
                    if channel is not None:
                        await self._send(websocket, {"event": EVT_SUBSCRIPTION_ERROR, "reason": "Already subscribed"})
                        continue

                    requested = data.get("channel") or ""
                    member = data.get("member") or {}
                    if not requested.startswith(CHANNEL_PREFIX) or len(requested) == len(CHANNEL_PREFIX):
                        await self._send(websocket, {"event": EVT_SUBSCRIPTION_ERROR, "reason": "Invalid channel name"})
                        continue
                    if not member.get("name"):
                        await self._send(websocket, {"event": EVT_SUBSCRIPTION_ERROR, "reason": "Missing member name"})
                        continue

                    channel = requested
                    members = self.channels.setdefault(channel, {})
                    members[websocket] = member
                    count = len(members)
                    logger.info(f"{member['name']} subscribed to {channel} ({count} members)")

                    await self._send(
                        websocket,
                        {
                            "event": EVT_SUBSCRIPTION_SUCCEEDED,
                            "count": count,
                            "members": list(members.values()),
                        },
                    )
                    await self._broadcast(
                        channel,
                        websocket,
                        {"event": EVT_MEMBER_ADDED, "count": count, "member": member},
                    )

                elif action == "trigger":
                    event = data.get("event") or ""
                    if channel is None or not event.startswith("client-"):
                        logger.warning(f"Rejected trigger of {event!r} on {channel!r}")
                        continue
                    await self._broadcast(
                        channel, websocket, {"event": event, "data": data.get("data")}
                    )

                elif action == "unsubscribe":
                    await self._remove(channel, websocket)
                    channel = None

                else:
                    logger.warning(f"Unknown action from client: {action}")

        except ConnectionClosed:
            pass
        finally:
            await self._remove(channel, websocket)

    async def _remove(self, channel, websocket) -> None:
        members = self.channels.get(channel)
        if not members or websocket not in members:
            return
        member = members.pop(websocket)
        count = len(members)
        logger.info(f"{member.get('name')} left {channel} ({count} members)")
        if not members:
            del self.channels[channel]
            return
        await self._broadcast(
            channel, websocket, {"event": EVT_MEMBER_REMOVED, "count": count, "member": member}
        )

    async def _broadcast(self, channel: str, sender, frame: Dict[str, Any]) -> None:
        for peer in list(self.channels.get(channel, {})):
            if peer is not sender:
                await self._send(peer, frame)

    async def _send(self, websocket, frame: Dict[str, Any]) -> None:
        try:
            await websocket.send(json.dumps(frame))
        except ConnectionClosed:
            logger.debug("Skipped send to a closed client")


async def serve_presence(host: str = "localhost", port: int = 8080) -> None:
    """Run the presence relay until cancelled."""
    server = PresenceServer()
    async with websockets.serve(server.handle_client, host, port):
        logger.info(f"Presence relay listening on ws://{host}:{port}")
        await asyncio.Future()
