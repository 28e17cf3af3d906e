"""Entry point for joining a duo-rtc room from a terminal."""

import asyncio
import sys
import threading
from typing import Dict, Optional

import click
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole
from loguru import logger

from duo_rtc.channel import PresenceChannel, WebSocketPresenceChannel
from duo_rtc.chat import ChatMessage
from duo_rtc.config import Config, get_config
from duo_rtc.exceptions import ChannelUnavailableError, OverCapacityError
from duo_rtc.media import MediaCapture, MediaLifecycle
from duo_rtc.session import RoomSession

CONSOLE_HELP = """Commands:
  /mic      toggle microphone
  /camera   toggle camera
  /screen   start or stop screen sharing
  /leave    leave the room
  /help     show this help
Anything else is sent as a chat message."""


def on_off(active: bool) -> str:
    return "on" if active else "off"


async def handle_console_line(session: RoomSession, line: str) -> bool:
    """Apply one line of console input. Returns False once the user left."""
    command = line.strip()
    if not command:
        return True

    if command == "/mic":
        click.echo(f"Microphone {on_off(await session.toggle_mic())}")
    elif command == "/camera":
        click.echo(f"Camera {on_off(await session.toggle_camera())}")
    elif command == "/screen":
        click.echo(f"Screen sharing {on_off(await session.toggle_screen_share())}")
    elif command in ("/leave", "/quit"):
        await session.leave()
        return False
    elif command == "/help":
        click.echo(CONSOLE_HELP)
    elif command.startswith("/"):
        click.echo(f"Unknown command {command}. Type /help for commands.")
    else:
        await session.send_chat(command)
    return True


async def _console(session: RoomSession) -> None:
    """Feed stdin lines to the session until the user leaves or stdin closes."""
    lines: asyncio.Queue = asyncio.Queue()
    loop = asyncio.get_running_loop()

    def read_stdin():
        try:
            for line in sys.stdin:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            loop.call_soon_threadsafe(lines.put_nowait, None)
        except RuntimeError:
            # Event loop already closed
            return

    # Daemon thread so a blocked readline never holds up interpreter exit
    threading.Thread(target=read_stdin, name="duo-rtc-stdin", daemon=True).start()

    while True:
        line = await lines.get()
        if line is None:
            logger.info("Input closed; leaving room")
            await session.leave()
            return
        if not await handle_console_line(session, line):
            return


def _print_chat(message: ChatMessage) -> None:
    click.echo(f"[{message.sender}] {message.text}")


class RemoteMediaSink:
    """Consumes and discards remote tracks, one blackhole per track.

    A track's blackhole is stopped and forgotten as soon as the track ends,
    so tracks from finished negotiation rounds do not pile up.
    """

    def __init__(self):
        self.blackholes: Dict[MediaStreamTrack, MediaBlackhole] = {}

    async def add(self, track: MediaStreamTrack) -> None:
        if track.readyState == "ended" or track in self.blackholes:
            return
        blackhole = MediaBlackhole()
        blackhole.addTrack(track)
        self.blackholes[track] = blackhole

        @track.on("ended")
        async def on_ended():
            await self.discard(track)

        await blackhole.start()
        logger.debug(f"Consuming remote {track.kind} track")

    async def discard(self, track: MediaStreamTrack) -> None:
        blackhole = self.blackholes.pop(track, None)
        if blackhole is not None:
            await blackhole.stop()

    async def close(self) -> None:
        for track in list(self.blackholes):
            await self.discard(track)


async def join_room(
    room: str,
    name: str,
    config: Optional[Config] = None,
    channel: Optional[PresenceChannel] = None,
    interactive: bool = True,
) -> Optional[BaseException]:
    """Join `room` as `name` and stay until leaving or a forced exit.

    Remote media is consumed and discarded. Returns why the session ended
    (None for a voluntary leave).
    """
    config = config or get_config()
    channel = channel or WebSocketPresenceChannel(config.signaling_websocket)
    media = MediaLifecycle(MediaCapture(config.capture))
    session = RoomSession(
        room,
        name,
        channel,
        media,
        ice_servers=config.ice_servers,
        answer_timeout=config.answer_timeout,
    )

    sink = RemoteMediaSink()
    session.on_remote_track = sink.add
    session.chat.subscribe(_print_chat)

    try:
        await session.start()
    except ChannelUnavailableError:
        return session.exit_reason

    console = asyncio.create_task(_console(session)) if interactive else None
    if interactive:
        click.echo(CONSOLE_HELP)

    try:
        await session.wait_closed()
    except asyncio.CancelledError:
        await session.leave()
        raise
    finally:
        if console is not None:
            console.cancel()
        await sink.close()

    return session.exit_reason


def run_room(room: str, name: str, signaling_url: Optional[str] = None) -> int:
    """Run a room session to completion and return a process exit code."""
    config = get_config()
    if signaling_url:
        config.signaling_websocket = signaling_url

    reason: Optional[BaseException] = None
    try:
        reason = asyncio.run(join_room(room, name, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Leaving room...")
    finally:
        logger.info("Exiting...")

    if isinstance(reason, OverCapacityError):
        logger.error(f"Room {room} is full: {reason}")
    elif reason is not None:
        logger.error(f"Session ended: {reason}")
    return 0 if reason is None else 1
