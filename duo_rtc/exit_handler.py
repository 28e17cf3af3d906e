"""Teardown of a room session's resources."""

from typing import Optional

from loguru import logger

from duo_rtc.channel import PresenceChannel
from duo_rtc.media import MediaLifecycle
from duo_rtc.transport import PeerTransport


async def close_transport(transport: Optional[PeerTransport]) -> None:
    """Close a transport if there is one, logging instead of raising."""
    if transport is None:
        return
    try:
        await transport.close()
    except Exception as e:
        logger.error(f"Error closing peer transport: {e}")


class SessionExit:
    """Releases capture, closes the transport and leaves the channel.

    Runs at most once; later calls return immediately, whatever state the
    session was in when the first call happened.

    Attributes:
        reason: Why the session ended (None for a voluntary leave)
    """

    def __init__(self, media: MediaLifecycle, channel: PresenceChannel):
        self.media = media
        self.channel = channel
        self.reason: Optional[BaseException] = None
        self.done = False

    async def run(
        self,
        transport: Optional[PeerTransport],
        reason: Optional[BaseException] = None,
    ) -> None:
        if self.done:
            return
        self.done = True
        self.reason = reason

        if reason is not None:
            logger.warning(f"Forced exit: {reason}")
        else:
            logger.info("Leaving room...")

        logger.info("Releasing local capture...")
        self.media.release()

        logger.info("Closing peer transport...")
        await close_transport(transport)

        logger.info("Leaving presence channel...")
        try:
            await self.channel.leave()
        except Exception as e:
            logger.error(f"Error leaving presence channel: {e}")

        logger.info("Session shutdown complete.")
