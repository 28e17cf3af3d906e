"""Peer transport adapter over aiortc.

Wraps a single RTCPeerConnection and exposes only what the room session needs:
adding and removing local tracks, the offer/answer steps, remote candidates,
and two inbound callbacks (local candidate discovered, remote track arrived).

Ordering mistakes are reported as NegotiationError before aiortc is touched,
and aiortc failures are converted to NegotiationError at this boundary so the
session never sees transport-specific exceptions.
"""

from typing import Callable, Iterable, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from loguru import logger

from duo_rtc.exceptions import NegotiationError

LocalCandidateCallback = Callable[[RTCIceCandidate], None]
RemoteTrackCallback = Callable[[MediaStreamTrack], None]


class PeerTransport:
    """One peer connection between the two members of a room.

    Attributes:
        ice_servers: STUN URLs the connection was configured with
        on_local_candidate: Called with each locally discovered candidate
        on_remote_track: Called with each remote media track
    """

    def __init__(self, ice_servers: Iterable[str] = ()):
        self.ice_servers = list(ice_servers)
        self.on_local_candidate: Optional[LocalCandidateCallback] = None
        self.on_remote_track: Optional[RemoteTrackCallback] = None
        self._senders: List[RTCRtpSender] = []
        self._closed = False

        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self.ice_servers]
        )
        self._pc = RTCPeerConnection(configuration)

        @self._pc.on("track")
        def on_track(track):
            logger.info(f"Remote {track.kind} track arrived")
            if self.on_remote_track:
                self.on_remote_track(track)

        # aiortc gathers candidates into the SDP; this only fires on stacks that trickle
        @self._pc.on("icecandidate")
        def on_ice_candidate(event):
            candidate = getattr(event, "candidate", event)
            if candidate and self.on_local_candidate:
                self.on_local_candidate(candidate)

        @self._pc.on("iceconnectionstatechange")
        def on_ice_state_change():
            logger.info(f"ICE connection state is now {self._pc.iceConnectionState}")

    @classmethod
    def create(cls, ice_servers: Iterable[str] = ()) -> "PeerTransport":
        return cls(ice_servers)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def local_description(self) -> Optional[RTCSessionDescription]:
        """Applied local description, including the candidates gathered into it."""
        return self._pc.localDescription

    @property
    def remote_description_set(self) -> bool:
        return self._pc.remoteDescription is not None

    @property
    def active_sender_count(self) -> int:
        """Number of senders currently carrying a local track."""
        return sum(1 for sender in self._senders if sender.track is not None)

    def add_track(self, track: MediaStreamTrack) -> RTCRtpSender:
        """Attach a local track and return its sender handle."""
        self._assert_open()
        try:
            sender = self._pc.addTrack(track)
        except Exception as e:
            raise NegotiationError(f"Failed to add {track.kind} track: {e}") from e
        self._senders.append(sender)
        logger.debug(f"Added local {track.kind} track ({self.active_sender_count} senders)")
        return sender

    def remove_track(self, sender: RTCRtpSender) -> None:
        """Stop sending on a sender returned by add_track."""
        if sender not in self._senders:
            logger.warning("Ignoring removal of a sender this transport does not own")
            return
        self._senders.remove(sender)
        if not self._closed:
            sender.replaceTrack(None)
        logger.debug(f"Removed local track ({self.active_sender_count} senders)")

    async def create_offer(self) -> RTCSessionDescription:
        self._assert_open()
        if self.signaling_state == "have-remote-offer":
            raise NegotiationError("Cannot create an offer while a remote offer is pending")

        # Always offer to receive audio and video, even without local media
        kinds = {transceiver.kind for transceiver in self._pc.getTransceivers()}
        for kind in ("audio", "video"):
            if kind not in kinds:
                self._pc.addTransceiver(kind, direction="recvonly")

        try:
            return await self._pc.createOffer()
        except Exception as e:
            raise NegotiationError(f"Failed to create offer: {e}") from e

    async def create_answer(self) -> RTCSessionDescription:
        self._assert_open()
        if self.signaling_state != "have-remote-offer":
            raise NegotiationError(
                f"Cannot create an answer in signaling state {self.signaling_state}"
            )
        try:
            return await self._pc.createAnswer()
        except Exception as e:
            raise NegotiationError(f"Failed to create answer: {e}") from e

    async def set_local_description(self, description: RTCSessionDescription) -> None:
        self._assert_open()
        try:
            await self._pc.setLocalDescription(description)
        except Exception as e:
            raise NegotiationError(
                f"Failed to set local {description.type}: {e}"
            ) from e

    async def set_remote_description(self, description: RTCSessionDescription) -> None:
        self._assert_open()
        if description.type == "answer" and self.signaling_state != "have-local-offer":
            raise NegotiationError(
                f"Cannot apply an answer in signaling state {self.signaling_state}"
            )
        if description.type == "offer" and self.signaling_state == "have-local-offer":
            raise NegotiationError("Cannot apply a remote offer while a local offer is pending")
        try:
            await self._pc.setRemoteDescription(description)
        except Exception as e:
            raise NegotiationError(
                f"Failed to set remote {description.type}: {e}"
            ) from e

    async def add_remote_candidate(self, candidate: RTCIceCandidate) -> None:
        self._assert_open()
        if not self.remote_description_set:
            raise NegotiationError("Cannot add a candidate before the remote description")
        try:
            await self._pc.addIceCandidate(candidate)
        except Exception as e:
            raise NegotiationError(f"Failed to add remote candidate: {e}") from e

    async def close(self) -> None:
        """Detach callbacks and close the connection. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self.on_local_candidate = None
        self.on_remote_track = None
        self._senders.clear()
        self._pc.remove_all_listeners()
        await self._pc.close()
        logger.info("Peer transport closed")

    def _assert_open(self) -> None:
        if self._closed:
            raise NegotiationError("Peer transport is closed")
