"""Shared test doubles for duo-rtc tests."""

import asyncio
from typing import List, Optional

import pytest
from aiortc import RTCSessionDescription
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

from duo_rtc.channel import InMemoryPresenceHub
from duo_rtc.exceptions import CaptureError, NegotiationError
from duo_rtc.media import LocalStream, MediaLifecycle, ToggleableTrack
from duo_rtc.session import RoomSession

FAKE_OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=fake-offer\r\n"
FAKE_ANSWER_SDP = "v=0\r\no=- 2 2 IN IP4 0.0.0.0\r\ns=fake-answer\r\n"
HOST_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2130706431 192.0.2.10 50000 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


class FakeSender:
    def __init__(self, track):
        self.track = track


class FakeTransport:
    """In-process stand-in for PeerTransport that tracks signaling state."""

    def __init__(self, ice_servers=(), offer_gate: Optional[asyncio.Event] = None, fail_on=()):
        self.ice_servers = list(ice_servers)
        self.on_local_candidate = None
        self.on_remote_track = None
        self.offer_gate = offer_gate
        self.fail_on = set(fail_on)
        self.signaling_state = "stable"
        self.local_description: Optional[RTCSessionDescription] = None
        self.remote_description: Optional[RTCSessionDescription] = None
        self.senders: List[FakeSender] = []
        self.applied_candidates = []
        self.offers_created = 0
        self.answers_created = 0
        self.closed = False

    @property
    def remote_description_set(self) -> bool:
        return self.remote_description is not None

    @property
    def active_sender_count(self) -> int:
        return sum(1 for sender in self.senders if sender.track is not None)

    def _check(self, step: str) -> None:
        if self.closed:
            raise NegotiationError("Peer transport is closed")
        if step in self.fail_on:
            raise NegotiationError(f"{step} failed")

    def add_track(self, track) -> FakeSender:
        self._check("add_track")
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def remove_track(self, sender: FakeSender) -> None:
        if sender in self.senders:
            self.senders.remove(sender)
            sender.track = None

    async def create_offer(self) -> RTCSessionDescription:
        self._check("create_offer")
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        self.offers_created += 1
        return RTCSessionDescription(sdp=FAKE_OFFER_SDP, type="offer")

    async def create_answer(self) -> RTCSessionDescription:
        self._check("create_answer")
        if self.signaling_state != "have-remote-offer":
            raise NegotiationError("No remote offer to answer")
        self.answers_created += 1
        return RTCSessionDescription(sdp=FAKE_ANSWER_SDP, type="answer")

    async def set_local_description(self, description) -> None:
        self._check("set_local_description")
        self.local_description = description
        self.signaling_state = "have-local-offer" if description.type == "offer" else "stable"

    async def set_remote_description(self, description) -> None:
        self._check("set_remote_description")
        if description.type == "answer" and self.signaling_state != "have-local-offer":
            raise NegotiationError("Answer without a local offer")
        self.remote_description = description
        self.signaling_state = "have-remote-offer" if description.type == "offer" else "stable"

    async def add_remote_candidate(self, candidate) -> None:
        self._check("add_remote_candidate")
        if not self.remote_description_set:
            raise NegotiationError("Candidate before remote description")
        self.applied_candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.on_local_candidate = None
        self.on_remote_track = None

    def emit_local_candidate(self, candidate) -> None:
        if self.on_local_candidate:
            self.on_local_candidate(candidate)

    def emit_remote_track(self, track) -> None:
        if self.on_remote_track:
            self.on_remote_track(track)


class FakeTransportFactory:
    """Transport factory that remembers every transport it built."""

    def __init__(self, offer_gate: Optional[asyncio.Event] = None, fail_on=()):
        self.offer_gate = offer_gate
        self.fail_on = fail_on
        self.transports: List[FakeTransport] = []

    def __call__(self, ice_servers=()) -> FakeTransport:
        transport = FakeTransport(ice_servers, offer_gate=self.offer_gate, fail_on=self.fail_on)
        self.transports.append(transport)
        return transport


class FakeCapture:
    """Capture backend producing synthetic aiortc tracks."""

    def __init__(self, fail_user_media=False, fail_display=False, audio=True, video=True):
        self.fail_user_media = fail_user_media
        self.fail_display = fail_display
        self.audio = audio
        self.video = video
        self.user_media_opened = 0
        self.display_opened = 0

    async def open_user_media(self) -> LocalStream:
        if self.fail_user_media:
            raise CaptureError("No camera or microphone")
        self.user_media_opened += 1
        return LocalStream(
            label="camera",
            audio=ToggleableTrack(AudioStreamTrack(), "microphone") if self.audio else None,
            video=ToggleableTrack(VideoStreamTrack(), "camera") if self.video else None,
        )

    async def open_display_media(self) -> LocalStream:
        if self.fail_display:
            raise CaptureError("Display capture denied")
        self.display_opened += 1
        return LocalStream(label="screen", video=ToggleableTrack(VideoStreamTrack(), "screen"))


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll `predicate` until it holds, failing after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


def make_session(
    hub: InMemoryPresenceHub,
    name: str,
    factory: FakeTransportFactory,
    room: str = "r1",
    capture: Optional[FakeCapture] = None,
    **kwargs,
) -> RoomSession:
    media = MediaLifecycle(capture or FakeCapture())
    return RoomSession(room, name, hub.channel(), media, transport_factory=factory, **kwargs)


@pytest.fixture
def hub():
    return InMemoryPresenceHub()


@pytest.fixture
def factory():
    return FakeTransportFactory()
