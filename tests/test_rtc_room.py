"""Tests for the remote media sink used by `duo-rtc join`."""

import asyncio

from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

from conftest import FAKE_OFFER_SDP, eventually, make_session
from duo_rtc.protocol import MSG_OFFER
from duo_rtc.rtc_room import RemoteMediaSink
from duo_rtc.session import Role, SessionState


class TestRemoteMediaSink:
    """Test per-track consumption of remote media."""

    def test_each_track_gets_its_own_blackhole(self):
        async def scenario():
            sink = RemoteMediaSink()
            audio, video = AudioStreamTrack(), VideoStreamTrack()
            await sink.add(audio)
            await sink.add(video)
            await sink.add(video)

            assert set(sink.blackholes) == {audio, video}
            assert sink.blackholes[audio] is not sink.blackholes[video]
            await sink.close()
            assert sink.blackholes == {}

        asyncio.run(scenario())

    def test_ended_track_is_discarded(self):
        async def scenario():
            sink = RemoteMediaSink()
            track = VideoStreamTrack()
            await sink.add(track)
            track.stop()
            await eventually(lambda: sink.blackholes == {})

        asyncio.run(scenario())

    def test_ended_track_is_not_added(self):
        async def scenario():
            sink = RemoteMediaSink()
            track = VideoStreamTrack()
            track.stop()
            await sink.add(track)

            assert sink.blackholes == {}

        asyncio.run(scenario())

    def test_fresh_round_releases_previous_tracks(self, hub, factory):
        async def scenario():
            peer = hub.channel()
            peer.bind([].append)
            await peer.join("r1", "A")
            session = make_session(hub, "B", factory)
            sink = RemoteMediaSink()
            session.on_remote_track = sink.add
            await session.start()
            await eventually(lambda: session.role is Role.GUEST)

            await peer.trigger(MSG_OFFER, {"type": "offer", "sdp": FAKE_OFFER_SDP, "round": 1})
            await eventually(lambda: session.state is SessionState.CONNECTED)
            first = VideoStreamTrack()
            session.transport.emit_remote_track(first)
            await eventually(lambda: first in sink.blackholes)

            await peer.trigger(MSG_OFFER, {"type": "offer", "sdp": FAKE_OFFER_SDP, "round": 2})
            await eventually(lambda: len(factory.transports) == 2)
            await eventually(lambda: session.state is SessionState.CONNECTED)
            second = VideoStreamTrack()
            session.transport.emit_remote_track(second)
            await eventually(lambda: second in sink.blackholes)

            assert first.readyState == "ended"
            assert list(sink.blackholes) == [second]
            await session.leave()
            await eventually(lambda: sink.blackholes == {})

        asyncio.run(scenario())
