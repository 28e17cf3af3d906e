"""Room session controller.

The RoomSession is the state machine that turns presence events and signaling
messages into one peer connection between the two members of a room:

    IDLE -> AWAITING_CAPTURE -> ROLE_ELECTION -> OFFERING (host) -> AWAITING_ANSWER -> CONNECTED
                                              -> ANSWERING (guest) -----------------> CONNECTED
    any state -> CLOSED

Role election:
- Member count 1 on subscribe: this member is Host and waits.
- Member count 2 on subscribe: this member is Guest and sends `ready` once
  local capture was attempted.
- Member count above 2 on subscribe: the room is full; exit immediately.
- Only the Host reacts to `ready` and only the Host ever creates an offer.
- When the other member leaves, the survivor becomes Host.

Every input (channel events, transport callbacks, user commands) is posted to
one queue and handled in order by a single runner task. Offer and answer work
runs in a separate negotiation task so candidates and departures keep flowing
while it is pending; a departure cancels it.

Remote candidates that arrive before the remote description is applied are
queued and flushed right after it, each exactly once. Offers, answers and
candidates carry the ordinal of the negotiation round they belong to: a
candidate for a later round waits for that round's offer, and anything from an
earlier round is dropped.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCSessionDescription
from loguru import logger

from duo_rtc.channel import MemberLeft, MembershipChanged, PresenceChannel, SignalReceived
from duo_rtc.chat import ChatMessage, ChatRelay
from duo_rtc.exceptions import (
    CaptureError,
    ChannelUnavailableError,
    NegotiationError,
    OverCapacityError,
)
from duo_rtc.exit_handler import SessionExit, close_transport
from duo_rtc.media import MediaLifecycle
from duo_rtc.protocol import (
    MSG_ANSWER,
    MSG_CHAT_MESSAGE,
    MSG_ICE_CANDIDATE,
    MSG_OFFER,
    MSG_READY,
    candidate_from_payload,
    candidate_to_payload,
    description_from_payload,
    description_to_payload,
    payload_round,
    with_round,
)
from duo_rtc.transport import PeerTransport

ROOM_CAPACITY = 2


class SessionState(Enum):
    IDLE = "idle"
    AWAITING_CAPTURE = "awaiting_capture"
    ROLE_ELECTION = "role_election"
    OFFERING = "offering"
    ANSWERING = "answering"
    AWAITING_ANSWER = "awaiting_answer"
    CONNECTED = "connected"
    CLOSED = "closed"


class Role(Enum):
    HOST = "host"
    GUEST = "guest"


# Events produced inside the session (channel events live in duo_rtc.channel)


@dataclass
class LocalCandidate:
    transport: PeerTransport
    candidate: RTCIceCandidate


@dataclass
class RemoteTrack:
    transport: PeerTransport
    track: MediaStreamTrack


@dataclass
class NegotiationFailed:
    transport: PeerTransport
    error: NegotiationError


@dataclass
class AnswerTimedOut:
    transport: PeerTransport


@dataclass
class Command:
    action: Callable[[], Awaitable[Any]]
    future: asyncio.Future


TransportFactory = Callable[[List[str]], PeerTransport]


class RoomSession:
    """Controller for one member's participation in a two-party room.

    Attributes:
        room: Room name
        name: This member's display name
        channel: Presence channel used for signaling and chat
        media: Local capture and its senders
        chat: Chat log shared over the channel
        role: Role.HOST, Role.GUEST, or None before election
        transport: The live peer transport, if any
        remote_tracks: Tracks received from the other member on the live transport
        offers_created: Number of offers this member created
        round: Ordinal of the live negotiation round, None before the first
        history: Every state this session has been in, in order
        closed: Set once the session reached CLOSED
        on_remote_track: Optional coroutine function awaited with each new remote track
    """

    def __init__(
        self,
        room: str,
        name: str,
        channel: PresenceChannel,
        media: MediaLifecycle,
        transport_factory: TransportFactory = PeerTransport.create,
        ice_servers: Optional[List[str]] = None,
        answer_timeout: Optional[float] = None,
    ):
        self.room = room
        self.name = name
        self.channel = channel
        self.media = media
        self.transport_factory = transport_factory
        self.ice_servers = list(ice_servers or [])
        self.answer_timeout = answer_timeout

        self.chat = ChatRelay(name, channel.trigger)
        self.exit = SessionExit(media, channel)

        self.state = SessionState.IDLE
        self.history: List[SessionState] = [SessionState.IDLE]
        self.role: Optional[Role] = None
        self.transport: Optional[PeerTransport] = None
        self.remote_tracks: List[MediaStreamTrack] = []
        self.offers_created = 0
        self.round: Optional[int] = None
        self.on_remote_track: Optional[Callable[[MediaStreamTrack], Awaitable[None]]] = None
        self.closed = asyncio.Event()

        self._events: asyncio.Queue = asyncio.Queue()
        # (round, candidate) pairs waiting for a remote description or a later round
        self._pending_candidates: List[Tuple[Optional[int], RTCIceCandidate]] = []
        self._negotiation: Optional[asyncio.Task] = None
        self._answer_timer: Optional[asyncio.TimerHandle] = None
        self._runner: Optional[asyncio.Task] = None

        channel.bind(self.post)

    @property
    def exit_reason(self) -> Optional[BaseException]:
        return self.exit.reason

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    # ===== Public API =====

    async def start(self) -> None:
        """Join the room and start handling events.

        Raises:
            ChannelUnavailableError: If the room's channel cannot be joined.
        """
        logger.info(f"Joining room {self.room} as {self.name}...")
        self._runner = asyncio.create_task(self._run())
        try:
            await self.channel.join(self.room, self.name)
        except ChannelUnavailableError as e:
            logger.error(f"Cannot join room {self.room}: {e}")
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
            await self._shutdown(reason=e)
            raise

    def post(self, event) -> None:
        """Queue an event for the runner. Events after CLOSED are dropped."""
        if self.state is SessionState.CLOSED:
            logger.debug(f"Session closed, dropping {type(event).__name__}")
            return
        self._events.put_nowait(event)

    async def wait_closed(self) -> None:
        await self.closed.wait()

    async def toggle_mic(self) -> bool:
        return await self._submit(self._toggle_mic)

    async def toggle_camera(self) -> bool:
        return await self._submit(self._toggle_camera)

    async def toggle_screen_share(self) -> bool:
        """Start or stop screen sharing. Returns whether sharing is now active."""
        return await self._submit(self._toggle_screen_share)

    async def send_chat(self, text: str) -> Optional[ChatMessage]:
        return await self._submit(lambda: self.chat.send(text))

    async def leave(self) -> None:
        """Voluntary exit from any state. Safe to call twice."""
        if self.state is SessionState.CLOSED:
            return
        await self._submit(self._shutdown)

    # ===== Runner =====

    async def _run(self) -> None:
        while self.state is not SessionState.CLOSED:
            event = await self._events.get()
            try:
                await self._handle(event)
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}")

        # Unblock commands that arrived after the session closed
        while not self._events.empty():
            event = self._events.get_nowait()
            if isinstance(event, Command) and not event.future.done():
                event.future.set_result(None)

    async def _handle(self, event) -> None:
        if isinstance(event, MembershipChanged):
            await self._on_membership_changed(event)
        elif isinstance(event, MemberLeft):
            await self._on_member_left(event)
        elif isinstance(event, SignalReceived):
            await self._on_signal(event)
        elif isinstance(event, LocalCandidate):
            if event.transport is self.transport:
                logger.debug("Publishing local ICE candidate")
                await self.channel.trigger(
                    MSG_ICE_CANDIDATE, with_round(candidate_to_payload(event.candidate), self.round)
                )
        elif isinstance(event, RemoteTrack):
            await self._on_remote_track(event)
        elif isinstance(event, NegotiationFailed):
            if event.transport is self.transport:
                await self._abandon(event.error)
        elif isinstance(event, AnswerTimedOut):
            if event.transport is self.transport and self.state is SessionState.AWAITING_ANSWER:
                await self._abandon(
                    NegotiationError(f"No answer within {self.answer_timeout} seconds")
                )
        elif isinstance(event, Command):
            await self._run_command(event)
        else:
            logger.warning(f"Unknown session event: {event!r}")

    async def _submit(self, action: Callable[[], Awaitable[Any]]) -> Any:
        """Run `action` on the runner, after everything already queued."""
        if self._runner is None or self._runner.done():
            return await action()
        future = asyncio.get_running_loop().create_future()
        self.post(Command(action=action, future=future))
        if self.state is SessionState.CLOSED:
            return None
        return await future

    async def _run_command(self, command: Command) -> None:
        try:
            result = await command.action()
        except Exception as e:
            if not command.future.done():
                command.future.set_exception(e)
            return
        if not command.future.done():
            command.future.set_result(result)

    def _transition(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.info(f"[{self.name}] {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    # ===== Presence =====

    async def _on_membership_changed(self, event: MembershipChanged) -> None:
        if not event.initial:
            if event.count > ROOM_CAPACITY:
                logger.warning(f"Room {self.room} has {event.count} members; newcomer will leave")
            elif self.role is Role.HOST:
                logger.info("Peer joined the room; waiting for ready")
            return

        if event.count > ROOM_CAPACITY:
            await self._shutdown(
                reason=OverCapacityError(
                    f"Room {self.room} already has {event.count - 1} members"
                )
            )
            return

        self._transition(SessionState.AWAITING_CAPTURE)
        try:
            await self.media.acquire()
        except CaptureError as e:
            logger.error(f"Local capture failed, continuing without local media: {e}")

        self.role = Role.HOST if event.count == 1 else Role.GUEST
        logger.info(f"[{self.name}] elected {self.role.value} in room {self.room}")
        self._transition(SessionState.ROLE_ELECTION)

        if self.role is Role.GUEST:
            await self.channel.trigger(MSG_READY, {})

    async def _on_member_left(self, event: MemberLeft) -> None:
        if self.role is None:
            return
        if event.count >= ROOM_CAPACITY:
            # An over-capacity newcomer left; the other member is still here
            logger.info(f"Extra member left room {self.room} ({event.count} remain)")
            return
        logger.info(f"Peer left room {self.room}")
        await close_transport(await self._detach_transport())
        # The survivor always hosts the next arrival
        self.role = Role.HOST
        self._transition(SessionState.ROLE_ELECTION)

    # ===== Signaling =====

    async def _on_signal(self, event: SignalReceived) -> None:
        if event.name == MSG_READY:
            await self._on_ready()
        elif event.name == MSG_OFFER:
            await self._on_offer(event.payload)
        elif event.name == MSG_ANSWER:
            await self._on_answer(event.payload)
        elif event.name == MSG_ICE_CANDIDATE:
            await self._on_remote_candidate(event.payload)
        elif event.name == MSG_CHAT_MESSAGE:
            self.chat.receive(event.payload)
        else:
            logger.warning(f"Unhandled signal: {event.name}")

    async def _on_ready(self) -> None:
        if self.role is not Role.HOST:
            logger.debug("Ignoring ready: not host")
            return
        if self.state in (SessionState.OFFERING, SessionState.AWAITING_ANSWER):
            logger.warning("Ignoring ready: negotiation already in progress")
            return
        if self.transport is not None:
            logger.info("Peer asked for a fresh negotiation round")
            await close_transport(await self._detach_transport(keep_candidates=True))

        self.round = (self.round or 0) + 1
        transport = await self._open_transport()
        if transport is None:
            return
        self._transition(SessionState.OFFERING)
        self._start_negotiation(self._offer(transport, self.round))

    async def _on_offer(self, payload) -> None:
        if self.role is Role.HOST:
            logger.warning("Ignoring offer: host never answers")
            return
        if self.state is SessionState.ANSWERING:
            logger.warning("Ignoring offer: already answering one")
            return
        round_ = payload_round(payload)
        if self._round_offset(round_) < 0:
            logger.warning(f"Ignoring offer from earlier round {round_}")
            return
        try:
            offer = description_from_payload(payload, "offer")
        except NegotiationError as e:
            logger.error(f"Dropping offer: {e}")
            return

        if self.transport is not None:
            logger.info("Host started a fresh negotiation round")
            await close_transport(await self._detach_transport(keep_candidates=True))

        self.round = round_
        transport = await self._open_transport()
        if transport is None:
            return
        self._transition(SessionState.ANSWERING)
        self._start_negotiation(self._answer(transport, offer, round_))

    async def _on_answer(self, payload) -> None:
        if self.role is not Role.HOST or self.state is not SessionState.AWAITING_ANSWER:
            logger.warning(f"Ignoring answer in state {self.state.value}")
            return
        if self._round_offset(payload_round(payload)) != 0:
            logger.warning(f"Ignoring answer for round {payload_round(payload)}")
            return
        transport = self.transport
        self._cancel_answer_timer()
        try:
            answer = description_from_payload(payload, "answer")
            await transport.set_remote_description(answer)
        except NegotiationError as e:
            await self._abandon(e)
            return
        if transport is not self.transport:
            return
        self._transition(SessionState.CONNECTED)
        await self._flush_candidates(transport)

    async def _on_remote_candidate(self, payload) -> None:
        try:
            candidate = candidate_from_payload(payload)
        except NegotiationError as e:
            logger.warning(f"Dropping remote candidate: {e}")
            return

        round_ = payload_round(payload)
        offset = self._round_offset(round_)
        if offset < 0:
            logger.debug(f"Dropping remote candidate from earlier round {round_}")
            return

        transport = self.transport
        if transport is None or not transport.remote_description_set or offset > 0:
            # A later round's candidate must wait for that round's transport
            self._pending_candidates.append((round_, candidate))
            logger.debug(f"Queued remote candidate ({len(self._pending_candidates)} pending)")
            return
        await self._apply_candidate(transport, candidate)

    def _round_offset(self, round_: Optional[int]) -> int:
        """-1, 0 or 1 for a round before, equal to or after the live one.

        Unstamped payloads and a session with no round yet count as current.
        """
        if round_ is None or self.round is None or round_ == self.round:
            return 0
        return -1 if round_ < self.round else 1

    async def _apply_candidate(self, transport: PeerTransport, candidate: RTCIceCandidate) -> None:
        try:
            await transport.add_remote_candidate(candidate)
        except NegotiationError as e:
            logger.warning(f"Remote candidate rejected: {e}")

    async def _flush_candidates(self, transport: PeerTransport) -> None:
        """Apply queued candidates of the live round; later rounds stay queued."""
        while transport is self.transport:
            for index, (round_, candidate) in enumerate(self._pending_candidates):
                if self._round_offset(round_) <= 0:
                    break
            else:
                return
            del self._pending_candidates[index]
            if self._round_offset(round_) < 0:
                logger.debug(f"Dropping queued candidate from earlier round {round_}")
                continue
            await self._apply_candidate(transport, candidate)

    # ===== Negotiation =====

    async def _open_transport(self) -> Optional[PeerTransport]:
        transport = self.transport_factory(self.ice_servers)
        transport.on_local_candidate = lambda candidate: self.post(LocalCandidate(transport, candidate))
        transport.on_remote_track = lambda track: self.post(RemoteTrack(transport, track))
        self.transport = transport
        try:
            self.media.attach(transport)
        except NegotiationError as e:
            logger.error(f"Cannot attach local media: {e}")
            self.transport = None
            self.media.detach()
            await close_transport(transport)
            return None
        return transport

    def _start_negotiation(self, coro) -> None:
        self._negotiation = asyncio.create_task(coro)
        self._negotiation.add_done_callback(self._on_negotiation_done)

    def _on_negotiation_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Negotiation task crashed: {error}")

    async def _offer(self, transport: PeerTransport, round_: int) -> None:
        try:
            self.offers_created += 1
            offer = await transport.create_offer()
            await transport.set_local_description(offer)
        except NegotiationError as e:
            self.post(NegotiationFailed(transport, e))
            return

        if transport is not self.transport:
            return
        self._transition(SessionState.AWAITING_ANSWER)
        self._start_answer_timer(transport)
        await self.channel.trigger(
            MSG_OFFER, with_round(description_to_payload(transport.local_description or offer), round_)
        )
        logger.info(f"Offer for round {round_} sent; awaiting answer")

    async def _answer(
        self, transport: PeerTransport, offer: RTCSessionDescription, round_: Optional[int]
    ) -> None:
        try:
            await transport.set_remote_description(offer)
            await self._flush_candidates(transport)
            answer = await transport.create_answer()
            await transport.set_local_description(answer)
        except NegotiationError as e:
            self.post(NegotiationFailed(transport, e))
            return

        if transport is not self.transport:
            return
        self._transition(SessionState.CONNECTED)
        await self.channel.trigger(
            MSG_ANSWER, with_round(description_to_payload(transport.local_description or answer), round_)
        )
        logger.info("Answer sent")

    def _start_answer_timer(self, transport: PeerTransport) -> None:
        if not self.answer_timeout:
            return
        self._answer_timer = asyncio.get_running_loop().call_later(
            self.answer_timeout, self.post, AnswerTimedOut(transport)
        )

    def _cancel_answer_timer(self) -> None:
        if self._answer_timer is not None:
            self._answer_timer.cancel()
            self._answer_timer = None

    async def _abandon(self, error: NegotiationError) -> None:
        """Drop a failed round and wait for the next ready/offer."""
        logger.error(f"Negotiation failed: {error}")
        await close_transport(await self._detach_transport())
        self._transition(SessionState.ROLE_ELECTION)

    async def _detach_transport(self, keep_candidates: bool = False) -> Optional[PeerTransport]:
        """Stop negotiation and remote media; hand back the transport to close.

        A fresh round keeps queued candidates (the next flush drops stale ones);
        departures and failures discard them.
        """
        if self._negotiation is not None and not self._negotiation.done():
            self._negotiation.cancel()
            await asyncio.gather(self._negotiation, return_exceptions=True)
        self._negotiation = None
        self._cancel_answer_timer()
        if not keep_candidates:
            self._pending_candidates.clear()

        for track in self.remote_tracks:
            track.stop()
        self.remote_tracks.clear()

        transport, self.transport = self.transport, None
        self.media.detach()
        return transport

    async def _on_remote_track(self, event: RemoteTrack) -> None:
        if event.transport is not self.transport:
            event.track.stop()
            return
        self.remote_tracks.append(event.track)
        if self.on_remote_track:
            await self.on_remote_track(event.track)

    # ===== Commands =====

    async def _toggle_mic(self) -> bool:
        return self.media.toggle_mic()

    async def _toggle_camera(self) -> bool:
        return self.media.toggle_camera()

    async def _toggle_screen_share(self) -> bool:
        if self.media.screen_active:
            self.media.stop_screen_share()
            return False
        try:
            await self.media.start_screen_share()
        except CaptureError as e:
            logger.error(f"Screen sharing unavailable: {e}")
        except NegotiationError as e:
            logger.error(f"Cannot send screen track: {e}")
        return self.media.screen_active

    async def _shutdown(self, reason: Optional[BaseException] = None) -> None:
        if self.state is SessionState.CLOSED:
            return
        transport = await self._detach_transport()
        await self.exit.run(transport, reason)
        self._transition(SessionState.CLOSED)
        self.closed.set()
