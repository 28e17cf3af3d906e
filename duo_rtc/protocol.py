"""Signaling protocol definitions for duo-rtc.

This module defines the message names and payload shapes exchanged between the
two members of a room over the presence channel, plus the codecs that turn
aiortc objects into JSON-serializable payloads and back.

Message Protocol Overview
-------------------------

Signaling travels over a presence-aware pub/sub topic named after the room
(``presence-<room>``). Every message has a name and a JSON payload. Names are
logical; on the WebSocket wire each one is sent as a ``client-`` event.

| name           | wire event             | payload                                |
|----------------|------------------------|----------------------------------------|
| ready          | client-ready           | ``{}``                                 |
| offer          | client-offer           | ``{"type": "offer", "sdp", "round"}``  |
| answer         | client-answer          | ``{"type": "answer", "sdp", "round"}`` |
| iceCandidate   | client-ice-candidate   | candidate dict plus ``"round"``        |
| chatMessage    | client-message         | ``{"sender", "text"}``                 |

**ready**
    Sent by: Guest, once local capture was attempted
    Purpose: Asks the Host to start a negotiation round

**offer**
    Sent by: Host
    Purpose: Session description the Guest must answer

**answer**
    Sent by: Guest
    Purpose: Completes the negotiation round

**iceCandidate**
    Sent by: Either peer
    Purpose: One network path hint; may arrive before or after the offer/answer
    Format: ``{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}``
    Round: optional ``"round"`` ordinal of the negotiation the candidate
    belongs to

**chatMessage**
    Sent by: Either peer
    Purpose: Text chat line

Message Flow Example
--------------------

1. A subscribes, member count 1: A is Host
2. B subscribes, member count 2: B is Guest
3. B → A: ready
4. A → B: offer
5. B → A: answer
6. A ↔ B: iceCandidate (any time after 4)
"""

from typing import Any, Dict, Optional

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from duo_rtc.exceptions import NegotiationError

# Signaling message names
MSG_READY = "ready"
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "iceCandidate"
MSG_CHAT_MESSAGE = "chatMessage"

SIGNAL_NAMES = (MSG_READY, MSG_OFFER, MSG_ANSWER, MSG_ICE_CANDIDATE, MSG_CHAT_MESSAGE)

# Wire event names used by the presence channel
WIRE_EVENTS = {
    MSG_READY: "client-ready",
    MSG_OFFER: "client-offer",
    MSG_ANSWER: "client-answer",
    MSG_ICE_CANDIDATE: "client-ice-candidate",
    MSG_CHAT_MESSAGE: "client-message",
}
SIGNAL_NAMES_BY_WIRE_EVENT = {event: name for name, event in WIRE_EVENTS.items()}

# Presence events
EVT_SUBSCRIPTION_SUCCEEDED = "subscription_succeeded"
EVT_SUBSCRIPTION_ERROR = "subscription_error"
EVT_MEMBER_ADDED = "member_added"
EVT_MEMBER_REMOVED = "member_removed"

CHANNEL_PREFIX = "presence-"
CANDIDATE_PREFIX = "candidate:"
ROUND_KEY = "round"


def channel_name(room: str) -> str:
    """Return the presence topic for a room.

    Examples:
        >>> channel_name("r1")
        'presence-r1'
    """
    return f"{CHANNEL_PREFIX}{room}"


def wire_event(name: str) -> str:
    """Map a signaling name to its wire event.

    Raises:
        ValueError: If the name is not a signaling message.
    """
    try:
        return WIRE_EVENTS[name]
    except KeyError:
        raise ValueError(f"Unknown signaling message: {name}") from None


def signal_name(event: str) -> Optional[str]:
    """Map a wire event back to its signaling name, None if not a signal."""
    return SIGNAL_NAMES_BY_WIRE_EVENT.get(event)


def with_round(payload: Dict[str, Any], round_: Optional[int]) -> Dict[str, Any]:
    """Stamp a payload with its negotiation round (left as is for None)."""
    if round_ is not None:
        payload[ROUND_KEY] = round_
    return payload


def payload_round(payload: Dict[str, Any]) -> Optional[int]:
    """Negotiation round of a received payload, None if absent or not an int."""
    if not isinstance(payload, dict):
        return None
    value = payload.get(ROUND_KEY)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def description_to_payload(description: RTCSessionDescription) -> Dict[str, str]:
    """Serialize a session description for the `offer`/`answer` messages."""
    return {"type": description.type, "sdp": description.sdp}


def description_from_payload(
    payload: Dict[str, Any], expected_type: str
) -> RTCSessionDescription:
    """Parse an `offer`/`answer` payload.

    Args:
        payload: Received message payload.
        expected_type: "offer" or "answer".

    Raises:
        NegotiationError: If the payload is malformed or of the wrong type.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("sdp"), str):
        raise NegotiationError(f"Malformed {expected_type} payload: {payload!r}")
    if payload.get("type") != expected_type:
        raise NegotiationError(
            f"Expected {expected_type} description, got {payload.get('type')!r}"
        )
    return RTCSessionDescription(sdp=payload["sdp"], type=expected_type)


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """Serialize a candidate in the shape browsers put on the wire."""
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_payload(payload: Dict[str, Any]) -> RTCIceCandidate:
    """Parse an `iceCandidate` payload.

    Accepts the candidate line with or without the ``candidate:`` prefix.

    Raises:
        NegotiationError: If the candidate line cannot be parsed.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("candidate"), str):
        raise NegotiationError(f"Malformed candidate payload: {payload!r}")

    line = payload["candidate"]
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]

    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, ValueError, IndexError) as e:
        raise NegotiationError(f"Unparseable candidate {line!r}: {e}") from e

    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate
