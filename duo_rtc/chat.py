"""Text chat over the room's signaling channel."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from duo_rtc.protocol import MSG_CHAT_MESSAGE


@dataclass(frozen=True)
class ChatMessage:
    """One line of chat.

    Attributes:
        sender: Display name of the author
        text: Message body
        ordinal: Position in the local log (0-based)
    """

    sender: str
    text: str
    ordinal: int

    def to_payload(self) -> Dict[str, str]:
        return {"sender": self.sender, "text": self.text}


Publish = Callable[[str, Dict[str, Any]], Awaitable[None]]
Listener = Callable[[ChatMessage], None]


class ChatRelay:
    """Append-only chat log shared with the other member.

    Sent messages are appended optimistically; there is no delivery
    confirmation. Ordering across the two senders is whatever the channel
    delivers.
    """

    def __init__(self, sender: str, publish: Publish):
        self.sender = sender
        self._publish = publish
        self._log: List[ChatMessage] = []
        self._listeners: List[Listener] = []

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._log)

    def subscribe(self, listener: Listener) -> None:
        """Call `listener` with every message appended from now on."""
        self._listeners.append(listener)

    async def send(self, text: str) -> Optional[ChatMessage]:
        """Publish a message and append it locally. Blank text is ignored."""
        text = text.strip()
        if not text:
            return None
        message = self._append(self.sender, text)
        await self._publish(MSG_CHAT_MESSAGE, message.to_payload())
        return message

    def receive(self, payload: Dict[str, Any]) -> Optional[ChatMessage]:
        """Append a message received from the other member."""
        if (
            not isinstance(payload, dict)
            or not isinstance(payload.get("sender"), str)
            or not isinstance(payload.get("text"), str)
        ):
            logger.warning(f"Dropping malformed chat message: {payload!r}")
            return None
        return self._append(payload["sender"], payload["text"])

    def _append(self, sender: str, text: str) -> ChatMessage:
        message = ChatMessage(sender=sender, text=text, ordinal=len(self._log))
        self._log.append(message)
        for listener in self._listeners:
            listener(message)
        return message
