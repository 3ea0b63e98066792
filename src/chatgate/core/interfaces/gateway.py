"""Protocol definitions for chat channel I/O.

- OutboundSenderProtocol: sending text and images to a chat
- MessageHandlerProtocol: consuming normalized inbound events
"""

from __future__ import annotations

from typing import Protocol

from chatgate.core.domain.routing import MessageEvent


class OutboundSenderProtocol(Protocol):
    """Send messages to one external chat channel.

    Each channel (Telegram, Feishu) provides one implementation.
    Implementations must be async-safe.
    """

    @property
    def channel(self) -> str:
        """Channel identifier (e.g. 'telegram', 'feishu')."""
        ...

    async def send_text(self, chat_id: str, text: str) -> None:
        """Deliver a text message.

        Raises:
            SenderError: If the upstream channel API rejects the message.
        """
        ...

    async def send_image(self, chat_id: str, image_path: str, caption: str = "") -> None:
        """Deliver a local image file with an optional caption.

        Raises:
            SenderError: If the upstream channel API rejects the upload.
        """
        ...


class MessageHandlerProtocol(Protocol):
    """Consume one normalized inbound message (the router implements this)."""

    async def handle(self, event: MessageEvent) -> bool:
        """Route the event. Returns True when some handler claimed it."""
        ...
