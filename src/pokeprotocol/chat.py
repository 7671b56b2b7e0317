"""
Chat Module

Builds and renders CHAT_MESSAGE traffic. Players and spectators may chat at
any point of a session, including while waiting for the opponent's move.

A line starting with a known sticker command (``/smile``) is sent as a
STICKER; ``/sticker <base64>`` sends raw image data; everything else is TEXT.
"""

import base64
import binascii
from typing import Callable, Optional

from .config import MAX_STICKER_BYTES, MAX_UDP_PAYLOAD, ProtocolConfig
from .debug_logger import DebugLogger
from .messages import ChatMessage, ContentType

RAW_STICKER_COMMAND = "/sticker"
# Room left in a datagram for the sequence number added at send time
SEQUENCE_HEADROOM = 32


def validate_sticker(sticker_data: str, max_bytes: int = MAX_STICKER_BYTES) -> bool:
    """
    Validate sticker data (Base64 format, size constraints).

    Args:
        sticker_data: Base64 encoded sticker data
        max_bytes: Largest decoded size accepted

    Returns:
        True if valid, False otherwise
    """
    try:
        decoded = base64.b64decode(sticker_data, validate=True)
    except (binascii.Error, ValueError):
        return False
    return 0 < len(decoded) <= max_bytes


class ChatHandler:
    """
    Chat for one participant.

    Attributes:
        sender_name: Name put on outgoing messages
        config: Protocol configuration holding the sticker table
        display: Sink for rendered lines
    """

    def __init__(self, sender_name: str, config: Optional[ProtocolConfig] = None,
                 display: Callable[[str], None] = print,
                 logger: Optional[DebugLogger] = None):
        self.sender_name = sender_name
        self.config = config or ProtocolConfig()
        self.display = display
        self.logger = logger

    def make_message(self, text: str) -> ChatMessage:
        """
        Turn a line typed by the user into a chat message.

        Raises:
            ValueError: ``/sticker`` payload is not valid Base64 or too large,
                or the message does not fit in one datagram
        """
        message = self._build(text.strip())
        if len(message.serialize()) + SEQUENCE_HEADROOM > MAX_UDP_PAYLOAD:
            raise ValueError(f"Message too large: must fit in one {MAX_UDP_PAYLOAD}-byte datagram")
        return message

    def _build(self, text: str) -> ChatMessage:
        command, _, rest = text.partition(" ")

        if command == RAW_STICKER_COMMAND:
            payload = rest.strip()
            if not validate_sticker(payload, self.config.max_sticker_bytes):
                raise ValueError("Invalid sticker data: must be valid Base64 and under "
                                 f"{self.config.max_sticker_bytes} bytes")
            return ChatMessage(self.sender_name, ContentType.STICKER.value,
                               sticker_data=payload)

        if command in self.config.stickers and not rest:
            return ChatMessage(self.sender_name, ContentType.STICKER.value,
                               sticker_data=command)

        return ChatMessage(self.sender_name, ContentType.TEXT.value, message_text=text)

    def is_own(self, message: ChatMessage) -> bool:
        return message.sender_name == self.sender_name

    def render(self, message: ChatMessage) -> str:
        """Format a chat message for the terminal."""
        sender = message.sender_name
        if message.content_type == ContentType.STICKER.value:
            data = message.sticker_data or ""
            glyph = self.config.stickers.get(data)
            if glyph is not None:
                return f"[{sender}]: {glyph}"
            if validate_sticker(data, self.config.max_sticker_bytes):
                size = len(base64.b64decode(data))
                return f"[{sender}] sent a sticker ({size} bytes)"
            return f"Invalid sticker received from {sender}"
        return f"[{sender}]: {message.message_text or ''}"

    def show(self, message: ChatMessage, direction: str = "RECEIVED"):
        """Display a chat message and record it."""
        line = self.render(message)
        if self.logger:
            self.logger.log_chat(message.sender_name,
                                 message.message_text or message.sticker_data or "",
                                 direction)
            if line.startswith("Invalid sticker"):
                self.logger.log_warning(line)
        self.display(line)
