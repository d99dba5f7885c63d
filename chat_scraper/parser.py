"""
Chat HTML Parser

Turns the chat pane HTML of a stream page into ChatMessage records.
Malformed or partial markup never raises; unparseable lines are skipped.
"""

import re
from datetime import datetime, timezone
from typing import List, Optional, Protocol

import structlog
from bs4 import BeautifulSoup, Tag

from .errors import ParseError
from .models import ChatMessage, ChatUser, MessageContent, MessageFragment

_RGB_PATTERN = re.compile(r"rgb\(\s*([^)]*)\)")
_HEX_PATTERN = re.compile(r"#[0-9A-Fa-f]{3,8}")
_COLOR_DECLARATION = re.compile(r"(?:^|;)\s*color\s*:([^;]*)", re.IGNORECASE)


class ChatParser(Protocol):
    """Anything able to turn page HTML into chat messages"""

    def parse(self, html: str, streamer: str) -> List[ChatMessage]:
        ...


class TwitchChatParser:
    """CSS-selector based parser for Twitch chat markup"""

    CHAT_LINE_SELECTOR = ".chat-line__no-background, .chat-line__message"
    USERNAME_SELECTOR = "[data-a-target='chat-message-username']"
    DISPLAY_NAME_SELECTOR = ".chat-author__display-name"
    MESSAGE_BODY_SELECTOR = "[data-a-target='chat-line-message-body']"
    FRAGMENT_SELECTOR = (
        "span.text-fragment, span[data-a-target='chat-message-text'], img"
    )
    BADGE_SELECTOR = ".chat-badge"
    TIMESTAMP_SELECTOR = ".chat-line__timestamp"
    EMOTE_CLASSES = ("chat-line__message--emote", "chat-image")

    def __init__(self, features: str = "html.parser"):
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.features = features

    def parse(self, html: str, streamer: str) -> List[ChatMessage]:
        """
        Parse every chat line in the document.

        Args:
            html: Raw page or chat pane HTML
            streamer: Channel the HTML was scraped from

        Returns:
            Valid messages in document order

        Raises:
            ParseError: if the input is not a string
        """
        if not isinstance(html, str):
            raise ParseError(f"Expected HTML text, got {type(html).__name__}")

        document = BeautifulSoup(html, self.features)
        messages = []

        for chat_line in document.select(self.CHAT_LINE_SELECTOR):
            try:
                message = self._parse_single_message(chat_line, streamer)
            except ParseError as error:
                self.logger.warning("Failed to parse chat line", error=str(error))
                continue

            if message is None:
                continue
            if not message.is_valid():
                self.logger.debug("Skipping invalid message", message_id=message.id)
                continue
            messages.append(message)

        self.logger.debug(f"Parsed {len(messages)} messages from HTML")
        return messages

    def _parse_single_message(
        self, element: Tag, streamer: str
    ) -> Optional[ChatMessage]:
        user = self._extract_user(element)
        if user is None:
            # System notice or deleted message
            return None

        content = self._extract_message_content(element)
        if not content.text.strip():
            return None

        return ChatMessage(
            streamer=streamer,
            user=user,
            message=content,
            timestamp=self._extract_timestamp(element)
            or datetime.now(timezone.utc),
        )

    def _extract_user(self, element: Tag) -> Optional[ChatUser]:
        username_element = element.select_one(self.USERNAME_SELECTOR)
        if username_element is None:
            return None

        display_element = element.select_one(self.DISPLAY_NAME_SELECTOR)

        username = username_element.get("data-a-user")
        if not username:
            source = display_element or username_element
            username = source.get_text().strip()
            if not username:
                raise ParseError("Could not extract username")

        display_name = username
        color = None
        if display_element is not None:
            display_name = display_element.get_text().strip() or username
            style = display_element.get("style")
            if style:
                color = extract_color_from_style(style)

        badges = [
            badge.get("alt") or badge.get("title")
            for badge in element.select(self.BADGE_SELECTOR)
            if badge.get("alt") or badge.get("title")
        ]

        return ChatUser(
            username=username,
            display_name=display_name,
            color=color,
            badges=badges,
        )

    def _extract_message_content(self, element: Tag) -> MessageContent:
        body = element.select_one(self.MESSAGE_BODY_SELECTOR)
        if body is None:
            raise ParseError("Could not find message body")

        text_parts = []
        fragments = []
        emotes = []

        for node in body.select(self.FRAGMENT_SELECTOR):
            if node.name == "img":
                classes = node.get("class") or []
                alt = node.get("alt")
                if alt and any(c in self.EMOTE_CLASSES for c in classes):
                    emotes.append(alt)
                    fragments.append(MessageFragment("emote", alt))
                    text_parts.append(alt)
            else:
                text = node.get_text().strip()
                if text:
                    text_parts.append(text)
                    fragments.append(MessageFragment("text", text))

        if not fragments:
            text = body.get_text().strip()
            if text:
                text_parts.append(text)
                fragments.append(MessageFragment("text", text))

        return MessageContent(
            text=" ".join(" ".join(text_parts).split()),
            emotes=emotes,
            fragments=fragments,
        )

    def _extract_timestamp(self, element: Tag) -> Optional[datetime]:
        node = element.select_one(self.TIMESTAMP_SELECTOR)
        if node is None or not node.get("datetime"):
            return None
        try:
            parsed = datetime.fromisoformat(node["datetime"].replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)


def rgb_to_hex(rgb_values: str) -> str:
    """Convert '154, 205, 50' into '#9ACD32'"""
    try:
        channels = [int(part.strip()) for part in rgb_values.split(",")]
    except ValueError:
        raise ParseError(f"Invalid RGB values: {rgb_values}") from None
    if len(channels) != 3 or not all(0 <= c <= 255 for c in channels):
        raise ParseError(f"Invalid RGB values: {rgb_values}")
    return "#{:02X}{:02X}{:02X}".format(*channels)


def extract_color_from_style(style: str) -> Optional[str]:
    """Pull the text color out of an inline style attribute"""
    match = _COLOR_DECLARATION.search(style)
    if match is None:
        return None
    declaration = match.group(1)

    rgb = _RGB_PATTERN.search(declaration)
    if rgb:
        try:
            return rgb_to_hex(rgb.group(1))
        except ParseError:
            return None

    hex_color = _HEX_PATTERN.search(declaration)
    return hex_color.group(0) if hex_color else None


__all__ = [
    "ChatParser",
    "TwitchChatParser",
    "rgb_to_hex",
    "extract_color_from_style",
]
