from datetime import datetime, timezone

import pytest

from chat_scraper.errors import ParseError
from chat_scraper.parser import TwitchChatParser, extract_color_from_style, rgb_to_hex

CHAT_HTML = """
<div class="chat-scroller">
  <div class="chat-line__message">
    <time class="chat-line__timestamp" datetime="2024-05-01T12:30:00Z">12:30</time>
    <img class="chat-badge" alt="Subscriber" src="sub.png">
    <img class="chat-badge" title="Moderator" src="mod.png">
    <span data-a-target="chat-message-username" data-a-user="viewer_one">Viewer_One</span>
    <span class="chat-author__display-name" style="color: rgb(154, 205, 50);">Viewer_One</span>
    <span data-a-target="chat-line-message-body">
      <span class="text-fragment">nice shot</span>
      <img class="chat-line__message--emote" alt="PogChamp" src="pog.png">
      <span class="text-fragment">  again </span>
    </span>
  </div>
  <div class="chat-line__message">
    <span data-a-target="chat-message-username">second_user</span>
    <span data-a-target="chat-line-message-body">plain body text</span>
  </div>
  <div class="chat-line__message">
    <span data-a-target="chat-line-message-body">system notice without author</span>
  </div>
  <div class="chat-line__message">
    <span data-a-target="chat-message-username" data-a-user="quiet"></span>
    <span data-a-target="chat-line-message-body">   </span>
  </div>
  <div class="chat-line__no-background">
    <span data-a-target="chat-message-username" data-a-user="nobody"></span>
  </div>
</div>
"""


@pytest.fixture
def parser():
    return TwitchChatParser()


def test_parses_full_message(parser):
    messages = parser.parse(CHAT_HTML, "shroud")

    first = messages[0]
    assert first.streamer == "shroud"
    assert first.user.username == "viewer_one"
    assert first.user.display_name == "Viewer_One"
    assert first.user.color == "#9ACD32"
    assert first.user.badges == ["Subscriber", "Moderator"]
    assert first.message.text == "nice shot PogChamp again"
    assert first.message.emotes == ["PogChamp"]
    assert [f.fragment_type for f in first.message.fragments] == ["text", "emote", "text"]
    assert first.timestamp == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


def test_falls_back_to_body_text_and_element_name(parser):
    messages = parser.parse(CHAT_HTML, "shroud")

    second = messages[1]
    assert second.user.username == "second_user"
    assert second.user.display_name == "second_user"
    assert second.message.text == "plain body text"
    assert second.timestamp.tzinfo is not None


def test_skips_lines_without_author_or_text(parser):
    messages = parser.parse(CHAT_HTML, "shroud")
    assert [m.user.username for m in messages] == ["viewer_one", "second_user"]


def test_malformed_html_never_raises(parser):
    assert parser.parse("<div class='chat-line__message'><span", "shroud") == []
    assert parser.parse("", "shroud") == []


def test_non_text_input_is_a_parse_error(parser):
    with pytest.raises(ParseError):
        parser.parse(None, "shroud")


def test_rgb_to_hex():
    assert rgb_to_hex("255, 0, 128") == "#FF0080"
    with pytest.raises(ParseError):
        rgb_to_hex("300, 0, 0")
    with pytest.raises(ParseError):
        rgb_to_hex("a, b, c")


@pytest.mark.parametrize(
    "style, expected",
    [
        ("color: rgb(0, 0, 255);", "#0000FF"),
        ("font-weight: bold; color: #ff4500;", "#ff4500"),
        ("font-weight: bold;", None),
        ("background-color: #000000; color: rgb(255, 0, 0);", "#FF0000"),
        ("color: rgb(999, 0, 0);", None),
    ],
)
def test_extract_color_from_style(style, expected):
    assert extract_color_from_style(style) == expected
