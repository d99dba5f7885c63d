from chat_scraper.models import ChatMessage, MessageFragment

from .conftest import make_message


def test_content_hash_ignores_message_id():
    first = make_message(text="same")
    second = make_message(text="same")
    assert first.id != second.id
    assert first.content_hash() == second.content_hash()
    assert first.content_hash() != make_message(text="different").content_hash()


def test_dict_form_restores_message():
    message = make_message(text="Kappa hi")
    message.user.badges = ["Subscriber"]
    message.message.emotes = ["Kappa"]
    message.message.fragments = [
        MessageFragment("emote", "Kappa"),
        MessageFragment("text", "hi"),
    ]

    restored = ChatMessage.from_dict(message.to_dict())

    assert restored == message


def test_validity():
    assert make_message().is_valid()
    assert not make_message(text="").is_valid()
    assert not make_message(username="").is_valid()
    assert make_message(text="four").message_length() == 4
