"""Update routing from raw Telegram messages to pipeline calls."""

import asyncio

import pytest
import requests

from tutor_bot.bot import _extract_command, _get_sender, _is_command_for_this_bot, dispatch_message
from tutor_bot.errors import TranscriptionFailure


class FakePipeline:
    """Returns the call description instead of a coroutine."""

    def handle_command(self, message_id, user_id, display_name, command, chat_id=None):
        return ("command", message_id, user_id, display_name, command, chat_id)

    def handle_inbound_message(self, message_id, user_id, display_name, text, chat_id=None):
        return ("text", message_id, user_id, display_name, text, chat_id)

    def handle_inbound_voice(self, message_id, user_id, display_name, audio, mime_type, chat_id=None):
        return ("voice", message_id, user_id, display_name, audio, mime_type, chat_id)


class FakeChannel:
    def __init__(self, error=None):
        self.error = error
        self.downloads = []

    async def download_voice(self, file_id):
        self.downloads.append(file_id)
        if self.error is not None:
            raise self.error
        return b"OGG"


def _message(**extra):
    msg = {
        "message_id": 7,
        "chat": {"id": 100},
        "from": {"id": 42, "username": "alice", "first_name": "Alice"},
    }
    msg.update(extra)
    return msg


class TestCommandParsing:
    def test_extract_command(self):
        assert _extract_command("/clear") == ("/clear", "")
        assert _extract_command("/start@TutorBot  hi there ") == ("/start", "hi there")
        assert _extract_command("hello") == ("", "")

    def test_command_addressing(self):
        assert _is_command_for_this_bot("/help", "TutorBot")
        assert _is_command_for_this_bot("/help@tutorbot", "TutorBot")
        assert not _is_command_for_this_bot("/help@OtherBot", "TutorBot")
        assert not _is_command_for_this_bot("/help@TutorBot", "")
        assert not _is_command_for_this_bot("help", "TutorBot")


def test_sender_falls_back_to_first_name():
    assert _get_sender({"from": {"id": 5, "first_name": "Bob"}}) == ("5", "Bob")
    assert _get_sender({"from": {"id": 5}}) == ("5", "User")
    assert _get_sender({}) == ("", "User")


class TestDispatch:
    def test_text(self):
        call = dispatch_message(FakePipeline(), FakeChannel(), _message(text="what is a limit?"))
        assert call == ("text", "100:7", "42", "alice", "what is a limit?", 100)

    def test_command(self):
        call = dispatch_message(FakePipeline(), FakeChannel(), _message(text="/clear@TutorBot"), "TutorBot")
        assert call == ("command", "100:7", "42", "alice", "/clear", 100)

    def test_command_for_other_bot_ignored(self):
        assert dispatch_message(FakePipeline(), FakeChannel(), _message(text="/clear@OtherBot"), "TutorBot") is None

    def test_unknown_command_is_a_question(self):
        call = dispatch_message(FakePipeline(), FakeChannel(), _message(text="/derivative of x^2"))
        assert call[0] == "text"

    def test_blank_text_ignored(self):
        assert dispatch_message(FakePipeline(), FakeChannel(), _message(text="   ")) is None

    def test_message_without_sender_ignored(self):
        msg = _message(text="hi")
        del msg["from"]
        assert dispatch_message(FakePipeline(), FakeChannel(), msg) is None

    def test_unsupported_content_ignored(self):
        assert dispatch_message(FakePipeline(), FakeChannel(), _message(photo=[{"file_id": "p"}])) is None

    def test_voice_loader_downloads(self):
        channel = FakeChannel()
        call = dispatch_message(
            FakePipeline(), channel, _message(voice={"file_id": "abc", "mime_type": "audio/ogg"})
        )
        kind, key, user_id, _, loader, mime_type, chat_id = call
        assert (kind, key, user_id, mime_type, chat_id) == ("voice", "100:7", "42", "audio/ogg", 100)
        assert channel.downloads == []
        assert asyncio.run(loader()) == b"OGG"
        assert channel.downloads == ["abc"]

    def test_voice_download_error_becomes_transcription_failure(self):
        channel = FakeChannel(error=requests.exceptions.ConnectionError("down"))
        call = dispatch_message(FakePipeline(), channel, _message(voice={"file_id": "abc"}))
        assert call[5] == "audio/ogg"
        with pytest.raises(TranscriptionFailure):
            asyncio.run(call[4]())
