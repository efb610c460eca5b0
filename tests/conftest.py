"""Shared fakes for the pipeline tests."""

import asyncio
from types import SimpleNamespace

import pytest

from tutor_bot.context import ConversationContext, UserLocks
from tutor_bot.dedup import InFlightGuard
from tutor_bot.delivery import DeliverySequencer
from tutor_bot.errors import DeliveryFailure
from tutor_bot.gateway import Completion
from tutor_bot.pipeline import TutorPipeline
from tutor_bot.storage import DialogStore, PromptStore


class FakeChannel:
    """Records sends; `fail_on` holds 0-based send numbers that should fail."""

    def __init__(self, fail_on=()):
        self.sent = []
        self.typing = []
        self.fail_on = set(fail_on)
        self._calls = 0

    async def send(self, chat_id, text, parse_mode="HTML"):
        n = self._calls
        self._calls += 1
        if n in self.fail_on:
            raise DeliveryFailure(f"send #{n} failed")
        if not text.strip():
            # Telegram answers "message text is empty".
            raise DeliveryFailure(f"send #{n} rejected: blank text")
        self.sent.append((chat_id, text))

    async def send_typing(self, chat_id):
        self.typing.append(chat_id)


class FakeModel:
    model = "fake-model"

    def __init__(self, replies=None, error=None):
        self.replies = list(replies or ["ok"])
        self.error = error
        self.calls = []

    async def complete(self, history, system_prompt):
        self.calls.append((list(history), system_prompt))
        # Yield so concurrent handlers really interleave.
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        text = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return Completion(text=text, usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5})


class FakeTranscriber:
    def __init__(self, text="transcribed question", error=None):
        self.text = text
        self.error = error
        self.calls = []

    async def transcribe(self, audio, mime_type):
        self.calls.append((audio, mime_type))
        if self.error is not None:
            raise self.error
        return self.text


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def channel_factory():
    return FakeChannel


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def make_bot(tmp_path):
    """Build a pipeline over temp-dir stores with fakes for every remote service."""

    def _make(
        replies=None,
        model_error=None,
        fail_on=(),
        transcript="transcribed question",
        transcription_error=None,
        max_context=20,
        max_stored=100,
        max_fragment_length=4000,
        active_prompt=True,
        usage_log=None,
    ):
        prompts = PromptStore(str(tmp_path))
        if active_prompt:
            prompt = prompts.create_prompt("Tutor", "You are a patient tutor.")
            prompts.set_active_prompt_id(prompt.id)
        dialogs = DialogStore(str(tmp_path))
        channel = FakeChannel(fail_on=fail_on)
        model = FakeModel(replies=replies, error=model_error)
        transcriber = FakeTranscriber(text=transcript, error=transcription_error)
        sleep = RecordingSleep()
        pipeline = TutorPipeline(
            guard=InFlightGuard(),
            prompts=prompts,
            context=ConversationContext(dialogs, max_context=max_context, max_stored=max_stored),
            model=model,
            transcriber=transcriber,
            channel=channel,
            sequencer=DeliverySequencer(channel, delay_seconds=1.0, sleep=sleep),
            locks=UserLocks(),
            usage_log=usage_log,
            max_fragment_length=max_fragment_length,
        )
        return SimpleNamespace(
            pipeline=pipeline,
            prompts=prompts,
            dialogs=dialogs,
            channel=channel,
            model=model,
            transcriber=transcriber,
            sleep=sleep,
        )

    return _make

