"""Per-message handling: dedup -> prompt -> context -> model -> deliver -> persist.

Every failure inside a handler is turned into exactly one notice to the user
(duplicates are dropped silently); nothing propagates to the dispatcher.
"""

import asyncio
import html
import logging
import uuid
from typing import Any, Awaitable, Callable, Hashable, Optional, Union

from tutor_bot.context import ConversationContext, UserLocks
from tutor_bot.dedup import InFlightGuard
from tutor_bot.delivery import DeliverySequencer
from tutor_bot.errors import (
    DeliveryFailure,
    DuplicateDelivery,
    ModelFailure,
    NoActivePrompt,
    PromptNotFound,
    StorageFailure,
    TranscriptionFailure,
)
from tutor_bot.fragmenter import DEFAULT_MAX_FRAGMENT_LENGTH, first_logical_message, split_message
from tutor_bot.gateway import ModelGateway, TranscriptionGateway
from tutor_bot.storage import PromptStore
from tutor_bot.usage_log import UsageLog

NO_ACTIVE_PROMPT_TEXT = "⚠️ No active prompt configured. Please contact administrator."
PROMPT_NOT_FOUND_TEXT = "⚠️ Active prompt not found. Please contact administrator."
MODEL_FAILURE_TEXT = "❌ Sorry, I couldn't get an answer right now. Please try again in a moment."
TRANSCRIPTION_FAILURE_TEXT = (
    "❌ Sorry, I couldn't recognize your voice message. Please send your question as text."
)
GENERIC_FAILURE_TEXT = "❌ Sorry, an error occurred processing your message. Please try again."
CLEAR_OK_TEXT = "✅ Your conversation history has been cleared. Let's start fresh!"
CLEAR_FAILED_TEXT = "❌ Failed to clear history. Please try again."
HELP_TEXT = (
    "🆘 Available Commands:\n\n"
    "/start - Welcome message and introduction\n"
    "/clear - Clear your conversation history\n"
    "/help - Show this help message\n\n"
    "Just send me any question to get started!"
)
WELCOME_TEXT = (
    "👋 Hello {name}!\n\n"
    "I'm your AI tutor. Ask me anything about the course topics, by text or by voice message.\n\n"
    "Use /clear to start a new conversation and /help to see all commands.\n\n"
    "Just send me your question!"
)

COMMANDS = {"/start", "/help", "/clear"}

AudioSource = Union[bytes, Callable[[], Awaitable[bytes]]]

logger = logging.getLogger(__name__)


class TutorPipeline:
    def __init__(
        self,
        *,
        guard: InFlightGuard,
        prompts: PromptStore,
        context: ConversationContext,
        model: ModelGateway,
        transcriber: Optional[TranscriptionGateway],
        channel: Any,
        sequencer: DeliverySequencer,
        locks: Optional[UserLocks] = None,
        usage_log: Optional[UsageLog] = None,
        max_fragment_length: int = DEFAULT_MAX_FRAGMENT_LENGTH,
        single_reply: bool = True,
    ):
        self._guard = guard
        self._prompts = prompts
        self._context = context
        self._model = model
        self._transcriber = transcriber
        self._channel = channel
        self._sequencer = sequencer
        self._locks = locks or UserLocks()
        self._usage_log = usage_log
        self.max_fragment_length = max_fragment_length
        self.single_reply = single_reply

    async def _notify(self, chat_id: Any, text: str) -> None:
        """Send a notice; a failure here is logged and dropped."""
        try:
            await self._channel.send(chat_id, text)
        except DeliveryFailure:
            logger.warning("Failed to deliver notice to %s", chat_id, exc_info=True)

    async def _active_prompt(self) -> str:
        active_id = await asyncio.to_thread(self._prompts.get_active_prompt_id)
        if not active_id:
            raise NoActivePrompt("No active prompt configured")
        prompt = await asyncio.to_thread(self._prompts.get_prompt, active_id)
        if prompt is None:
            raise PromptNotFound(f"Active prompt {active_id} does not exist")
        return prompt.content

    async def _log_inbound(self, request_id: str, message_id: Hashable, user_id: str, display_name: str, kind: str, text: str) -> None:
        if self._usage_log is None:
            return
        await asyncio.to_thread(
            self._usage_log.log_message,
            request_id=request_id,
            message_id=message_id,
            user_id=user_id,
            username=display_name,
            kind=kind,
            text=text,
        )

    async def _respond(self, request_id: str, user_id: str, display_name: str, text: str, chat_id: Any) -> None:
        system_prompt = await self._active_prompt()
        await self._channel.send_typing(chat_id)

        async with self._locks.hold(user_id):
            conversation = await self._context.append_user_turn(user_id, text, display_name)
            window = self._context.window_for_model(conversation)
            completion = await self._model.complete(window, system_prompt)
            if self._usage_log is not None:
                await asyncio.to_thread(
                    self._usage_log.log_tokens,
                    request_id=request_id,
                    user_id=user_id,
                    username=display_name,
                    purpose="reply",
                    model=self._model.model,
                    usage=completion.usage,
                )

            reply = first_logical_message(completion.text) if self.single_reply else completion.text
            fragments = split_message(reply.strip(), self.max_fragment_length)
            delivery_error: Optional[DeliveryFailure] = None
            try:
                await self._sequencer.deliver(chat_id, fragments)
            except DeliveryFailure as e:
                delivery_error = e

            # Stored even when delivery broke off part way.
            self._context.append_model_turn(conversation, completion.text)
            await self._context.trim_and_persist(conversation)

        if delivery_error is not None:
            raise delivery_error

    async def _respond_or_notify(self, request_id: str, user_id: str, display_name: str, text: str, chat_id: Any) -> None:
        try:
            await self._respond(request_id, user_id, display_name, text, chat_id)
        except PromptNotFound:
            logger.warning("Active prompt pointer is dangling; request %s not answered", request_id)
            await self._notify(chat_id, PROMPT_NOT_FOUND_TEXT)
        except NoActivePrompt:
            logger.warning("No active prompt configured; request %s not answered", request_id)
            await self._notify(chat_id, NO_ACTIVE_PROMPT_TEXT)
        except ModelFailure as e:
            logger.error("Model call failed for request %s: %s", request_id, e)
            await self._notify(chat_id, MODEL_FAILURE_TEXT)
        except StorageFailure as e:
            logger.error("Storage failure for request %s: %s", request_id, e)
            await self._notify(chat_id, GENERIC_FAILURE_TEXT)
        except DeliveryFailure as e:
            if e.delivered == 0:
                await self._notify(chat_id, GENERIC_FAILURE_TEXT)
        except Exception:
            logger.exception("Unexpected error handling request %s", request_id)
            await self._notify(chat_id, GENERIC_FAILURE_TEXT)

    async def handle_inbound_message(
        self,
        message_id: Hashable,
        user_id: str,
        display_name: str,
        text: str,
        chat_id: Any = None,
    ) -> None:
        """Answer one text message. `chat_id` defaults to the user's private chat."""
        user_id = str(user_id)
        chat_id = user_id if chat_id is None else chat_id
        try:
            with self._guard.hold(message_id):
                request_id = uuid.uuid4().hex
                logger.info("Request %s: text message %s from user %s", request_id, message_id, user_id)
                await self._log_inbound(request_id, message_id, user_id, display_name, "text", text)
                await self._respond_or_notify(request_id, user_id, display_name, text, chat_id)
        except DuplicateDelivery:
            logger.info("Duplicate delivery of message %s ignored", message_id)

    async def handle_inbound_voice(
        self,
        message_id: Hashable,
        user_id: str,
        display_name: str,
        audio: AudioSource,
        mime_type: str,
        chat_id: Any = None,
    ) -> None:
        """Transcribe a voice message and answer it like text.

        `audio` is either the raw bytes or an async loader returning them; a
        loader runs under the dedup marker, so redeliveries never download twice.
        """
        user_id = str(user_id)
        chat_id = user_id if chat_id is None else chat_id
        try:
            with self._guard.hold(message_id):
                request_id = uuid.uuid4().hex
                logger.info("Request %s: voice message %s from user %s", request_id, message_id, user_id)
                try:
                    if self._transcriber is None:
                        raise TranscriptionFailure("Voice messages are not configured")
                    payload = audio if isinstance(audio, bytes) else await audio()
                    text = await self._transcriber.transcribe(payload, mime_type)
                except TranscriptionFailure as e:
                    logger.warning("Transcription failed for request %s: %s", request_id, e)
                    await self._notify(chat_id, TRANSCRIPTION_FAILURE_TEXT)
                    return
                except Exception:
                    logger.exception("Unexpected error transcribing request %s", request_id)
                    await self._notify(chat_id, GENERIC_FAILURE_TEXT)
                    return
                await self._log_inbound(request_id, message_id, user_id, display_name, "voice", text)
                await self._respond_or_notify(request_id, user_id, display_name, text, chat_id)
        except DuplicateDelivery:
            logger.info("Duplicate delivery of message %s ignored", message_id)

    async def handle_command(
        self,
        message_id: Hashable,
        user_id: str,
        display_name: str,
        command: str,
        chat_id: Any = None,
    ) -> None:
        user_id = str(user_id)
        chat_id = user_id if chat_id is None else chat_id
        try:
            with self._guard.hold(message_id):
                if command == "/start":
                    name = html.escape(display_name or "there")
                    await self._notify(chat_id, WELCOME_TEXT.format(name=name))
                elif command == "/help":
                    await self._notify(chat_id, HELP_TEXT)
                elif command == "/clear":
                    await self._clear(user_id, chat_id)
                else:
                    logger.debug("Unknown command %s from user %s", command, user_id)
        except DuplicateDelivery:
            logger.info("Duplicate delivery of message %s ignored", message_id)

    async def _clear(self, user_id: str, chat_id: Any) -> None:
        try:
            async with self._locks.hold(user_id):
                await self._context.clear(user_id)
        except StorageFailure as e:
            logger.error("Failed to clear history for user %s: %s", user_id, e)
            await self._notify(chat_id, CLEAR_FAILED_TEXT)
            return
        logger.info("Cleared history for user %s", user_id)
        await self._notify(chat_id, CLEAR_OK_TEXT)
