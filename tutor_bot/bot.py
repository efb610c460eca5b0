import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, Set, Tuple

import requests
from openai import OpenAI

from tutor_bot.config import BotConfig, load_config, parse_args
from tutor_bot.context import ConversationContext, UserLocks
from tutor_bot.dedup import InFlightGuard
from tutor_bot.delivery import DeliverySequencer, TelegramChannel
from tutor_bot.errors import StorageFailure, TranscriptionFailure
from tutor_bot.gateway import ModelGateway, TranscriptionGateway
from tutor_bot.pipeline import COMMANDS, TutorPipeline
from tutor_bot.storage import DialogStore, PromptStore
from tutor_bot.telegram_client import TelegramAPIError, TelegramClient
from tutor_bot.usage_log import UsageLog

logger = logging.getLogger(__name__)


def _extract_command(text: str) -> Tuple[str, str]:
    """
    Returns (command, args).

    Handles /cmd and /cmd@botname forms.
    """
    text = (text or "").strip()
    if not text.startswith("/"):
        return "", ""

    parts = text.split(maxsplit=1)
    raw_cmd = parts[0]
    args = parts[1] if len(parts) > 1 else ""

    cmd = raw_cmd.split("@", maxsplit=1)[0]
    return cmd, args.strip()


def _is_command_for_this_bot(text: str, bot_username: str) -> bool:
    """
    True if `text` looks like a bot command that is intended for THIS bot.

    - /cmd ...              -> True
    - /cmd@ThisBot ...      -> True (case-insensitive)
    - /cmd@OtherBot ...     -> False
    """
    text = (text or "").strip()
    if not text.startswith("/"):
        return False
    first = text.split(maxsplit=1)[0]
    if "@" not in first:
        return True
    if not bot_username:
        return False
    _, mentioned = first.split("@", maxsplit=1)
    mentioned = mentioned.strip().lstrip("@").lower()
    return mentioned == bot_username.strip().lstrip("@").lower()


def _get_sender(message: Dict[str, Any]) -> Tuple[str, str]:
    sender = message.get("from") or {}
    if not isinstance(sender, dict):
        sender = {}
    user_id = str(sender.get("id") or "")
    display_name = str(sender.get("username") or sender.get("first_name") or "User").strip()
    return user_id, display_name


def dispatch_message(
    pipeline: TutorPipeline,
    channel: TelegramChannel,
    message: Dict[str, Any],
    bot_username: str = "",
) -> Optional[Awaitable[None]]:
    """Map one Telegram message to a pipeline call; None if there is nothing to do."""
    chat = message.get("chat") or {}
    if not isinstance(chat, dict) or chat.get("id") is None or message.get("message_id") is None:
        return None
    user_id, display_name = _get_sender(message)
    if not user_id:
        return None
    chat_id = chat["id"]
    message_key = f"{chat_id}:{message['message_id']}"

    text = message.get("text")
    if isinstance(text, str):
        cmd, _ = _extract_command(text)
        if cmd in COMMANDS:
            if not _is_command_for_this_bot(text, bot_username):
                return None
            return pipeline.handle_command(message_key, user_id, display_name, cmd, chat_id=chat_id)
        if not text.strip():
            return None
        return pipeline.handle_inbound_message(message_key, user_id, display_name, text, chat_id=chat_id)

    voice = message.get("voice")
    if isinstance(voice, dict) and voice.get("file_id"):
        file_id = str(voice["file_id"])
        mime_type = str(voice.get("mime_type") or "audio/ogg")

        async def load_audio() -> bytes:
            try:
                return await channel.download_voice(file_id)
            except (requests.exceptions.RequestException, TelegramAPIError) as e:
                raise TranscriptionFailure(f"Failed to download voice message: {e}") from e

        return pipeline.handle_inbound_voice(
            message_key, user_id, display_name, load_audio, mime_type, chat_id=chat_id
        )

    return None


def build_pipeline(config: BotConfig, tg: TelegramClient) -> Tuple[TutorPipeline, TelegramChannel]:
    llm = OpenAI(api_key=config.api_key, base_url=config.openai_base_url)
    channel = TelegramChannel(tg)
    pipeline = TutorPipeline(
        guard=InFlightGuard(),
        prompts=PromptStore(config.data_dir),
        context=ConversationContext(
            DialogStore(config.data_dir),
            max_context=config.max_context_messages,
            max_stored=config.max_stored_messages,
        ),
        model=ModelGateway(llm, model=config.openai_model, timeout=config.model_timeout),
        transcriber=TranscriptionGateway(
            llm,
            model=config.transcription_model,
            language=config.transcription_language,
            timeout=config.model_timeout,
        ),
        channel=channel,
        sequencer=DeliverySequencer(channel, delay_seconds=config.fragment_delay_ms / 1000.0),
        locks=UserLocks(),
        usage_log=UsageLog(config.usage_log_file),
        max_fragment_length=config.max_fragment_length,
        single_reply=config.single_reply,
    )
    return pipeline, channel


async def _poll(tg: TelegramClient, pipeline: TutorPipeline, channel: TelegramChannel, bot_username: str) -> None:
    offset = 0
    tasks: Set[asyncio.Task] = set()
    while True:
        try:
            data = await asyncio.to_thread(tg.get_updates, offset)
            results = data.get("result") or []

            for update in results:
                update_id = update.get("update_id")
                if isinstance(update_id, int):
                    offset = max(offset, update_id + 1)

                message = update.get("message")
                if not isinstance(message, dict):
                    continue
                handler = dispatch_message(pipeline, channel, message, bot_username)
                if handler is None:
                    continue
                # Keep a reference until the task finishes.
                task = asyncio.create_task(handler)
                tasks.add(task)
                task.add_done_callback(tasks.discard)

        except (requests.exceptions.RequestException, TelegramAPIError) as e:
            logger.warning("Polling error: %s", e)
            await asyncio.sleep(2)
        except Exception:
            logger.exception("Unexpected error in polling loop")
            await asyncio.sleep(2)


async def run(config: BotConfig) -> None:
    prompts = PromptStore(config.data_dir)
    try:
        prompts.initialize_default_prompt()
    except StorageFailure:
        logger.warning("Could not initialize default prompt", exc_info=True)

    tg = TelegramClient(config.telegram_bot_token)
    pipeline, channel = build_pipeline(config, tg)

    bot_username = ""
    try:
        me = tg.get_me()
        bot_username = str((me.get("result") or {}).get("username") or "").strip()
        logger.info("Bot started: %s", bot_username or None)
    except (requests.exceptions.RequestException, TelegramAPIError):
        logger.info("Bot started")

    tg.delete_webhook()
    await _poll(tg, pipeline, channel, bot_username)


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=str(args.log_level or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    config = load_config(args)
    asyncio.run(run(config))


if __name__ == "__main__":
    main()
