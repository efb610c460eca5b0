import argparse
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from tutor_bot.context import DEFAULT_MAX_CONTEXT_MESSAGES, DEFAULT_MAX_STORED_MESSAGES
from tutor_bot.fragmenter import DEFAULT_MAX_FRAGMENT_LENGTH

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENAI_MODEL = "gpt-4o-mini"
TRANSCRIPTION_MODEL = "whisper-1"


@dataclass(frozen=True)
class BotConfig:
    telegram_bot_token: str
    api_key: str
    openai_base_url: str = OPENAI_BASE_URL
    openai_model: str = OPENAI_MODEL
    transcription_model: str = TRANSCRIPTION_MODEL
    transcription_language: str = "ru"
    data_dir: str = "data"
    usage_log_file: str = "data/usage.jsonl"
    max_context_messages: int = DEFAULT_MAX_CONTEXT_MESSAGES
    max_stored_messages: int = DEFAULT_MAX_STORED_MESSAGES
    max_fragment_length: int = DEFAULT_MAX_FRAGMENT_LENGTH
    fragment_delay_ms: int = 1000
    model_timeout: float = 60.0
    single_reply: bool = True
    log_level: str = "INFO"


def _require_env(name: str, env: Mapping[str, str]) -> str:
    value = env.get(name)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Required env var is not set: {name}")
    return value


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def _positive(name: str, value: int) -> int:
    if value < 1:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def parse_args(argv: Optional[list] = None, env: Optional[Mapping[str, str]] = None) -> argparse.Namespace:
    env = os.environ if env is None else env
    parser = argparse.ArgumentParser(description="AI tutor Telegram bot")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=env.get("DATA_DIR", "data"),
        help="Directory with dialogs/ and prompts/ (default: $DATA_DIR or ./data)",
    )
    parser.add_argument(
        "--usage-log-file",
        type=str,
        default=env.get("USAGE_LOG_FILE"),
        help="Path to JSONL log of messages and token usage (default: <data-dir>/usage.jsonl)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=env.get("LOG_LEVEL", "INFO"),
        help="Logging level (default: $LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--no-single-reply",
        action="store_true",
        help="Deliver the whole completion even when the model writes several messages",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace, env: Optional[Mapping[str, str]] = None) -> BotConfig:
    """Build the runtime config from parsed flags and environment variables.

    Raises RuntimeError for missing secrets and ValueError for malformed numbers.
    """
    env = os.environ if env is None else env
    usage_log_file = args.usage_log_file or os.path.join(args.data_dir, "usage.jsonl")
    timeout_raw = (env.get("MODEL_TIMEOUT") or "").strip()
    try:
        model_timeout = float(timeout_raw) if timeout_raw else 60.0
    except ValueError:
        raise ValueError(f"MODEL_TIMEOUT must be a number, got {timeout_raw!r}")
    return BotConfig(
        telegram_bot_token=_require_env("TELEGRAM_BOT_TOKEN", env),
        api_key=_require_env("API_KEY", env),
        openai_base_url=env.get("OPENAI_BASE_URL") or OPENAI_BASE_URL,
        openai_model=env.get("OPENAI_MODEL") or OPENAI_MODEL,
        transcription_model=env.get("TRANSCRIPTION_MODEL") or TRANSCRIPTION_MODEL,
        transcription_language=env.get("TRANSCRIPTION_LANGUAGE", "ru"),
        data_dir=args.data_dir,
        usage_log_file=usage_log_file,
        max_context_messages=_positive(
            "MAX_CONTEXT_MESSAGES",
            _env_int(env, "MAX_CONTEXT_MESSAGES", DEFAULT_MAX_CONTEXT_MESSAGES),
        ),
        max_stored_messages=_positive(
            "MAX_STORED_MESSAGES",
            _env_int(env, "MAX_STORED_MESSAGES", DEFAULT_MAX_STORED_MESSAGES),
        ),
        max_fragment_length=_positive(
            "MAX_FRAGMENT_LENGTH",
            _env_int(env, "MAX_FRAGMENT_LENGTH", DEFAULT_MAX_FRAGMENT_LENGTH),
        ),
        fragment_delay_ms=_env_int(env, "FRAGMENT_DELAY_MS", 1000),
        model_timeout=model_timeout,
        single_reply=not args.no_single_reply,
        log_level=str(args.log_level or "INFO").upper(),
    )
