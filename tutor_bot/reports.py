"""Read-only reporting over stored dialogs.

`last_trim_at` doubles as the "last activity" timestamp here, exactly like the
dashboard always did: a user who chatted today without triggering a trim
still shows the older timestamp.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from tutor_bot.storage import DialogStore

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class UserInfo:
    user_id: str
    username: str
    message_count: int
    last_message_at: str


@dataclass
class DialogStats:
    total_users: int
    total_messages: int
    active_today: int
    average_messages_per_user: int


def _parse_ts(value: str) -> datetime:
    try:
        ts = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return _EPOCH
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def list_users(dialogs: DialogStore, now: Optional[datetime] = None) -> List[UserInfo]:
    """All users with a dialog file, most recently active first."""
    now = now or datetime.now(timezone.utc)
    users: List[UserInfo] = []
    for user_id in dialogs.list_user_ids():
        conversation = dialogs.load(user_id)
        if conversation is None:
            continue
        users.append(
            UserInfo(
                user_id=conversation.user_id,
                username=conversation.display_name,
                message_count=len(conversation.messages),
                last_message_at=conversation.last_trim_at if conversation.messages else now.isoformat(),
            )
        )
    users.sort(key=lambda u: _parse_ts(u.last_message_at), reverse=True)
    return users


def dialog_stats(dialogs: DialogStore, now: Optional[datetime] = None) -> DialogStats:
    now = (now or datetime.now(timezone.utc)).astimezone()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    user_ids = dialogs.list_user_ids()
    total_messages = 0
    active_today = 0
    for user_id in user_ids:
        conversation = dialogs.load(user_id)
        if conversation is None:
            continue
        total_messages += len(conversation.messages)
        if _parse_ts(conversation.last_trim_at) >= today_start:
            active_today += 1

    total_users = len(user_ids)
    average = math.floor(total_messages / total_users + 0.5) if total_users else 0
    return DialogStats(
        total_users=total_users,
        total_messages=total_messages,
        active_today=active_today,
        average_messages_per_user=average,
    )
