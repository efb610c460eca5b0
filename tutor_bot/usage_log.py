"""Append-only JSONL log of inbound messages and model token usage."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)


def append_jsonl_record(path_str: str, record: Dict[str, Any]) -> None:
    path = Path(path_str)
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False) + "\n"
    with path.open("a", encoding="utf-8") as f:
        f.write(line)


class UsageLog:
    """Writes `message` and `tokens` records; a failed write never breaks a reply."""

    def __init__(self, path: str):
        self.path = path

    def _append(self, record: Dict[str, Any]) -> bool:
        try:
            append_jsonl_record(self.path, record)
        except OSError:
            logger.warning("Failed to write %s record to %s", record.get("record_type"), self.path, exc_info=True)
            return False
        return True

    def log_message(
        self,
        *,
        request_id: str,
        message_id: Any,
        user_id: str,
        username: str,
        kind: str,
        text: str,
    ) -> bool:
        return self._append(
            {
                "record_type": "message",
                "request_id": request_id,
                "ts": datetime.now(timezone.utc).isoformat(),
                "message_id": str(message_id),
                "user_id": str(user_id),
                "username": username,
                "kind": kind,
                "text": text,
            }
        )

    def log_tokens(
        self,
        *,
        request_id: str,
        user_id: str,
        username: str,
        purpose: str,
        model: str,
        usage: Dict[str, int],
    ) -> bool:
        if int(usage.get("total_tokens") or 0) <= 0:
            return False
        return self._append(
            {
                "record_type": "tokens",
                "request_id": request_id,
                "ts": datetime.now(timezone.utc).isoformat(),
                "user_id": str(user_id),
                "username": username,
                "purpose": purpose,
                "model": model,
                "prompt_tokens": int(usage.get("prompt_tokens") or 0),
                "completion_tokens": int(usage.get("completion_tokens") or 0),
                "total_tokens": int(usage.get("total_tokens") or 0),
            }
        )


def tokens_stat(path_str: str, top: int = 5) -> Tuple[int, List[Tuple[str, str, int]]]:
    """
    Returns: (total_tokens, top_users) where top_users is list of (user_id, username, total_tokens).
    """
    path = Path(path_str)
    if not path.exists():
        return 0, []

    total = 0
    per_user: Dict[str, int] = {}
    usernames: Dict[str, str] = {}

    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
            except ValueError:
                continue
            if not isinstance(rec, dict) or rec.get("record_type") != "tokens":
                continue
            t = int(rec.get("total_tokens") or 0)
            uid = str(rec.get("user_id") or "")
            if t <= 0 or not uid:
                continue
            total += t
            per_user[uid] = per_user.get(uid, 0) + t
            uname = str(rec.get("username") or "")
            if uname:
                usernames[uid] = uname

    ranked = sorted(per_user.items(), key=lambda kv: kv[1], reverse=True)[:top]
    return total, [(uid, usernames.get(uid, ""), t) for uid, t in ranked]
