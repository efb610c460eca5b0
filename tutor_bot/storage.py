"""JSON-file stores for dialogs and prompts.

Layout under the data directory:

    dialogs/<user_id>.json     one conversation per user
    prompts/prompts.json       {"prompts": [...]}
    prompts/active.json        {"activeId": "<prompt id or empty>"}

Every write goes through a temp file + replace, so a crash never leaves a
half-written JSON file behind. The stores are blocking; async callers run
them in a worker thread.
"""

import json
import logging
import re
import uuid
from pathlib import Path
from typing import Any, List, Optional

from tutor_bot.errors import StorageFailure
from tutor_bot.models import Conversation, Prompt, utc_now_iso

DEFAULT_PROMPT_NAME = "Default Prompt"
DEFAULT_PROMPT_CONTENT = "You are a helpful AI assistant. Be concise, friendly, and professional."

_USER_ID_RE = re.compile(r"^-?[A-Za-z0-9_]+$")

logger = logging.getLogger(__name__)


def _read_json(path: Path) -> Optional[Any]:
    """Returns parsed JSON, or None when the file does not exist."""
    if not path.exists():
        return None
    try:
        raw = path.read_text(encoding="utf-8")
        return json.loads(raw)
    except (OSError, ValueError) as e:
        raise StorageFailure(f"Failed to read {path}: {type(e).__name__}: {e}") from e


def _write_json(path: Path, data: Any) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        raw = json.dumps(data, ensure_ascii=False, indent=2) + "\n"
        tmp_path.write_text(raw, encoding="utf-8")
        tmp_path.replace(path)
    except OSError as e:
        raise StorageFailure(f"Failed to write {path}: {type(e).__name__}: {e}") from e


class DialogStore:
    """Per-user conversation files."""

    def __init__(self, data_dir: str):
        self.dialogs_dir = Path(data_dir) / "dialogs"

    def _path(self, user_id: str) -> Path:
        user_id = str(user_id)
        if not _USER_ID_RE.match(user_id):
            raise ValueError(f"Invalid user id: {user_id!r}")
        return self.dialogs_dir / f"{user_id}.json"

    def load(self, user_id: str) -> Optional[Conversation]:
        data = _read_json(self._path(user_id))
        if data is None:
            return None
        if not isinstance(data, dict):
            raise StorageFailure(f"Dialog file for user {user_id} is not a JSON object")
        return Conversation.from_dict(data, user_id=str(user_id))

    def save(self, conversation: Conversation) -> None:
        _write_json(self._path(conversation.user_id), conversation.to_dict())

    def list_user_ids(self) -> List[str]:
        if not self.dialogs_dir.exists():
            return []
        try:
            return sorted(p.stem for p in self.dialogs_dir.glob("*.json") if p.is_file())
        except OSError as e:
            raise StorageFailure(f"Failed to list {self.dialogs_dir}: {e}") from e


class PromptStore:
    """Administrator prompts plus the single active-prompt pointer."""

    def __init__(self, data_dir: str):
        prompts_dir = Path(data_dir) / "prompts"
        self.prompts_file = prompts_dir / "prompts.json"
        self.active_file = prompts_dir / "active.json"

    def list_prompts(self) -> List[Prompt]:
        data = _read_json(self.prompts_file)
        if not isinstance(data, dict):
            return []
        items = data.get("prompts")
        if not isinstance(items, list):
            return []
        prompts: List[Prompt] = []
        for item in items:
            prompt = Prompt.from_dict(item)
            if prompt is not None:
                prompts.append(prompt)
        return prompts

    def _save_prompts(self, prompts: List[Prompt]) -> None:
        _write_json(self.prompts_file, {"prompts": [p.to_dict() for p in prompts]})

    def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        for prompt in self.list_prompts():
            if prompt.id == prompt_id:
                return prompt
        return None

    def get_active_prompt_id(self) -> Optional[str]:
        data = _read_json(self.active_file)
        if not isinstance(data, dict):
            return None
        active_id = str(data.get("activeId") or "").strip()
        return active_id or None

    def set_active_prompt_id(self, prompt_id: Optional[str]) -> None:
        _write_json(self.active_file, {"activeId": prompt_id or ""})

    def create_prompt(self, name: str, content: str) -> Prompt:
        now = utc_now_iso()
        prompt = Prompt(
            id=str(uuid.uuid4()),
            name=name,
            content=content,
            created_at=now,
            updated_at=now,
        )
        prompts = self.list_prompts()
        prompts.append(prompt)
        self._save_prompts(prompts)
        return prompt

    def update_prompt(
        self,
        prompt_id: str,
        name: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Optional[Prompt]:
        prompts = self.list_prompts()
        for i, prompt in enumerate(prompts):
            if prompt.id != prompt_id:
                continue
            updated = Prompt(
                id=prompt.id,
                name=prompt.name if name is None else name,
                content=prompt.content if content is None else content,
                created_at=prompt.created_at,
                updated_at=utc_now_iso(),
            )
            prompts[i] = updated
            self._save_prompts(prompts)
            return updated
        return None

    def delete_prompt(self, prompt_id: str) -> bool:
        prompts = self.list_prompts()
        remaining = [p for p in prompts if p.id != prompt_id]
        if len(remaining) == len(prompts):
            return False
        self._save_prompts(remaining)
        if self.get_active_prompt_id() == prompt_id:
            self.set_active_prompt_id(None)
        return True

    def initialize_default_prompt(self) -> Optional[Prompt]:
        """Create and activate a default prompt when none exist."""
        if self.list_prompts():
            return None
        prompt = self.create_prompt(DEFAULT_PROMPT_NAME, DEFAULT_PROMPT_CONTENT)
        self.set_active_prompt_id(prompt.id)
        logger.info("No prompts found; created and activated default prompt %s", prompt.id)
        return prompt
