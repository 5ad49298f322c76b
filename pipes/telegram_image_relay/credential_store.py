"""JSON-file persistence for the Telegram bot token and chat id."""

import json
import logging
from pathlib import Path
from typing import Dict, Union

from .models import Credentials

logger = logging.getLogger(__name__)

BOT_TOKEN_KEY = "telegramBotToken"
CHAT_ID_KEY = "telegramChatId"


class CredentialStore:
    """Two string slots, loaded once and written back on every change."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self._values: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            text = self.path.read_text(encoding="utf-8")
            raw = json.loads(text) if text.strip() else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(f"Failed to load credentials from {self.path}: {exc}")
            return {}
        if not isinstance(raw, dict):
            logger.error(f"Ignoring credentials file {self.path}: expected a JSON object")
            return {}
        return {key: value for key, value in raw.items() if isinstance(value, str)}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._values, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")

    def get(self, key: str) -> str:
        return self._values.get(key, "")

    def set(self, key: str, value: str) -> None:
        self._values[key] = value or ""
        self._write()

    @property
    def credentials(self) -> Credentials:
        return Credentials(bot_token=self.get(BOT_TOKEN_KEY), chat_id=self.get(CHAT_ID_KEY))

    @property
    def bot_token(self) -> str:
        return self.get(BOT_TOKEN_KEY)

    @bot_token.setter
    def bot_token(self, value: str) -> None:
        self.set(BOT_TOKEN_KEY, value)

    @property
    def chat_id(self) -> str:
        return self.get(CHAT_ID_KEY)

    @chat_id.setter
    def chat_id(self, value: str) -> None:
        self.set(CHAT_ID_KEY, value)
