"""Telegram Bot API photo upload."""

import logging

import httpx

from .errors import DispatchServiceError
from .models import GeneratedArtifact
from .transcoder import decode

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.telegram.org"
PHOTO_FILENAME = "generated-image.png"
GENERIC_FAILURE_MESSAGE = "Telegram API request failed"


class DispatchClient:
    def __init__(self, base_url: str = DEFAULT_API_BASE_URL, timeout: float = 60):
        self.base_url = (base_url or DEFAULT_API_BASE_URL).rstrip("/")
        self.timeout = timeout

    async def send_photo(
        self,
        bot_token: str,
        chat_id: str,
        artifact: GeneratedArtifact,
        caption: str,
    ) -> None:
        """Upload the artifact as a photo message; one attempt, no retry."""
        photo_bytes, mime_type = decode(artifact.encoded)
        data = {"chat_id": chat_id, "caption": caption or ""}
        files = {"photo": (PHOTO_FILENAME, photo_bytes, mime_type)}
        logger.info(
            "Sending photo: chat_id=%s | mime=%s | bytes=%d | caption_chars=%d",
            chat_id,
            mime_type,
            len(photo_bytes),
            len(data["caption"]),
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/bot{bot_token}/sendPhoto", data=data, files=files
                )
        except httpx.HTTPError as e:
            # httpx puts the URL (and so the token) into some messages
            message = str(e).replace(bot_token, "<token>") if bot_token else str(e)
            logger.error(f"Telegram request failed: {message}")
            raise DispatchServiceError(message or GENERIC_FAILURE_MESSAGE) from e

        if not response.is_success:
            description = self._error_description(response)
            logger.error(f"Telegram API returned HTTP {response.status_code}: {description}")
            raise DispatchServiceError(description, status_code=response.status_code)

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return GENERIC_FAILURE_MESSAGE
        if isinstance(body, dict) and body.get("description"):
            return str(body["description"])
        return GENERIC_FAILURE_MESSAGE
