"""Request orchestration: Generate and Send, with the state they leave behind.

The controller owns the current prompt, source image, generated artifact,
operation status and phase. Callers trigger actions and read that state back;
they never mutate it directly.

Precondition failures (`ValidationError`, `AlreadyInProgressError`) are raised
to the caller before anything changes. Everything that goes wrong once an
action is running is turned into a failure `OperationStatus` instead.
"""

import logging
from typing import Optional

from .credential_store import CredentialStore
from .dispatch_client import DispatchClient
from .errors import (
    AlreadyInProgressError,
    MissingCredentialError,
    ReadError,
    RelayError,
    ValidationError,
)
from .generation_client import GenerationClient
from .models import (
    Credentials,
    GeneratedArtifact,
    OperationStatus,
    RequestPhase,
    SourceImage,
)
from . import transcoder

logger = logging.getLogger(__name__)

SEND_SUCCESS_MESSAGE = "Image sent to Telegram successfully!"
READ_FAILURE_MESSAGE = "Failed to read the image file."


class WorkflowController:
    def __init__(
        self,
        credential_store: CredentialStore,
        dispatch_client: DispatchClient,
        generation_client: Optional[GenerationClient] = None,
        generation_error: Optional[MissingCredentialError] = None,
    ):
        if generation_client is None and generation_error is None:
            raise ValueError("Either a generation client or the reason it is missing is required")
        self.credential_store = credential_store
        self.dispatch_client = dispatch_client
        self.generation_client = generation_client
        self.generation_error = generation_error

        self.prompt = ""
        self.source_image: Optional[SourceImage] = None
        self.artifact: Optional[GeneratedArtifact] = None
        self.status: Optional[OperationStatus] = None
        self.phase = RequestPhase.IDLE
        self.reveal_credentials = False

    @classmethod
    def build(
        cls,
        credential_store: CredentialStore,
        api_key: str,
        model: str,
        api_base_url: str,
        telegram_api_base_url: str,
        timeout: float = 600,
    ) -> "WorkflowController":
        """Wire up the clients; a missing generation key is kept as a warning."""
        generation_client: Optional[GenerationClient] = None
        generation_error: Optional[MissingCredentialError] = None
        try:
            generation_client = GenerationClient(
                api_key=api_key, model=model, base_url=api_base_url, timeout=timeout
            )
        except MissingCredentialError as exc:
            logger.warning("Image generation disabled: %s", exc)
            generation_error = exc
        return cls(
            credential_store=credential_store,
            dispatch_client=DispatchClient(base_url=telegram_api_base_url, timeout=min(timeout, 60)),
            generation_client=generation_client,
            generation_error=generation_error,
        )

    @property
    def api_key_missing(self) -> bool:
        return self.generation_client is None

    @property
    def credentials(self) -> Credentials:
        return self.credential_store.credentials

    @property
    def is_busy(self) -> bool:
        return self.phase is not RequestPhase.IDLE

    def _ensure_idle(self, action: str) -> None:
        if self.is_busy:
            raise AlreadyInProgressError(f"Cannot {action} while {self.phase.value}")

    # Credentials

    def set_bot_token(self, value: str) -> None:
        self.credential_store.bot_token = (value or "").strip()
        self._refresh_reveal_flag()

    def set_chat_id(self, value: str) -> None:
        self.credential_store.chat_id = (value or "").strip()
        self._refresh_reveal_flag()

    def _refresh_reveal_flag(self) -> None:
        if self.credentials.complete:
            self.reveal_credentials = False

    # Source image

    def set_source_image(self, image: SourceImage) -> None:
        self.source_image = image
        self.artifact = None

    def clear_source_image(self) -> None:
        self.source_image = None
        self.artifact = None

    async def load_source_image(
        self,
        file: transcoder.FileInput,
        mime_type: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Optional[SourceImage]:
        """Encode an uploaded file and make it the source image."""
        try:
            image = await transcoder.encode(file, mime_type=mime_type, display_name=display_name)
        except ReadError as exc:
            logger.error(f"Image upload failed: {exc}")
            self.status = OperationStatus.failure(READ_FAILURE_MESSAGE)
            return None
        self.set_source_image(image)
        return image

    # Status

    def dismiss_status(self) -> None:
        self.status = None

    # Actions

    async def on_generate(self, prompt: Optional[str] = None) -> Optional[GeneratedArtifact]:
        """Create (or edit, when a source image is set) an image from the prompt."""
        self._ensure_idle("generate")
        candidate = self.prompt if prompt is None else prompt
        if not (candidate or "").strip():
            raise ValidationError("prompt required")
        self.prompt = candidate

        self.phase = RequestPhase.GENERATING
        self.artifact = None
        self.status = None
        # A source image feeds exactly one request.
        source = self.source_image
        self.source_image = None
        try:
            if self.generation_client is None:
                raise MissingCredentialError(self.generation_error.message)
            if source is not None:
                logger.info("Editing %s", source.display_name or "uploaded image")
                artifact = await self.generation_client.edit(self.prompt, source.encoded, source.mime_type)
            else:
                artifact = await self.generation_client.generate(self.prompt)
            self.artifact = artifact
        except RelayError as exc:
            logger.error(f"Image generation failed: {exc}")
            self.status = OperationStatus.failure(
                f"An error occurred while generating the image: {exc.message}"
            )
        except Exception as exc:
            logger.exception("Unexpected error during image generation")
            self.status = OperationStatus.failure(f"An error occurred while generating the image: {exc}")
        finally:
            self.phase = RequestPhase.IDLE
        return self.artifact

    async def on_send(self) -> OperationStatus:
        """Send the current artifact to the configured chat, captioned with the prompt."""
        self._ensure_idle("send")
        if self.artifact is None:
            raise ValidationError("nothing to send")
        credentials = self.credentials
        if not credentials.complete:
            self.reveal_credentials = True
            raise ValidationError("credentials required")

        self.phase = RequestPhase.SENDING
        self.status = None
        try:
            await self.dispatch_client.send_photo(
                credentials.bot_token, credentials.chat_id, self.artifact, self.prompt
            )
            self.status = OperationStatus.success(SEND_SUCCESS_MESSAGE)
        except RelayError as exc:
            logger.error(f"Telegram API error: {exc}")
            self.status = OperationStatus.failure(f"Failed to send image to Telegram: {exc.message}")
        except Exception as exc:
            logger.exception("Unexpected error while sending to Telegram")
            self.status = OperationStatus.failure(f"Failed to send image to Telegram: {exc}")
        finally:
            self.phase = RequestPhase.IDLE
        return self.status
