"""
title: Telegram Image Relay Pipe
description: Gemini image generation & editing with delivery to a Telegram chat
id: telegram-image-relay
author: rbb-dev
author_url: https://github.com/rbb-dev/
version: 0.3.0
features:
  - Image generation from a text prompt using Gemini 2.5 Flash Image via the REST API.
  - Image editing when the chat message carries an inline data URI image.
  - Sends the current result to a Telegram chat as a photo, captioned with the prompt.
  - Telegram bot token and chat id are stored in a local JSON file and set with chat commands.
  - Persistent warning when the Google AI API key is missing; transient, dismissible status otherwise.
  - Streams OpenAI-compatible responses and emits status updates during processing.
  - Configurable via valves (API key, base URLs, model, credentials path, timeout, logging).
"""

import json
import logging
import os
import re
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from starlette.responses import StreamingResponse

from .credential_store import CredentialStore
from .errors import RelayError, ValidationError
from .dispatch_client import DEFAULT_API_BASE_URL
from .generation_client import DEFAULT_BASE_URL, DEFAULT_MODEL
from .models import OperationStatus, SourceImage
from .transcoder import decode
from .workflow import WorkflowController

logger = logging.getLogger(__name__)
package_logger = logging.getLogger(__package__ or __name__)
# Avoid 'No handler could be found' warnings; rely on host/root handlers.
if not package_logger.handlers:
    package_logger.addHandler(logging.NullHandler())

DATA_URI_MARKDOWN_PATTERN = re.compile(r"!\[[^\]]*\]\((data:[^;]+;base64,[^)]+)\)")

HELP_TEXT = """**Telegram Image Relay help**

- Type a description to generate an image.
- Attach or paste an image, then describe the change, to edit it.
- `/send` sends the current image to Telegram, captioned with the prompt.
- `/token <bot token>` and `/chat <chat id>` save the Telegram credentials.
- `/clear` removes the image being edited.
- `/status` shows what is configured; `/dismiss` clears the last status message.

Bot token: talk to @BotFather on Telegram and create a new bot.
Chat id: add the bot to the chat, send a message, then open
`https://api.telegram.org/bot<YOUR_TOKEN>/getUpdates` and read `"chat":{"id":...}`.
"""

API_KEY_WARNING = (
    "**⚠️ Action required: Google AI API Key is missing.** Images cannot be generated "
    "until the person who deployed this pipe sets the `API_KEY` valve or environment variable."
)

VALIDATION_MESSAGES = {
    "prompt required": "Please enter a prompt.",
    "nothing to send": "No image to send. Generate one first.",
    "credentials required": (
        "Telegram Bot Token and Chat ID are required. "
        "Set them with `/token <bot token>` and `/chat <chat id>`."
    ),
}


class Pipe:
    class Valves(BaseModel):
        # Auth and endpoints
        API_KEY: str = Field(
            default_factory=lambda: os.getenv("API_KEY", ""),
            description="Google AI API key. Defaults to the API_KEY environment variable.",
        )
        API_BASE_URL: str = Field(default=DEFAULT_BASE_URL, description="Gemini API base URL")
        MODEL: str = Field(default=DEFAULT_MODEL, description="Gemini image model")
        TELEGRAM_API_BASE_URL: str = Field(default=DEFAULT_API_BASE_URL, description="Telegram Bot API base URL")
        # Credentials storage
        CREDENTIALS_PATH: str = Field(
            default="~/.telegram_image_relay/credentials.json",
            description="JSON file holding the Telegram bot token and chat id.",
        )
        # Logging
        ENABLE_LOGGING: bool = Field(default=False, description="Enable info/debug logs for this plugin. When False, only errors are logged.")
        # HTTP client
        REQUEST_TIMEOUT: int = Field(default=600, description="Request timeout in seconds")

    def __init__(self):
        """Configure valves and logging; the workflow is built on first use."""
        self.valves = self.Valves()
        self._apply_logging_valve()
        self._controller: Optional[WorkflowController] = None
        self._controller_key: Optional[Tuple[Any, ...]] = None

    def _apply_logging_valve(self) -> None:
        """Set logger level based on ENABLE_LOGGING valve.
        OFF  -> ERROR only
        ON   -> INFO and above
        """
        enabled = bool(getattr(self.valves, "ENABLE_LOGGING", False))
        package_logger.setLevel(logging.INFO if enabled else logging.ERROR)
        package_logger.propagate = True

    def _get_controller(self) -> WorkflowController:
        """Return the workflow, rebuilding it when connection valves change."""
        key = (
            self.valves.API_KEY,
            self.valves.API_BASE_URL,
            self.valves.MODEL,
            self.valves.TELEGRAM_API_BASE_URL,
            self.valves.CREDENTIALS_PATH,
            self.valves.REQUEST_TIMEOUT,
        )
        if self._controller is None or key != self._controller_key:
            if self._controller is not None:
                logger.info("Valves changed; rebuilding workflow")
            self._controller = WorkflowController.build(
                credential_store=CredentialStore(self.valves.CREDENTIALS_PATH),
                api_key=self.valves.API_KEY,
                model=self.valves.MODEL,
                api_base_url=self.valves.API_BASE_URL,
                telegram_api_base_url=self.valves.TELEGRAM_API_BASE_URL,
                timeout=self.valves.REQUEST_TIMEOUT,
            )
            self._controller_key = key
        return self._controller

    async def emit_status(
        self,
        message: str,
        done: bool = False,
        emitter: Optional[Callable[[dict], Awaitable[None]]] = None,
    ) -> None:
        """Emit status updates to the client."""
        if emitter:
            await emitter({"type": "status", "data": {"description": message, "done": done}})

    @staticmethod
    def _render_status(status: Optional[OperationStatus]) -> str:
        if status is None:
            return ""
        icon = "⚠️" if status.is_failure else "✅"
        return f"**{icon} {status.message}**"

    def _render_state(self, controller: WorkflowController, note: str = "") -> str:
        """Compose the reply: config warning, note, status, then the current image."""
        blocks: List[str] = []
        if controller.api_key_missing:
            blocks.append(API_KEY_WARNING)
        if note:
            blocks.append(note)
        status_line = self._render_status(controller.status)
        if status_line:
            blocks.append(status_line)
        if controller.artifact is not None:
            blocks.append(f"![generated image]({controller.artifact.encoded})")
            blocks.append("Reply `/send` to deliver this image to Telegram.")
        return "\n\n".join(blocks) if blocks else "Nothing to show yet. Type `help` for usage."

    @staticmethod
    def _describe_config(controller: WorkflowController) -> str:
        credentials = controller.credentials
        source = controller.source_image
        lines = [
            f"- Bot token: {'set' if credentials.bot_token else 'missing'}",
            f"- Chat id: {credentials.chat_id or 'missing'}",
            f"- Image to edit: {(source.display_name or source.mime_type) if source else 'none'}",
            f"- Generated image: {'ready' if controller.artifact else 'none'}",
        ]
        if controller.reveal_credentials:
            lines.append("")
            lines.append(VALIDATION_MESSAGES["credentials required"])
        return "**Configuration**\n\n" + "\n".join(lines)

    @staticmethod
    def _extract_latest_user_input(messages: List[Dict[str, Any]]) -> Tuple[str, List[str]]:
        """Return the latest user text (images stripped) and its inline data URIs."""
        for message in reversed(messages or []):
            if message.get("role") != "user":
                continue
            content = message.get("content", "")
            text_segments: List[str] = []
            data_uris: List[str] = []

            def _strip_markdown_images(text_value: str) -> str:
                data_uris.extend(DATA_URI_MARKDOWN_PATTERN.findall(text_value))
                return DATA_URI_MARKDOWN_PATTERN.sub("", text_value)

            if isinstance(content, list):
                for item in content:
                    if not isinstance(item, dict):
                        continue
                    if item.get("type") == "text":
                        text_segments.append(_strip_markdown_images(item.get("text", "")).strip())
                    elif item.get("type") == "image_url":
                        url = (item.get("image_url") or {}).get("url", "").strip()
                        if url.startswith("data:"):
                            data_uris.append(url)
            elif isinstance(content, str):
                text_segments.append(_strip_markdown_images(content).strip())

            text = " ".join(segment for segment in text_segments if segment).strip()
            return re.sub(r"\s+", " ", text), data_uris
        return "", []

    async def _handle_command(
        self,
        controller: WorkflowController,
        text: str,
        data_uris: List[str],
        emitter: Optional[Callable[[dict], Awaitable[None]]] = None,
    ) -> str:
        """Map one chat message onto workflow actions and render the outcome."""
        command, _, argument = text.partition(" ")
        command = command.lower()
        argument = argument.strip()

        if text.strip().lower() in ("help", "/help"):
            return HELP_TEXT

        if data_uris:
            raw, mime_type = decode(data_uris[-1])
            controller.set_source_image(
                SourceImage(encoded=data_uris[-1], display_name="chat image", mime_type=mime_type)
            )
            logger.info("Source image set from chat (%s, %d bytes)", mime_type, len(raw))

        if command == "/token":
            if not argument:
                return "Usage: `/token <bot token>`"
            controller.set_bot_token(argument)
            return "Telegram bot token saved."
        if command == "/chat":
            if not argument:
                return "Usage: `/chat <chat id>`"
            controller.set_chat_id(argument)
            return f"Telegram chat id saved: `{argument}`"
        if command == "/status":
            return self._render_state(controller, note=self._describe_config(controller))
        if command == "/dismiss":
            controller.dismiss_status()
            return self._render_state(controller, note="Status dismissed.")
        if command == "/clear":
            controller.clear_source_image()
            return self._render_state(controller, note="Image to edit removed.")
        if command == "/send":
            await self.emit_status("Sending image to Telegram...", emitter=emitter)
            await controller.on_send()
            await self.emit_status("Done", True, emitter=emitter)
            return self._render_state(controller)

        if not text:
            if data_uris:
                return self._render_state(controller, note="Image received. Describe how to edit it.")
            raise ValidationError("prompt required")

        mode = "Editing image..." if controller.source_image is not None else "Generating image..."
        await self.emit_status(mode, emitter=emitter)
        await controller.on_generate(text)
        await self.emit_status("Image processing complete!", True, emitter=emitter)
        return self._render_state(controller)

    async def pipes(self) -> List[dict]:
        """Return the manifest entry consumed by Open WebUI."""
        return [{"id": "telegram-image-relay", "name": "Telegram Image Relay"}]

    async def pipe(
        self,
        body: dict,
        __user__: Optional[dict] = None,
        __request__: Any = None,
        __event_emitter__: Optional[Callable[[dict], Awaitable[None]]] = None,
    ) -> StreamingResponse:
        """Main entrypoint invoked by Open WebUI for each chat message."""
        # Re-apply in case valves changed at runtime
        self._apply_logging_valve()
        is_stream = bool(body.get("stream", False))
        model = self.valves.MODEL

        async def stream_response():
            """Yield OpenAI-compatible response chunks (streaming or single payload)."""
            try:
                controller = self._get_controller()
                text, data_uris = self._extract_latest_user_input(body.get("messages", []))
                try:
                    content = await self._handle_command(controller, text, data_uris, emitter=__event_emitter__)
                except ValidationError as e:
                    content = self._render_state(controller, note=VALIDATION_MESSAGES.get(e.message, e.message))
                except RelayError as e:
                    logger.error(f"Request rejected: {e}")
                    content = self._render_state(controller, note=f"**⚠️ {e.message}**")
            except Exception as e:
                logger.error(f"Error processing request: {str(e)}")
                await self.emit_status("An error occurred while processing request", True, emitter=__event_emitter__)
                content = f"Error processing request: {str(e)}"

            if is_stream:
                yield self._format_data(is_stream=True, model=model, content=content, finish_reason=None)
                yield self._format_data(is_stream=True, model=model, content=None, finish_reason="stop")
                yield "data: [DONE]\n\n"
            else:
                yield self._format_data(is_stream=False, model=model, content=content, finish_reason="stop")

        media_type = "text/event-stream" if is_stream else "application/json"
        return StreamingResponse(stream_response(), media_type=media_type)

    def _format_data(
        self,
        is_stream: bool,
        model: str = "",
        content: Optional[str] = "",
        finish_reason: Optional[str] = None,
    ) -> str:
        """Format the response data in the expected OpenAI-compatible format."""
        data = {
            "id": f"chat.{uuid.uuid4().hex}",
            "object": "chat.completion.chunk" if is_stream else "chat.completion",
            "created": int(time.time()),
            "model": model,
        }
        if is_stream:
            is_stop_chunk = finish_reason == "stop" and content is None
            delta: Dict[str, Any] = {}
            if not is_stop_chunk:
                delta["role"] = "assistant"
                if content is not None:
                    delta["content"] = content
            data["choices"] = [
                {
                    "finish_reason": finish_reason,
                    "index": 0,
                    "delta": delta,
                }
            ]
        else:
            data["choices"] = [
                {
                    "finish_reason": finish_reason or "stop",
                    "index": 0,
                    "message": {
                        "role": "assistant",
                        "content": content or "",
                    },
                }
            ]
        return f"data: {json.dumps(data)}\n\n" if is_stream else json.dumps(data)
