"""Gemini image generation and editing over the REST generateContent endpoint."""

import logging
from typing import Annotated, Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag
from pydantic import ValidationError as SchemaValidationError

from .errors import GenerationServiceError, MissingCredentialError, NoImageInResponseError
from .models import GeneratedArtifact
from .transcoder import split_data_uri, to_data_uri

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash-image"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
MISSING_API_KEY_MESSAGE = (
    "Google AI API Key is not configured. "
    "Please set the API_KEY environment variable in your deployment settings."
)
NO_IMAGE_MESSAGE = "No image data found in Gemini response"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InlineData(_WireModel):
    mime_type: str = Field(default="image/png", alias="mimeType")
    data: str


class InlineDataPart(_WireModel):
    inline_data: InlineData = Field(alias="inlineData")


class TextPart(_WireModel):
    text: str
    thought: bool = False


class OtherPart(_WireModel):
    """Any part kind the relay does not consume (function calls, files, ...)."""


def _part_kind(value: Any) -> str:
    if isinstance(value, dict):
        if value.get("inlineData") or value.get("inline_data"):
            return "inline"
        if isinstance(value.get("text"), str):
            return "text"
        return "other"
    if isinstance(value, InlineDataPart):
        return "inline"
    if isinstance(value, TextPart):
        return "text"
    return "other"


Part = Annotated[
    Union[
        Annotated[InlineDataPart, Tag("inline")],
        Annotated[TextPart, Tag("text")],
        Annotated[OtherPart, Tag("other")],
    ],
    Discriminator(_part_kind),
]


class Content(_WireModel):
    parts: List[Part] = Field(default_factory=list)


class Candidate(_WireModel):
    content: Optional[Content] = None
    finish_reason: Optional[str] = Field(default=None, alias="finishReason")


class PromptFeedback(_WireModel):
    block_reason: Optional[str] = Field(default=None, alias="blockReason")


class GenerateContentResponse(_WireModel):
    candidates: List[Candidate] = Field(default_factory=list)
    prompt_feedback: Optional[PromptFeedback] = Field(default=None, alias="promptFeedback")

    def iter_parts(self):
        for candidate in self.candidates:
            if candidate.content is None:
                continue
            yield from candidate.content.parts

    def first_inline_part(self) -> Optional[InlineDataPart]:
        return next((part for part in self.iter_parts() if isinstance(part, InlineDataPart)), None)


def _no_image_details(response: GenerateContentResponse) -> str:
    details: List[str] = []
    if response.prompt_feedback and response.prompt_feedback.block_reason:
        details.append(f"block reason: {response.prompt_feedback.block_reason}")
    finish_reasons = sorted({c.finish_reason for c in response.candidates if c.finish_reason})
    if finish_reasons:
        details.append(f"finish reason: {', '.join(finish_reasons)}")
    texts = [part.text.strip() for part in response.iter_parts() if isinstance(part, TextPart) and not part.thought]
    if texts and texts[0]:
        details.append(f"model said: {texts[0][:200]}")
    return f" ({'; '.join(details)})" if details else ""


def extract_image(payload: Any) -> GeneratedArtifact:
    """Pick the first inline image part across all candidates."""
    try:
        response = GenerateContentResponse.model_validate(payload)
    except SchemaValidationError as exc:
        logger.error(f"Unexpected generation response shape: {exc}")
        raise GenerationServiceError(f"Unexpected response from generation service: {exc}") from exc

    part = response.first_inline_part()
    if part is None:
        raise NoImageInResponseError(NO_IMAGE_MESSAGE + _no_image_details(response))
    return GeneratedArtifact(encoded=to_data_uri(part.inline_data.data, part.inline_data.mime_type))


def _upstream_error_message(response: httpx.Response) -> str:
    """Read `error.message` from a Google API error body, else the raw text."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    text = (response.text or "").strip()
    return text or f"Generation service returned HTTP {response.status_code}"


class GenerationClient:
    """Creates or edits one image per call with a Gemini image model."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 600,
    ):
        if not (api_key or "").strip():
            raise MissingCredentialError(MISSING_API_KEY_MESSAGE)
        self._api_key = api_key.strip()
        self.model = model or DEFAULT_MODEL
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout

    async def generate(self, prompt: str) -> GeneratedArtifact:
        """Create a new image from a text prompt."""
        return await self._generate_content([{"text": prompt}], mode="generate")

    async def edit(self, prompt: str, source_encoded: str, source_mime: str) -> GeneratedArtifact:
        """Edit the source image (a data URI) according to the prompt."""
        uri_mime, payload = split_data_uri(source_encoded)
        parts = [
            {"inlineData": {"mimeType": source_mime or uri_mime, "data": payload}},
            {"text": prompt},
        ]
        return await self._generate_content(parts, mode="edit")

    async def _generate_content(self, parts: List[Dict[str, Any]], mode: str) -> GeneratedArtifact:
        json_data = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"responseModalities": ["IMAGE"]},
        }
        endpoint = f"/models/{self.model}:generateContent"
        logger.info(
            "Request payload summary: model=%s | mode=%s | images=%s",
            self.model,
            mode,
            sum(1 for part in parts if "inlineData" in part),
        )
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "x-goog-api-key": self._api_key,
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            ) as client:
                response = await client.post(endpoint, json=json_data)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            message = _upstream_error_message(e.response)
            logger.error(f"Generation request failed with HTTP {e.response.status_code}: {message}")
            raise GenerationServiceError(message, status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            logger.error(f"Generation request failed: {str(e)}")
            raise GenerationServiceError(f"Request to generation service failed: {e}") from e

        try:
            response_data = response.json()
        except ValueError as e:
            logger.error(f"Generation service returned malformed JSON: {e}")
            raise GenerationServiceError("Generation service returned malformed JSON") from e

        artifact = extract_image(response_data)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Generated artifact: %s, %d chars", artifact.encoded[:32], len(artifact.encoded))
        return artifact
