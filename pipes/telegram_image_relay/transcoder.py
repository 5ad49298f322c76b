"""Conversion between uploaded files, data URIs and upload-ready bytes."""

import base64
import binascii
import io
import logging
import mimetypes
import os
import re
from typing import Any, Optional, Tuple, Union

from fastapi.concurrency import run_in_threadpool
from PIL import Image

from .errors import MalformedEncodingError, ReadError
from .models import SourceImage

logger = logging.getLogger(__name__)

DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[^;,]+);base64,(?P<payload>.*)$", re.DOTALL)
FALLBACK_MIME_TYPE = "application/octet-stream"

FileInput = Union[str, "os.PathLike[str]", bytes, bytearray, Any]


def to_data_uri(payload_b64: str, mime_type: str) -> str:
    """Wrap an already base64-encoded payload in a data URI."""
    return f"data:{mime_type};base64,{payload_b64}"


def split_data_uri(data_uri: str) -> Tuple[str, str]:
    """Return (mime_type, base64 payload) without decoding the payload."""
    match = DATA_URI_PATTERN.match((data_uri or "").strip())
    if not match:
        raise MalformedEncodingError("Expected a data:<mime>;base64,<payload> URI")
    return match.group("mime"), match.group("payload")


def decode(data_uri: str) -> Tuple[bytes, str]:
    """Turn a data URI back into raw bytes plus its MIME type."""
    mime_type, payload = split_data_uri(data_uri)
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedEncodingError(f"Invalid base64 payload: {exc}") from exc
    return raw, mime_type


def _sniff_mime_type(raw: bytes) -> Optional[str]:
    """Identify the image format from its header bytes."""
    try:
        with Image.open(io.BytesIO(raw)) as img:
            return Image.MIME.get(img.format or "")
    except Exception as e:
        logger.debug(f"Could not identify image format: {e}")
        return None


def _resolve_mime_type(raw: bytes, reported: Optional[str], display_name: str) -> str:
    if reported:
        return reported
    guessed, _ = mimetypes.guess_type(display_name) if display_name else (None, None)
    return guessed or _sniff_mime_type(raw) or FALLBACK_MIME_TYPE


def _display_name_for(file: FileInput) -> str:
    if isinstance(file, (str, os.PathLike)):
        return os.path.basename(os.fspath(file))
    name = getattr(file, "filename", None) or getattr(file, "name", None)
    return os.path.basename(name) if isinstance(name, str) else ""


async def _read_bytes(file: FileInput) -> bytes:
    """Read the whole file without blocking the event loop."""
    if isinstance(file, (bytes, bytearray)):
        return bytes(file)

    if isinstance(file, (str, os.PathLike)):
        path = os.fspath(file)

        def _read() -> bytes:
            with open(path, "rb") as f:
                return f.read()

        return await run_in_threadpool(_read)

    reader = getattr(file, "read", None)
    if not callable(reader):
        raise ReadError(f"Unsupported file input: {type(file).__name__}")
    data = await run_in_threadpool(reader)
    if not isinstance(data, (bytes, bytearray)):
        raise ReadError("File handle did not return bytes")
    return bytes(data)


async def encode(
    file: FileInput,
    mime_type: Optional[str] = None,
    display_name: Optional[str] = None,
) -> SourceImage:
    """Read an uploaded file into a SourceImage carrying a data URI."""
    name = display_name if display_name is not None else _display_name_for(file)
    try:
        raw = await _read_bytes(file)
    except ReadError:
        raise
    except (OSError, ValueError) as exc:
        logger.error(f"Failed to read image file {name or '<unnamed>'}: {exc}")
        raise ReadError(f"Failed to read the image file: {exc}") from exc

    resolved_mime = _resolve_mime_type(raw, mime_type, name)
    payload = base64.b64encode(raw).decode("ascii")
    logger.debug("Encoded %s (%s, %d bytes)", name or "<unnamed>", resolved_mime, len(raw))
    return SourceImage(
        encoded=to_data_uri(payload, resolved_mime),
        display_name=name,
        mime_type=resolved_mime,
    )
