import httpx
import pytest

from pipes.telegram_image_relay import generation_client
from pipes.telegram_image_relay.errors import (
    GenerationServiceError,
    MalformedEncodingError,
    MissingCredentialError,
    NoImageInResponseError,
)
from pipes.telegram_image_relay.generation_client import GenerationClient, extract_image


def _response(status_code, payload=None, content=None, url="https://stub.test/"):
    kwargs = {"json": payload} if content is None else {"content": content}
    return httpx.Response(status_code, request=httpx.Request("POST", url), **kwargs)


IMAGE_RESPONSE = {
    "candidates": [
        {"content": {"parts": [{"inlineData": {"data": "QQ==", "mimeType": "image/png"}}]}}
    ]
}


class _StubClient:
    def __init__(self, responder, calls, init_kwargs):
        self._responder = responder
        self._calls = calls
        self.init_kwargs = init_kwargs

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, **kwargs):
        self._calls.append({"url": url, "init": self.init_kwargs, **kwargs})
        return self._responder(url, kwargs)


@pytest.fixture
def http_calls(monkeypatch):
    """Route httpx.AsyncClient to a stub; set `responder` to control replies."""
    state = {"calls": [], "responder": lambda url, kwargs: _response(200, IMAGE_RESPONSE)}

    def factory(*_, **kwargs):
        return _StubClient(lambda url, kw: state["responder"](url, kw), state["calls"], kwargs)

    monkeypatch.setattr(generation_client.httpx, "AsyncClient", factory)
    return state


@pytest.fixture
def client():
    return GenerationClient(api_key="test-key")


@pytest.mark.parametrize("api_key", ["", "   ", None])
def test_missing_api_key_fails_at_construction(api_key):
    with pytest.raises(MissingCredentialError) as exc_info:
        GenerationClient(api_key=api_key)

    assert str(exc_info.value).startswith("Google AI API Key is not configured")


@pytest.mark.asyncio
async def test_generate_sends_text_only_request(http_calls, client):
    artifact = await client.generate("a red fox")

    assert artifact.encoded == "data:image/png;base64,QQ=="
    assert len(http_calls["calls"]) == 1
    call = http_calls["calls"][0]
    assert call["url"] == "/models/gemini-2.5-flash-image:generateContent"
    assert call["json"] == {
        "contents": [{"role": "user", "parts": [{"text": "a red fox"}]}],
        "generationConfig": {"responseModalities": ["IMAGE"]},
    }
    assert call["init"]["headers"]["x-goog-api-key"] == "test-key"
    assert call["init"]["base_url"] == "https://generativelanguage.googleapis.com/v1beta"


@pytest.mark.asyncio
async def test_edit_sends_source_image_before_prompt(http_calls, client):
    await client.edit("make it blue", "data:image/jpeg;base64,AAAA", "image/jpeg")

    parts = http_calls["calls"][0]["json"]["contents"][0]["parts"]
    assert parts == [
        {"inlineData": {"mimeType": "image/jpeg", "data": "AAAA"}},
        {"text": "make it blue"},
    ]


@pytest.mark.asyncio
async def test_edit_with_malformed_source_never_calls_service(http_calls, client):
    with pytest.raises(MalformedEncodingError):
        await client.edit("make it blue", "AAAA", "image/jpeg")

    assert http_calls["calls"] == []


@pytest.mark.asyncio
async def test_http_error_carries_upstream_message(http_calls, client):
    http_calls["responder"] = lambda url, kw: _response(
        400, {"error": {"code": 400, "message": "API key not valid", "status": "INVALID_ARGUMENT"}}
    )

    with pytest.raises(GenerationServiceError) as exc_info:
        await client.generate("cat")

    assert exc_info.value.message == "API key not valid"
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_http_error_without_json_uses_body_text(http_calls, client):
    http_calls["responder"] = lambda url, kw: _response(503, content=b"upstream unavailable")

    with pytest.raises(GenerationServiceError) as exc_info:
        await client.generate("cat")

    assert exc_info.value.message == "upstream unavailable"


@pytest.mark.asyncio
async def test_malformed_json_is_a_service_error(http_calls, client):
    http_calls["responder"] = lambda url, kw: _response(200, content=b"<html>oops</html>")

    with pytest.raises(GenerationServiceError) as exc_info:
        await client.generate("cat")

    assert "malformed JSON" in exc_info.value.message


@pytest.mark.asyncio
async def test_transport_error_is_a_service_error(http_calls, client):
    def _raise(url, kw):
        raise httpx.ConnectError("connection refused")

    http_calls["responder"] = _raise

    with pytest.raises(GenerationServiceError) as exc_info:
        await client.generate("cat")

    assert "connection refused" in exc_info.value.message


def test_extract_image_takes_first_inline_part_across_candidates():
    payload = {
        "candidates": [
            {"content": {"parts": [{"text": "Here you go"}]}},
            {"content": None},
            {
                "content": {
                    "parts": [
                        {"functionCall": {"name": "noop"}},
                        {"inlineData": {"data": "Qg==", "mimeType": "image/webp"}},
                        {"inlineData": {"data": "Qw==", "mimeType": "image/png"}},
                    ]
                }
            },
        ]
    }

    assert extract_image(payload).encoded == "data:image/webp;base64,Qg=="


def test_extract_image_without_inline_part_reports_context():
    payload = {
        "candidates": [
            {"content": {"parts": [{"text": "I can only describe foxes."}]}, "finishReason": "STOP"}
        ]
    }

    with pytest.raises(NoImageInResponseError) as exc_info:
        extract_image(payload)

    message = exc_info.value.message
    assert message.startswith("No image data found in Gemini response")
    assert "STOP" in message
    assert "I can only describe foxes." in message


def test_extract_image_from_blocked_prompt():
    with pytest.raises(NoImageInResponseError) as exc_info:
        extract_image({"promptFeedback": {"blockReason": "SAFETY"}})

    assert "SAFETY" in exc_info.value.message


def test_extract_image_rejects_unexpected_shape():
    with pytest.raises(GenerationServiceError) as exc_info:
        extract_image({"candidates": "nope"})

    assert not isinstance(exc_info.value, NoImageInResponseError)
