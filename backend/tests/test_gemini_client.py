"""Tests for the Gemini REST client, using httpx.MockTransport."""

import datetime
import json

import httpx
import pytest

from keyrotation.services.gemini_client import (
    GeminiClient,
    GeminiQuotaExceeded,
    GeminiRequestError,
    mask_api_key,
    parse_retry_delay,
    quota_window,
)

BASE_URL = "https://gemini.test/v1beta"


def _client(handler) -> GeminiClient:
    return GeminiClient(BASE_URL, timeout=5.0, max_output_tokens=256, transport=httpx.MockTransport(handler))


def _reply(text: str = "Hello there", tokens: int = 42) -> dict:
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": text}]},
                "finishReason": "STOP",
            }
        ],
        "usageMetadata": {"promptTokenCount": 30, "candidatesTokenCount": 12, "totalTokenCount": tokens},
    }


def test_mask_api_key() -> None:
    assert mask_api_key("AIzaSyExample1234") == "****1234"
    assert mask_api_key("abc") == "****"


@pytest.mark.asyncio
async def test_generate_success() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_reply("  Hello there  "))

    reply = await _client(handler).generate(
        "AIza-secret", "gemini-2.5-flash", "Hi", system_instruction="Be brief.",
    )

    assert reply.text == "Hello there"
    assert reply.total_tokens == 42
    assert reply.finish_reason == "STOP"

    [request] = seen
    assert str(request.url) == f"{BASE_URL}/models/gemini-2.5-flash:generateContent"
    assert request.headers["x-goog-api-key"] == "AIza-secret"
    assert "AIza-secret" not in str(request.url)
    body = json.loads(request.content)
    assert body["contents"][0]["parts"][0]["text"] == "Hi"
    assert body["systemInstruction"]["parts"][0]["text"] == "Be brief."
    assert body["generationConfig"]["maxOutputTokens"] == 256


@pytest.mark.asyncio
async def test_429_raises_quota_exceeded_with_details() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={
                "error": {
                    "code": 429,
                    "status": "RESOURCE_EXHAUSTED",
                    "details": [
                        {
                            "@type": "type.googleapis.com/google.rpc.QuotaFailure",
                            "violations": [
                                {
                                    "quotaMetric": "generativelanguage.googleapis.com/generate_content_free_tier_requests",
                                    "quotaId": "GenerateRequestsPerMinutePerProjectPerModel-FreeTier",
                                    "quotaValue": "10",
                                }
                            ],
                        },
                        {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "17s"},
                    ],
                }
            },
        )

    with pytest.raises(GeminiQuotaExceeded) as exc_info:
        await _client(handler).generate("AIza-secret", "gemini-2.5-flash", "Hi")

    error = exc_info.value
    assert error.model == "gemini-2.5-flash"
    assert error.quota_id == "GenerateRequestsPerMinutePerProjectPerModel-FreeTier"
    assert error.quota_value == 10
    assert error.retry_delay == "17s"
    assert error.window == "rpm"
    assert error.retry_after == datetime.timedelta(seconds=17)


@pytest.mark.asyncio
async def test_429_without_json_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="Too Many Requests")

    with pytest.raises(GeminiQuotaExceeded) as exc_info:
        await _client(handler).generate("AIza-secret", "gemini-2.5-pro", "Hi")

    assert exc_info.value.quota_id is None


@pytest.mark.asyncio
async def test_server_error_is_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "internal"}})

    with pytest.raises(GeminiRequestError) as exc_info:
        await _client(handler).generate("AIza-secret", "gemini-2.5-flash", "Hi")

    assert not isinstance(exc_info.value, GeminiQuotaExceeded)


@pytest.mark.asyncio
async def test_unparseable_body_is_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": []})

    with pytest.raises(GeminiRequestError):
        await _client(handler).generate("AIza-secret", "gemini-2.5-flash", "Hi")


@pytest.mark.asyncio
async def test_transport_error_is_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GeminiRequestError):
        await _client(handler).generate("AIza-secret", "gemini-2.5-flash", "Hi")


@pytest.mark.parametrize(
    "body",
    [
        ["not", "an", "object"],
        {"candidates": ["oops"]},
        {"candidates": [{"content": {"parts": ["x"]}}]},
        {"candidates": [{"content": {"parts": [1, 2]}}]},
        {"candidates": [{"content": {"parts": None}}]},
        {"candidates": [{"content": "text"}]},
        {"candidates": {"0": {}}},
        {"candidates": [{"content": {"parts": [{"text": "hi"}]}}], "usageMetadata": ["x"]},
        {"candidates": [{"content": {"parts": [{"text": "hi"}]}}], "usageMetadata": {"totalTokenCount": "many"}},
    ],
)
@pytest.mark.asyncio
async def test_malformed_reply_is_request_error(body) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    with pytest.raises(GeminiRequestError) as exc_info:
        await _client(handler).generate("AIza-secret", "gemini-2.5-flash", "Hi")

    assert not isinstance(exc_info.value, GeminiQuotaExceeded)


@pytest.mark.asyncio
async def test_reply_without_content_is_empty_text() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"candidates": [{"finishReason": "SAFETY"}], "usageMetadata": {"totalTokenCount": 9}},
        )

    reply = await _client(handler).generate("AIza-secret", "gemini-2.5-flash", "Hi")

    assert reply.text == ""
    assert reply.total_tokens == 9
    assert reply.finish_reason == "SAFETY"


@pytest.mark.parametrize(
    "body",
    [
        [{"error": {"code": 429, "details": []}}],
        {"error": "RESOURCE_EXHAUSTED"},
        {"error": {"details": "none"}},
        {"error": {"details": ["x", {"@type": "type.googleapis.com/google.rpc.QuotaFailure", "violations": ["y"]}]}},
    ],
)
@pytest.mark.asyncio
async def test_429_with_odd_error_body_still_rotates(body) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json=body)

    with pytest.raises(GeminiQuotaExceeded) as exc_info:
        await _client(handler).generate("AIza-secret", "gemini-2.5-flash", "Hi")

    assert exc_info.value.quota_id is None
    assert exc_info.value.quota_value is None
    assert exc_info.value.window == "rpm"


@pytest.mark.parametrize(
    ("quota_id", "window"),
    [
        ("GenerateRequestsPerMinutePerProjectPerModel-FreeTier", "rpm"),
        ("GenerateRequestsPerDayPerProjectPerModel-FreeTier", "rpd"),
        ("GenerateContentInputTokensPerModelPerMinute-FreeTier", "tpm"),
        ("GenerateRequestsPerHourPerProjectPerModel", "rph"),
        (None, "rpm"),
    ],
)
def test_quota_window(quota_id, window) -> None:
    assert quota_window(quota_id) == window


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("17s", datetime.timedelta(seconds=17)),
        ("0.5s", datetime.timedelta(milliseconds=500)),
        ("", None),
        (None, None),
        ("soon", None),
    ],
)
def test_parse_retry_delay(raw, expected) -> None:
    assert parse_retry_delay(raw) == expected
