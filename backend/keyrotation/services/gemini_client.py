"""
Gemini client for generating agent replies.

Uses the Gemini REST `generateContent` endpoint via httpx. The key is sent
in the `x-goog-api-key` header, never in the URL, so it cannot leak into
access logs.

Error mapping:
  • 429 RESOURCE_EXHAUSTED → GeminiQuotaExceeded (caller rotates).
  • Any other non-200, or an unparseable body → GeminiRequestError.

Token accounting uses usageMetadata.totalTokenCount (prompt + output).
"""

from __future__ import annotations

import datetime
import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

_RETRY_DELAY = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")


def mask_api_key(api_key: str) -> str:
    """Show only the last four characters of a provider key."""
    if len(api_key) <= 4:
        return "****"
    return f"****{api_key[-4:]}"


def parse_retry_delay(raw: str | None) -> datetime.timedelta | None:
    """google.protobuf.Duration text ("17s", "0.5s") → timedelta."""
    if not raw:
        return None
    match = _RETRY_DELAY.match(raw)
    if match is None:
        return None
    return datetime.timedelta(seconds=float(match.group(1)))


def quota_window(quota_id: str | None) -> str:
    """
    Map a Google quotaId to the usage window it limits.

    e.g. GenerateRequestsPerDayPerProjectPerModel-FreeTier → rpd,
    GenerateContentInputTokensPerModelPerMinute-FreeTier → tpm.
    Unknown or missing ids count against rpm.
    """
    if not quota_id:
        return "rpm"
    if "Token" in quota_id:
        return "tpm"
    if "PerDay" in quota_id:
        return "rpd"
    if "PerHour" in quota_id:
        return "rph"
    return "rpm"


class GeminiRequestError(RuntimeError):
    """The Gemini call failed for a reason other than quota."""


class GeminiQuotaExceeded(GeminiRequestError):
    """Gemini answered 429 for this key/model."""

    def __init__(
        self,
        model: str,
        quota_id: str | None = None,
        quota_value: int | None = None,
        retry_delay: str | None = None,
    ) -> None:
        self.model = model
        self.quota_id = quota_id
        self.quota_value = quota_value
        self.retry_delay = retry_delay
        super().__init__(f"Quota exceeded for {model} ({quota_id or 'unknown quota'})")

    @property
    def window(self) -> str:
        return quota_window(self.quota_id)

    @property
    def retry_after(self) -> datetime.timedelta | None:
        return parse_retry_delay(self.retry_delay)


@dataclass(frozen=True, slots=True)
class GeminiReply:
    text: str
    total_tokens: int
    finish_reason: str | None = None


def _quota_error(model: str, response: httpx.Response) -> GeminiQuotaExceeded:
    """Build a GeminiQuotaExceeded from the google.rpc error details, if any."""
    quota_id = quota_value = retry_delay = None
    try:
        body = response.json()
    except ValueError:
        body = None

    error = body.get("error") if isinstance(body, dict) else None
    details = error.get("details") if isinstance(error, dict) else None
    if not isinstance(details, list):
        details = []

    for detail in details:
        if not isinstance(detail, dict):
            continue
        kind = str(detail.get("@type", ""))
        if kind.endswith("QuotaFailure"):
            violations = detail.get("violations")
            violation = violations[0] if isinstance(violations, list) and violations else None
            if not isinstance(violation, dict):
                continue
            quota_id = violation.get("quotaId")
            raw_value = violation.get("quotaValue")
            if raw_value is not None and str(raw_value).isdigit():
                quota_value = int(raw_value)
        elif kind.endswith("RetryInfo"):
            retry_delay = detail.get("retryDelay")

    return GeminiQuotaExceeded(model, quota_id, quota_value, retry_delay)


def _parse_reply(data: Any) -> GeminiReply:
    """
    Raises:
        ValueError: The body is not a generateContent response.
    """
    if not isinstance(data, dict):
        raise ValueError("response body is not an object")
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise ValueError("no candidates")
    candidate = candidates[0]
    if not isinstance(candidate, dict):
        raise ValueError("candidate is not an object")

    content = candidate.get("content") or {}
    parts = content.get("parts", []) if isinstance(content, dict) else None
    if not isinstance(parts, list) or not all(isinstance(p, dict) for p in parts):
        raise ValueError("malformed content parts")
    text = "".join(str(part.get("text", "")) for part in parts)

    metadata = data.get("usageMetadata") or {}
    if not isinstance(metadata, dict):
        raise ValueError("usageMetadata is not an object")
    total_tokens = int(metadata.get("totalTokenCount", 0))

    finish_reason = candidate.get("finishReason")
    return GeminiReply(
        text=text.strip(),
        total_tokens=total_tokens,
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


class GeminiClient:
    """Thin async wrapper around models/{model}:generateContent."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_output_tokens: int = 1024,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_output_tokens = max_output_tokens
        self._transport = transport

    async def generate(
        self,
        api_key: str,
        model: str,
        prompt: str,
        *,
        system_instruction: str | None = None,
        temperature: float = 0.7,
    ) -> GeminiReply:
        """
        Generate one reply.

        Raises:
            GeminiQuotaExceeded: The key/model hit a provider rate limit.
            GeminiRequestError:  Any other failure.
        """
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": self._max_output_tokens,
            },
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        headers = {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/models/{model}:generateContent",
                    json=payload,
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            logger.error("Gemini transport error for %s (key %s): %s", model, mask_api_key(api_key), exc)
            raise GeminiRequestError("Gemini service unreachable") from exc

        if response.status_code == 429:
            error = _quota_error(model, response)
            logger.warning(
                "Gemini 429 for %s (key %s): quota=%s value=%s retry=%s",
                model, mask_api_key(api_key), error.quota_id, error.quota_value, error.retry_delay,
            )
            raise error

        if response.status_code != 200:
            logger.error(
                "Gemini API error: model=%s status=%d body=%s",
                model,
                response.status_code,
                response.text[:500],
            )
            raise GeminiRequestError("Gemini returned an error")

        # ── Parse the reply ─────────────────────────────────
        try:
            return _parse_reply(response.json())
        except (TypeError, ValueError) as exc:
            logger.error("Failed to parse Gemini response for %s: %s", model, exc)
            raise GeminiRequestError("Could not parse Gemini reply") from exc
