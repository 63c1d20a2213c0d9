"""
Generate a reply with automatic key/model rotation.

Loop (bounded by max_attempts):
  1. Select a (key, model) for the company.
  2. Call Gemini.
  3. On 429 → record the exhaustion (cache + persisted window) and go
     back to 1.
  4. On success → record usage (best-effort) and return.

Non-quota provider errors are not retried here; they propagate as
GeminiRequestError.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from keyrotation.services.errors import KeyModelNotFound, NoAvailableModel
from keyrotation.services.gemini_client import GeminiClient, GeminiQuotaExceeded
from keyrotation.services.model_selector import ModelSelector
from keyrotation.services.usage_windows import UsageSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RotationResult:
    text: str
    model: str
    model_id: uuid.UUID
    key_id: uuid.UUID
    key_name: str
    total_tokens: int
    attempts: int
    usage: UsageSnapshot | None


async def generate_with_rotation(
    selector: ModelSelector,
    client: GeminiClient,
    company_id: uuid.UUID,
    prompt: str,
    *,
    system_instruction: str | None = None,
    max_attempts: int = 3,
) -> RotationResult:
    """
    Raises:
        NoAvailableModel:   No model left, or every attempt hit a 429.
        GeminiRequestError: The provider failed for a non-quota reason.
    """
    for attempt in range(1, max_attempts + 1):
        selection = await selector.select(company_id)
        key, model = selection.key, selection.model

        try:
            reply = await client.generate(
                key.api_key,
                model.model,
                prompt,
                system_instruction=system_instruction,
            )
        except GeminiQuotaExceeded as exc:
            await selector.record_exhaustion(
                model,
                window=exc.window,
                quota_value=exc.quota_value,
                retry_after=exc.retry_after,
            )
            logger.info(
                "Attempt %d/%d: %s on key %s exhausted (%s), rotating",
                attempt, max_attempts, model.model, key.name, exc.window,
            )
            continue

        try:
            usage = await selector.record_usage(model.id, reply.total_tokens)
        except KeyModelNotFound:
            # Row deleted between selection and reply; the reply still stands
            logger.warning("Model %s vanished before usage was recorded", model.id)
            usage = None

        return RotationResult(
            text=reply.text,
            model=model.model,
            model_id=model.id,
            key_id=key.id,
            key_name=key.name,
            total_tokens=reply.total_tokens,
            attempts=attempt,
            usage=usage,
        )

    logger.warning("Company %s exhausted %d rotation attempts", company_id, max_attempts)
    raise NoAvailableModel(company_id)
