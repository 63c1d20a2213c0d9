"""
Companies router — model selection and rotated generation per tenant.

POST /companies/{company_id}/selection   pick the next (key, model)
GET  /companies/{company_id}/quota       aggregated headroom for one model
POST /companies/{company_id}/generate    select → call Gemini → record usage

Status mapping:
  503 — no model available (every key/model rate-limited) or storage down
  502 — Gemini failed for a non-quota reason
"""

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from keyrotation.auth.dependencies import require_service_token
from keyrotation.core.config import settings
from keyrotation.core.dependencies import get_gemini_client, get_selector
from keyrotation.schemas.generate import GenerateRequest, GenerateResponse
from keyrotation.schemas.usage import QuotaSummaryOut, SelectionOut
from keyrotation.services.errors import NoAvailableModel, UsagePersistenceError
from keyrotation.services.gemini_client import GeminiClient, GeminiRequestError
from keyrotation.services.model_selector import ModelSelector
from keyrotation.services.rotation import generate_with_rotation

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Companies"], dependencies=[Depends(require_service_token)])

Selector = Annotated[ModelSelector, Depends(get_selector)]
Gemini = Annotated[GeminiClient, Depends(get_gemini_client)]

_NO_MODEL = HTTPException(
    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    detail="All Gemini models are rate-limited. Retry later.",
    headers={"Retry-After": "60"},
)
_STORAGE_DOWN = HTTPException(
    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    detail="Usage storage is temporarily unavailable.",
)


# ── 1. Selection ────────────────────────────────────────────
@router.post(
    "/{company_id}/selection",
    response_model=SelectionOut,
    summary="Select the best available key and model",
    description=(
        "Does not count usage: record usage separately after the Gemini "
        "call succeeds. Uses the configured strategy (active_key or balanced)."
    ),
)
async def select_model(company_id: uuid.UUID, selector: Selector) -> SelectionOut:
    try:
        selection = await selector.select(company_id)
    except NoAvailableModel:
        raise _NO_MODEL
    except UsagePersistenceError:
        logger.exception("Selection failed for company %s", company_id)
        raise _STORAGE_DOWN

    return SelectionOut(
        key_id=selection.key.id,
        key_name=selection.key.name,
        key_type=selection.key.key_type,
        model_id=selection.model.id,
        model=selection.model.model,
        priority=selection.model.priority,
    )


# ── 2. Quota summary ────────────────────────────────────────
@router.get(
    "/{company_id}/quota",
    response_model=QuotaSummaryOut,
    summary="Aggregated headroom for one model across keys",
)
async def get_quota(
    company_id: uuid.UUID,
    selector: Selector,
    model: str = Query(
        ...,
        min_length=1,
        description="Gemini model name",
        examples=["gemini-2.5-flash"],
    ),
) -> QuotaSummaryOut:
    try:
        summary = await selector.quota_summary(company_id, model)
    except UsagePersistenceError:
        logger.exception("Quota summary failed for company %s", company_id)
        raise _STORAGE_DOWN

    return QuotaSummaryOut.model_validate(summary, from_attributes=True)


# ── 3. Rotated generation ───────────────────────────────────
@router.post(
    "/{company_id}/generate",
    response_model=GenerateResponse,
    summary="Generate a reply with automatic key/model rotation",
)
async def generate_reply(
    company_id: uuid.UUID,
    payload: GenerateRequest,
    selector: Selector,
    client: Gemini,
) -> GenerateResponse:
    try:
        result = await generate_with_rotation(
            selector,
            client,
            company_id,
            payload.prompt,
            system_instruction=payload.system_instruction,
            max_attempts=settings.MAX_ROTATION_ATTEMPTS,
        )
    except NoAvailableModel:
        raise _NO_MODEL
    except UsagePersistenceError:
        logger.exception("Generation aborted for company %s", company_id)
        raise _STORAGE_DOWN
    except GeminiRequestError:
        logger.exception("Gemini generation failed for company %s", company_id)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="AI service is temporarily unavailable.",
        )

    return GenerateResponse(
        text=result.text,
        model=result.model,
        model_id=result.model_id,
        key_name=result.key_name,
        total_tokens=result.total_tokens,
        attempts=result.attempts,
        usage_recorded=result.usage is not None,
    )
