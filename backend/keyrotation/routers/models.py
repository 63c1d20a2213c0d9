"""
Models router — usage accounting for one key-model pair.

POST /models/{model_id}/usage
  Called by the AI agent service after a successful Gemini call.
  Applies one request (rpm/rph/rpd) and `tokens_used` (tpm) to the row
  under a row lock and returns the updated windows.
"""

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from keyrotation.auth.dependencies import require_service_token
from keyrotation.core.dependencies import get_selector
from keyrotation.schemas.usage import UsageRecordCreate, UsageSnapshotOut
from keyrotation.services.errors import KeyModelNotFound
from keyrotation.services.model_selector import ModelSelector

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Models"], dependencies=[Depends(require_service_token)])

Selector = Annotated[ModelSelector, Depends(get_selector)]


@router.post(
    "/{model_id}/usage",
    response_model=UsageSnapshotOut,
    summary="Record usage of a completed model call",
)
async def record_model_usage(
    model_id: uuid.UUID,
    payload: UsageRecordCreate,
    selector: Selector,
) -> UsageSnapshotOut:
    try:
        snapshot = await selector.record_usage(model_id, payload.tokens_used)
    except KeyModelNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Model {model_id} not found.",
        )

    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Usage could not be stored. The call itself is unaffected.",
        )

    return UsageSnapshotOut.model_validate(snapshot, from_attributes=True)
