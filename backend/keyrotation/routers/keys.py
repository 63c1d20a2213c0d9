"""
Keys router — inspect the models configured under a Gemini key.

GET /keys/{key_id}/models
  Enabled models in priority order with their decoded usage windows.
  The key itself (raw credential) is never returned.
"""

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from keyrotation.auth.dependencies import require_service_token
from keyrotation.core.dependencies import get_selector
from keyrotation.schemas.usage import KeyModelOut
from keyrotation.services.errors import UsagePersistenceError
from keyrotation.services.model_selector import ModelSelector

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Keys"], dependencies=[Depends(require_service_token)])

Selector = Annotated[ModelSelector, Depends(get_selector)]


@router.get(
    "/{key_id}/models",
    response_model=list[KeyModelOut],
    summary="Enabled models of a key with current usage",
)
async def list_key_models(key_id: uuid.UUID, selector: Selector) -> list[KeyModelOut]:
    try:
        models = await selector.store.list_key_models(key_id)
    except UsagePersistenceError:
        logger.exception("Failed to load models for key %s", key_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Usage storage is temporarily unavailable.",
        )

    return [KeyModelOut.model_validate(m, from_attributes=True) for m in models]
