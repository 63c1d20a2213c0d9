"""Pydantic v2 schemas for rotated reply generation."""

from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field


class GenerateRequest(BaseModel):
    """Payload accepted by POST /companies/{company_id}/generate."""

    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(
        ...,
        min_length=1,
        examples=["Customer asks: is the blue jacket available in size M?"],
        description="Fully assembled prompt (RAG context already included).",
    )
    system_instruction: str | None = Field(
        default=None,
        description="Optional system prompt (agent persona, response rules).",
    )


class GenerateResponse(BaseModel):
    """The reply plus which key/model produced it."""

    model_config = ConfigDict(protected_namespaces=())

    text: str
    model: str
    model_id: uuid.UUID
    key_name: str
    total_tokens: int
    attempts: int
    usage_recorded: bool
