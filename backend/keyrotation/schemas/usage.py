"""
Pydantic v2 schemas for usage inspection, selection and accounting.

Separation:
  • UsageRecordCreate — what the AI agent service sends after a call.
  • *Out schemas      — what the server returns; built from the service
    dataclasses via from_attributes.

Gemini API keys are never part of any response schema.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# ── Request schema ──────────────────────────────────────────
class UsageRecordCreate(BaseModel):
    """Payload accepted by POST /models/{model_id}/usage."""

    model_config = ConfigDict(extra="forbid")

    tokens_used: int = Field(
        ...,
        ge=0,
        examples=[1000],
        description="usageMetadata.totalTokenCount of the completed call.",
    )


# ── Response schemas ────────────────────────────────────────
class WindowOut(BaseModel):
    """One rate window."""

    model_config = ConfigDict(from_attributes=True)

    used: int
    limit: int
    window_start: datetime | None


class UsageSnapshotOut(BaseModel):
    """All four windows of a key-model pair."""

    model_config = ConfigDict(from_attributes=True)

    rpm: WindowOut
    rph: WindowOut
    rpd: WindowOut
    tpm: WindowOut


class KeyModelOut(BaseModel):
    """A model under a key, with its current usage."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    key_id: uuid.UUID
    model: str
    priority: int
    is_enabled: bool
    last_used: datetime | None
    usage: UsageSnapshotOut


class SelectionOut(BaseModel):
    """The (key, model) chosen for the next call."""

    model_config = ConfigDict(protected_namespaces=())

    key_id: uuid.UUID
    key_name: str
    key_type: str
    model_id: uuid.UUID
    model: str
    priority: int


class QuotaSummaryOut(BaseModel):
    """Pooled limits, headroom and use (percent of limit) for one model name."""

    model_config = ConfigDict(from_attributes=True)

    model: str
    key_count: int
    rpm_limit: int
    rpm_remaining: int
    tpm_limit: int
    tpm_remaining: int
    rpd_limit: int
    rpd_remaining: int
    rpm_percentage: float
    tpm_percentage: float
    rpd_percentage: float
