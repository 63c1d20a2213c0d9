"""Errors raised by the usage tracking and model selection services."""

from __future__ import annotations

import uuid


class NoAvailableModel(Exception):
    """Every enabled model on every usable key is rate-limited or exhausted.

    Recoverable: the caller should defer, queue, or retry with backoff.
    """

    def __init__(self, company_id: uuid.UUID | None = None) -> None:
        self.company_id = company_id
        super().__init__(f"No Gemini model currently available for company {company_id}")


class MalformedUsageRecord(ValueError):
    """A persisted usage blob could not be decoded into a UsageSnapshot."""


class KeyModelNotFound(LookupError):
    """No key-model row exists for the given id."""


class UsagePersistenceError(Exception):
    """The usage store could not read or write a usage row."""
