"""Shared fixtures and factories.

DATABASE_URL must be set before any keyrotation module is imported:
the settings singleton validates it at import time.
"""

import datetime
import os
import uuid

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest  # noqa: E402

from keyrotation.services.model_defaults import default_snapshot  # noqa: E402
from keyrotation.services.model_selector import ExhaustedModelCache, ModelSelector  # noqa: E402
from keyrotation.services.usage_store import (  # noqa: E402
    ApiKeyRecord,
    InMemoryUsageStore,
    KeyModelRecord,
)
from keyrotation.services.usage_windows import UsageSnapshot, Window  # noqa: E402

NOW = datetime.datetime(2026, 10, 19, 12, 0, 0, tzinfo=datetime.timezone.utc)


class FakeClock:
    """Settable clock for selectors."""

    def __init__(self, now: datetime.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += datetime.timedelta(**kwargs)


def make_key(
    company_id: uuid.UUID | None,
    name: str = "key",
    *,
    priority: int = 1,
    is_active: bool = False,
    key_type: str = "COMPANY",
) -> ApiKeyRecord:
    return ApiKeyRecord(
        id=uuid.uuid4(),
        company_id=company_id,
        name=name,
        api_key=f"AIza-{name}-secret",
        key_type=key_type,
        is_active=is_active,
        priority=priority,
    )


def make_model(
    key_id: uuid.UUID,
    model: str = "gemini-2.5-flash",
    *,
    priority: int = 1,
    usage: UsageSnapshot | None = None,
    is_enabled: bool = True,
) -> KeyModelRecord:
    return KeyModelRecord(
        id=uuid.uuid4(),
        key_id=key_id,
        model=model,
        usage=usage if usage is not None else default_snapshot(model),
        priority=priority,
        is_enabled=is_enabled,
    )


def exhausted_rpm(model: str = "gemini-2.5-flash", now: datetime.datetime = NOW) -> UsageSnapshot:
    """Snapshot whose rpm window is full and still active."""
    fresh = default_snapshot(model)
    return UsageSnapshot(
        rpm=Window(used=fresh.rpm.limit, limit=fresh.rpm.limit, window_start=now - datetime.timedelta(seconds=10)),
        rph=fresh.rph,
        rpd=fresh.rpd,
        tpm=fresh.tpm,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryUsageStore:
    return InMemoryUsageStore()


@pytest.fixture
def selector(store: InMemoryUsageStore, clock: FakeClock) -> ModelSelector:
    return ModelSelector(
        store,
        exhausted=ExhaustedModelCache(datetime.timedelta(minutes=10)),
        disabled_models=["gemini-1.5-pro"],
        clock=clock,
    )
