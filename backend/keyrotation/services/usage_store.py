"""
Persistence adapter for keys, key-models, and their usage snapshots.

The selector and rotation services depend on the abstract UsageStore and
receive a concrete store by injection:
  • SqlAlchemyUsageStore — production; async SQLAlchemy session factory.
  • InMemoryUsageStore   — tests and local experiments; no database.

Concurrency contract for update_usage() and mark_exhausted():
  Read-modify-write of one key-model row is serialized. The SQLAlchemy store
  holds a row lock (SELECT … FOR UPDATE) for the whole transaction; the
  in-memory store holds a per-record asyncio.Lock. Two concurrent calls for
  the same row never lose an increment.

The store also keeps the excluded-models ledger: (company, key, model)
entries the selector skips until their retry time.
"""

from __future__ import annotations

import abc
import asyncio
import datetime
import logging
import uuid
from dataclasses import dataclass, replace

from sqlalchemy import Select, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyrotation.models.company import Company
from keyrotation.models.excluded_model import REASON_RPD_EXHAUSTED, ExcludedModel
from keyrotation.models.gemini_key import KEY_TYPE_CENTRAL, KEY_TYPE_COMPANY, GeminiKey
from keyrotation.models.gemini_key_model import GeminiKeyModel
from keyrotation.services import usage_windows
from keyrotation.services.errors import KeyModelNotFound, UsagePersistenceError
from keyrotation.services.usage_codec import encode_usage, load_usage
from keyrotation.services.usage_windows import UsageSnapshot

logger = logging.getLogger(__name__)


# ── Records ─────────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class ApiKeyRecord:
    """A Gemini key as seen by the selector."""

    id: uuid.UUID
    company_id: uuid.UUID | None
    name: str
    api_key: str
    key_type: str = KEY_TYPE_COMPANY
    is_active: bool = False
    priority: int = 1


@dataclass(frozen=True, slots=True)
class KeyModelRecord:
    """One (key, model) pair with its decoded usage."""

    id: uuid.UUID
    key_id: uuid.UUID
    model: str
    usage: UsageSnapshot
    priority: int = 1
    is_enabled: bool = True
    last_used: datetime.datetime | None = None


@dataclass(frozen=True, slots=True)
class ExclusionRecord:
    """A (key, model) a company skips until retry_at."""

    id: uuid.UUID
    company_id: uuid.UUID
    key_id: uuid.UUID
    model: str
    excluded_at: datetime.datetime
    retry_at: datetime.datetime
    reason: str = REASON_RPD_EXHAUSTED
    retry_count: int = 0
    last_retry_at: datetime.datetime | None = None


def _as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=datetime.timezone.utc)


# ── Interface ───────────────────────────────────────────────
class UsageStore(abc.ABC):
    """Loads keys/models and applies usage updates atomically per row."""

    @abc.abstractmethod
    async def uses_central_keys(self, company_id: uuid.UUID) -> bool:
        """Whether the company opted in to the platform's central keys."""

    @abc.abstractmethod
    async def list_company_keys(self, company_id: uuid.UUID) -> list[ApiKeyRecord]:
        """All COMPANY keys of one company, ascending priority."""

    @abc.abstractmethod
    async def list_central_keys(self) -> list[ApiKeyRecord]:
        """Active CENTRAL keys, ascending priority."""

    @abc.abstractmethod
    async def list_key_models(self, key_id: uuid.UUID) -> list[KeyModelRecord]:
        """Enabled models of one key, ascending priority."""

    @abc.abstractmethod
    async def update_usage(
        self,
        model_id: uuid.UUID,
        tokens_used: int,
        now: datetime.datetime,
    ) -> UsageSnapshot:
        """
        Apply one completed call to the row's usage and persist it.

        Raises:
            KeyModelNotFound:      No row with this id.
            UsagePersistenceError: The storage layer failed.
        """

    @abc.abstractmethod
    async def mark_exhausted(
        self,
        model_id: uuid.UUID,
        window: str,
        quota_value: int | None,
        now: datetime.datetime,
    ) -> UsageSnapshot:
        """
        Persist a provider 429: fill `window` up to its limit, replacing the
        limit with `quota_value` when the provider reported one.

        Raises:
            KeyModelNotFound:      No row with this id.
            UsagePersistenceError: The storage layer failed.
        """

    @abc.abstractmethod
    async def touch_model(self, model_id: uuid.UUID, now: datetime.datetime) -> None:
        """Set last_used without touching the usage windows."""

    @abc.abstractmethod
    async def activate_key(self, key_id: uuid.UUID, now: datetime.datetime) -> None:
        """Make this key the only active one of its company."""

    # ── Excluded models ─────────────────────────────────────
    @abc.abstractmethod
    async def list_exclusions(self, company_id: uuid.UUID) -> list[ExclusionRecord]:
        """Every exclusion of one company, due or not."""

    @abc.abstractmethod
    async def add_exclusion(
        self,
        company_id: uuid.UUID,
        key_id: uuid.UUID,
        model: str,
        now: datetime.datetime,
        retry_at: datetime.datetime,
        reason: str = REASON_RPD_EXHAUSTED,
    ) -> ExclusionRecord:
        """Exclude a pair. An existing entry for the same pair is returned as-is."""

    @abc.abstractmethod
    async def reschedule_exclusion(
        self,
        exclusion_id: uuid.UUID,
        retry_at: datetime.datetime,
        retry_count: int,
        now: datetime.datetime,
    ) -> None:
        """Push retry_at out after a failed re-check."""

    @abc.abstractmethod
    async def remove_exclusion(self, exclusion_id: uuid.UUID) -> None:
        """Put the pair back into rotation. Unknown ids are ignored."""


# ── SQLAlchemy implementation ───────────────────────────────
def _key_record(row: GeminiKey) -> ApiKeyRecord:
    return ApiKeyRecord(
        id=row.id,
        company_id=row.company_id,
        name=row.name,
        api_key=row.api_key,
        key_type=row.key_type,
        is_active=row.is_active,
        priority=row.priority,
    )


def _model_record(row: GeminiKeyModel) -> KeyModelRecord:
    return KeyModelRecord(
        id=row.id,
        key_id=row.key_id,
        model=row.model,
        usage=load_usage(row.usage, row.model),
        priority=row.priority,
        is_enabled=row.is_enabled,
        last_used=_as_utc(row.last_used),
    )


def _exclusion_record(row: ExcludedModel) -> ExclusionRecord:
    return ExclusionRecord(
        id=row.id,
        company_id=row.company_id,
        key_id=row.key_id,
        model=row.model,
        excluded_at=_as_utc(row.excluded_at),
        retry_at=_as_utc(row.retry_at),
        reason=row.reason,
        retry_count=row.retry_count,
        last_retry_at=_as_utc(row.last_retry_at),
    )


class SqlAlchemyUsageStore(UsageStore):
    """UsageStore backed by the gemini_keys / gemini_key_models tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def uses_central_keys(self, company_id: uuid.UUID) -> bool:
        stmt = select(Company.use_central_keys).where(Company.id == company_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return bool(result.scalar_one_or_none())
        except SQLAlchemyError as exc:
            raise UsagePersistenceError("Failed to load company settings") from exc

    async def list_company_keys(self, company_id: uuid.UUID) -> list[ApiKeyRecord]:
        stmt = (
            select(GeminiKey)
            .where(
                GeminiKey.company_id == company_id,
                GeminiKey.key_type == KEY_TYPE_COMPANY,
            )
            .order_by(GeminiKey.priority.asc())
        )
        return await self._fetch_keys(stmt)

    async def list_central_keys(self) -> list[ApiKeyRecord]:
        stmt = (
            select(GeminiKey)
            .where(
                GeminiKey.key_type == KEY_TYPE_CENTRAL,
                GeminiKey.company_id.is_(None),
                GeminiKey.is_active.is_(True),
            )
            .order_by(GeminiKey.priority.asc())
        )
        return await self._fetch_keys(stmt)

    async def _fetch_keys(self, stmt: Select[tuple[GeminiKey]]) -> list[ApiKeyRecord]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [_key_record(row) for row in result.scalars()]
        except SQLAlchemyError as exc:
            raise UsagePersistenceError("Failed to load Gemini keys") from exc

    async def list_key_models(self, key_id: uuid.UUID) -> list[KeyModelRecord]:
        stmt = (
            select(GeminiKeyModel)
            .where(
                GeminiKeyModel.key_id == key_id,
                GeminiKeyModel.is_enabled.is_(True),
            )
            .order_by(GeminiKeyModel.priority.asc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [_model_record(row) for row in result.scalars()]
        except SQLAlchemyError as exc:
            raise UsagePersistenceError("Failed to load key models") from exc

    async def update_usage(
        self,
        model_id: uuid.UUID,
        tokens_used: int,
        now: datetime.datetime,
    ) -> UsageSnapshot:
        # Row lock held until the transaction commits.
        stmt = (
            select(GeminiKeyModel)
            .where(GeminiKeyModel.id == model_id)
            .with_for_update()
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = (await session.execute(stmt)).scalar_one_or_none()
                    if row is None:
                        raise KeyModelNotFound(str(model_id))

                    snapshot = usage_windows.update_usage(
                        load_usage(row.usage, row.model), tokens_used, now,
                    )
                    row.usage = encode_usage(snapshot)
                    row.last_used = now
                    row.updated_at = now
                    model_name = row.model
        except SQLAlchemyError as exc:
            raise UsagePersistenceError(f"Failed to update usage for {model_id}") from exc

        logger.debug(
            "Usage updated for %s (%s): RPM=%d/%d RPH=%d/%d RPD=%d/%d TPM=%d/%d",
            model_name, model_id,
            snapshot.rpm.used, snapshot.rpm.limit,
            snapshot.rph.used, snapshot.rph.limit,
            snapshot.rpd.used, snapshot.rpd.limit,
            snapshot.tpm.used, snapshot.tpm.limit,
        )
        return snapshot

    async def mark_exhausted(
        self,
        model_id: uuid.UUID,
        window: str,
        quota_value: int | None,
        now: datetime.datetime,
    ) -> UsageSnapshot:
        stmt = (
            select(GeminiKeyModel)
            .where(GeminiKeyModel.id == model_id)
            .with_for_update()
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = (await session.execute(stmt)).scalar_one_or_none()
                    if row is None:
                        raise KeyModelNotFound(str(model_id))

                    snapshot = usage_windows.exhaust_window(
                        load_usage(row.usage, row.model), window, now, quota_value,
                    )
                    row.usage = encode_usage(snapshot)
                    row.updated_at = now
                    model_name = row.model
        except SQLAlchemyError as exc:
            raise UsagePersistenceError(f"Failed to mark {model_id} exhausted") from exc

        logger.info(
            "Persisted %s exhaustion for %s (%s): %d/%d",
            window, model_name, model_id,
            snapshot.window(window).used, snapshot.window(window).limit,
        )
        return snapshot

    async def touch_model(self, model_id: uuid.UUID, now: datetime.datetime) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(GeminiKeyModel)
                        .where(GeminiKeyModel.id == model_id)
                        .values(last_used=now)
                    )
        except SQLAlchemyError as exc:
            raise UsagePersistenceError(f"Failed to touch model {model_id}") from exc

    async def activate_key(self, key_id: uuid.UUID, now: datetime.datetime) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    key = await session.get(GeminiKey, key_id)
                    if key is None or key.company_id is None:
                        return
                    # Company isolation — never touch other tenants' keys
                    await session.execute(
                        update(GeminiKey)
                        .where(
                            GeminiKey.company_id == key.company_id,
                            GeminiKey.id != key_id,
                        )
                        .values(is_active=False, updated_at=now)
                    )
                    key.is_active = True
                    key.updated_at = now
        except SQLAlchemyError as exc:
            raise UsagePersistenceError(f"Failed to activate key {key_id}") from exc

        logger.info("Activated Gemini key %s", key_id)

    # ── Excluded models ─────────────────────────────────────
    async def list_exclusions(self, company_id: uuid.UUID) -> list[ExclusionRecord]:
        stmt = (
            select(ExcludedModel)
            .where(ExcludedModel.company_id == company_id)
            .order_by(ExcludedModel.retry_at.asc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [_exclusion_record(row) for row in result.scalars()]
        except SQLAlchemyError as exc:
            raise UsagePersistenceError("Failed to load excluded models") from exc

    async def add_exclusion(
        self,
        company_id: uuid.UUID,
        key_id: uuid.UUID,
        model: str,
        now: datetime.datetime,
        retry_at: datetime.datetime,
        reason: str = REASON_RPD_EXHAUSTED,
    ) -> ExclusionRecord:
        stmt = select(ExcludedModel).where(
            ExcludedModel.company_id == company_id,
            ExcludedModel.key_id == key_id,
            ExcludedModel.model == model,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = (await session.execute(stmt)).scalar_one_or_none()
                    if row is None:
                        row = ExcludedModel(
                            company_id=company_id,
                            key_id=key_id,
                            model=model,
                            reason=reason,
                            excluded_at=now,
                            retry_at=retry_at,
                            retry_count=0,
                        )
                        session.add(row)
                        await session.flush()
                    record = _exclusion_record(row)
        except SQLAlchemyError as exc:
            raise UsagePersistenceError(f"Failed to exclude {model} on key {key_id}") from exc
        return record

    async def reschedule_exclusion(
        self,
        exclusion_id: uuid.UUID,
        retry_at: datetime.datetime,
        retry_count: int,
        now: datetime.datetime,
    ) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(ExcludedModel)
                        .where(ExcludedModel.id == exclusion_id)
                        .values(retry_at=retry_at, retry_count=retry_count, last_retry_at=now)
                    )
        except SQLAlchemyError as exc:
            raise UsagePersistenceError(f"Failed to reschedule exclusion {exclusion_id}") from exc

    async def remove_exclusion(self, exclusion_id: uuid.UUID) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(ExcludedModel).where(ExcludedModel.id == exclusion_id)
                    )
        except SQLAlchemyError as exc:
            raise UsagePersistenceError(f"Failed to remove exclusion {exclusion_id}") from exc


# ── In-memory implementation ────────────────────────────────
class InMemoryUsageStore(UsageStore):
    """Dict-backed UsageStore. Usage is kept encoded, as on a real row."""

    def __init__(self) -> None:
        self._central_opt_in: dict[uuid.UUID, bool] = {}
        self._keys: dict[uuid.UUID, ApiKeyRecord] = {}
        self._models: dict[uuid.UUID, KeyModelRecord] = {}
        self._usage: dict[uuid.UUID, str] = {}
        # One lock per seeded model; unknown ids never get one
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._exclusions: dict[uuid.UUID, ExclusionRecord] = {}

    # ── Seeding ─────────────────────────────────────────────
    def add_company(self, company_id: uuid.UUID, *, use_central_keys: bool = False) -> None:
        self._central_opt_in[company_id] = use_central_keys

    def add_key(self, key: ApiKeyRecord) -> None:
        self._keys[key.id] = key

    def add_model(self, model: KeyModelRecord) -> None:
        self._models[model.id] = model
        self._usage[model.id] = encode_usage(model.usage)
        self._locks.setdefault(model.id, asyncio.Lock())

    def set_raw_usage(self, model_id: uuid.UUID, raw: str) -> None:
        self._usage[model_id] = raw

    def get_key(self, key_id: uuid.UUID) -> ApiKeyRecord:
        return self._keys[key_id]

    def get_model(self, model_id: uuid.UUID) -> KeyModelRecord:
        return self._models[model_id]

    def _lock(self, model_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(model_id)
        if lock is None:
            raise KeyModelNotFound(str(model_id))
        return lock

    # ── UsageStore ──────────────────────────────────────────
    async def uses_central_keys(self, company_id: uuid.UUID) -> bool:
        return self._central_opt_in.get(company_id, False)

    async def list_company_keys(self, company_id: uuid.UUID) -> list[ApiKeyRecord]:
        keys = [
            k for k in self._keys.values()
            if k.company_id == company_id and k.key_type == KEY_TYPE_COMPANY
        ]
        return sorted(keys, key=lambda k: k.priority)

    async def list_central_keys(self) -> list[ApiKeyRecord]:
        keys = [
            k for k in self._keys.values()
            if k.key_type == KEY_TYPE_CENTRAL and k.company_id is None and k.is_active
        ]
        return sorted(keys, key=lambda k: k.priority)

    async def list_key_models(self, key_id: uuid.UUID) -> list[KeyModelRecord]:
        models = [
            replace(m, usage=load_usage(self._usage[m.id], m.model))
            for m in self._models.values()
            if m.key_id == key_id and m.is_enabled
        ]
        return sorted(models, key=lambda m: m.priority)

    async def update_usage(
        self,
        model_id: uuid.UUID,
        tokens_used: int,
        now: datetime.datetime,
    ) -> UsageSnapshot:
        async with self._lock(model_id):
            model = self._models[model_id]
            snapshot = usage_windows.update_usage(
                load_usage(self._usage[model_id], model.model), tokens_used, now,
            )
            self._usage[model_id] = encode_usage(snapshot)
            self._models[model_id] = replace(model, usage=snapshot, last_used=now)
        return snapshot

    async def mark_exhausted(
        self,
        model_id: uuid.UUID,
        window: str,
        quota_value: int | None,
        now: datetime.datetime,
    ) -> UsageSnapshot:
        async with self._lock(model_id):
            model = self._models[model_id]
            snapshot = usage_windows.exhaust_window(
                load_usage(self._usage[model_id], model.model), window, now, quota_value,
            )
            self._usage[model_id] = encode_usage(snapshot)
            self._models[model_id] = replace(model, usage=snapshot)
        return snapshot

    async def touch_model(self, model_id: uuid.UUID, now: datetime.datetime) -> None:
        model = self._models.get(model_id)
        if model is not None:
            self._models[model_id] = replace(model, last_used=now)

    async def activate_key(self, key_id: uuid.UUID, now: datetime.datetime) -> None:
        key = self._keys.get(key_id)
        if key is None or key.company_id is None:
            return
        for other in list(self._keys.values()):
            if other.company_id == key.company_id:
                self._keys[other.id] = replace(other, is_active=other.id == key_id)

    # ── Excluded models ─────────────────────────────────────
    async def list_exclusions(self, company_id: uuid.UUID) -> list[ExclusionRecord]:
        entries = [e for e in self._exclusions.values() if e.company_id == company_id]
        return sorted(entries, key=lambda e: e.retry_at)

    async def add_exclusion(
        self,
        company_id: uuid.UUID,
        key_id: uuid.UUID,
        model: str,
        now: datetime.datetime,
        retry_at: datetime.datetime,
        reason: str = REASON_RPD_EXHAUSTED,
    ) -> ExclusionRecord:
        for entry in self._exclusions.values():
            if (entry.company_id, entry.key_id, entry.model) == (company_id, key_id, model):
                return entry
        entry = ExclusionRecord(
            id=uuid.uuid4(),
            company_id=company_id,
            key_id=key_id,
            model=model,
            excluded_at=now,
            retry_at=retry_at,
            reason=reason,
        )
        self._exclusions[entry.id] = entry
        return entry

    async def reschedule_exclusion(
        self,
        exclusion_id: uuid.UUID,
        retry_at: datetime.datetime,
        retry_count: int,
        now: datetime.datetime,
    ) -> None:
        entry = self._exclusions.get(exclusion_id)
        if entry is not None:
            self._exclusions[exclusion_id] = replace(
                entry, retry_at=retry_at, retry_count=retry_count, last_retry_at=now,
            )

    async def remove_exclusion(self, exclusion_id: uuid.UUID) -> None:
        self._exclusions.pop(exclusion_id, None)
