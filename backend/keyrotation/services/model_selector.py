"""
Model selection across a company's Gemini keys.

Two layers:
  • find_best_available_model() — pure; first candidate (ascending priority)
    with headroom in all four windows.
  • ModelSelector — walks keys through an injected UsageStore.

Strategies (ModelSelector.select dispatches on `strategy`):

  active_key — select_for_company():
    1. Central keys, if the company opted in (use_central_keys).
    2. The company's active key, then its other keys by priority. A key other
       than the active one that yields a model becomes the active key.
    3. Central keys as a last resort, if the company did not opt in.
    4. Nothing left → NoAvailableModel.

  balanced — select_balanced():
    The pool is the company's ACTIVE keys plus central keys if it opted in
    (central keys also back any model the company itself lacks). Model names
    are tried by priority; a name whose pooled rpm or tpm use is at or above
    `skip_percent` is skipped, one whose pooled rpd use reached 100 % is
    written to the excluded-models ledger. Among the remaining pairs the
    least recently used one wins, so calls round-robin across keys.

Excluded pairs are re-checked lazily once their retry_at passes: 6 h after
exclusion, then 3 h later, then at each following UTC midnight.

Selection never counts usage (balanced only stamps last_used). The caller
records usage with record_usage() after the provider call succeeds, or
record_exhaustion() after a 429.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace

from keyrotation.services.errors import KeyModelNotFound, NoAvailableModel, UsagePersistenceError
from keyrotation.services.usage_store import ApiKeyRecord, ExclusionRecord, KeyModelRecord, UsageStore
from keyrotation.services.usage_windows import (
    WINDOW_DURATIONS,
    UsageSnapshot,
    has_headroom,
    remaining,
    snapshot_has_headroom,
    used_now,
)

logger = logging.getLogger(__name__)

STRATEGY_ACTIVE_KEY = "active_key"
STRATEGY_BALANCED = "balanced"
STRATEGIES = (STRATEGY_ACTIVE_KEY, STRATEGY_BALANCED)

Pair = tuple[ApiKeyRecord, KeyModelRecord]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def find_best_available_model(
    candidates: Sequence[KeyModelRecord],
    now: datetime.datetime,
) -> KeyModelRecord | None:
    """
    Return the first enabled candidate, by ascending priority, with headroom
    in rpm, rph, rpd and tpm. Ties keep their input order.
    """
    for candidate in sorted(candidates, key=lambda c: c.priority):
        if not candidate.is_enabled:
            continue
        if snapshot_has_headroom(candidate.usage, now):
            return candidate
        logger.debug(
            "Model %s on key %s is rate-limited", candidate.model, candidate.key_id,
        )
    return None


def next_midnight(now: datetime.datetime) -> datetime.datetime:
    """Start of the next UTC day."""
    tomorrow = now.astimezone(datetime.timezone.utc) + datetime.timedelta(days=1)
    return tomorrow.replace(hour=0, minute=0, second=0, microsecond=0)


def next_retry(
    retry_count: int,
    now: datetime.datetime,
    retry_delay: datetime.timedelta,
) -> tuple[datetime.datetime, int]:
    """
    (retry_at, retry_count) after a re-check that found the pair still
    exhausted. First failure waits `retry_delay`; later ones wait for the
    next UTC midnight, when daily quotas reset.
    """
    if retry_count <= 0:
        return now + retry_delay, 1
    return next_midnight(now), 2


def _percentage(used: int, limit: int) -> float:
    if limit <= 0:
        return 0.0
    return used * 100 / limit


class ExhaustedModelCache:
    """
    (key, model) pairs that recently got a 429 from the provider.

    Entries expire after `ttl`, or after the per-entry ttl given to add();
    a model in the cache is skipped even if its local counters still show
    headroom.
    """

    def __init__(self, ttl: datetime.timedelta) -> None:
        self._ttl = ttl
        self._entries: dict[tuple[uuid.UUID, str], datetime.datetime] = {}

    def add(
        self,
        key_id: uuid.UUID,
        model: str,
        now: datetime.datetime,
        ttl: datetime.timedelta | None = None,
    ) -> None:
        self._entries[(key_id, model)] = now + (ttl if ttl else self._ttl)

    def contains(self, key_id: uuid.UUID, model: str, now: datetime.datetime) -> bool:
        expires_at = self._entries.get((key_id, model))
        if expires_at is None:
            return False
        if now >= expires_at:
            del self._entries[(key_id, model)]
            return False
        return True


@dataclass(frozen=True, slots=True)
class Selection:
    """The key and model chosen for one provider call."""

    key: ApiKeyRecord
    model: KeyModelRecord


@dataclass(frozen=True, slots=True)
class QuotaSummary:
    """Pooled limits, headroom and use for one model name."""

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


def summarize(model_name: str, models: Sequence[KeyModelRecord], now: datetime.datetime) -> QuotaSummary:
    """Add up the rpm, tpm and rpd windows of one model across keys."""
    totals = {name: [0, 0, 0] for name in ("rpm", "tpm", "rpd")}  # limit, used, remaining
    for model in models:
        for name, total in totals.items():
            window = model.usage.window(name)
            duration = WINDOW_DURATIONS[name]
            total[0] += window.limit
            total[1] += used_now(window, now, duration)
            total[2] += remaining(window, now, duration)

    return QuotaSummary(
        model=model_name,
        key_count=len(models),
        rpm_limit=totals["rpm"][0],
        rpm_remaining=totals["rpm"][2],
        tpm_limit=totals["tpm"][0],
        tpm_remaining=totals["tpm"][2],
        rpd_limit=totals["rpd"][0],
        rpd_remaining=totals["rpd"][2],
        rpm_percentage=_percentage(totals["rpm"][1], totals["rpm"][0]),
        tpm_percentage=_percentage(totals["tpm"][1], totals["tpm"][0]),
        rpd_percentage=_percentage(totals["rpd"][1], totals["rpd"][0]),
    )


class ModelSelector:
    """Picks (key, model) pairs and records usage through a UsageStore."""

    def __init__(
        self,
        store: UsageStore,
        *,
        exhausted: ExhaustedModelCache,
        disabled_models: Iterable[str] = (),
        clock: Callable[[], datetime.datetime] = utcnow,
        strategy: str = STRATEGY_ACTIVE_KEY,
        skip_percent: float = 80.0,
        exclusion_delay: datetime.timedelta = datetime.timedelta(hours=6),
        exclusion_retry_delay: datetime.timedelta = datetime.timedelta(hours=3),
    ) -> None:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown selection strategy {strategy!r}")
        self._store = store
        self._exhausted = exhausted
        self._disabled = frozenset(disabled_models)
        self._clock = clock
        self._strategy = strategy
        self._skip_percent = skip_percent
        self._exclusion_delay = exclusion_delay
        self._exclusion_retry_delay = exclusion_retry_delay

    @property
    def store(self) -> UsageStore:
        return self._store

    @property
    def strategy(self) -> str:
        return self._strategy

    # ── Selection ───────────────────────────────────────────
    def _usable(self, model: KeyModelRecord, now: datetime.datetime) -> bool:
        if model.model in self._disabled:
            return False
        return not self._exhausted.contains(model.key_id, model.model, now)

    async def select(self, company_id: uuid.UUID) -> Selection:
        """
        Choose a (key, model) with the configured strategy.

        Raises:
            NoAvailableModel: Nothing usable is left.
        """
        if self._strategy == STRATEGY_BALANCED:
            return await self.select_balanced(company_id)
        return await self.select_for_company(company_id)

    async def select_for_key(self, key_id: uuid.UUID) -> KeyModelRecord | None:
        """Best available model on one key, or None."""
        now = self._clock()
        models = await self._store.list_key_models(key_id)
        best = find_best_available_model(
            [m for m in models if self._usable(m, now)], now,
        )
        if best is None:
            logger.info("No available model on key %s (%d checked)", key_id, len(models))
        return best

    async def _first_available(self, keys: Sequence[ApiKeyRecord]) -> Selection | None:
        for key in keys:
            model = await self.select_for_key(key.id)
            if model is not None:
                return Selection(key=key, model=model)
        return None

    async def select_for_company(self, company_id: uuid.UUID) -> Selection:
        """
        Choose a (key, model) for one company, sticking to its active key.

        Raises:
            NoAvailableModel: Every usable model on every key is exhausted.
        """
        use_central = await self._store.uses_central_keys(company_id)

        if use_central:
            selection = await self._first_available(await self._store.list_central_keys())
            if selection is not None:
                return selection

        company_keys = await self._store.list_company_keys(company_id)
        # Active key first, then the rest by priority
        ordered = sorted(company_keys, key=lambda k: (not k.is_active, k.priority))
        for key in ordered:
            model = await self.select_for_key(key.id)
            if model is None:
                continue
            if not key.is_active:
                key = await self._switch_active_key(key)
            return Selection(key=key, model=model)

        if not use_central:
            selection = await self._first_available(await self._store.list_central_keys())
            if selection is not None:
                logger.info(
                    "Company %s fell back to central key %s", company_id, selection.key.name,
                )
                return selection

        logger.warning("No Gemini model available for company %s", company_id)
        raise NoAvailableModel(company_id)

    async def _switch_active_key(self, key: ApiKeyRecord) -> ApiKeyRecord:
        try:
            await self._store.activate_key(key.id, self._clock())
        except UsagePersistenceError:
            logger.exception("Could not activate key %s; using it anyway", key.id)
            return key
        logger.info("Switched company %s to key %s", key.company_id, key.name)
        return replace(key, is_active=True)

    # ── Pooled selection ────────────────────────────────────
    async def _pairs(self, keys: Iterable[ApiKeyRecord]) -> dict[str, list[Pair]]:
        grouped: dict[str, list[Pair]] = {}
        for key in keys:
            for model in await self._store.list_key_models(key.id):
                if model.model in self._disabled:
                    continue
                grouped.setdefault(model.model, []).append((key, model))
        return grouped

    async def _pool(self, company_id: uuid.UUID) -> dict[str, list[Pair]]:
        """
        Enabled pairs per model name: active company keys, plus central keys
        when opted in. Without opt-in, central keys only back model names
        the company has no pair for.
        """
        use_central = await self._store.uses_central_keys(company_id)
        keys = [k for k in await self._store.list_company_keys(company_id) if k.is_active]
        central = await self._store.list_central_keys()
        if use_central:
            keys.extend(central)

        pool = await self._pairs(keys)
        if not use_central:
            for name, pairs in (await self._pairs(central)).items():
                pool.setdefault(name, pairs)
        return pool

    async def _live_exclusions(
        self,
        company_id: uuid.UUID,
        pool: dict[str, list[Pair]],
        now: datetime.datetime,
    ) -> set[tuple[uuid.UUID, str]]:
        """Excluded (key_id, model) pairs, after re-checking the ones that are due."""
        models = {(m.key_id, m.model): m for pairs in pool.values() for _, m in pairs}
        live: set[tuple[uuid.UUID, str]] = set()
        for entry in await self._store.list_exclusions(company_id):
            if entry.retry_at > now:
                live.add((entry.key_id, entry.model))
                continue
            if await self._recheck(entry, models.get((entry.key_id, entry.model)), now):
                live.add((entry.key_id, entry.model))
        return live

    async def _recheck(
        self,
        entry: ExclusionRecord,
        model: KeyModelRecord | None,
        now: datetime.datetime,
    ) -> bool:
        """True if the pair stays excluded."""
        if model is None or has_headroom(model.usage.rpd, now, WINDOW_DURATIONS["rpd"]):
            await self._store.remove_exclusion(entry.id)
            logger.info("Model %s on key %s is back in rotation", entry.model, entry.key_id)
            return False

        retry_at, retry_count = next_retry(entry.retry_count, now, self._exclusion_retry_delay)
        await self._store.reschedule_exclusion(entry.id, retry_at, retry_count, now)
        logger.info(
            "Model %s on key %s still exhausted; next check %s",
            entry.model, entry.key_id, retry_at.isoformat(),
        )
        return True

    async def select_balanced(self, company_id: uuid.UUID) -> Selection:
        """
        Choose a (key, model) from the company's pooled keys, spreading
        calls across keys.

        Raises:
            NoAvailableModel: Every model is near its limit, excluded, or
                              exhausted on every key.
        """
        now = self._clock()
        pool = await self._pool(company_id)
        excluded = await self._live_exclusions(company_id, pool, now)

        ordered = sorted(pool.items(), key=lambda item: min(m.priority for _, m in item[1]))
        for name, pairs in ordered:
            pairs = [(k, m) for k, m in pairs if self._usable(m, now)]
            if not pairs:
                continue

            quota = summarize(name, [m for _, m in pairs], now)
            if quota.rpm_percentage >= self._skip_percent or quota.tpm_percentage >= self._skip_percent:
                logger.info(
                    "Skipping %s for company %s (RPM %.1f%%, TPM %.1f%%)",
                    name, company_id, quota.rpm_percentage, quota.tpm_percentage,
                )
                continue
            if quota.rpd_percentage >= 100:
                await self._exclude(company_id, pairs, excluded, now)
                continue

            candidates = [
                (k, m) for k, m in pairs
                if (k.id, name) not in excluded and snapshot_has_headroom(m.usage, now)
            ]
            if not candidates:
                continue

            # Least recently used first; never-used pairs before any used one
            key, model = min(
                candidates,
                key=lambda p: (p[1].last_used is not None, p[1].last_used or now, p[0].priority),
            )
            await self._touch(model, now)
            return Selection(key=key, model=model)

        logger.warning("No Gemini model available for company %s", company_id)
        raise NoAvailableModel(company_id)

    async def _exclude(
        self,
        company_id: uuid.UUID,
        pairs: Sequence[Pair],
        excluded: set[tuple[uuid.UUID, str]],
        now: datetime.datetime,
    ) -> None:
        retry_at = now + self._exclusion_delay
        for key, model in pairs:
            if (key.id, model.model) in excluded:
                continue
            await self._store.add_exclusion(company_id, key.id, model.model, now, retry_at)
            excluded.add((key.id, model.model))
            logger.warning(
                "Excluded %s on key %s for company %s until %s (daily quota used up)",
                model.model, key.name, company_id, retry_at.isoformat(),
            )

    async def _touch(self, model: KeyModelRecord, now: datetime.datetime) -> None:
        try:
            await self._store.touch_model(model.id, now)
        except UsagePersistenceError:
            logger.warning("Could not update last_used for model %s", model.id)

    # ── Accounting ──────────────────────────────────────────
    async def record_usage(
        self,
        model_id: uuid.UUID,
        tokens_used: int,
    ) -> UsageSnapshot | None:
        """
        Record one completed call. Best-effort: a storage failure is logged
        and returns None so the user-facing reply is not lost.

        Raises:
            KeyModelNotFound: The model id does not exist.
        """
        try:
            return await self._store.update_usage(model_id, tokens_used, self._clock())
        except UsagePersistenceError:
            logger.exception("Usage accounting skipped for model %s", model_id)
            return None

    def mark_exhausted(
        self,
        key_id: uuid.UUID,
        model: str,
        ttl: datetime.timedelta | None = None,
    ) -> None:
        """Skip this (key, model) until the exhausted TTL passes."""
        self._exhausted.add(key_id, model, self._clock(), ttl)
        logger.warning("Model %s on key %s marked exhausted", model, key_id)

    async def record_exhaustion(
        self,
        model: KeyModelRecord,
        *,
        window: str = "rpm",
        quota_value: int | None = None,
        retry_after: datetime.timedelta | None = None,
    ) -> UsageSnapshot | None:
        """
        Handle a provider 429 for one pair: skip it for `retry_after` (or the
        cache TTL) and persist the refused window as full so every worker
        sees it. Persisting is best-effort and returns None on failure.
        """
        self.mark_exhausted(model.key_id, model.model, retry_after)
        try:
            return await self._store.mark_exhausted(model.id, window, quota_value, self._clock())
        except (KeyModelNotFound, UsagePersistenceError):
            logger.exception("Could not persist %s exhaustion for model %s", window, model.id)
            return None

    # ── Reporting ───────────────────────────────────────────
    async def quota_summary(self, company_id: uuid.UUID, model_name: str) -> QuotaSummary:
        """Pooled limits and use for one model across the company's active keys."""
        now = self._clock()
        pool = await self._pool(company_id)
        models = [m for _, m in pool.get(model_name, []) if self._usable(m, now)]
        return summarize(model_name, models, now)
