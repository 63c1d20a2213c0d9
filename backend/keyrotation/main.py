"""
FastAPI application entrypoint.

Lifespan:
  • On startup: verify DB connectivity, build the model selector (SQL-backed
    usage store + exhausted-model cache) and the Gemini client.
  • On shutdown: dispose the engine cleanly.

Routers (all require the internal service token):
  • /keys      — usage inspection per key
  • /models    — usage accounting per key-model
  • /companies — selection, quota summary, rotated generation
  • /health    — shallow liveness probe (no auth)
"""

import datetime
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI

from keyrotation.core.config import settings
from keyrotation.core.database import async_session_factory, engine, ping_database
from keyrotation.routers.companies import router as companies_router
from keyrotation.routers.keys import router as keys_router
from keyrotation.routers.models import router as models_router
from keyrotation.services.gemini_client import GeminiClient
from keyrotation.services.model_selector import ExhaustedModelCache, ModelSelector
from keyrotation.services.usage_store import SqlAlchemyUsageStore

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def build_selector() -> ModelSelector:
    """Selector wired to the shared session factory."""
    return ModelSelector(
        SqlAlchemyUsageStore(async_session_factory),
        exhausted=ExhaustedModelCache(
            datetime.timedelta(seconds=settings.EXHAUSTED_MODEL_TTL_SECONDS),
        ),
        disabled_models=settings.DISABLED_MODELS,
        strategy=settings.SELECTION_STRATEGY,
        skip_percent=settings.QUOTA_SKIP_PERCENT,
        exclusion_delay=datetime.timedelta(hours=settings.EXCLUSION_HOURS),
        exclusion_retry_delay=datetime.timedelta(hours=settings.EXCLUSION_RETRY_HOURS),
    )


def build_gemini_client() -> GeminiClient:
    return GeminiClient(
        settings.GEMINI_BASE_URL,
        timeout=settings.GEMINI_TIMEOUT_SECONDS,
        max_output_tokens=settings.GEMINI_MAX_OUTPUT_TOKENS,
    )


# ── Lifespan ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""

    try:
        await ping_database()
        logger.info("Database reachable")
    except Exception:
        # Selection and accounting map storage errors to 503 until it is back
        logger.warning("Database unreachable on startup; serving 503s until it recovers")

    app.state.selector = build_selector()
    app.state.gemini_client = build_gemini_client()
    logger.info(
        "Key rotation ready (env=%s, strategy=%s, exhausted TTL=%ds, %d disabled models)",
        settings.ENVIRONMENT,
        settings.SELECTION_STRATEGY,
        settings.EXHAUSTED_MODEL_TTL_SECONDS,
        len(settings.DISABLED_MODELS),
    )

    yield  # ← application runs here

    await engine.dispose()
    logger.info("Database engine disposed")


# ── App ─────────────────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    description=(
        "Gemini API-key and model rotation with RPM/RPH/RPD/TPM "
        "usage tracking for the AI reply agent."
    ),
    lifespan=lifespan,
)

# Mount routers
app.include_router(keys_router, prefix="/keys")
app.include_router(models_router, prefix="/models")
app.include_router(companies_router, prefix="/companies")


# ── Health check ────────────────────────────────────────────
@app.get(
    "/health",
    tags=["System"],
    summary="Liveness probe",
)
async def health_check() -> dict[str, str]:
    """Shallow health check — confirms the process is alive."""
    return {"status": "healthy"}
