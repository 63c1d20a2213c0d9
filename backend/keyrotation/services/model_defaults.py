"""
Default rate limits for Gemini models.

Used when a usage row is empty, malformed, or missing a window, and when
seeding new key-model rows. Values are the free-tier limits shown in
Google AI Studio; an operator can raise them per row afterwards.

rph is not published by Google; it is derived as rpm × 60.
"""

from dataclasses import dataclass

from keyrotation.services.usage_windows import UsageSnapshot, Window


@dataclass(frozen=True, slots=True)
class ModelLimits:
    """Per-window limits for one model."""

    rpm: int
    rph: int
    rpd: int
    tpm: int


# Used when a model's tpm limit is unknown (N/A in AI Studio).
DEFAULT_TPM_LIMIT = 125_000

_FALLBACK_LIMITS = ModelLimits(rpm=10, rph=600, rpd=250, tpm=250_000)

# ── Limits table ────────────────────────────────────────────
MODEL_LIMITS: dict[str, ModelLimits] = {
    # Pro
    "gemini-2.5-pro": ModelLimits(rpm=2, rph=120, rpd=50, tpm=125_000),
    # Flash
    "gemini-2.5-flash": ModelLimits(rpm=10, rph=600, rpd=250, tpm=250_000),
    "gemini-2.5-flash-lite": ModelLimits(rpm=15, rph=900, rpd=1000, tpm=250_000),
    "gemini-2.0-flash": ModelLimits(rpm=15, rph=900, rpd=200, tpm=1_000_000),
    "gemini-2.0-flash-lite": ModelLimits(rpm=30, rph=1800, rpd=200, tpm=1_000_000),
    # Specialised
    "gemini-robotics-er-1.5-preview": ModelLimits(rpm=10, rph=600, rpd=250, tpm=250_000),
    "learnlm-2.0-flash-experimental": ModelLimits(rpm=15, rph=900, rpd=1500, tpm=DEFAULT_TPM_LIMIT),
}

# Default priority order when seeding a new key (index 0 = priority 1).
SUPPORTED_MODELS: tuple[str, ...] = (
    "gemini-2.5-pro",
    "gemini-robotics-er-1.5-preview",
    "learnlm-2.0-flash-experimental",
    "gemini-2.5-flash",
    "gemini-2.0-flash-lite",
    "gemini-2.0-flash",
    "gemini-2.5-flash-lite",
)


def get_model_limits(model_name: str) -> ModelLimits:
    """Return the default limits for a model, or the generic fallback."""
    return MODEL_LIMITS.get(model_name, _FALLBACK_LIMITS)


def default_window(model_name: str, window_name: str) -> Window:
    """An unused, never-started window at the model's default limit."""
    return Window(used=0, limit=getattr(get_model_limits(model_name), window_name))


def default_snapshot(model_name: str) -> UsageSnapshot:
    """All four windows zeroed at the model's default limits."""
    limits = get_model_limits(model_name)
    return UsageSnapshot(
        rpm=Window(used=0, limit=limits.rpm),
        rph=Window(used=0, limit=limits.rph),
        rpd=Window(used=0, limit=limits.rpd),
        tpm=Window(used=0, limit=limits.tpm),
    )
