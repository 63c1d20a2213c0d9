"""
Dev bootstrap script — seed a company, a Gemini key and its models.

Usage:
    GEMINI_API_KEY=... python -m scripts.bootstrap_dev

This will:
  1. Create a company named "Dev Company"
  2. Register one active COMPANY key (GEMINI_API_KEY, or a placeholder)
  3. Enable every supported model at its default limits, in default priority
  4. Print a fresh service token ONCE, plus the hash for SERVICE_TOKEN_HASH
"""

import asyncio
import os

from keyrotation.auth.hashing import generate_service_token
from keyrotation.core.database import async_session_factory, engine
from keyrotation.models.company import Company
from keyrotation.models.gemini_key import KEY_TYPE_COMPANY, GeminiKey
from keyrotation.models.gemini_key_model import GeminiKeyModel
from keyrotation.services.gemini_client import mask_api_key
from keyrotation.services.model_defaults import SUPPORTED_MODELS, default_snapshot
from keyrotation.services.usage_codec import encode_usage


async def main() -> None:
    api_key = os.environ.get("GEMINI_API_KEY", "replace-me")

    async with async_session_factory() as session:
        # ── Company ─────────────────────────────────────────
        company = Company(name="Dev Company")
        session.add(company)
        await session.flush()  # get company.id

        # ── Key ─────────────────────────────────────────────
        key = GeminiKey(
            company_id=company.id,
            name="Dev Key 1",
            api_key=api_key,
            key_type=KEY_TYPE_COMPANY,
            is_active=True,
            priority=1,
        )
        session.add(key)
        await session.flush()

        # ── Models (priority = position in SUPPORTED_MODELS) ─
        for priority, model_name in enumerate(SUPPORTED_MODELS, start=1):
            session.add(
                GeminiKeyModel(
                    key_id=key.id,
                    model=model_name,
                    priority=priority,
                    usage=encode_usage(default_snapshot(model_name)),
                )
            )
        await session.commit()

    raw_token, token_hash = generate_service_token()

    # ── Print results ───────────────────────────────────────
    print()
    print("=" * 60)
    print("  Dev Bootstrap Complete")
    print("=" * 60)
    print()
    print(f"  Company ID: {company.id}")
    print(f"  Key ID:     {key.id} ({mask_api_key(api_key)})")
    print(f"  Models:     {len(SUPPORTED_MODELS)}")
    print()
    print(f"  Service token:      {raw_token}")
    print(f"  SERVICE_TOKEN_HASH={token_hash}")
    print()
    print("  ⚠  Copy the token now — it will NEVER be shown again.")
    print("=" * 60)
    print()

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
