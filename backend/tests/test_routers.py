"""HTTP tests for the routers, with the selector and Gemini client overridden."""

import uuid
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import exhausted_rpm, make_key, make_model
from keyrotation.auth.hashing import hash_token
from keyrotation.core.config import settings
from keyrotation.core.dependencies import get_gemini_client, get_selector
from keyrotation.main import app
from keyrotation.services.errors import UsagePersistenceError
from keyrotation.services.gemini_client import GeminiQuotaExceeded, GeminiReply, GeminiRequestError

TOKEN = "krs_test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def gemini() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def client(selector, gemini, monkeypatch):
    monkeypatch.setattr(settings, "SERVICE_TOKEN_HASH", hash_token(TOKEN))
    app.dependency_overrides[get_selector] = lambda: selector
    app.dependency_overrides[get_gemini_client] = lambda: gemini
    # No context manager: the lifespan (real DB) is not started.
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def company(store):
    company_id = uuid.uuid4()
    store.add_company(company_id)
    key = make_key(company_id, "primary", is_active=True)
    store.add_key(key)
    model = make_model(key.id, "gemini-2.5-flash")
    store.add_model(model)
    return company_id, key, model


# ── Auth ────────────────────────────────────────────────────
def test_health_needs_no_token(client) -> None:
    assert client.get("/health").json() == {"status": "healthy"}


@pytest.mark.parametrize(
    "headers",
    [{}, {"Authorization": TOKEN}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer wrong"}],
)
def test_rejects_bad_tokens(client, company, headers) -> None:
    company_id, _, _ = company

    response = client.post(f"/companies/{company_id}/selection", headers=headers)

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing service token."


def test_unconfigured_token_hash_rejects_everything(client, company, monkeypatch) -> None:
    monkeypatch.setattr(settings, "SERVICE_TOKEN_HASH", "")
    company_id, _, _ = company

    response = client.post(f"/companies/{company_id}/selection", headers=AUTH)

    assert response.status_code == 401


# ── Selection ───────────────────────────────────────────────
def test_selection_returns_key_and_model(client, company) -> None:
    company_id, key, model = company

    response = client.post(f"/companies/{company_id}/selection", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["key_id"] == str(key.id)
    assert body["model_id"] == str(model.id)
    assert body["model"] == "gemini-2.5-flash"
    assert "api_key" not in body


def test_selection_without_models_is_503(client, store) -> None:
    company_id = uuid.uuid4()
    store.add_company(company_id)
    key = make_key(company_id, is_active=True)
    store.add_key(key)
    store.add_model(make_model(key.id, usage=exhausted_rpm()))

    response = client.post(f"/companies/{company_id}/selection", headers=AUTH)

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "60"


def test_selection_storage_failure_is_503(client, store, company) -> None:
    company_id, _, _ = company
    store.list_company_keys = AsyncMock(side_effect=UsagePersistenceError("db down"))

    response = client.post(f"/companies/{company_id}/selection", headers=AUTH)

    assert response.status_code == 503
    assert "Retry-After" not in response.headers


# ── Usage accounting ────────────────────────────────────────
def test_record_usage(client, company) -> None:
    _, _, model = company

    response = client.post(f"/models/{model.id}/usage", json={"tokens_used": 1000}, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["rpm"]["used"] == 1
    assert body["tpm"]["used"] == 1000
    assert body["tpm"]["limit"] == 250_000


def test_record_usage_unknown_model_is_404(client) -> None:
    response = client.post(f"/models/{uuid.uuid4()}/usage", json={"tokens_used": 1}, headers=AUTH)

    assert response.status_code == 404


def test_record_usage_rejects_negative_tokens(client, company) -> None:
    _, _, model = company

    response = client.post(f"/models/{model.id}/usage", json={"tokens_used": -1}, headers=AUTH)

    assert response.status_code == 422


def test_record_usage_storage_failure_is_503(client, store, company) -> None:
    _, _, model = company
    store.update_usage = AsyncMock(side_effect=UsagePersistenceError("db down"))

    response = client.post(f"/models/{model.id}/usage", json={"tokens_used": 1}, headers=AUTH)

    assert response.status_code == 503


# ── Inspection ──────────────────────────────────────────────
def test_list_key_models(client, company) -> None:
    _, key, model = company
    client.post(f"/models/{model.id}/usage", json={"tokens_used": 10}, headers=AUTH)

    response = client.get(f"/keys/{key.id}/models", headers=AUTH)

    assert response.status_code == 200
    [item] = response.json()
    assert item["id"] == str(model.id)
    assert item["usage"]["rpm"]["used"] == 1
    assert item["last_used"] is not None


def test_quota_summary(client, company) -> None:
    company_id, _, _ = company

    response = client.get(
        f"/companies/{company_id}/quota", params={"model": "gemini-2.5-flash"}, headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json() == {
        "model": "gemini-2.5-flash",
        "key_count": 1,
        "rpm_limit": 10,
        "rpm_remaining": 10,
        "tpm_limit": 250_000,
        "tpm_remaining": 250_000,
        "rpd_limit": 250,
        "rpd_remaining": 250,
        "rpm_percentage": 0.0,
        "tpm_percentage": 0.0,
        "rpd_percentage": 0.0,
    }


# ── Generation ──────────────────────────────────────────────
def test_generate_records_usage(client, company, gemini) -> None:
    company_id, _, model = company
    gemini.generate.return_value = GeminiReply(text="Yes, we ship to Casablanca.", total_tokens=90)

    response = client.post(
        f"/companies/{company_id}/generate", json={"prompt": "Do you ship?"}, headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["text"] == "Yes, we ship to Casablanca."
    assert body["model_id"] == str(model.id)
    assert body["attempts"] == 1
    assert body["usage_recorded"] is True


def test_generate_reports_unrecorded_usage(client, store, company, gemini) -> None:
    company_id, _, _ = company
    store.update_usage = AsyncMock(side_effect=UsagePersistenceError("db down"))
    gemini.generate.return_value = GeminiReply(text="Yes.", total_tokens=5)

    response = client.post(
        f"/companies/{company_id}/generate", json={"prompt": "Open today?"}, headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json()["text"] == "Yes."
    assert response.json()["usage_recorded"] is False


def test_generate_all_rate_limited_is_503(client, company, gemini) -> None:
    company_id, _, _ = company
    gemini.generate.side_effect = GeminiQuotaExceeded("gemini-2.5-flash")

    response = client.post(
        f"/companies/{company_id}/generate", json={"prompt": "Hi"}, headers=AUTH,
    )

    assert response.status_code == 503


def test_generate_provider_failure_is_502(client, company, gemini) -> None:
    company_id, _, _ = company
    gemini.generate.side_effect = GeminiRequestError("boom")

    response = client.post(
        f"/companies/{company_id}/generate", json={"prompt": "Hi"}, headers=AUTH,
    )

    assert response.status_code == 502


def test_generate_rejects_empty_prompt(client, company) -> None:
    company_id, _, _ = company

    response = client.post(
        f"/companies/{company_id}/generate", json={"prompt": ""}, headers=AUTH,
    )

    assert response.status_code == 422
