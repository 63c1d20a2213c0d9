"""
FastAPI dependencies for the long-lived service objects.

The selector and Gemini client are built once in the app lifespan and kept
on app.state. Routers reach them through these dependencies, so tests can
swap them with app.dependency_overrides.
"""

from fastapi import Request

from keyrotation.services.gemini_client import GeminiClient
from keyrotation.services.model_selector import ModelSelector


def get_selector(request: Request) -> ModelSelector:
    return request.app.state.selector


def get_gemini_client(request: Request) -> GeminiClient:
    return request.app.state.gemini_client
