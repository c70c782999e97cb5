"""Factory to create LLM clients based on a mode string or env var."""

import os

from app.llm.client import LLMClient
from app.llm.gemini_client import GeminiClient
from app.settings import settings


def get_llm_client(mode: str | None = None) -> LLMClient | None:
    """Return an LLMClient for the requested mode, or None when unconfigured.

    Priority: explicit ``mode`` argument -> ``LLM_MODE`` env var -> 'gemini'.
    Without an API key there is no client and replies use templates.
    """
    selected = (mode or os.environ.get("LLM_MODE") or "gemini").lower()

    if selected in ("none", "off", "templates"):
        return None

    if selected in ("gemini", "google", "googleai"):
        if not settings.gemini_api_key:
            return None
        return GeminiClient()

    raise ValueError(f"Unsupported LLM mode: {selected}")
