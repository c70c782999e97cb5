"""LLM abstraction layer."""

from app.llm.client import LLMClient
from app.llm.factory import get_llm_client

__all__ = ["LLMClient", "get_llm_client"]
