"""Thin wrapper around Anthropic async client."""
from __future__ import annotations

from anthropic import AsyncAnthropic

from app.config import settings
from app.core.exceptions import ExecutionError


_client: AsyncAnthropic | None = None


def get_anthropic_client() -> AsyncAnthropic:
    global _client
    if _client is None:
        api_key = settings.anthropic_api_key.get_secret_value()
        if not api_key:
            raise ExecutionError("ANTHROPIC_API_KEY is not configured")
        _client = AsyncAnthropic(api_key=api_key)
    return _client
