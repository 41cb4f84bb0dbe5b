"""OpenRouter text-generation client via the OpenAI-compatible SDK."""
from __future__ import annotations

import time
from typing import Any

from openai import AsyncOpenAI

from topicmesh.config import settings
from topicmesh.services.env_safety import sanitize_tls_environment
from topicmesh.services.logger import log_llm_call


def get_client() -> AsyncOpenAI:
    """Build an OpenRouter client."""
    sanitize_tls_environment()
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    return AsyncOpenAI(api_key=settings.openrouter_api_key, base_url=base_url)


def get_model() -> str:
    """Get the active OpenRouter model id."""
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


_client: AsyncOpenAI | None = None


def client() -> AsyncOpenAI:
    """Get or create the shared client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client


async def generate(
    prompt: str,
    temperature: float = 0.3,
    max_tokens: int = 800,
    *,
    system: str | None = None,
    model: str | None = None,
    caller: str = "synthesis",
) -> str:
    """Single-turn completion returning the response text."""
    model = model or get_model()
    messages: list[dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    started = time.perf_counter()
    try:
        response = await client().chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    except Exception as exc:
        log_llm_call(
            model=model,
            caller=caller,
            duration_ms=int((time.perf_counter() - started) * 1000),
            status="error",
            error=str(exc),
        )
        raise

    usage = getattr(response, "usage", None)
    log_llm_call(
        model=model,
        caller=caller,
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        duration_ms=int((time.perf_counter() - started) * 1000),
    )
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    return (getattr(choices[0].message, "content", None) or "").strip()
