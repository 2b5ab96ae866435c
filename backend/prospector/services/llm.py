from __future__ import annotations

from functools import lru_cache
from contextlib import contextmanager
from threading import BoundedSemaphore
from typing import Any

import openai
from openai import AsyncOpenAI, OpenAI

from ..core.config import get_settings
from ..core.errors import (
    AppError,
    UpstreamQuotaExhausted,
    UpstreamRateLimited,
    UpstreamServiceError,
)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_llm_semaphore: BoundedSemaphore | None = None


def _get_semaphore() -> BoundedSemaphore:
    """
    Lazy-initialised global semaphore for limiting concurrent LLM calls.
    """
    global _llm_semaphore
    if _llm_semaphore is None:
        settings = get_settings()
        _llm_semaphore = BoundedSemaphore(settings.LLM_MAX_CONCURRENCY)
    return _llm_semaphore


@contextmanager
def limit_llm_concurrency():
    """
    Bound concurrent calls to the model providers across the process.

    Use inside the thread that actually performs the HTTP request:

        with limit_llm_concurrency():
            client.chat.completions.create(...)
    """
    sem = _get_semaphore()
    sem.acquire()
    try:
        yield
    finally:
        sem.release()


@lru_cache(maxsize=1)
def get_llm_client() -> OpenAI:
    """
    Client for the tool-calling model gateway (discovery and synthesis).

    - LLM_BASE_URL wins when set (any OpenAI-compatible gateway).
    - Else OPENROUTER_API_KEY routes requests via OpenRouter.
    - Else the standard OpenAI API with OPENAI_API_KEY.
    """
    settings = get_settings()
    timeout = settings.LLM_TIMEOUT_SECONDS

    if settings.LLM_BASE_URL:
        api_key = settings.OPENROUTER_API_KEY or settings.OPENAI_API_KEY
        if not api_key:
            raise RuntimeError("LLM_BASE_URL is set but no API key is configured.")
        return OpenAI(base_url=settings.LLM_BASE_URL, api_key=api_key.strip(), timeout=timeout)

    if settings.OPENROUTER_API_KEY:
        return OpenAI(
            base_url=OPENROUTER_BASE_URL,
            api_key=settings.OPENROUTER_API_KEY.strip(),
            timeout=timeout,
            default_headers={
                "HTTP-Referer": settings.FRONTEND_ORIGIN or "http://localhost:3000",
                "X-Title": "Prospector",
            },
        )

    if settings.OPENAI_API_KEY:
        return OpenAI(api_key=settings.OPENAI_API_KEY.strip(), timeout=timeout)

    raise RuntimeError(
        "No LLM API key configured. Set OPENROUTER_API_KEY or OPENAI_API_KEY."
    )


def get_search_client() -> AsyncOpenAI:
    """
    Async client for the search-augmented model used by the research agents.

    Not cached: the underlying connection pool is bound to the event loop
    that first uses it, and each research run gets its own loop. Callers
    close it when the run ends. Retries are off so the per-agent timeout
    is the only bound on a call.
    """
    settings = get_settings()
    if not settings.PERPLEXITY_API_KEY:
        raise RuntimeError("No search model API key configured. Set PERPLEXITY_API_KEY.")
    return AsyncOpenAI(
        base_url=settings.SEARCH_BASE_URL,
        api_key=settings.PERPLEXITY_API_KEY.strip(),
        timeout=settings.AGENT_TIMEOUT_SECONDS,
        max_retries=0,
    )


def translate_upstream_error(exc: Exception) -> AppError:
    """Map a provider SDK error onto the status codes the API reports."""
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, openai.RateLimitError):
        return UpstreamRateLimited()
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 402:
            return UpstreamQuotaExhausted()
        if exc.status_code == 429:
            return UpstreamRateLimited()
        return UpstreamServiceError(f"AI service error: {exc.status_code}")
    return UpstreamServiceError(f"AI service error: {exc.__class__.__name__}")


def create_chat_completion(client: OpenAI, **kwargs: Any) -> Any:
    """
    Blocking chat completion under the process-wide concurrency limit.

    Provider errors are re-raised as AppError subclasses.
    """
    try:
        with limit_llm_concurrency():
            return client.chat.completions.create(**kwargs)
    except openai.OpenAIError as e:
        raise translate_upstream_error(e) from e


async def acreate_chat_completion(client: AsyncOpenAI, **kwargs: Any) -> Any:
    """
    Chat completion on an async client.

    Not bounded by the thread semaphore: callers cap the call with
    ``asyncio.wait_for``, and cancelling it aborts the HTTP request.
    Provider errors are re-raised as AppError subclasses.
    """
    try:
        return await client.chat.completions.create(**kwargs)
    except openai.OpenAIError as e:
        raise translate_upstream_error(e) from e
