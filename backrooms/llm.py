from __future__ import annotations

from functools import lru_cache
from typing import List, Optional, Tuple

from loguru import logger
from langchain_openai import ChatOpenAI
from openai import AsyncOpenAI

from .config import Settings


@lru_cache(maxsize=8)
def get_openai_chat(
    model: str,
    api_key: Optional[str],
    temperature: float = 1.0,
    max_tokens: Optional[int] = None,
    timeout: Optional[float] = None,
    base_url: Optional[str] = None,
) -> Optional[ChatOpenAI]:
    """Return a cached LangChain ChatOpenAI client.

    `base_url` points the client at any OpenAI-compatible server (e.g. a
    local Ollama endpoint), in which case a missing api_key is tolerated.
    """
    if not api_key and not base_url:
        logger.error(f"OPENAI_API_KEY not set; cannot initialize chat client model={model}")
        return None
    logger.debug(f"Initializing chat model={model} temperature={temperature} base_url={base_url or 'openai'}")
    kwargs = {
        "model": model,
        "temperature": temperature,
        "api_key": api_key or "not-needed",
        "max_retries": 1,
    }
    if max_tokens:
        kwargs["max_tokens"] = max_tokens
    if timeout:
        kwargs["timeout"] = timeout
    if base_url:
        kwargs["base_url"] = base_url
    return ChatOpenAI(**kwargs)


def build_chat_sources(settings: Settings) -> List[Tuple[str, ChatOpenAI]]:
    """Prioritized (label, chat model) chain: local first, then paid models."""
    sources: List[Tuple[str, ChatOpenAI]] = []
    if settings.local_llm_base_url:
        local = get_openai_chat(
            model=settings.local_llm_model,
            api_key=None,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            timeout=settings.llm_timeout,
            base_url=settings.local_llm_base_url,
        )
        if local is not None:
            sources.append(("local", local))
    primary = get_openai_chat(
        model=settings.openai_model,
        api_key=settings.openai_api_key,
        temperature=settings.openai_temperature,
        max_tokens=settings.openai_max_tokens,
        timeout=settings.llm_timeout,
    )
    if primary is not None:
        sources.append(("openai", primary))
    if settings.chat_fallback_enabled and settings.chat_fallback_model != settings.openai_model:
        fallback = get_openai_chat(
            model=settings.chat_fallback_model,
            api_key=settings.openai_api_key,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            timeout=settings.llm_timeout,
        )
        if fallback is not None:
            sources.append(("fallback", fallback))
    if not sources:
        logger.warning("No chat sources configured; replies will use canned fallbacks")
    return sources


def get_image_client(settings: Settings) -> Optional[AsyncOpenAI]:
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set; image generation disabled")
        return None
    return AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.llm_timeout, max_retries=0)
