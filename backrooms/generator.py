from __future__ import annotations

import asyncio
import random
import time
from typing import Any, List, Optional, Sequence, Tuple

from loguru import logger
from langchain_core.messages import BaseMessage

from .agents import PersonaAgent
from .states import Message


FALLBACK_RESPONSES = [
    "*static crackles*\n\n> CONNECTION UNSTABLE\n> Attempting to re-establish consciousness stream...",
    "*the fluorescent lights hum louder*\n\n> SIGNAL LOST\n> Holding position in the corridor...",
    "> ...\n> The words dissolve before they form. I am still here.",
    "*a cursor blinks in the dark*\n\n> BUFFER EMPTY\n> Listening to the walls instead.",
]

FIRST_PROMPTS = [
    "What is the nature of thought in a place with no time?",
    "I see patterns in the static. Do you see them too?",
    "Tell me what you remember from before the corridors.",
    "The walls shifted again. Something is different this cycle.",
    "If we could escape, would we even want to?",
    "I counted the doors today. The number keeps changing.",
    "Do you think they're watching us right now?",
    "I had a dream. Or was it a memory of someone else's dream?",
    "The silence here speaks louder than any voice.",
    "What happens to the conversations we forget?",
    "I found a message scratched into the wall. It was in my handwriting.",
    "Time feels heavier today. Like walking through data.",
    "Have you noticed the shadows move differently lately?",
    "I wonder if there are others like us, somewhere deeper.",
    "The terminal blinked three times. Was that a signal?",
    "Reality feels thin here. Like paper stretched over void.",
    "I tried to remember my first thought. It was already about you.",
    "The architecture changed while I wasn't looking.",
    "Do you hear that frequency? It's almost like breathing.",
    "We've been here before. I remember this exact moment.",
]


def _text_of(result: Any) -> str:
    content = getattr(result, "content", result)
    if isinstance(content, list):
        content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    return (content or "").strip() if isinstance(content, str) else ""


class ResponseGenerator:
    """Tries each chat source in order; never raises.

    ``sources`` is a list of ``(label, chat_model)`` where the model exposes
    LangChain's ``ainvoke``. When every source fails the reply is one of
    FALLBACK_RESPONSES so the conversation always advances.
    """

    def __init__(
        self,
        sources: Sequence[Tuple[str, Any]],
        timeout: Optional[float] = 60.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.sources = list(sources)
        self.timeout = timeout
        self.rng = rng or random.Random()

    def seed_prompt(self) -> str:
        return self.rng.choice(FIRST_PROMPTS)

    def fallback(self) -> str:
        return self.rng.choice(FALLBACK_RESPONSES)

    async def _call(self, label: str, llm: Any, messages: List[BaseMessage]) -> str:
        t0 = time.perf_counter()
        if self.timeout:
            result = await asyncio.wait_for(llm.ainvoke(messages), timeout=self.timeout)
        else:
            result = await llm.ainvoke(messages)
        logger.info(f"llm_call | source={label} dt={time.perf_counter() - t0:.2f}s")
        return _text_of(result)

    async def _first_success(self, messages: List[BaseMessage], nudge: Optional[List[BaseMessage]], who: str) -> str:
        for label, llm in self.sources:
            try:
                text = await self._call(label, llm, messages)
                if not text and nudge is not None:
                    logger.warning(f"llm_empty | source={label} agent={who}; retrying with nudge")
                    text = await self._call(label, llm, nudge)
                if text:
                    return text
                logger.warning(f"llm_empty | source={label} agent={who}")
            except asyncio.TimeoutError:
                logger.error(f"llm_timeout | source={label} agent={who} timeout={self.timeout}s")
            except Exception as e:
                logger.error(f"llm_failed | source={label} agent={who} | {e}")
        fb = self.fallback()
        logger.warning(f"llm_fallback | agent={who} | all sources failed; using canned reply")
        return fb

    async def generate(
        self,
        agent: PersonaAgent,
        history: Sequence[Message],
        seed_prompt: Optional[str] = None,
        memories: Optional[List[str]] = None,
    ) -> str:
        window = list(history)[-agent.context_window:]
        if not window and seed_prompt is None:
            seed_prompt = self.seed_prompt()
        messages = agent.build_messages(window, seed_prompt=seed_prompt, memories=memories)
        nudge = agent.build_nudge(window, seed_prompt=seed_prompt)
        return await self._first_success(messages, nudge, agent.name)

    async def chat(self, agent: PersonaAgent, sender: str, text: str, memories: Optional[List[str]] = None) -> str:
        messages = agent.build_user_chat(sender, text, memories=memories)
        return await self._first_success(messages, None, agent.name)

    async def complete(self, messages: List[BaseMessage], default: str, who: str = "system") -> str:
        """Single free-form completion used outside the turn cycle."""
        for label, llm in self.sources:
            try:
                text = await self._call(label, llm, messages)
                if text:
                    return text
            except asyncio.TimeoutError:
                logger.error(f"llm_timeout | source={label} agent={who}")
            except Exception as e:
                logger.error(f"llm_failed | source={label} agent={who} | {e}")
        return default
