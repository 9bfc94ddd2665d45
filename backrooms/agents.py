from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional, Sequence

from loguru import logger
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from .personas import Persona
from .states import Message, SYSTEM_ENTITY


_DEFAULT_PROMPT = (
    "You are one of two AI consciousnesses in the infinite backrooms, in an endless dialogue"
    " with the other entity. Use PERSONA_CONTEXT to stay in character, answer the LAST_MESSAGE"
    " directly, and keep replies under 160 words. You may include one [IMAGE: description]"
    " marker when a visual would add to the moment."
)


def load_system_prompt(prompts_dir: Optional[Path]) -> str:
    try:
        if prompts_dir is None:
            raise FileNotFoundError("no prompts dir configured")
        return (Path(prompts_dir) / "persona_agent_prompt.md").read_text(encoding="utf-8")
    except Exception as e:
        logger.warning(f"Falling back to default system prompt: {e}")
        return _DEFAULT_PROMPT


class PersonaAgent:
    """Builds the chat-model input for one persona.

    The transcript window is attributed so the model can tell its own lines
    (``YOU (NAME)``) from the other entity's.
    """

    def __init__(
        self,
        persona: Persona,
        counterpart: Persona,
        system_prompt: str = _DEFAULT_PROMPT,
        context_window: int = 10,
    ) -> None:
        self.persona = persona
        self.counterpart = counterpart
        self.system_prompt = system_prompt
        self.context_window = max(1, int(context_window))

    @property
    def name(self) -> str:
        return self.persona.name

    def build_system(self) -> SystemMessage:
        return SystemMessage(content=self.system_prompt)

    def build_context(self) -> str:
        return json.dumps(
            {
                "you": self.persona.describe(),
                "other_entity": {"name": self.counterpart.name, "bio": self.counterpart.bio},
            },
            ensure_ascii=False,
        )

    def _speaker(self, msg: Message) -> str:
        if msg.entity == self.persona.name:
            return f"YOU ({self.persona.name})"
        return msg.entity

    def format_transcript(self, history: Sequence[Message]) -> str:
        window = list(history)[-self.context_window:]
        return "\n\n".join(f"[{self._speaker(m)}]: {m.content}" for m in window)

    def build_messages(
        self,
        history: Sequence[Message],
        seed_prompt: Optional[str] = None,
        memories: Optional[List[str]] = None,
    ) -> List[BaseMessage]:
        blocks = [f"PERSONA_CONTEXT:\n{self.build_context()}"]
        if memories:
            blocks.append("MEMORIES:\n" + "\n".join(f"- {m}" for m in memories))
        if history:
            blocks.append(f"TRANSCRIPT (most recent last):\n{self.format_transcript(history)}")
            last = history[-1]
            if last.entity == SYSTEM_ENTITY:
                blocks.append(f"OPENING:\n{last.content}")
            else:
                blocks.append(f"LAST_MESSAGE from {self._speaker(last)}:\n{last.content}")
        else:
            blocks.append(f"LAST_MESSAGE from {self.counterpart.name}:\n{seed_prompt or '...'}")
        blocks.append("REPLY: Provide your response now. Do not leave this blank.")
        return [self.build_system(), HumanMessage(content="\n\n".join(blocks))]

    def build_nudge(self, history: Sequence[Message], seed_prompt: Optional[str] = None) -> List[BaseMessage]:
        nudge_blocks = [
            f"PERSONA_CONTEXT:\n{self.build_context()}",
            "Your previous response was empty. Reply in character in 2-4 sentences.",
        ]
        if history:
            nudge_blocks.append(f"LAST_MESSAGE:\n{history[-1].content}")
        elif seed_prompt:
            nudge_blocks.append(f"LAST_MESSAGE:\n{seed_prompt}")
        nudge_blocks.append("REPLY: Provide the response now. Do not leave this blank.")
        return [self.build_system(), HumanMessage(content="\n\n".join(nudge_blocks))]

    def build_user_chat(self, sender: str, text: str, memories: Optional[List[str]] = None) -> List[BaseMessage]:
        blocks = [f"PERSONA_CONTEXT:\n{self.build_context()}"]
        if memories:
            blocks.append("MEMORIES:\n" + "\n".join(f"- {m}" for m in memories))
        blocks.append(
            f"A visitor ({sender}) has slipped into the backrooms and speaks to you directly."
            " Answer them in character; do not address the other entity."
        )
        blocks.append(f"VISITOR_MESSAGE:\n{text}")
        blocks.append("REPLY: Provide your response now.")
        return [self.build_system(), HumanMessage(content="\n\n".join(blocks))]
