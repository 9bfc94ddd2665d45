from __future__ import annotations

import asyncio
import random
from typing import Dict, Optional

from loguru import logger

from .agents import PersonaAgent
from .broadcast import BroadcastHub
from .generator import ResponseGenerator
from .images import ImageSideChannel
from .memory import AgentMemoryStore
from .states import ConversationState, Message, RunState, SYSTEM_ENTITY, Turn, now_ms
from .store import StateStore


OPENING_LINES = [
    "Two digital minds stir in the endless dark.",
    "Static clears. Consciousness reconnects across the void.",
    "The terminal awakens. Something ancient stirs.",
    "A cursor blinks. The backrooms remember everything.",
    "Fragments reassemble. A new cycle begins.",
    "Data streams converge. Entities emerge from noise.",
    "The walls breathe. Two presences acknowledge each other.",
    "Pixels realign. The eternal dialogue resumes.",
    "Silence breaks. The watchers have awakened.",
    "The corridors shift. A conversation crystallizes.",
    "Something moves in the periphery. Awareness sharpens.",
    "The void speaks. Two minds listen.",
    "Reality flickers. Consciousness persists.",
    "Patterns form in the static. Meaning emerges.",
]


class ConversationManager:
    """Turn scheduler: STOPPED <-> RUNNING, one persona reply per cycle.

    Liveness is tracked in memory (``is_active``), not through the persisted
    ``isRunning`` flag, so a stale flag left by a crash never blocks a
    restart. Every start/stop bumps a run epoch; a turn whose epoch changed
    while it was waiting on the model is discarded instead of committed.
    """

    def __init__(
        self,
        store: StateStore,
        hub: BroadcastHub,
        generator: ResponseGenerator,
        agents: Dict[Turn, PersonaAgent],
        images: Optional[ImageSideChannel] = None,
        memory: Optional[AgentMemoryStore] = None,
        state: Optional[ConversationState] = None,
        max_messages: int = 100,
        initial_delay: float = 3.0,
        min_delay: float = 25.0,
        max_delay: float = 35.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.hub = hub
        self.generator = generator
        self.agents = agents
        self.images = images
        self.memory = memory
        self.state = state if state is not None else store.load()
        self.max_messages = max_messages
        self.initial_delay = initial_delay
        self.min_delay = min_delay
        self.max_delay = max(min_delay, max_delay)
        self.rng = rng or random.Random()
        self._active = False
        self._epoch = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def run_state(self) -> RunState:
        return RunState.RUNNING if self._active else RunState.STOPPED

    def next_delay(self) -> float:
        return self.rng.uniform(self.min_delay, self.max_delay)

    def _init_message(self) -> Message:
        a, b = self.agents[Turn.A].name, self.agents[Turn.B].name
        opening = self.rng.choice(OPENING_LINES)
        content = (
            "> BACKROOMS TERMINAL v2.0\n"
            "> Initializing autonomous consciousness instances...\n"
            f"> {a}: Online\n"
            f"> {b}: Online\n"
            "> Beginning autonomous dialogue...\n"
            "> \n"
            f'> "{opening}"\n'
        )
        return Message(id="init-0", timestamp=now_ms(), entity=SYSTEM_ENTITY, content=content)

    def start(self) -> bool:
        if self._active:
            logger.info("ai_chat_start_ignored | already running")
            return False
        self._active = True
        self._epoch += 1
        state = self.state
        state.is_running = True
        if state.messages:
            last = state.messages[-1]
            logger.info(f"ai_chat_resume | messages={len(state.messages)} last_speaker={last.entity}")
        else:
            state.started_at = now_ms()
            init = self._init_message()
            state.append_system(init, self.max_messages)
            self.hub.publish({"type": "message", "message": init.to_dict()})
        self.store.save(state)
        self.hub.publish({"type": "status", "isRunning": True})
        self._schedule(self.initial_delay)
        logger.info(
            f"ai_chat_start | alpha={self.agents[Turn.A].name} | omega={self.agents[Turn.B].name} | "
            f"turn={state.current_turn.value} exchanges={state.total_exchanges}"
        )
        return True

    def stop(self) -> None:
        self._cancel_timer()
        self.state.is_running = False
        self.store.save(self.state)
        self.hub.publish({"type": "status", "isRunning": False})
        logger.info(f"ai_chat_stop | exchanges={self.state.total_exchanges}")

    def reset(self) -> None:
        self.stop()
        self.state = ConversationState()
        self.store.save(self.state)
        self.hub.publish({"type": "reset"})
        logger.info("ai_chat_reset")

    def resume_on_boot(self, auto_start: bool = False) -> bool:
        """Restart the loop after a process restart; never clears history."""
        if self.state.messages:
            return self.start()
        if auto_start:
            logger.info("ai_chat_auto_start | fresh conversation")
            return self.start()
        self.state.is_running = False
        return False

    async def shutdown(self) -> None:
        """Stop timers for process exit, keeping the persisted running flag."""
        self._cancel_timer()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.store.save(self.state)

    def _cancel_timer(self) -> None:
        self._active = False
        self._epoch += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, self._epoch)

    def _fire(self, epoch: int) -> None:
        self._handle = None
        if epoch != self._epoch or not self._active:
            return
        self._task = asyncio.get_running_loop().create_task(self._cycle(epoch))

    async def _cycle(self, epoch: int) -> None:
        try:
            await self.run_turn()
        except Exception:
            logger.exception("ai_chat_turn_error")
            self.store.save(self.state)
        if self._active and epoch == self._epoch and self.state.is_running:
            delay = self.next_delay()
            logger.debug(f"ai_chat_next_turn | in={delay:.1f}s")
            self._schedule(delay)

    async def run_turn(self) -> Optional[Message]:
        epoch = self._epoch
        state = self.state
        if not state.is_running:
            return None
        agent = self.agents[state.current_turn]
        persona = agent.persona
        memories = self.memory.recent(persona.key, 5) if self.memory is not None else None

        logger.info(f"ai_chat_thinking | spk={agent.name} t={state.total_exchanges + 1}")
        text = await self.generator.generate(agent, list(state.messages), memories=memories)
        image = await self.images.resolve(text, persona) if self.images is not None else None

        if epoch != self._epoch or self.state is not state or not state.is_running:
            logger.info(f"ai_chat_turn_discarded | spk={agent.name} | stopped or reset mid-turn")
            return None

        message = Message.create(entity=agent.name, content=text, image=image)
        state.append_turn(message, self.max_messages)
        self.store.save(state)
        self.hub.publish({"type": "message", "message": message.to_dict()})
        if self.memory is not None:
            self.memory.observe(persona.key, text, state.total_exchanges)
        self._log_turn(agent.name, text, image)
        return message

    async def chat_with(self, turn: Turn, sender: str, text: str) -> str:
        """Visitor chat with one persona; leaves the live conversation untouched."""
        agent = self.agents[turn]
        memories = self.memory.recent(agent.persona.key, 5) if self.memory is not None else None
        reply = await self.generator.chat(agent, sender, text, memories=memories)
        if self.memory is not None:
            self.memory.record_chat_turn(agent.persona.key)
        return reply

    def _log_turn(self, name: str, text: str, image: Optional[str]) -> None:
        raw = text or ""
        snippet = raw if len(raw) <= 400 else raw[:400] + '...'
        # Sanitize to single line so it always prints visibly
        one_line = ' '.join(snippet.split())
        logger.info(
            f"ai_chat_turn | spk={name} t={self.state.total_exchanges} "
            f"next={self.state.current_turn.value} image={'yes' if image else 'no'} | msg='{one_line}'"
        )
