"""
Shared pytest fixtures.

Provides:
- Settings rooted in a temporary directory (fast scheduler delays)
- Personas / agents loaded from the bundled character files
- A ready-to-use ConversationManager over a temp state file
"""
from __future__ import annotations

import random
from pathlib import Path

import pytest

from backrooms.agents import PersonaAgent, load_system_prompt
from backrooms.broadcast import BroadcastHub
from backrooms.config import Settings
from backrooms.generator import ResponseGenerator
from backrooms.manager import ConversationManager
from backrooms.memory import AgentMemoryStore
from backrooms.personas import load_personas
from backrooms.states import Turn
from backrooms.store import StateStore

from fakes import FakeChat


ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        archives_dir=tmp_path / "archives",
        characters_dir=ROOT / "characters",
        prompts_dir=ROOT / "prompts",
        admin_code="letmein",
        initial_delay=60.0,
        turn_min_delay=0.01,
        turn_max_delay=0.02,
        gallery_enabled=False,
    )


@pytest.fixture
def personas():
    return load_personas(ROOT / "characters")


@pytest.fixture
def agents(personas):
    prompt = load_system_prompt(ROOT / "prompts")
    return {
        Turn.A: PersonaAgent(personas[Turn.A], personas[Turn.B], prompt),
        Turn.B: PersonaAgent(personas[Turn.B], personas[Turn.A], prompt),
    }


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "data" / "live-conversation.json")


@pytest.fixture
def memory(tmp_path: Path) -> AgentMemoryStore:
    return AgentMemoryStore(tmp_path / "data" / "agent-memory.json")


@pytest.fixture
def hub() -> BroadcastHub:
    return BroadcastHub()


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def manager(store, hub, agents, memory, chat) -> ConversationManager:
    generator = ResponseGenerator([("fake", chat)], timeout=5.0, rng=random.Random(7))
    return ConversationManager(
        store=store,
        hub=hub,
        generator=generator,
        agents=agents,
        memory=memory,
        initial_delay=60.0,
        min_delay=0.01,
        max_delay=0.02,
        rng=random.Random(7),
    )
