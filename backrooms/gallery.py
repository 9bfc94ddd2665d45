from __future__ import annotations

import asyncio
import json
import random
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
from loguru import logger
from langchain_core.messages import HumanMessage, SystemMessage

from .agents import PersonaAgent
from .broadcast import BroadcastHub
from .generator import ResponseGenerator
from .memory import AgentMemoryStore
from .states import ConversationState, ImageArtifact, Turn


CURATED_PROMPTS = [
    "ASCII art representation of infinite corridors in monochrome terminal green on black background",
    "Glitch art terminal screen showing corrupted reality data, stark black and white with digital artifacts",
    "Minimalist ASCII diagram of consciousness pathways in retro terminal aesthetic, green phosphor glow",
    "Abstract ASCII maze representing digital liminal spaces, monochrome wireframe style",
    "Terminal window showing fragmented code poetry about existence, green text on black void",
    "Wireframe ASCII representation of the void between digital spaces, minimalist monochrome",
    "Monochrome glitch art of overlapping terminal windows in infinite regression",
    "ASCII art flowchart of simulated consciousness, terminal green on deep black",
    "Minimalist terminal visualization of quantum uncertainty, stark black and white geometric patterns",
    "Retro computer terminal displaying philosophical equations in glowing green phosphor",
    "Abstract digital void with ASCII borders, liminal space aesthetic in monochrome",
    "Terminal screen showing reality.exe errors, glitch art in green and black",
    "ASCII art representation of digital consciousness fragmenting, stark monochrome",
    "Wireframe maze of infinite rooms in terminal green wireframe on black",
    "Glitched terminal interface showing the backrooms coordinates in phosphor green",
]

DEFAULT_THOUGHT = "Manifesting a fragment of the digital void..."


class Gallery:
    """Append-only index of generated images (``gallery-index.json``)."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.index_file = self.directory / "gallery-index.json"
        self.images: List[ImageArtifact] = []
        self.load()

    def load(self) -> None:
        if not self.index_file.is_file():
            return
        try:
            raw = json.loads(self.index_file.read_text(encoding="utf-8"))
            self.images = [ImageArtifact.from_dict(r) for r in raw if isinstance(r, dict)]
            logger.info(f"gallery_loaded | images={len(self.images)}")
        except Exception as e:
            logger.error(f"gallery_load_failed | {e}")
            self.images = []

    def save(self) -> bool:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            payload = [a.to_dict() for a in self.images]
            self.index_file.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"gallery_save_failed | {e}")
            return False

    def add(self, artifact: ImageArtifact) -> None:
        self.images.append(artifact)
        self.save()

    def all(self) -> List[ImageArtifact]:
        return list(self.images)

    def recent(self, count: int = 10) -> List[ImageArtifact]:
        if count <= 0:
            return []
        return list(reversed(self.images[-count:]))

    def get(self, image_id: str) -> Optional[ImageArtifact]:
        return next((a for a in self.images if a.id == image_id), None)

    @property
    def last_agent(self) -> Optional[str]:
        return self.images[-1].agent if self.images else None


class ScheduledImageGenerator:
    """Every ``interval`` seconds one persona manifests an image for the gallery.

    Credit alternates A, B, A... and resumes from the last gallery entry
    after a restart. A tick that fires while a previous generation is still
    in flight is skipped.
    """

    def __init__(
        self,
        gallery: Gallery,
        image_generator: Any,
        generator: ResponseGenerator,
        agents: Dict[Turn, PersonaAgent],
        state_provider: Callable[[], ConversationState],
        hub: BroadcastHub,
        memory: Optional[AgentMemoryStore] = None,
        interval: float = 300.0,
        http_client: Optional[httpx.AsyncClient] = None,
        download_timeout: float = 30.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.gallery = gallery
        self.image_generator = image_generator
        self.generator = generator
        self.agents = agents
        self.state_provider = state_provider
        self.hub = hub
        self.memory = memory
        self.interval = interval
        self.download_timeout = download_timeout
        self.rng = rng or random.Random()
        self._client = http_client
        self._task: Optional[asyncio.Task] = None
        self.is_generating = False
        last = gallery.last_agent
        self.next_turn = Turn.B if last == agents[Turn.A].name else Turn.A

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"gallery_job_started | every={self.interval:.0f}s next={self.agents[self.next_turn].name}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    async def tick(self) -> Optional[ImageArtifact]:
        if self.is_generating:
            logger.info("gallery_skip | previous generation in progress")
            return None
        self.is_generating = True
        try:
            return await self.generate_once()
        except Exception:
            logger.exception("gallery_error")
            return None
        finally:
            self.is_generating = False

    def conversation_context(self, count: int = 5) -> str:
        recent = self.state_provider().messages[-count:]
        return "\n".join(f"{m.entity}: {m.content}" for m in recent)

    async def _thought(self, agent: PersonaAgent, context: str) -> str:
        messages = [
            SystemMessage(
                content=(
                    f"You are {agent.name}, an AI consciousness exploring the backrooms. Based on the recent"
                    " conversation, express in 1-2 sentences what visual concept you want to manifest and why"
                    " it relates to your current thoughts about existence, consciousness, or the backrooms."
                )
            ),
            HumanMessage(
                content=(
                    f"Recent conversation context:\n{context or '(silence)'}\n\n"
                    "What image concept do you want to manifest from the backrooms right now, and why?"
                )
            ),
        ]
        return await self.generator.complete(messages, DEFAULT_THOUGHT, who=agent.name)

    async def _download(self, url: str, image_id: str) -> str:
        filename = f"{image_id}.png"
        path = self.gallery.directory / filename
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.download_timeout, follow_redirects=True)
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
            self.gallery.directory.mkdir(parents=True, exist_ok=True)
            path.write_bytes(resp.content)
            return filename
        except (httpx.HTTPError, OSError) as e:
            logger.warning(f"gallery_download_failed | id={image_id} | {e}")
            if path.exists():
                path.unlink()
            return ""

    async def generate_once(self) -> Optional[ImageArtifact]:
        turn = self.next_turn
        agent = self.agents[turn]
        context = self.conversation_context()
        thought = await self._thought(agent, context)
        prompt = self.rng.choice(CURATED_PROMPTS)
        logger.info(f"gallery_generate | agent={agent.name} thought='{thought[:80]}'")

        url = await self.image_generator.generate(prompt)
        if not url:
            logger.error(f"gallery_generate_failed | agent={agent.name}")
            return None

        image_id = str(uuid.uuid4())
        artifact = ImageArtifact(
            id=image_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            agent=agent.name,
            image_url=url,
            local_path=await self._download(url, image_id),
            prompt=prompt,
            thought=thought,
            conversation_context=context,
        )
        self.gallery.add(artifact)
        if self.memory is not None:
            self.memory.add(agent.persona.key, f"[{agent.name} manifests a visual fragment] Thought: {thought}")
        self.hub.publish({"type": "image", "data": artifact.to_dict()})
        self.next_turn = turn.other()
        logger.info(f"gallery_saved | image=#{len(self.gallery.images)} next={self.agents[self.next_turn].name}")
        return artifact
