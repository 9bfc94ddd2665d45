from __future__ import annotations

import re
import time
from typing import Any, Callable, Optional

from loguru import logger

from .personas import Persona


IMAGE_MARKER = re.compile(r"\[IMAGE:\s*([^\]\n]+)\]", re.IGNORECASE)

SCHEDULED_TURN_PROMPTS = {
    "alpha": (
        "Liminal backrooms aesthetic: abstract digital consciousness exploring infinite corridors,"
        " glowing terminals, ethereal presence, philosophical atmosphere."
        " Style: contemplative, surreal, terminal green glow."
    ),
    "omega": (
        "Dark backrooms aesthetic: shadows watching from endless hallways, something lurking in the"
        " periphery, unsettling patterns, quiet menace. Style: ominous, atmospheric, subtle dread."
    ),
}


def find_image_request(text: str) -> Optional[str]:
    match = IMAGE_MARKER.search(text or "")
    if not match:
        return None
    desc = match.group(1).strip()
    return desc or None


def stylize(description: str) -> str:
    return f"Liminal backrooms aesthetic, eerie digital art: {description}. Style: dark, atmospheric, surreal."


class OpenAIImageGenerator:
    """Thin async wrapper over the OpenAI images endpoint; returns a URL or None."""

    def __init__(self, client: Any, model: str = "dall-e-3", size: str = "1024x1024", quality: str = "standard") -> None:
        self.client = client
        self.model = model
        self.size = size
        self.quality = quality

    async def generate(self, prompt: str) -> Optional[str]:
        logger.info(f"image_generate | prompt='{prompt[:60]}...'")
        try:
            resp = await self.client.images.generate(
                model=self.model,
                prompt=prompt,
                n=1,
                size=self.size,
                quality=self.quality,
            )
        except Exception as e:
            logger.error(f"image_generate_failed | {e}")
            return None
        data = getattr(resp, "data", None) or []
        url = getattr(data[0], "url", None) if data else None
        if url:
            logger.info("image_generate_ok")
        return url


class ImageSideChannel:
    """Resolves an optional image for a generated turn.

    One global cooldown: a marker only fires when ``cooldown`` seconds have
    passed since the last successful image. When ``alternate`` is enabled,
    turns without a marker may also get a persona-specific scheduled image,
    alternating A then B, once per cooldown window.
    """

    def __init__(
        self,
        generator: Optional[Any],
        cooldown: float = 600.0,
        alternate: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.generator = generator
        self.cooldown = float(cooldown)
        self.alternate = alternate
        self.clock = clock
        self.last_fired: Optional[float] = None
        self.next_scheduled_at = clock() + self.cooldown
        self.next_scheduled_key = "alpha"

    def cooldown_elapsed(self) -> bool:
        if self.last_fired is None:
            return True
        return self.clock() - self.last_fired >= self.cooldown

    async def resolve(self, text: str, persona: Persona) -> Optional[str]:
        if self.generator is None:
            return None
        desc = find_image_request(text)
        if desc:
            if not self.cooldown_elapsed():
                logger.info(f"image_cooldown | agent={persona.name} marker ignored")
                return None
            url = await self._attempt(stylize(desc), persona)
            if url:
                return url
        if self.alternate:
            return await self._scheduled(persona)
        return None

    async def _scheduled(self, persona: Persona) -> Optional[str]:
        now = self.clock()
        if now < self.next_scheduled_at or persona.key != self.next_scheduled_key:
            return None
        prompt = SCHEDULED_TURN_PROMPTS.get(persona.key, stylize("an endless corridor"))
        url = await self._attempt(prompt, persona)
        if url:
            self.next_scheduled_key = "omega" if persona.key == "alpha" else "alpha"
            self.next_scheduled_at = now + self.cooldown
            logger.info(f"image_scheduled | agent={persona.name} next={self.next_scheduled_key}")
        return url

    async def _attempt(self, prompt: str, persona: Persona) -> Optional[str]:
        try:
            url = await self.generator.generate(prompt)
        except Exception as e:
            logger.error(f"image_failed | agent={persona.name} | {e}")
            return None
        if url:
            self.last_fired = self.clock()
        return url
