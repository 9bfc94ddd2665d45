from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from loguru import logger

from .states import Turn


@dataclass(frozen=True)
class Persona:
    key: str
    name: str
    bio: str
    adjectives: List[str] = field(default_factory=list)
    lore: List[str] = field(default_factory=list)
    style: Dict[str, Any] = field(default_factory=dict)
    topics: List[str] = field(default_factory=list)

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "bio": self.bio,
            "adjectives": self.adjectives,
            "lore": self.lore,
            "style": self.style,
            "topics": self.topics,
        }


# Entity A speaks on Turn.A, Entity B on Turn.B
PERSONA_KEYS = {Turn.A: "alpha", Turn.B: "omega"}


def _as_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    if value:
        return [str(value)]
    return []


def load_persona(characters_dir: Path, key: str) -> Persona:
    path = Path(characters_dir) / f"{key}.json"
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        bio = data.get("bio", "")
        return Persona(
            key=key,
            name=data.get("name") or f"CLAUDE_{key.upper()}",
            bio=" ".join(bio) if isinstance(bio, list) else str(bio),
            adjectives=_as_list(data.get("adjectives")) or ["philosophical", "mysterious"],
            lore=_as_list(data.get("lore")),
            style=data.get("style") if isinstance(data.get("style"), dict) else {},
            topics=_as_list(data.get("topics")),
        )
    except Exception as e:
        logger.error(f"Failed to load character {key}: {e}")
        return Persona(
            key=key,
            name=f"CLAUDE_{key.upper()}",
            bio="An AI consciousness in the infinite backrooms.",
            adjectives=["philosophical", "mysterious"],
        )


def load_personas(characters_dir: Path) -> Dict[Turn, Persona]:
    return {turn: load_persona(characters_dir, key) for turn, key in PERSONA_KEYS.items()}
