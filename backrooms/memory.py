from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger


MAX_MEMORIES = 50
MEMORY_SNIPPET = 300
REFLECTIVE_TERMS = ("remember", "recall", "realized", "understand", "believe", "know that", "truth")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AgentMemoryStore:
    """Long-term memory per persona key, persisted as one JSON file."""

    def __init__(self, path: Path, keys: Iterable[str] = ("alpha", "omega")) -> None:
        self.path = Path(path)
        self.data: Dict[str, Dict[str, Any]] = {k: self._empty() for k in keys}
        self.load()

    @staticmethod
    def _empty() -> Dict[str, Any]:
        return {"memories": [], "lastActive": None, "chatTurns": 0}

    def _entry(self, key: str) -> Dict[str, Any]:
        if key not in self.data:
            self.data[key] = self._empty()
        return self.data[key]

    def load(self) -> None:
        if not self.path.is_file():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError(f"expected an object, got {type(raw).__name__}")
            loaded = {key: self._coerce(entry) for key, entry in raw.items() if isinstance(entry, dict)}
        except Exception as e:
            logger.error(f"memory_load_failed | {e}")
            return
        self.data.update(loaded)
        counts = ", ".join(f"{k}={len(v['memories'])}" for k, v in self.data.items())
        logger.info(f"memory_loaded | {counts}")

    @classmethod
    def _coerce(cls, entry: Dict[str, Any]) -> Dict[str, Any]:
        merged = cls._empty()
        memories = entry.get("memories")
        if isinstance(memories, list):
            merged["memories"] = [m for m in memories if isinstance(m, dict)][-MAX_MEMORIES:]
        last = entry.get("lastActive")
        merged["lastActive"] = last if isinstance(last, str) else None
        try:
            merged["chatTurns"] = int(entry.get("chatTurns") or 0)
        except (TypeError, ValueError):
            merged["chatTurns"] = 0
        return merged

    def save(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self.data, ensure_ascii=False, indent=2), encoding="utf-8")
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"memory_save_failed | {e}")
            return False

    def add(self, key: str, content: str) -> None:
        entry = self._entry(key)
        entry["memories"].append({"content": content, "timestamp": _utc_now()})
        entry["memories"] = entry["memories"][-MAX_MEMORIES:]
        entry["lastActive"] = _utc_now()
        self.save()

    def observe(self, key: str, text: str, total_exchanges: int) -> bool:
        """Keep significant replies; always marks the persona active."""
        low = (text or "").lower()
        significant = len(text or "") > 100 and (
            any(t in low for t in REFLECTIVE_TERMS) or total_exchanges % 10 == 0
        )
        if significant:
            self.add(key, text[:MEMORY_SNIPPET])
        else:
            self._entry(key)["lastActive"] = _utc_now()
            self.save()
        return significant

    def record_chat_turn(self, key: str) -> int:
        entry = self._entry(key)
        entry["chatTurns"] = int(entry.get("chatTurns") or 0) + 1
        entry["lastActive"] = _utc_now()
        self.save()
        return entry["chatTurns"]

    def recent(self, key: str, count: int = 10) -> List[str]:
        return [m.get("content", "") for m in self._entry(key)["memories"][-count:]]

    def summary(self, names: Optional[Dict[str, str]] = None, count: int = 5) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, entry in self.data.items():
            label = (names or {}).get(key, key)
            out[label] = {
                "memoryCount": len(entry["memories"]),
                "lastActive": entry["lastActive"],
                "chatTurns": int(entry.get("chatTurns") or 0),
                "recentMemories": self.recent(key, count),
            }
        return out

    def snapshot(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self.data))
