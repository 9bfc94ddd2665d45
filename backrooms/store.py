from __future__ import annotations

import json
from pathlib import Path

from loguru import logger

from .states import ConversationState


class StateStore:
    """Single JSON file holding the live ConversationState.

    Whole-document overwrite on every save; no journaling. Reads never fail:
    a missing or corrupt file yields a fresh stopped state.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> ConversationState:
        if not self.path.is_file():
            return ConversationState()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            state = ConversationState.from_dict(raw)
        except Exception as e:
            logger.warning(f"state_load_failed | path={self.path} | {e}")
            return ConversationState()
        logger.info(f"state_loaded | messages={len(state.messages)} exchanges={state.total_exchanges}")
        return state

    def save(self, state: ConversationState) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(state.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"state_save_failed | path={self.path} | {e}")
            return False
