from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any, Callable, Dict, Optional

from loguru import logger

from .archive import ArchiveManager
from .manager import ConversationManager
from .memory import AgentMemoryStore


class EmergencyArchiver:
    """Last-chance snapshot when the process is going down.

    Everything here is synchronous and local-only so it completes before
    exit. Handlers chain to whatever was installed before them; the fatal
    condition itself is never swallowed.
    """

    def __init__(
        self,
        archive: ArchiveManager,
        manager: ConversationManager,
        memory: Optional[AgentMemoryStore] = None,
    ) -> None:
        self.archive = archive
        self.manager = manager
        self.memory = memory
        self._previous_signals: Dict[int, Any] = {}
        self._previous_excepthook: Optional[Callable[..., Any]] = None

    def flush(self, reason: str) -> Optional[str]:
        logger.warning(f"emergency_archive | reason={reason}")
        filename = None
        try:
            if self.manager.state.messages:
                filename = self.archive.emergency(reason)
            self.manager.store.save(self.manager.state)
            if self.memory is not None:
                self.memory.save()
        except Exception as e:
            logger.error(f"emergency_archive_failed | reason={reason} | {e}")
        return filename

    def _handle_signal(self, signum: int, frame: Any) -> None:
        name = signal.Signals(signum).name
        self.flush(f"emergency_{name.lower()}")
        previous = self._previous_signals.get(signum, signal.SIG_DFL)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            signal.raise_signal(signum)

    def install_signal_handlers(self, signals=(signal.SIGTERM, signal.SIGINT)) -> None:
        for sig in signals:
            try:
                self._previous_signals[sig] = signal.getsignal(sig)
                signal.signal(sig, self._handle_signal)
            except ValueError as e:
                # Only the main thread may install signal handlers
                logger.warning(f"emergency_signal_skip | sig={sig} | {e}")
                self._previous_signals.pop(sig, None)

    def uninstall_signal_handlers(self) -> None:
        for sig, previous in self._previous_signals.items():
            try:
                signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
            except ValueError:
                pass
        self._previous_signals.clear()

    def _excepthook(self, exc_type, exc, tb) -> None:
        if not issubclass(exc_type, KeyboardInterrupt):
            logger.opt(exception=(exc_type, exc, tb)).critical("uncaught_exception")
            self.flush("emergency_crash")
        hook = self._previous_excepthook or sys.__excepthook__
        hook(exc_type, exc, tb)

    def install_excepthook(self) -> None:
        if self._previous_excepthook is None:
            self._previous_excepthook = sys.excepthook
            sys.excepthook = self._excepthook

    def uninstall_excepthook(self) -> None:
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def install_loop_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        previous = loop.get_exception_handler()

        def handler(lp: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
            logger.error(f"unhandled_async_error | {context.get('message')} | {context.get('exception')!r}")
            self.flush("emergency_rejection")
            if previous is not None:
                previous(lp, context)
            else:
                lp.default_exception_handler(context)

        loop.set_exception_handler(handler)
