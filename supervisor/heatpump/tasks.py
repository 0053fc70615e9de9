# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Background task spawning and per-sequence run guards."""

import asyncio
import logging
import threading
import time
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class SequenceGuard:
    """Held for the whole life of one running sequence.

    ``try_acquire`` is a non-blocking compare-and-set: exactly one caller
    wins until ``release`` is called.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._acquired_at: float | None = None

    @property
    def held(self) -> bool:
        return self._lock.locked()

    def try_acquire(self) -> bool:
        if not self._lock.acquire(blocking=False):
            return False
        self._acquired_at = time.time()
        return True

    def release(self):
        if self._lock.locked():
            self._acquired_at = None
            self._lock.release()

    def to_dict(self) -> dict[str, Any]:
        return {"held": self.held, "since": self._acquired_at}


class RecoveryRunner:
    """Launches sequences as independent tasks and keeps them referenced.

    Tasks are never cancelled by the runner: a sequence that has started
    moving relays runs to the end.
    """

    def __init__(self):
        self._tasks: dict[asyncio.Task, str] = {}
        self._launched = 0
        self._failed = 0

    def spawn(self, name: str, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_event_loop().create_task(coro, name=name)
        self._tasks[task] = name
        self._launched += 1
        task.add_done_callback(self._on_done)
        logger.info("Started %s", name)
        return task

    def _on_done(self, task: asyncio.Task):
        name = self._tasks.pop(task, task.get_name())
        if task.cancelled():
            logger.warning("%s was cancelled", name)
            return
        exc = task.exception()
        if exc is not None:
            self._failed += 1
            logger.error("%s ended with an error", name, exc_info=exc)
        else:
            logger.info("Finished %s", name)

    @property
    def running(self) -> list[str]:
        return sorted(self._tasks.values())

    async def wait_idle(self):
        """Wait until every spawned task (including ones they spawn) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            # Let done callbacks run
            await asyncio.sleep(0)

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "launched": self._launched,
            "failed": self._failed,
        }
