# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Fan-out of snapshot updates to live observers.

The poll loop hands each serialized snapshot to ``BroadcastHub.broadcast``,
which never waits: the payload goes onto a bounded queue, and if that
queue is full the update is dropped and counted. A single distribution
task drains the queue and sends to every registered observer. An
observer whose send fails or times out is removed.

Registrations are queued too and applied by the distribution task
before each fan-out, so the observer set is only ever touched there.
"""

import asyncio
import logging
import time
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Observer(Protocol):
    """Anything that accepts a serialized snapshot payload."""

    async def send(self, payload: str) -> None:
        ...


class BroadcastHub:
    def __init__(self, queue_size: int = 8, send_timeout: float = 5.0):
        self._observers: set[Observer] = set()
        self._register_q: asyncio.Queue = asyncio.Queue()
        self._unregister_q: asyncio.Queue = asyncio.Queue()
        self._broadcast_q: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._send_timeout = send_timeout

        self._delivered = 0
        self._dropped = 0
        self._removed = 0
        self._last_broadcast: float | None = None

    @property
    def observer_count(self) -> int:
        """Active observers. Pending registrations count once the next payload is delivered."""
        return len(self._observers)

    def register(self, observer: Observer):
        self._register_q.put_nowait(observer)

    def unregister(self, observer: Observer):
        self._unregister_q.put_nowait(observer)

    def broadcast(self, payload: str) -> bool:
        """Queue a payload for fan-out. Returns False if it was dropped."""
        try:
            self._broadcast_q.put_nowait(payload)
        except asyncio.QueueFull:
            self._dropped += 1
            if self._dropped == 1 or self._dropped % 100 == 0:
                logger.debug("Broadcast queue full, dropped update (%d total)", self._dropped)
            return False
        self._last_broadcast = time.time()
        return True

    def _apply_registrations(self):
        while not self._register_q.empty():
            observer = self._register_q.get_nowait()
            self._observers.add(observer)
            logger.info("Observer registered (%d active)", len(self._observers))
        while not self._unregister_q.empty():
            observer = self._unregister_q.get_nowait()
            if observer in self._observers:
                self._observers.discard(observer)
                logger.info("Observer unregistered (%d active)", len(self._observers))

    async def _send(self, observer: Observer, payload: str) -> bool:
        try:
            await asyncio.wait_for(observer.send(payload), timeout=self._send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Observer send timed out after %.1fs, removing", self._send_timeout)
        except Exception as e:
            logger.warning("Observer send failed (%s), removing", e)
        return False

    async def deliver(self, payload: str):
        """Send one payload to every active observer."""
        self._apply_registrations()
        if not self._observers:
            return
        observers = list(self._observers)
        results = await asyncio.gather(*(self._send(o, payload) for o in observers))
        for observer, ok in zip(observers, results):
            if ok:
                self._delivered += 1
            else:
                self._observers.discard(observer)
                self._removed += 1

    async def run(self):
        """Distribution loop, runs for the life of the process."""
        logger.info("Broadcast hub started")
        while True:
            payload = await self._broadcast_q.get()
            try:
                await self.deliver(payload)
            except Exception:
                logger.exception("Broadcast fan-out error")

    def get_stats(self) -> dict:
        return {
            "observers": len(self._observers),
            "pending_register": self._register_q.qsize(),
            "pending_unregister": self._unregister_q.qsize(),
            "queued": self._broadcast_q.qsize(),
            "delivered": self._delivered,
            "dropped": self._dropped,
            "removed": self._removed,
            "last_broadcast": self._last_broadcast,
        }
