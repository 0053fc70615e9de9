# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Exclusive access gate for the shared serial bus.

Every bus operation in the service (poll reads, recovery writes, web
writes, forced refreshes) goes through one BusGate. The gate holds an
asyncio.Lock for the duration of each call, so no two requests are ever
on the wire at once. A sequence of calls is NOT atomic: another task
may get the bus between two calls from the same caller.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from .transport import BusTransport, TransportError

logger = logging.getLogger(__name__)


class BusGate:
    """BusTransport that serializes and health-tracks calls to a raw transport."""

    def __init__(self, transport: BusTransport, name: str = "bus"):
        self._transport = transport
        self._name = name
        self._lock = asyncio.Lock()

        self._total_calls = 0
        self._failed_calls = 0
        self._consecutive_failures = 0
        self._last_success_time: float | None = None
        self._last_error_time: float | None = None
        self._last_error_msg: str | None = None
        self._last_call_duration: float | None = None

    @property
    def transport(self) -> BusTransport:
        return self._transport

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def get_health(self) -> dict:
        """Return bus health metrics."""
        return {
            "name": self._name,
            "total_calls": self._total_calls,
            "failed_calls": self._failed_calls,
            "consecutive_failures": self._consecutive_failures,
            "last_success": self._last_success_time,
            "last_error": self._last_error_time,
            "last_error_msg": self._last_error_msg,
            "last_call_duration_ms": (
                round(self._last_call_duration * 1000, 1)
                if self._last_call_duration is not None else None
            ),
            "reachable": self._consecutive_failures < 10,
            "busy": self._lock.locked(),
        }

    def reset_health(self) -> None:
        self._consecutive_failures = 0
        self._failed_calls = 0
        self._last_error_msg = None
        self._last_error_time = None

    def _record_success(self):
        self._consecutive_failures = 0
        self._last_success_time = time.time()

    def _record_failure(self, msg: str):
        self._failed_calls += 1
        self._consecutive_failures += 1
        self._last_error_time = time.time()
        self._last_error_msg = msg
        if self._consecutive_failures == 1:
            logger.warning("Bus: %s", msg)
        elif self._consecutive_failures <= 5:
            logger.error("Bus: %s (failure %d)", msg, self._consecutive_failures)
        elif self._consecutive_failures % 30 == 0:
            logger.error(
                "Bus: unreachable for %d consecutive failures: %s",
                self._consecutive_failures, msg,
            )

    async def _run(self, what: str, call: Callable[[], Awaitable[Any]]) -> Any:
        async with self._lock:
            self._total_calls += 1
            start = time.monotonic()
            try:
                result = await call()
            except TransportError as e:
                self._last_call_duration = time.monotonic() - start
                self._record_failure(f"{what}: {e}")
                raise
            except Exception as e:
                self._last_call_duration = time.monotonic() - start
                self._record_failure(f"{what}: {e}")
                raise TransportError(f"{what}: {e}") from e
            self._last_call_duration = time.monotonic() - start
            self._record_success()
            return result

    # --- BusTransport ---

    async def connect(self) -> None:
        async with self._lock:
            await self._transport.connect()

    async def read_coil(self, address: int, slave: int) -> bool:
        return await self._run(
            f"read coil {address}@{slave}",
            lambda: self._transport.read_coil(address, slave),
        )

    async def write_coil(self, address: int, value: bool, slave: int) -> None:
        await self._run(
            f"write coil {address}@{slave}={int(bool(value))}",
            lambda: self._transport.write_coil(address, value, slave),
        )

    async def read_holding_register(self, address: int, slave: int) -> int:
        return await self._run(
            f"read holding {address}@{slave}",
            lambda: self._transport.read_holding_register(address, slave),
        )

    async def write_holding_register(self, address: int, value: int, slave: int) -> None:
        await self._run(
            f"write holding {address}@{slave}={value}",
            lambda: self._transport.write_holding_register(address, value, slave),
        )

    async def read_multiple_coils(self, start: int, count: int, slave: int) -> list[bool]:
        return await self._run(
            f"read coils {start}+{count}@{slave}",
            lambda: self._transport.read_multiple_coils(start, count, slave),
        )

    async def read_multiple_discretes(self, start: int, count: int, slave: int) -> list[bool]:
        return await self._run(
            f"read discretes {start}+{count}@{slave}",
            lambda: self._transport.read_multiple_discretes(start, count, slave),
        )

    async def read_multiple_holding_registers(self, start: int, count: int, slave: int) -> list[int]:
        return await self._run(
            f"read holdings {start}+{count}@{slave}",
            lambda: self._transport.read_multiple_holding_registers(start, count, slave),
        )

    async def read_multiple_input_registers(self, start: int, count: int, slave: int) -> list[int]:
        return await self._run(
            f"read inputs {start}+{count}@{slave}",
            lambda: self._transport.read_multiple_input_registers(start, count, slave),
        )

    def close(self) -> None:
        self._transport.close()
