# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Bus transport protocol shared by the Modbus RTU client and the mock bus.

All addresses are Modbus protocol addresses; ``slave`` is the device's
bus address. Implementations raise TransportError for any bus-level
failure (timeout, exception response, malformed response, port closed).

Implementations: ModbusRTUClient, MockBus, and BusGate (which wraps one
of the others and is the only object the rest of the service talks to).
"""

from typing import Protocol, runtime_checkable


class TransportError(Exception):
    """A bus operation failed. The caller abandons the current operation."""


@runtime_checkable
class BusTransport(Protocol):

    async def connect(self) -> None:
        """Open the bus."""
        ...

    async def read_coil(self, address: int, slave: int) -> bool:
        ...

    async def write_coil(self, address: int, value: bool, slave: int) -> None:
        ...

    async def read_holding_register(self, address: int, slave: int) -> int:
        ...

    async def write_holding_register(self, address: int, value: int, slave: int) -> None:
        ...

    async def read_multiple_coils(self, start: int, count: int, slave: int) -> list[bool]:
        """Bit-unpacked coils; index 0 is the coil at ``start``."""
        ...

    async def read_multiple_discretes(self, start: int, count: int, slave: int) -> list[bool]:
        ...

    async def read_multiple_holding_registers(self, start: int, count: int, slave: int) -> list[int]:
        ...

    async def read_multiple_input_registers(self, start: int, count: int, slave: int) -> list[int]:
        ...

    def close(self) -> None:
        """Close the bus."""
        ...
