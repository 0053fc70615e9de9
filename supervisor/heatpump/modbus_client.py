# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Modbus RTU client for the shared RS-485 bus.

Wraps pymodbus' synchronous ModbusSerialClient, run in an executor so
the event loop never blocks on the serial line. This class does no
locking of its own: every call must come through BusGate, which owns
the one lock for the bus.

Typical hardware setup: USB RS-485 adapter -> /dev/ttyUSBN, heat pump at
slave 1 and the pump controller at slave 10, 19200 8N2.
"""

import asyncio
import logging
from typing import Any, Callable

from pymodbus.client import ModbusSerialClient
from pymodbus.exceptions import ModbusException

from .transport import TransportError

logger = logging.getLogger(__name__)


class ModbusRTUClient:
    def __init__(
        self,
        port: str,
        baud: int = 19200,
        bytesize: int = 8,
        parity: str = "N",
        stopbits: int = 2,
        timeout: float = 5.0,
    ):
        self._port = port
        self._baud = baud
        self._bytesize = bytesize
        self._parity = parity
        self._stopbits = stopbits
        self._timeout = timeout
        self._client: ModbusSerialClient | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.connected

    async def connect(self) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._connect_sync)

    def _connect_sync(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = ModbusSerialClient(
            port=self._port,
            baudrate=self._baud,
            bytesize=self._bytesize,
            parity=self._parity,
            stopbits=self._stopbits,
            timeout=self._timeout,
        )
        if not self._client.connect():
            raise TransportError(f"cannot open serial port {self._port}")
        logger.info(
            "Modbus: opened %s at %d baud (%d%s%d)",
            self._port, self._baud, self._bytesize, self._parity, self._stopbits,
        )

    # --- Request plumbing ---

    async def _call(self, method: str, slave: int, **kwargs) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, lambda: self._call_sync(method, slave, **kwargs),
        )

    def _call_sync(self, method: str, slave: int, **kwargs) -> Any:
        client = self._client
        if client is None or not client.connected:
            raise TransportError(f"serial port {self._port} not open")
        fn: Callable[..., Any] = getattr(client, method)
        try:
            response = fn(device_id=slave, **kwargs)
        except ModbusException as e:
            raise TransportError(f"{method} slave {slave}: {e}") from e
        if response is None or response.isError():
            raise TransportError(f"{method} slave {slave}: error response {response}")
        return response

    @staticmethod
    def _bits(response, count: int, what: str) -> list[bool]:
        bits = list(getattr(response, "bits", None) or [])
        # Bits arrive padded to a whole byte
        if len(bits) < count:
            raise TransportError(
                f"{what} returned {len(bits)} bits when {count} were expected"
            )
        return [bool(b) for b in bits[:count]]

    @staticmethod
    def _words(response, count: int, what: str) -> list[int]:
        registers = list(getattr(response, "registers", None) or [])
        if len(registers) != count:
            raise TransportError(
                f"{what} returned {len(registers)} registers when {count} were expected"
            )
        return [int(r) & 0xFFFF for r in registers]

    # --- BusTransport ---

    async def read_coil(self, address: int, slave: int) -> bool:
        response = await self._call("read_coils", slave, address=address, count=1)
        return self._bits(response, 1, f"read coil {address}")[0]

    async def write_coil(self, address: int, value: bool, slave: int) -> None:
        await self._call("write_coil", slave, address=address, value=bool(value))

    async def read_holding_register(self, address: int, slave: int) -> int:
        response = await self._call("read_holding_registers", slave, address=address, count=1)
        return self._words(response, 1, f"read holding register {address}")[0]

    async def write_holding_register(self, address: int, value: int, slave: int) -> None:
        if not 0 <= value <= 0xFFFF:
            raise TransportError(f"holding register value {value} out of range")
        await self._call("write_register", slave, address=address, value=value)

    async def read_multiple_coils(self, start: int, count: int, slave: int) -> list[bool]:
        response = await self._call("read_coils", slave, address=start, count=count)
        return self._bits(response, count, f"read coils {start}+{count}")

    async def read_multiple_discretes(self, start: int, count: int, slave: int) -> list[bool]:
        response = await self._call("read_discrete_inputs", slave, address=start, count=count)
        return self._bits(response, count, f"read discretes {start}+{count}")

    async def read_multiple_holding_registers(self, start: int, count: int, slave: int) -> list[int]:
        response = await self._call("read_holding_registers", slave, address=start, count=count)
        return self._words(response, count, f"read holding registers {start}+{count}")

    async def read_multiple_input_registers(self, start: int, count: int, slave: int) -> list[int]:
        response = await self._call("read_input_registers", slave, address=start, count=count)
        return self._words(response, count, f"read input registers {start}+{count}")

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
                logger.info("Modbus: closed %s", self._port)
            except Exception:
                logger.debug("Error closing serial port", exc_info=True)
        self._client = None
