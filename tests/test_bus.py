# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Tests for the bus layer: BusGate, MockBus and the pymodbus RTU client."""

import asyncio
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "supervisor"))

from heatpump import registers as reg
from heatpump.bus import BusGate
from heatpump.mock_bus import MockBus
from heatpump.modbus_client import ModbusRTUClient
from heatpump.transport import BusTransport, TransportError
from pymodbus.exceptions import ModbusIOException


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class SlowTransport:
    """Transport whose reads yield to the loop, recording overlap."""

    def __init__(self):
        self.in_flight = 0
        self.max_in_flight = 0

    async def _op(self, result):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return result

    async def connect(self):
        pass

    async def read_coil(self, address, slave):
        return await self._op(True)

    async def write_coil(self, address, value, slave):
        await self._op(None)

    async def read_holding_register(self, address, slave):
        return await self._op(7)

    async def write_holding_register(self, address, value, slave):
        await self._op(None)

    async def read_multiple_coils(self, start, count, slave):
        return await self._op([False] * count)

    async def read_multiple_discretes(self, start, count, slave):
        return await self._op([False] * count)

    async def read_multiple_holding_registers(self, start, count, slave):
        return await self._op([0] * count)

    async def read_multiple_input_registers(self, start, count, slave):
        return await self._op([0] * count)

    def close(self):
        pass


def make_response(bits=None, registers=None, error=False):
    resp = MagicMock()
    resp.isError.return_value = error
    resp.bits = bits
    resp.registers = registers
    return resp


# ===========================================================================
# BusGate
# ===========================================================================

class TestBusGate:
    def test_gate_and_transports_satisfy_protocol(self):
        assert isinstance(BusGate(MockBus()), BusTransport)
        assert isinstance(MockBus(), BusTransport)
        assert isinstance(ModbusRTUClient("/dev/null"), BusTransport)

    @pytest.mark.asyncio
    async def test_calls_never_overlap(self):
        transport = SlowTransport()
        gate = BusGate(transport)
        await asyncio.gather(
            gate.read_multiple_coils(1, 8, 10),
            gate.write_coil(17, True, 1),
            gate.read_holding_register(4, 10),
            gate.read_multiple_input_registers(1, 16, 10),
        )
        assert transport.max_in_flight == 1
        assert gate.get_health()["total_calls"] == 4

    @pytest.mark.asyncio
    async def test_failure_counted_and_reraised(self, mock_bus):
        gate = BusGate(mock_bus)
        mock_bus.set_slave_offline(10)
        with pytest.raises(TransportError):
            await gate.read_holding_register(4, 10)
        health = gate.get_health()
        assert health["failed_calls"] == 1
        assert health["consecutive_failures"] == 1
        assert "slave 10" in health["last_error_msg"]

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, mock_bus):
        gate = BusGate(mock_bus)
        mock_bus.fail_next(3)
        for _ in range(3):
            with pytest.raises(TransportError):
                await gate.read_coil(17, 1)
        assert gate.consecutive_failures == 3
        await gate.read_coil(17, 1)
        assert gate.consecutive_failures == 0
        assert gate.get_health()["failed_calls"] == 3

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self):
        transport = MagicMock()

        async def boom(address, slave):
            raise OSError("port vanished")

        transport.read_coil = boom
        gate = BusGate(transport)
        with pytest.raises(TransportError, match="port vanished"):
            await gate.read_coil(1, 1)

    @pytest.mark.asyncio
    async def test_unreachable_after_ten_failures(self, mock_bus):
        gate = BusGate(mock_bus)
        mock_bus.fail_next(10)
        for _ in range(10):
            with pytest.raises(TransportError):
                await gate.read_coil(1, 1)
        assert gate.get_health()["reachable"] is False
        gate.reset_health()
        assert gate.get_health()["reachable"] is True


# ===========================================================================
# MockBus
# ===========================================================================

class TestMockBus:
    @pytest.mark.asyncio
    async def test_not_connected_raises(self):
        bus = MockBus()
        with pytest.raises(TransportError):
            await bus.read_coil(1, 1)

    @pytest.mark.asyncio
    async def test_illegal_address_raises(self, mock_bus):
        with pytest.raises(TransportError, match="illegal data address"):
            await mock_bus.read_multiple_coils(1, 9, 10)
        with pytest.raises(TransportError):
            await mock_bus.read_holding_register(0, 1)

    @pytest.mark.asyncio
    async def test_pump_setting_drives_pump_and_flow(self, mock_bus):
        assert await mock_bus.read_multiple_discretes(1, 4, 10) == [False, True, True, False]
        await mock_bus.write_holding_register(reg.COLD_PUMP_SETTING, 100, 10)
        coils = await mock_bus.read_multiple_coils(1, 8, 10)
        flows = await mock_bus.read_multiple_discretes(1, 4, 10)
        assert coils[reg.index(reg.COLD_PUMP_COIL)] is True
        assert flows[reg.index(reg.COLD_FLOW_DISCRETE)] is False
        assert flows[reg.index(reg.REJECT_FLOW_DISCRETE)] is True

    @pytest.mark.asyncio
    async def test_bms_coil_runs_heat_pump(self, mock_bus):
        await mock_bus.write_coil(reg.BMS_ON_OFF_COIL, True, 1)
        holdings = await mock_bus.read_multiple_holding_registers(1, 28, 1)
        assert holdings[reg.index(reg.INVERTER_STATUS_HOLDING)] == reg.INVERTER_RUNNING
        assert holdings[reg.index(reg.MOTOR_CURRENT_HOLDING)] > 0
        assert await mock_bus.read_coil(reg.MAIN_WATER_PUMP_COIL, 1) is True

    @pytest.mark.asyncio
    async def test_contactor_takes_inverter_offline(self, mock_bus):
        await mock_bus.write_coil(reg.INVERTER_CONTACTOR_COIL, True, 10)
        assert await mock_bus.read_coil(reg.INVERTER_OFFLINE_ALARM_COIL, 1) is True
        await mock_bus.write_coil(reg.INVERTER_CONTACTOR_COIL, False, 10)
        assert await mock_bus.read_coil(reg.INVERTER_OFFLINE_ALARM_COIL, 1) is False

    @pytest.mark.asyncio
    async def test_inverter_stall(self, mock_bus):
        mock_bus.inject_inverter_stall()
        status = await mock_bus.read_holding_register(reg.INVERTER_STATUS_HOLDING, 1)
        assert status == reg.INVERTER_RUNNING
        assert await mock_bus.read_holding_register(reg.MOTOR_CURRENT_HOLDING, 1) == 0

    @pytest.mark.asyncio
    async def test_alarm_reset_keeps_flow_alarm_without_flow(self, mock_bus):
        mock_bus.inject_flow_alarm(switch_made=False)
        await mock_bus.write_coil(reg.ALARM_RESET_COIL, True, 1)
        assert await mock_bus.read_coil(reg.WATER_FLOW_SWITCH_ALARM_COIL, 1) is True
        mock_bus.set_flow_switch(True)
        await mock_bus.write_coil(reg.ALARM_RESET_COIL, True, 1)
        assert await mock_bus.read_coil(reg.WATER_FLOW_SWITCH_ALARM_COIL, 1) is False
        assert await mock_bus.read_coil(reg.ALARM_RESET_COIL, 1) is False

    @pytest.mark.asyncio
    async def test_writes_are_logged(self, mock_bus):
        await mock_bus.write_coil(17, True, 1)
        await mock_bus.write_holding_register(3, 100, 10)
        assert mock_bus.writes == [(1, "coil", 17, 1), (10, "holding", 3, 100)]

    @pytest.mark.asyncio
    async def test_out_of_range_holding_value(self, mock_bus):
        with pytest.raises(TransportError):
            await mock_bus.write_holding_register(3, 70000, 10)


# ===========================================================================
# ModbusRTUClient (pymodbus mocked)
# ===========================================================================

@pytest.fixture
def pymodbus_client():
    with patch("heatpump.modbus_client.ModbusSerialClient") as cls:
        instance = cls.return_value
        instance.connect.return_value = True
        instance.connected = True
        yield cls, instance


class TestModbusRTUClient:
    @pytest.mark.asyncio
    async def test_connect_uses_serial_settings(self, pymodbus_client):
        cls, _ = pymodbus_client
        client = ModbusRTUClient("/dev/ttyUSB0", baud=19200, stopbits=2, timeout=5.0)
        await client.connect()
        kwargs = cls.call_args.kwargs
        assert kwargs["port"] == "/dev/ttyUSB0"
        assert kwargs["baudrate"] == 19200
        assert kwargs["bytesize"] == 8
        assert kwargs["parity"] == "N"
        assert kwargs["stopbits"] == 2
        assert client.is_connected

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self, pymodbus_client):
        _, instance = pymodbus_client
        instance.connect.return_value = False
        client = ModbusRTUClient("/dev/ttyUSB9")
        with pytest.raises(TransportError, match="ttyUSB9"):
            await client.connect()

    @pytest.mark.asyncio
    async def test_call_before_connect_raises(self):
        client = ModbusRTUClient("/dev/ttyUSB0")
        with pytest.raises(TransportError, match="not open"):
            await client.read_coil(1, 1)

    @pytest.mark.asyncio
    async def test_read_coils_truncates_byte_padding(self, pymodbus_client):
        _, instance = pymodbus_client
        instance.read_coils.return_value = make_response(
            bits=[True, False, True, False, False, False, False, False, True, False,
                  False, False, False, False, False, False])
        client = ModbusRTUClient("/dev/ttyUSB0")
        await client.connect()
        bits = await client.read_multiple_coils(1, 9, 10)
        assert bits == [True, False, True, False, False, False, False, False, True]
        instance.read_coils.assert_called_once_with(device_id=10, address=1, count=9)

    @pytest.mark.asyncio
    async def test_short_register_response_raises(self, pymodbus_client):
        _, instance = pymodbus_client
        instance.read_holding_registers.return_value = make_response(registers=[1, 2])
        client = ModbusRTUClient("/dev/ttyUSB0")
        await client.connect()
        with pytest.raises(TransportError, match="2 registers"):
            await client.read_multiple_holding_registers(1, 28, 1)

    @pytest.mark.asyncio
    async def test_error_response_raises(self, pymodbus_client):
        _, instance = pymodbus_client
        instance.write_coil.return_value = make_response(error=True)
        client = ModbusRTUClient("/dev/ttyUSB0")
        await client.connect()
        with pytest.raises(TransportError):
            await client.write_coil(17, True, 1)
        instance.write_coil.assert_called_once_with(device_id=1, address=17, value=True)

    @pytest.mark.asyncio
    async def test_modbus_exception_becomes_transport_error(self, pymodbus_client):
        _, instance = pymodbus_client
        instance.read_input_registers.side_effect = ModbusIOException("no response")
        client = ModbusRTUClient("/dev/ttyUSB0")
        await client.connect()
        with pytest.raises(TransportError):
            await client.read_multiple_input_registers(1, 16, 10)

    @pytest.mark.asyncio
    async def test_write_register_range_checked(self, pymodbus_client):
        _, instance = pymodbus_client
        client = ModbusRTUClient("/dev/ttyUSB0")
        await client.connect()
        with pytest.raises(TransportError):
            await client.write_holding_register(3, -1, 10)
        instance.write_register.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_register_passes_value(self, pymodbus_client):
        _, instance = pymodbus_client
        instance.write_register.return_value = make_response()
        client = ModbusRTUClient("/dev/ttyUSB0")
        await client.connect()
        await client.write_holding_register(4, 100, 10)
        instance.write_register.assert_called_once_with(device_id=10, address=4, value=100)

    @pytest.mark.asyncio
    async def test_close(self, pymodbus_client):
        _, instance = pymodbus_client
        client = ModbusRTUClient("/dev/ttyUSB0")
        await client.connect()
        client.close()
        instance.close.assert_called_once()
        assert not client.is_connected
