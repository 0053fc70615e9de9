# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Tests for plant control sequences (start, stop, power cycle, pump cycle).

Sleeps are injected, so multi-minute sequences run instantly. Where a
sequence depends on the retained snapshots being refreshed while it
waits, PollingSleep polls both devices on every sleep the way the tick
loop would.
"""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "supervisor"))

from heatpump import registers as reg
from heatpump.broadcast import BroadcastHub
from heatpump.bus import BusGate
from heatpump.control import Disposition, PlantControl
from heatpump.poller import SnapshotPoller
from heatpump.tasks import RecoveryRunner
from heatpump.transport import TransportError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class PollingSleep:
    """Sleep stand-in that refreshes the retained snapshots instead of waiting."""

    def __init__(self, poller, *snapshots):
        self._poller = poller
        self._snapshots = snapshots
        self.calls: list[float] = []
        self.before_poll: dict[float, object] = {}

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        action = self.before_poll.get(seconds)
        if action:
            action()
        for snap in self._snapshots:
            await self._poller.poll(snap)


def make_notifier():
    notifier = MagicMock()
    notifier.send = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def runner():
    return RecoveryRunner()


@pytest.fixture
def plant(mock_bus, heat_pump, pumps, runner):
    """PlantControl over the mock bus with a polling sleep."""
    gate = BusGate(mock_bus)
    poller = SnapshotPoller(gate, BroadcastHub())
    sleep = PollingSleep(poller, pumps, heat_pump)
    notifier = make_notifier()
    control = PlantControl(gate, heat_pump, pumps, runner,
                           notifier=notifier, sleep=sleep)
    return control, sleep, notifier, poller


async def poll_all(poller, *snapshots):
    for snap in snapshots:
        await poller.poll(snap)


async def pumps_on(mock_bus):
    await mock_bus.write_holding_register(reg.REJECT_PUMP_SETTING, 100, 10)
    await mock_bus.write_holding_register(reg.COLD_PUMP_SETTING, 100, 10)


# ===========================================================================
# Disposition
# ===========================================================================

class TestDisposition:
    @pytest.mark.asyncio
    async def test_all_off(self, plant):
        control, *_ = plant
        disp = await control.disposition()
        assert disp == Disposition(reject_pump_on=False, cold_pump_on=False, heat_pump_on=False)
        assert not disp.pumps_on

    @pytest.mark.asyncio
    async def test_setting_threshold_is_above_99(self, plant, mock_bus):
        control, *_ = plant
        await mock_bus.write_holding_register(reg.REJECT_PUMP_SETTING, 99, 10)
        await mock_bus.write_holding_register(reg.COLD_PUMP_SETTING, 100, 10)
        await mock_bus.write_coil(reg.BMS_ON_OFF_COIL, True, 1)
        disp = await control.disposition()
        assert disp.reject_pump_on is False
        assert disp.cold_pump_on is True
        assert disp.heat_pump_on is True

    @pytest.mark.asyncio
    async def test_read_error_propagates(self, plant, mock_bus):
        control, *_ = plant
        mock_bus.set_slave_offline(10)
        with pytest.raises(TransportError):
            await control.disposition()


# ===========================================================================
# Stop
# ===========================================================================

class TestStop:
    @pytest.mark.asyncio
    async def test_orderly_stop_heat_pump_then_pumps(self, plant, mock_bus, heat_pump, pumps):
        control, sleep, _, poller = plant
        await pumps_on(mock_bus)
        await mock_bus.write_coil(reg.BMS_ON_OFF_COIL, True, 1)
        await poll_all(poller, pumps, heat_pump)
        mock_bus.writes.clear()

        assert await control.stop_heat_pump() is True

        assert mock_bus.writes == [
            (1, "coil", reg.BMS_ON_OFF_COIL, 0),
            (10, "holding", reg.REJECT_PUMP_SETTING, 0),
            (10, "holding", reg.COLD_PUMP_SETTING, 0),
        ]
        assert sleep.calls == [15, 5]
        assert not control.pumps_running()

    @pytest.mark.asyncio
    async def test_stop_with_everything_off_writes_nothing(self, plant, mock_bus):
        control, sleep, *_ = plant
        assert await control.stop_heat_pump() is True
        assert mock_bus.writes == []
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_stop_disposition_failure(self, plant, mock_bus):
        control, *_ = plant
        mock_bus.set_slave_offline(10)
        assert await control.stop_heat_pump() is False
        assert mock_bus.writes == []

    @pytest.mark.asyncio
    async def test_background_stop_returns_before_pumps_stop(self, plant, mock_bus,
                                                            heat_pump, pumps, runner):
        control, sleep, _, poller = plant
        await pumps_on(mock_bus)
        await poll_all(poller, pumps, heat_pump)

        assert await control.stop_heat_pump(background_pumps=True) is True
        assert runner.running == ["pump shutdown"]
        await runner.wait_idle()
        assert not control.pumps_running()

    @pytest.mark.asyncio
    async def test_kill_pumps_waits_for_main_water_pump(self, heat_pump, pumps, runner, fake_sleep):
        bus = AsyncMock()
        control = PlantControl(bus, heat_pump, pumps, runner,
                               notifier=make_notifier(), sleep=fake_sleep)
        pumps.coils[reg.index(reg.COLD_PUMP_COIL)] = True
        heat_pump.coils[reg.index(reg.MAIN_WATER_PUMP_COIL)] = True

        def plant_reacts(seconds):
            n = len(fake_sleep.calls)
            if n == 2:
                heat_pump.coils[reg.index(reg.MAIN_WATER_PUMP_COIL)] = False
            elif n == 3:
                pumps.coils[reg.index(reg.COLD_PUMP_COIL)] = False

        fake_sleep.hooks.append(plant_reacts)
        await control.kill_pumps(15)

        assert fake_sleep.calls == [15, 5, 5]
        # Only the pass after the main water pump stopped writes overrides
        assert bus.write_holding_register.await_count == 2


# ===========================================================================
# Start
# ===========================================================================

class TestStart:
    @pytest.mark.asyncio
    async def test_start_waits_for_flow(self, heat_pump, pumps, runner, fake_sleep):
        bus = AsyncMock()
        control = PlantControl(bus, heat_pump, pumps, runner,
                               notifier=make_notifier(), sleep=fake_sleep)
        pumps.discretes[reg.index(reg.COLD_FLOW_DISCRETE)] = True

        def flow_arrives(seconds):
            if len(fake_sleep.calls) == 2:
                pumps.discretes[reg.index(reg.COLD_FLOW_DISCRETE)] = False

        fake_sleep.hooks.append(flow_arrives)
        assert await control.start_heat_pump() is True
        assert fake_sleep.calls == [15, 15]
        bus.write_coil.assert_awaited_once_with(reg.BMS_ON_OFF_COIL, True, 1)

    @pytest.mark.asyncio
    async def test_start_times_out_without_flow(self, heat_pump, pumps, runner, fake_sleep):
        bus = AsyncMock()
        control = PlantControl(bus, heat_pump, pumps, runner,
                               notifier=make_notifier(), sleep=fake_sleep)
        pumps.discretes[reg.index(reg.REJECT_FLOW_DISCRETE)] = True
        assert await control.start_heat_pump() is False
        assert fake_sleep.calls == [15] * 10
        bus.write_coil.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_retries_failed_write(self, heat_pump, pumps, runner, fake_sleep):
        bus = AsyncMock()
        bus.write_coil.side_effect = [TransportError("timeout"), None]
        control = PlantControl(bus, heat_pump, pumps, runner,
                               notifier=make_notifier(), sleep=fake_sleep)
        assert await control.start_heat_pump() is True
        assert bus.write_coil.await_count == 2

    @pytest.mark.asyncio
    async def test_start_with_pumps(self, plant, mock_bus, runner):
        control, sleep, *_ = plant
        result = await control.start_with_pumps()
        assert result == {"status": "OK", "description": "HeatPump Starting"}
        assert mock_bus.writes[:2] == [
            (10, "holding", reg.REJECT_PUMP_SETTING, 100),
            (10, "holding", reg.COLD_PUMP_SETTING, 100),
        ]
        assert sleep.calls == [1, 1]

        await runner.wait_idle()
        assert mock_bus.writes[-1] == (1, "coil", reg.BMS_ON_OFF_COIL, 1)
        assert mock_bus.heat_pump.coils[reg.index(reg.UNIT_START_COIL)] is True

    @pytest.mark.asyncio
    async def test_start_with_pumps_already_on(self, plant, mock_bus, runner):
        control, *_ = plant
        await mock_bus.write_coil(reg.BMS_ON_OFF_COIL, True, 1)
        mock_bus.writes.clear()
        result = await control.start_with_pumps()
        assert result["description"] == "HeatPump is already started"
        assert mock_bus.writes == []
        assert runner.running == []

    @pytest.mark.asyncio
    async def test_start_with_pumps_skips_running_pump(self, plant, mock_bus, runner):
        control, sleep, *_ = plant
        await mock_bus.write_holding_register(reg.REJECT_PUMP_SETTING, 100, 10)
        mock_bus.writes.clear()
        await control.start_with_pumps()
        assert mock_bus.writes[0] == (10, "holding", reg.COLD_PUMP_SETTING, 100)
        assert sleep.calls == [1]
        await runner.wait_idle()


# ===========================================================================
# Recovery sequences
# ===========================================================================

class TestPowerCycle:
    @pytest.mark.asyncio
    async def test_recovered_inverter(self, plant, mock_bus, heat_pump, pumps):
        control, sleep, notifier, poller = plant
        await mock_bus.write_coil(reg.BMS_ON_OFF_COIL, True, 1)
        mock_bus.inject_inverter_offline()
        await poll_all(poller, pumps, heat_pump)
        mock_bus.writes.clear()

        assert await control.power_cycle() is True

        contactor = [w for w in mock_bus.writes if w[2] == reg.INVERTER_CONTACTOR_COIL
                     and w[0] == 10]
        assert contactor == [(10, "coil", 4, 1), (10, "coil", 4, 0)]
        assert (1, "coil", reg.BMS_ON_OFF_COIL, 0) in mock_bus.writes
        assert sleep.calls[:2] == [120, 60]
        notifier.send.assert_awaited_once()
        assert notifier.send.await_args.args[0] == "Heat Pump Inverter Power Cycled"

    @pytest.mark.asyncio
    async def test_inverter_still_offline(self, plant, mock_bus, heat_pump, pumps):
        control, sleep, notifier, poller = plant
        sleep.before_poll[60] = mock_bus.inject_inverter_offline
        assert await control.power_cycle() is False
        assert notifier.send.await_args.args[0] == "Heat Pump Failure"

    @pytest.mark.asyncio
    async def test_always_attempts_restart(self, plant, mock_bus):
        control, sleep, *_ = plant
        # Pumps are off, so the restart waits for flow and gives up
        await control.power_cycle()
        assert sleep.calls[2:] == [15] * 10

    @pytest.mark.asyncio
    async def test_stop_failure_does_not_abort(self, plant, mock_bus):
        control, sleep, notifier, _ = plant
        mock_bus.set_slave_offline(1)
        await control.power_cycle()
        assert [w for w in mock_bus.writes if w[2] == reg.INVERTER_CONTACTOR_COIL] == [
            (10, "coil", 4, 1), (10, "coil", 4, 0),
        ]
        assert sleep.calls[:2] == [120, 60]
        notifier.send.assert_awaited_once()


class TestPumpCycle:
    @pytest.mark.asyncio
    async def test_pump_cycle_then_delayed_reset(self, plant, mock_bus, runner):
        control, sleep, *_ = plant
        await control.pump_cycle()

        assert mock_bus.writes == [
            (10, "coil", reg.COLD_PUMP_COIL, 0),
            (10, "coil", reg.REJECT_PUMP_COIL, 0),
            (10, "coil", reg.COLD_PUMP_COIL, 1),
            (10, "coil", reg.REJECT_PUMP_COIL, 1),
        ]
        assert runner.running == ["alarm reset"]

        await runner.wait_idle()
        assert mock_bus.writes[-1] == (1, "coil", reg.ALARM_RESET_COIL, 1)
        assert sleep.calls == [1, 30]

    @pytest.mark.asyncio
    async def test_pump_cycle_continues_past_failed_write(self, heat_pump, pumps, runner, fake_sleep):
        bus = AsyncMock()
        bus.write_coil.side_effect = [TransportError("timeout"), None, None, None, None]
        control = PlantControl(bus, heat_pump, pumps, runner,
                               notifier=make_notifier(), sleep=fake_sleep)
        await control.pump_cycle()
        await runner.wait_idle()
        assert bus.write_coil.await_count == 5


class TestSetpoint:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("celsius,raw", [(7.0, 70), (12.34, 123), (0, 0)])
    async def test_setpoint_written_in_tenths(self, heat_pump, pumps, runner, celsius, raw):
        bus = AsyncMock()
        control = PlantControl(bus, heat_pump, pumps, runner, notifier=make_notifier())
        await control.set_cooling_setpoint(celsius)
        bus.write_holding_register.assert_awaited_once_with(
            reg.COOLING_SETPOINT_HOLDING, raw, 1)

    @pytest.mark.asyncio
    async def test_negative_setpoint_rejected(self, heat_pump, pumps, runner):
        bus = AsyncMock()
        control = PlantControl(bus, heat_pump, pumps, runner, notifier=make_notifier())
        with pytest.raises(ValueError):
            await control.set_cooling_setpoint(-1)
        bus.write_holding_register.assert_not_awaited()
