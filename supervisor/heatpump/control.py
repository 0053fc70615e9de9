# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Plant control sequences: start, stop, power-cycle and pump-cycle.

Every bus call goes through the shared BusGate. Sequences read live
pump and heat pump state from the retained snapshots, which the tick
loop keeps refreshing while a sequence sleeps.

Recovery sequences never abort on a failed step: the failure is logged
and the next step runs, so a relay that was energised is always
released again.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from . import registers as reg
from .notifier import EmailNotifier
from .snapshot import DeviceSnapshot
from .tasks import RecoveryRunner
from .transport import BusTransport, TransportError

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

# Seconds
PUMP_STOP_DELAY = 15
PUMP_STOP_RECHECK = 5
START_RETRY_INTERVAL = 15
START_ATTEMPTS = 10
INVERTER_OFF_HOLD = 120
INVERTER_SETTLE = 60
PUMP_RESTART_GAP = 1
ALARM_RESET_GRACE = 30
PUMP_SETTING_GAP = 1


@dataclass
class Disposition:
    """On/off state of the heat pump and its two pumps, read from the bus."""
    reject_pump_on: bool
    cold_pump_on: bool
    heat_pump_on: bool

    @property
    def pumps_on(self) -> bool:
        return self.reject_pump_on or self.cold_pump_on


class PlantControl:
    def __init__(
        self,
        bus: BusTransport,
        heat_pump: DeviceSnapshot,
        pumps: DeviceSnapshot,
        runner: RecoveryRunner,
        notifier: EmailNotifier | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self._bus = bus
        self._hp = heat_pump
        self._pumps = pumps
        self._runner = runner
        self._notifier = notifier or EmailNotifier()
        self._sleep = sleep

    # --- Live state from the retained snapshots ---

    def _pump_coil(self, address: int) -> bool:
        return self._pumps.coils[reg.index(address)]

    def _hp_coil(self, address: int) -> bool:
        return self._hp.coils[reg.index(address)]

    def pumps_running(self) -> bool:
        return self._pump_coil(reg.COLD_PUMP_COIL) or self._pump_coil(reg.REJECT_PUMP_COIL)

    def flow_missing(self) -> bool:
        """Either circulation loop reports no flow."""
        return (self._pumps.discretes[reg.index(reg.COLD_FLOW_DISCRETE)]
                or self._pumps.discretes[reg.index(reg.REJECT_FLOW_DISCRETE)])

    # --- Single writes ---

    async def _write_coil(self, device: DeviceSnapshot, address: int, value: bool) -> bool:
        try:
            await self._bus.write_coil(address, value, device.slave_address)
            return True
        except TransportError as e:
            logger.error("Write coil %d=%s on slave %d failed: %s",
                         address, value, device.slave_address, e)
            return False

    async def _write_holding(self, device: DeviceSnapshot, address: int, value: int) -> bool:
        try:
            await self._bus.write_holding_register(address, value, device.slave_address)
            return True
        except TransportError as e:
            logger.error("Write holding %d=%d on slave %d failed: %s",
                         address, value, device.slave_address, e)
            return False

    async def set_heat_pump(self, on: bool):
        """Write the BMS on/off coil. Raises TransportError."""
        await self._bus.write_coil(reg.BMS_ON_OFF_COIL, on, self._hp.slave_address)

    async def reset_alarm(self) -> bool:
        logger.info("Resetting heat pump alarms")
        return await self._write_coil(self._hp, reg.ALARM_RESET_COIL, True)

    async def set_cooling_setpoint(self, celsius: float):
        """Write the cooling setpoint (register holds tenths of a degree)."""
        value = int(round(celsius * 10))
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"setpoint {celsius} out of range")
        await self._bus.write_holding_register(
            reg.COOLING_SETPOINT_HOLDING, value, self._hp.slave_address)
        logger.info("Cooling setpoint set to %.1f", value / 10)

    # --- Disposition ---

    async def disposition(self) -> Disposition:
        """Read pump overrides and the heat pump on/off coil from the bus."""
        slave = self._pumps.slave_address
        reject = await self._bus.read_holding_register(reg.REJECT_PUMP_SETTING, slave)
        cold = await self._bus.read_holding_register(reg.COLD_PUMP_SETTING, slave)
        heat_pump = await self._bus.read_coil(reg.BMS_ON_OFF_COIL, self._hp.slave_address)
        return Disposition(
            reject_pump_on=reject > reg.PUMP_SETTING_ON_THRESHOLD,
            cold_pump_on=cold > reg.PUMP_SETTING_ON_THRESHOLD,
            heat_pump_on=bool(heat_pump),
        )

    # --- Stop ---

    async def kill_pumps(self, delay: float = PUMP_STOP_DELAY):
        """Switch both pump overrides off and wait until both pumps stop.

        Overrides are only written while the heat pump's own main water
        pump is off. Retries every few seconds with no time limit.
        """
        await self._sleep(delay)
        while True:
            if not self.pumps_running():
                logger.info("Pumps are not active")
                return
            if not self._hp_coil(reg.MAIN_WATER_PUMP_COIL):
                logger.info("Stopping pumps")
                await self._write_holding(self._pumps, reg.REJECT_PUMP_SETTING, reg.PUMP_SETTING_OFF)
                await self._write_holding(self._pumps, reg.COLD_PUMP_SETTING, reg.PUMP_SETTING_OFF)
            else:
                logger.debug("Heat pump main water pump still running, holding pumps on")
            await self._sleep(PUMP_STOP_RECHECK)

    async def stop_heat_pump(self, background_pumps: bool = False) -> bool:
        """Orderly stop: heat pump first, then the circulation pumps.

        With ``background_pumps`` the pump shutdown runs as its own task
        and this returns once the heat pump is off.
        """
        try:
            disp = await self.disposition()
        except TransportError as e:
            logger.error("Error getting heat pump disposition: %s", e)
            return False

        if disp.heat_pump_on:
            try:
                await self.set_heat_pump(False)
            except TransportError as e:
                logger.error("Error turning the heat pump off: %s", e)
                return False
            logger.info("Heat pump switched off")

        if disp.pumps_on:
            if background_pumps:
                self._runner.spawn("pump shutdown", self.kill_pumps(PUMP_STOP_DELAY))
            else:
                await self.kill_pumps(PUMP_STOP_DELAY)
        return True

    # --- Start ---

    async def start_heat_pump(self) -> bool:
        """Switch the heat pump on once both loops show flow."""
        for _ in range(START_ATTEMPTS):
            if self.flow_missing():
                await self._sleep(START_RETRY_INTERVAL)
                continue
            try:
                await self.set_heat_pump(True)
            except TransportError as e:
                logger.error("Error turning the heat pump on: %s", e)
                continue
            logger.info("Heat pump switched on")
            return True
        logger.warning("Timed out waiting for the pumps to start up. Heat pump was not started.")
        return False

    async def start_with_pumps(self) -> dict:
        """Operator start: pumps on, then the heat pump in the background.

        Raises TransportError if the disposition read or a pump write fails.
        """
        disp = await self.disposition()
        if disp.heat_pump_on:
            return {"status": "OK", "description": "HeatPump is already started"}

        slave = self._pumps.slave_address
        if not disp.reject_pump_on:
            await self._bus.write_holding_register(reg.REJECT_PUMP_SETTING, reg.PUMP_SETTING_ON, slave)
            await self._sleep(PUMP_SETTING_GAP)
        if not disp.cold_pump_on:
            await self._bus.write_holding_register(reg.COLD_PUMP_SETTING, reg.PUMP_SETTING_ON, slave)
            await self._sleep(PUMP_SETTING_GAP)

        self._runner.spawn("heat pump start", self.start_heat_pump())
        return {"status": "OK", "description": "HeatPump Starting"}

    # --- Recovery sequences ---

    async def power_cycle(self) -> bool:
        """Power-cycle the heat pump inverter through the contactor relay.

        Returns True if the inverter came back online.
        """
        logger.warning("Power-cycling the heat pump inverter")
        await self._write_coil(self._pumps, reg.INVERTER_CONTACTOR_COIL, True)
        if not await self.stop_heat_pump():
            logger.error("Failed to stop the heat pump, continuing power cycle")
        await self._sleep(INVERTER_OFF_HOLD)
        await self._write_coil(self._pumps, reg.INVERTER_CONTACTOR_COIL, False)
        await self._sleep(INVERTER_SETTLE)

        recovered = not self._hp_coil(reg.INVERTER_OFFLINE_ALARM_COIL)
        if recovered:
            logger.info("Inverter back online after power cycle")
            await self._notifier.send(
                "Heat Pump Inverter Power Cycled",
                "The heat pump inverter went offline and cycling its power brought it back.",
            )
        else:
            logger.error("Inverter still offline after power cycle")
            await self._notifier.send(
                "Heat Pump Failure",
                "The heat pump inverter has gone offline and cycling the power "
                "to it did not bring it back!",
            )

        await self.start_heat_pump()
        return recovered

    async def _delayed_alarm_reset(self, delay: float):
        await self._sleep(delay)
        await self.reset_alarm()

    async def pump_cycle(self):
        """Restart both circulation pumps, then reset the alarm after a grace period."""
        logger.warning("Cycling the circulation pumps")
        await self._write_coil(self._pumps, reg.COLD_PUMP_COIL, False)
        await self._write_coil(self._pumps, reg.REJECT_PUMP_COIL, False)
        await self._sleep(PUMP_RESTART_GAP)
        await self._write_coil(self._pumps, reg.COLD_PUMP_COIL, True)
        await self._write_coil(self._pumps, reg.REJECT_PUMP_COIL, True)
        self._runner.spawn("alarm reset", self._delayed_alarm_reset(ALARM_RESET_GRACE))
