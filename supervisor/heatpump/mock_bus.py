# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Simulated RS-485 bus with a heat pump and a pump controller.

Used by SUPERVISOR_MOCK_MODE and by the tests. Holds one register bank
per slave and applies just enough plant behaviour for the supervisor's
sequences to play out: pump override settings drive the pump coils and
flow inputs, the BMS coil drives the heat pump, and the inverter
contactor takes the inverter offline while it is energised.
"""

import logging
import random

from . import registers as reg
from .registers import DeviceLayout
from .transport import TransportError

logger = logging.getLogger(__name__)


class _RegisterBank:
    def __init__(self, layout: DeviceLayout):
        self.layout = layout
        self.coils = [False] * layout.coils
        self.discretes = [False] * layout.discretes
        self.inputs = [0] * layout.inputs
        self.holdings = [0] * layout.holdings

    _STARTS = {
        "coils": "coil_start",
        "discretes": "discrete_start",
        "inputs": "input_start",
        "holdings": "holding_start",
    }

    def offset(self, region_name: str, address: int, count: int = 1) -> int:
        """Index of ``address`` in the region; illegal addresses raise."""
        region = getattr(self, region_name)
        region_start = getattr(self.layout, self._STARTS[region_name])
        first = address - region_start
        if count < 1 or first < 0 or first + count > len(region):
            raise TransportError(
                f"illegal data address: {region_name} {address}+{count} "
                f"(valid {region_start}..{region_start + len(region) - 1})"
            )
        return first

    def read(self, region_name: str, address: int, count: int) -> list:
        first = self.offset(region_name, address, count)
        return list(getattr(self, region_name)[first:first + count])


class MockBus:
    """Simulates both devices on one bus. Implements BusTransport."""

    def __init__(self, heat_pump_slave: int = 1, pump_slave: int = 10):
        self._hp_slave = heat_pump_slave
        self._pump_slave = pump_slave
        self._banks: dict[int, _RegisterBank] = {
            heat_pump_slave: _RegisterBank(reg.HEAT_PUMP_LAYOUT),
            pump_slave: _RegisterBank(reg.PUMP_CONTROLLER_LAYOUT),
        }
        self._connected = False
        self._offline_slaves: set[int] = set()
        self._fail_next = 0
        self.writes: list[tuple[int, str, int, int]] = []  # (slave, region, address, value)

        hp = self.heat_pump
        hp.holdings[reg.index(reg.IN_TEMP_HOLDING)] = 121
        hp.holdings[reg.index(reg.OUT_TEMP_HOLDING)] = 78
        hp.holdings[reg.index(reg.COOLING_SETPOINT_HOLDING)] = 70
        pumps = self.pump_controller
        pumps.inputs[reg.index(reg.GROUND_LOOP_IN_INPUT)] = 142
        pumps.inputs[reg.index(reg.GROUND_LOOP_OUT_INPUT)] = 151
        self._apply_physics()

    @property
    def heat_pump(self) -> _RegisterBank:
        return self._banks[self._hp_slave]

    @property
    def pump_controller(self) -> _RegisterBank:
        return self._banks[self._pump_slave]

    def _bank(self, slave: int) -> _RegisterBank:
        if self._fail_next > 0:
            self._fail_next -= 1
            raise TransportError("simulated bus timeout")
        if not self._connected:
            raise TransportError("mock bus not connected")
        if slave in self._offline_slaves or slave not in self._banks:
            raise TransportError(f"no response from slave {slave}")
        return self._banks[slave]

    # --- Plant behaviour ---

    def _apply_physics(self):
        pumps = self.pump_controller
        hp = self.heat_pump

        for coil, flow in ((reg.COLD_PUMP_COIL, reg.COLD_FLOW_DISCRETE),
                           (reg.REJECT_PUMP_COIL, reg.REJECT_FLOW_DISCRETE)):
            pumps.discretes[reg.index(flow)] = not pumps.coils[reg.index(coil)]

        inverter_powered = not pumps.coils[reg.index(reg.INVERTER_CONTACTOR_COIL)]
        if not inverter_powered:
            hp.coils[reg.index(reg.INVERTER_OFFLINE_ALARM_COIL)] = True

        running = hp.coils[reg.index(reg.BMS_ON_OFF_COIL)] and inverter_powered
        hp.coils[reg.index(reg.UNIT_START_COIL)] = running
        hp.coils[reg.index(reg.MAIN_WATER_PUMP_COIL)] = running
        hp.holdings[reg.index(reg.INVERTER_STATUS_HOLDING)] = (
            reg.INVERTER_RUNNING if running else 0
        )
        if running:
            hp.holdings[reg.index(reg.MOTOR_CURRENT_HOLDING)] = random.randint(80, 95)
            hp.holdings[reg.index(reg.MOTOR_VOLTAGE_HOLDING)] = 230
            hp.holdings[reg.index(reg.MOTOR_SPEED_HOLDING)] = 450
        else:
            hp.holdings[reg.index(reg.MOTOR_CURRENT_HOLDING)] = 0
            hp.holdings[reg.index(reg.MOTOR_VOLTAGE_HOLDING)] = 0
            hp.holdings[reg.index(reg.MOTOR_SPEED_HOLDING)] = 0

    def _on_coil_write(self, slave: int, address: int, value: bool):
        if slave == self._pump_slave and address == reg.INVERTER_CONTACTOR_COIL and not value:
            # Inverter comes back once re-energised
            self.heat_pump.coils[reg.index(reg.INVERTER_OFFLINE_ALARM_COIL)] = False
        if slave == self._hp_slave and address == reg.ALARM_RESET_COIL and value:
            hp = self.heat_pump
            flow_ok = hp.coils[reg.index(reg.WATER_FLOW_SWITCH_COIL)]
            for addr in range(reg.LAST_STATUS_COIL + 1, reg.HEAT_PUMP_LAYOUT.coils + 1):
                if addr == reg.WATER_FLOW_SWITCH_ALARM_COIL and not flow_ok:
                    continue
                if addr == reg.INVERTER_OFFLINE_ALARM_COIL:
                    continue
                hp.coils[reg.index(addr)] = False
            # Momentary
            hp.coils[reg.index(reg.ALARM_RESET_COIL)] = False

    def _on_holding_write(self, slave: int, address: int, value: int):
        if slave != self._pump_slave:
            return
        pumps = self.pump_controller
        on = value > reg.PUMP_SETTING_ON_THRESHOLD
        if address == reg.COLD_PUMP_SETTING:
            pumps.coils[reg.index(reg.COLD_PUMP_COIL)] = on
        elif address == reg.REJECT_PUMP_SETTING:
            pumps.coils[reg.index(reg.REJECT_PUMP_COIL)] = on

    # --- Fault injection ---

    def inject_inverter_offline(self):
        self.heat_pump.coils[reg.index(reg.INVERTER_OFFLINE_ALARM_COIL)] = True

    def inject_inverter_stall(self):
        """Inverter reports running with zero motor current."""
        hp = self.heat_pump
        hp.holdings[reg.index(reg.INVERTER_STATUS_HOLDING)] = reg.INVERTER_RUNNING
        hp.holdings[reg.index(reg.MOTOR_CURRENT_HOLDING)] = 0

    def inject_flow_alarm(self, switch_made: bool = False):
        hp = self.heat_pump
        hp.coils[reg.index(reg.WATER_FLOW_SWITCH_ALARM_COIL)] = True
        hp.coils[reg.index(reg.WATER_FLOW_SWITCH_COIL)] = switch_made

    def set_flow_switch(self, made: bool):
        self.heat_pump.coils[reg.index(reg.WATER_FLOW_SWITCH_COIL)] = made

    def set_slave_offline(self, slave: int, offline: bool = True):
        if offline:
            self._offline_slaves.add(slave)
        else:
            self._offline_slaves.discard(slave)

    def fail_next(self, count: int = 1):
        self._fail_next = count

    # --- BusTransport ---

    async def connect(self) -> None:
        self._connected = True
        logger.info("Mock bus: heat pump at slave %d, pump controller at slave %d",
                    self._hp_slave, self._pump_slave)

    async def read_coil(self, address: int, slave: int) -> bool:
        return self._bank(slave).read("coils", address, 1)[0]

    async def write_coil(self, address: int, value: bool, slave: int) -> None:
        bank = self._bank(slave)
        bank.coils[bank.offset("coils", address)] = bool(value)
        self.writes.append((slave, "coil", address, int(bool(value))))
        self._on_coil_write(slave, address, bool(value))
        self._apply_physics()

    async def read_holding_register(self, address: int, slave: int) -> int:
        return self._bank(slave).read("holdings", address, 1)[0]

    async def write_holding_register(self, address: int, value: int, slave: int) -> None:
        if not 0 <= value <= 0xFFFF:
            raise TransportError(f"illegal data value {value}")
        bank = self._bank(slave)
        bank.holdings[bank.offset("holdings", address)] = value
        self.writes.append((slave, "holding", address, value))
        self._on_holding_write(slave, address, value)
        self._apply_physics()

    async def read_multiple_coils(self, start: int, count: int, slave: int) -> list[bool]:
        return self._bank(slave).read("coils", start, count)

    async def read_multiple_discretes(self, start: int, count: int, slave: int) -> list[bool]:
        return self._bank(slave).read("discretes", start, count)

    async def read_multiple_holding_registers(self, start: int, count: int, slave: int) -> list[int]:
        bank = self._bank(slave)
        if slave == self._hp_slave and bank.coils[reg.index(reg.UNIT_START_COIL)]:
            # Water temperatures drift while running
            i = reg.index(reg.OUT_TEMP_HOLDING)
            bank.holdings[i] = max(40, min(120, bank.holdings[i] + random.choice((-1, 0, 1))))
        return bank.read("holdings", start, count)

    async def read_multiple_input_registers(self, start: int, count: int, slave: int) -> list[int]:
        return self._bank(slave).read("inputs", start, count)

    def close(self) -> None:
        self._connected = False
