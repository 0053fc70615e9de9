# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Fault supervisor: debounce fault conditions and launch recovery.

Each tick the supervisor looks at the retained snapshots. A fault has
to hold continuously for longer than its threshold before its recovery
sequence is launched, and a sequence never runs twice at once.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from . import registers as reg
from .control import PlantControl
from .snapshot import DeviceSnapshot
from .tasks import RecoveryRunner, SequenceGuard
from .transport import TransportError

logger = logging.getLogger(__name__)

INVERTER_OFFLINE = "inverter_offline"
INVERTER_STALLED = "inverter_stalled"
FLOW_ALARM = "flow_alarm"

# Seconds a condition must hold before recovery
THRESHOLDS = {
    INVERTER_OFFLINE: 60.0,
    INVERTER_STALLED: 180.0,
    FLOW_ALARM: 60.0,
}

ALARM_RESET_INTERVAL = 30.0


@dataclass
class FaultTimer:
    first_seen: float | None = None
    active: bool = False
    launches: int = 0
    last_launch: float | None = None

    def clear(self):
        self.first_seen = None
        self.active = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_seen": self.first_seen,
            "active": self.active,
            "launches": self.launches,
            "last_launch": self.last_launch,
        }


class FaultSupervisor:
    def __init__(
        self,
        heat_pump: DeviceSnapshot,
        pumps: DeviceSnapshot,
        control: PlantControl,
        runner: RecoveryRunner,
        recovery_enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        thresholds: dict[str, float] | None = None,
        event_callback=None,
    ):
        self._hp = heat_pump
        self._pumps = pumps
        self._control = control
        self._runner = runner
        self._recovery_enabled = recovery_enabled
        self._clock = clock
        self._thresholds = dict(THRESHOLDS)
        if thresholds:
            self._thresholds.update(thresholds)
        self._event_callback = event_callback

        self._timers = {name: FaultTimer() for name in self._thresholds}
        # Both inverter faults recover through the same power cycle
        self._power_guard = SequenceGuard("power-cycle")
        self._pump_guard = SequenceGuard("pump-cycle")
        self._last_alarm_reset: float | None = None

        self._events: list[dict[str, Any]] = []
        self._max_events = 100
        self._interlock_trips = 0

    # --- Events ---

    def _add_event(self, fault: str, event_type: str, details: str) -> dict[str, Any]:
        event = {
            "fault": fault,
            "type": event_type,
            "details": details,
            "ts": time.time(),
        }
        self._events.append(event)
        if len(self._events) > self._max_events:
            self._events = self._events[-self._max_events:]
        if self._event_callback:
            try:
                self._event_callback(event)
            except Exception:
                logger.exception("Event callback error")
        return event

    @property
    def events(self) -> list[dict[str, Any]]:
        return list(self._events)

    # --- Conditions ---

    def _hp_coil(self, address: int) -> bool:
        return self._hp.coils[reg.index(address)]

    def _condition(self, fault: str) -> bool:
        if fault == INVERTER_OFFLINE:
            return self._hp_coil(reg.INVERTER_OFFLINE_ALARM_COIL)
        if fault == INVERTER_STALLED:
            status = self._hp.holdings[reg.index(reg.INVERTER_STATUS_HOLDING)]
            current = self._hp.holdings[reg.index(reg.MOTOR_CURRENT_HOLDING)]
            return status == reg.INVERTER_RUNNING and current == 0
        if fault == FLOW_ALARM:
            return self._hp_coil(reg.WATER_FLOW_SWITCH_ALARM_COIL)
        return False

    def _guard_for(self, fault: str) -> SequenceGuard:
        if fault == FLOW_ALARM:
            return self._pump_guard
        return self._power_guard

    # --- Evaluation ---

    async def evaluate(self) -> list[dict[str, Any]]:
        """Run one debounce pass over every fault. Returns new events."""
        now = self._clock()
        start = len(self._events)
        for fault, timer in self._timers.items():
            if not self._condition(fault):
                if timer.first_seen is not None:
                    logger.info("Fault %s cleared", fault)
                timer.clear()
                continue

            if timer.first_seen is None:
                timer.first_seen = now
                logger.warning("Fault %s detected", fault)
                continue

            if now - timer.first_seen <= self._thresholds[fault]:
                continue

            if timer.active:
                if fault == FLOW_ALARM and self._recovery_enabled:
                    await self._retry_flow_reset(now)
                continue

            self._launch(fault, timer, now)
        return self._events[start:]

    def _launch(self, fault: str, timer: FaultTimer, now: float):
        if not self._recovery_enabled:
            timer.active = True
            logger.warning("Fault %s persisted, recovery disabled", fault)
            self._add_event(fault, "suppressed", "Recovery disabled, no action taken")
            return

        guard = self._guard_for(fault)
        if not guard.try_acquire():
            logger.debug("Fault %s: %s already running", fault, guard.name)
            return

        timer.active = True
        timer.launches += 1
        timer.last_launch = now
        elapsed = now - timer.first_seen
        logger.warning("Fault %s held for %.0fs, starting %s", fault, elapsed, guard.name)
        self._add_event(fault, "launched", f"{guard.name} after {elapsed:.0f}s")
        if fault == FLOW_ALARM:
            self._runner.spawn(guard.name, self._run_pump_cycle(guard))
        else:
            self._runner.spawn(guard.name, self._run_power_cycle(fault, guard))

    async def _run_power_cycle(self, fault: str, guard: SequenceGuard):
        recovered = False
        try:
            recovered = await self._control.power_cycle()
        finally:
            self._timers[fault].active = False
            # Re-debounce every fault sharing the guard that is still present
            now = self._clock()
            for name, timer in self._timers.items():
                if self._guard_for(name) is guard and timer.first_seen is not None:
                    timer.first_seen = now
            guard.release()
            self._add_event(fault, "finished",
                            "Inverter recovered" if recovered else "Inverter still offline")

    async def _run_pump_cycle(self, guard: SequenceGuard):
        try:
            await self._control.pump_cycle()
        finally:
            guard.release()
            self._add_event(FLOW_ALARM, "finished", "Pumps cycled")

    async def _retry_flow_reset(self, now: float):
        """Alarm still latched after the pump cycle: reset it once flow is back."""
        if not self._hp_coil(reg.WATER_FLOW_SWITCH_COIL):
            return
        if (self._last_alarm_reset is not None
                and now - self._last_alarm_reset < ALARM_RESET_INTERVAL):
            return
        self._last_alarm_reset = now
        if await self._control.reset_alarm():
            self._add_event(FLOW_ALARM, "alarm_reset", "Flow restored, alarm reset")

    # --- Flow interlock ---

    async def enforce_flow_interlock(self) -> bool:
        """Switch the heat pump off if either loop has no flow.

        Returns True if an off command was written.
        """
        if not self._control.flow_missing():
            return False
        try:
            disp = await self._control.disposition()
            if not disp.heat_pump_on:
                return False
            logger.error("Heat pump is on but circulators are not showing adequate flow. "
                         "Stopping the heat pump")
        except TransportError as e:
            logger.error("Error getting heat pump disposition: %s. Stopping the heat pump", e)
        try:
            await self._control.set_heat_pump(False)
        except TransportError as e:
            logger.error("Error turning the heat pump off: %s", e)
            return False
        self._interlock_trips += 1
        self._add_event("flow_interlock", "tripped", "No flow, heat pump switched off")
        return True

    # --- Status ---

    def get_status(self) -> dict[str, Any]:
        return {
            "recovery_enabled": self._recovery_enabled,
            "faults": {
                name: {**timer.to_dict(), "threshold": self._thresholds[name]}
                for name, timer in self._timers.items()
            },
            "guards": {
                self._power_guard.name: self._power_guard.to_dict(),
                self._pump_guard.name: self._pump_guard.to_dict(),
            },
            "interlock_trips": self._interlock_trips,
            "recent_events": self._events[-10:],
        }
