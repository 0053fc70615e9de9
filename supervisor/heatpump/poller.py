# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""One poll of one device: read, diff against the retained snapshot, publish."""

import logging

from .broadcast import BroadcastHub
from .registers import LAYOUTS
from .snapshot import DeviceSnapshot
from .transport import BusTransport, TransportError

logger = logging.getLogger(__name__)


class SnapshotPoller:
    def __init__(self, bus: BusTransport, hub: BroadcastHub):
        self._bus = bus
        self._hub = hub
        self._polls = 0
        self._poll_errors = 0
        self._publishes = 0
        self._listeners: list = []

    def add_listener(self, callback):
        """Call ``callback(snapshot)`` after each published update."""
        self._listeners.append(callback)

    async def _read(self, fresh: DeviceSnapshot):
        # Read order: discretes, coils, holdings, inputs
        slave = fresh.slave_address
        if fresh.discretes:
            fresh.discretes[:] = await self._bus.read_multiple_discretes(
                fresh.discrete_start, len(fresh.discretes), slave)
        if fresh.coils:
            fresh.coils[:] = await self._bus.read_multiple_coils(
                fresh.coil_start, len(fresh.coils), slave)
        if fresh.holdings:
            fresh.holdings[:] = await self._bus.read_multiple_holding_registers(
                fresh.holding_start, len(fresh.holdings), slave)
        if fresh.inputs:
            fresh.inputs[:] = await self._bus.read_multiple_input_registers(
                fresh.input_start, len(fresh.inputs), slave)

    async def poll(self, retained: DeviceSnapshot, refresh: bool = False) -> bool:
        """Poll the device behind ``retained``. Returns True if it published.

        On a bus error the retained snapshot is left exactly as it was.
        """
        self._polls += 1
        fresh = retained.blank_like()
        try:
            await self._read(fresh)
        except TransportError as e:
            self._poll_errors += 1
            layout = LAYOUTS.get(retained.kind)
            logger.warning(
                "Error polling %s at slave %d: %s",
                layout.name if layout else retained.kind, retained.slave_address, e,
            )
            return False

        if refresh:
            logger.debug("Forced refresh of %s", retained.kind)
        if not refresh and fresh.compare(retained):
            return False

        retained.update(fresh)
        self._publishes += 1
        self._hub.broadcast(retained.to_json())
        for callback in self._listeners:
            try:
                callback(retained)
            except Exception:
                logger.exception("Snapshot listener error")
        return True

    def get_stats(self) -> dict:
        return {
            "polls": self._polls,
            "poll_errors": self._poll_errors,
            "publishes": self._publishes,
        }
