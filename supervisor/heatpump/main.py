# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Entry point -- Modbus supervisor for a heat pump and its pump controller.

Architecture
------------
HeatPumpSupervisor -- owns the bus, the two retained snapshots and every
                      subsystem, and drives the tick loop.
tick               -- poll pump controller, poll heat pump, flow
                      interlock, sample log (every Nth tick), fault
                      evaluation. Ticks never overlap.
"""

__version__ = "1.0.0"

import asyncio
import logging
import signal
import sys
import time
from typing import Any, Callable

from .broadcast import BroadcastHub
from .bus import BusGate
from .config import Config, ConfigError
from .control import PlantControl, SleepFunc
from .mock_bus import MockBus
from .modbus_client import ModbusRTUClient
from .mqtt_handler import MQTTHandler
from .notifier import EmailNotifier
from .poller import SnapshotPoller
from .registers import HEAT_PUMP_LAYOUT, PUMP_CONTROLLER_LAYOUT
from .sample_log import SampleLog
from .snapshot import DeviceSnapshot
from .supervisor import FaultSupervisor
from .tasks import RecoveryRunner
from .transport import BusTransport, TransportError
from .web import RingBufferHandler, WebServer

logger = logging.getLogger("heatpump")

RECONNECT_INTERVAL = 10.0


class HeatPumpSupervisor:
    def __init__(self, config: Config, transport: BusTransport | None = None,
                 sleep: SleepFunc = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._running = False
        self._start_time = time.time()
        self._clock = clock

        if transport is None:
            transport = self._create_transport()
        self.bus = BusGate(transport, name=config.serial_port)
        self._connected = False
        self._last_connect_attempt: float | None = None

        self.heat_pump = DeviceSnapshot.for_layout(HEAT_PUMP_LAYOUT, config.heat_pump_slave)
        self.pumps = DeviceSnapshot.for_layout(PUMP_CONTROLLER_LAYOUT, config.pump_slave)

        self.hub = BroadcastHub()
        self.poller = SnapshotPoller(self.bus, self.hub)
        self.runner = RecoveryRunner()
        self.notifier = EmailNotifier(
            server=config.smtp_server,
            port=config.smtp_port,
            username=config.smtp_username,
            password=config.smtp_password,
            from_addr=config.notify_from,
            to_addrs=config.notify_to,
        )
        self.control = PlantControl(
            self.bus, self.heat_pump, self.pumps, self.runner,
            notifier=self.notifier, sleep=sleep,
        )

        self.mqtt: MQTTHandler | None = None
        if config.mqtt_enabled:
            self.mqtt = MQTTHandler(config)
            self.hub.register(self.mqtt)

        self.supervisor = FaultSupervisor(
            self.heat_pump, self.pumps, self.control, self.runner,
            recovery_enabled=config.recovery_enabled,
            clock=clock,
            event_callback=self._safe_publish_event,
        )

        self.sample_log: SampleLog | None = None
        if config.sample_db:
            self.sample_log = SampleLog(config.sample_db)

        self.web = WebServer(
            config.web_port, self.bus, self.control, self.hub,
            self.heat_pump, self.pumps, sample_log=self.sample_log,
        )
        self.web.set_refresh_callback(self.refresh)
        self.web.set_health_callback(self.get_health)

        self._ticks = 0
        self._tick_errors = 0
        self._last_tick_duration: float | None = None
        self._subsystem_errors = {"sample_log": 0, "mqtt": 0, "supervisor": 0}
        self._tasks: list[asyncio.Task] = []

    def _create_transport(self) -> BusTransport:
        if self.config.mock_mode:
            logger.info("Mock mode: using simulated heat pump and pump controller")
            return MockBus(self.config.heat_pump_slave, self.config.pump_slave)
        return ModbusRTUClient(
            self.config.serial_port,
            baud=self.config.baud,
            bytesize=self.config.data_bits,
            parity=self.config.parity,
            stopbits=self.config.stop_bits,
            timeout=self.config.timeout,
        )

    # -- Bus connection ------------------------------------------------

    async def _ensure_connected(self) -> bool:
        if self._connected:
            return True
        now = self._clock()
        if (self._last_connect_attempt is not None
                and now - self._last_connect_attempt < RECONNECT_INTERVAL):
            return False
        self._last_connect_attempt = now
        try:
            await self.bus.connect()
        except TransportError as e:
            logger.error("Cannot open the Modbus port: %s", e)
            return False
        self._connected = True
        logger.info("Modbus bus connected")
        return True

    # -- Tick ----------------------------------------------------------

    async def tick(self):
        """One supervisory pass. Never called concurrently with itself."""
        if not await self._ensure_connected():
            return
        await self.poller.poll(self.pumps)
        await self.poller.poll(self.heat_pump)
        await self.supervisor.enforce_flow_interlock()

        self._ticks += 1
        if self._ticks % self.config.log_every == 0:
            self._safe_record()
        await self._safe_evaluate()

    async def refresh(self):
        """Re-read both devices and publish them even if nothing changed."""
        await self.poller.poll(self.pumps, refresh=True)
        await self.poller.poll(self.heat_pump, refresh=True)

    # -- Subsystem isolation -------------------------------------------

    def _safe_record(self):
        if not self.sample_log:
            return
        try:
            self.sample_log.record(self.heat_pump, self.pumps)
        except Exception:
            self._subsystem_errors["sample_log"] += 1
            if self._subsystem_errors["sample_log"] <= 3:
                logger.exception("Sample log write error")

    async def _safe_evaluate(self):
        try:
            await self.supervisor.evaluate()
        except Exception:
            self._subsystem_errors["supervisor"] += 1
            if self._subsystem_errors["supervisor"] <= 3:
                logger.exception("Fault evaluation error")

    def _safe_publish_event(self, event: dict):
        if not self.mqtt:
            return
        try:
            self.mqtt.publish_event(event)
        except Exception:
            self._subsystem_errors["mqtt"] += 1
            if self._subsystem_errors["mqtt"] <= 3:
                logger.exception("MQTT event publish error")

    # -- Health --------------------------------------------------------

    def get_health(self) -> dict[str, Any]:
        issues = []
        bus_health = self.bus.get_health()
        if not self._connected:
            issues.append("Modbus port not open")
        elif not bus_health["reachable"]:
            issues.append(f"Bus failing ({bus_health['consecutive_failures']} consecutive errors)")
        if self.mqtt and not self.mqtt.get_status().get("connected"):
            issues.append("MQTT disconnected")
        if self.sample_log and not self.sample_log.get_health().get("healthy"):
            issues.append("Sample log write errors detected")

        return {
            "status": "healthy" if not issues else "degraded",
            "issues": issues,
            "version": __version__,
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "ticks": self._ticks,
            "tick_errors": self._tick_errors,
            "last_tick_ms": (
                round(self._last_tick_duration * 1000, 1)
                if self._last_tick_duration is not None else None
            ),
            "bus": bus_health,
            "poller": self.poller.get_stats(),
            "hub": self.hub.get_stats(),
            "faults": self.supervisor.get_status(),
            "recoveries": self.runner.get_stats(),
            "subsystems": {
                "mqtt": self.mqtt.get_status() if self.mqtt else {"status": "disabled"},
                "sample_log": (self.sample_log.get_health() if self.sample_log
                               else {"status": "disabled"}),
                "email": self.notifier.get_status(),
                "errors": dict(self._subsystem_errors),
            },
        }

    # -- Lifecycle -----------------------------------------------------

    async def run(self):
        """Start subsystems and drive the tick loop until stopped."""
        self._running = True
        logger.info("Heat pump supervisor %s starting", __version__)

        if self.mqtt:
            self.mqtt.connect()
        await self.web.start()
        self._tasks.append(
            asyncio.get_event_loop().create_task(self.hub.run(), name="broadcast-hub")
        )

        interval = self.config.poll_interval
        while self._running:
            tick_start = time.monotonic()
            try:
                await self.tick()
            except Exception:
                self._tick_errors += 1
                if self._tick_errors <= 5 or self._tick_errors % 30 == 0:
                    logger.exception("Error in tick loop (error %d)", self._tick_errors)
            self._last_tick_duration = time.monotonic() - tick_start
            await asyncio.sleep(max(0.0, interval - self._last_tick_duration))

    async def _async_stop(self):
        await self.web.stop()

    def stop(self):
        if not self._running:
            return
        self._running = False

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()

        try:
            loop = asyncio.get_event_loop()
            if loop.is_running():
                loop.create_task(self._async_stop())
            else:
                loop.run_until_complete(self._async_stop())
        except Exception:
            logger.debug("Error stopping web server", exc_info=True)

        if self.mqtt:
            self.mqtt.disconnect()
        if self.sample_log:
            self.sample_log.close()
        self.bus.close()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    log_buffer = RingBufferHandler(1000)
    log_buffer.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    logging.getLogger().addHandler(log_buffer)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    supervisor = HeatPumpSupervisor(config)
    supervisor.web.set_log_buffer(log_buffer)

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        supervisor.stop()
        loop.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        loop.run_until_complete(supervisor.run())
    except KeyboardInterrupt:
        pass
    except RuntimeError:
        # loop.stop() from the signal handler ends run_until_complete early
        logger.debug("Event loop stopped")
    finally:
        supervisor.stop()
        loop.close()
        logger.info("Supervisor stopped.")


if __name__ == "__main__":
    main()
