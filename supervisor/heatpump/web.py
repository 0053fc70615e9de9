# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""REST API and WebSocket feed for the heat pump supervisor."""

import asyncio
import collections
import json
import logging
import time
from typing import Any, Awaitable, Callable

from aiohttp import WSMsgType, web

from . import registers as reg
from .broadcast import BroadcastHub
from .control import PlantControl
from .snapshot import DeviceSnapshot
from .transport import BusTransport, TransportError

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[], Awaitable[None]]
HealthCallback = Callable[[], dict[str, Any]]

# Seconds between consecutive pump controller writes
PUMP_WRITE_SPACING = 0.1


# ---------------------------------------------------------------------------
# RingBufferHandler: in-memory log capture for /api/system/logs
# ---------------------------------------------------------------------------

class RingBufferHandler(logging.Handler):
    """Logging handler that stores records in a bounded deque for web access."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self._records: collections.deque = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            self._records.append({
                "ts": record.created,
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)

    def get_records(self, level: str | None = None, limit: int = 200,
                    search: str | None = None) -> list[dict]:
        """Return filtered log records, newest first."""
        level_num = getattr(logging, level.upper(), 0) if level else 0
        results = []
        for rec in reversed(self._records):
            if level_num and getattr(logging, rec["level"], 0) < level_num:
                continue
            if search and search.lower() not in rec["message"].lower():
                continue
            results.append(rec)
            if len(results) >= limit:
                break
        return results


class WebSocketObserver:
    """BroadcastHub observer backed by one WebSocket connection."""

    def __init__(self, ws: web.WebSocketResponse):
        self._ws = ws

    async def send(self, payload: str) -> None:
        if self._ws.closed:
            raise ConnectionResetError("websocket closed")
        await self._ws.send_str(payload)


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response(status=204)
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


class WebServer:
    def __init__(self, port: int, bus: BusTransport, control: PlantControl,
                 hub: BroadcastHub, heat_pump: DeviceSnapshot,
                 pumps: DeviceSnapshot, sample_log=None):
        self._port = port
        self._bus = bus
        self._control = control
        self._hub = hub
        self._devices = {heat_pump.kind: heat_pump, pumps.kind: pumps}
        self._hp = heat_pump
        self._pumps = pumps
        self._sample_log = sample_log

        self._refresh_callback: RefreshCallback | None = None
        self._health_callback: HealthCallback | None = None
        self._log_buffer: RingBufferHandler | None = None
        self._pump_write_lock = asyncio.Lock()
        self._last_pump_write = 0.0
        self._runner: web.AppRunner | None = None

        self._app = web.Application(middlewares=[cors_middleware])
        self._setup_routes()

    def set_refresh_callback(self, callback: RefreshCallback):
        self._refresh_callback = callback

    def set_health_callback(self, callback: HealthCallback):
        self._health_callback = callback

    def set_log_buffer(self, handler: RingBufferHandler):
        self._log_buffer = handler

    def _setup_routes(self):
        r = self._app.router
        r.add_get("/api/snapshots", self._handle_snapshots)
        r.add_get("/api/data", self._handle_data)
        r.add_get("/api/status", self._handle_status)
        r.add_get("/api/samples", self._handle_samples)
        r.add_patch("/api/coils/{kind}/{index}/toggle", self._handle_toggle_coil)
        r.add_post("/api/holding/{kind}/{index}", self._handle_write_holding)
        r.add_patch("/api/heatpump/start", self._handle_start)
        r.add_patch("/api/heatpump/stop", self._handle_stop)
        r.add_post("/api/heatpump", self._handle_control)
        r.add_patch("/api/heatpump/setpoint", self._handle_setpoint)
        r.add_get("/api/health", self._handle_health)
        r.add_get("/api/system/logs", self._handle_system_logs)
        r.add_get("/ws", self._handle_ws)

    def _json(self, data, status=200):
        return web.Response(
            text=json.dumps(data),
            content_type="application/json",
            status=status,
        )

    async def _read_body(self, request) -> dict | None:
        try:
            body = await request.json()
        except (json.JSONDecodeError, ValueError):
            return None
        return body if isinstance(body, dict) else None

    def _resolve(self, request) -> tuple[DeviceSnapshot | None, int | None]:
        """Device and protocol address from the URL, or (None, None)."""
        device = self._devices.get(request.match_info["kind"])
        try:
            address = int(request.match_info["index"])
        except ValueError:
            return device, None
        return device, address

    # --- Read-only views ---

    async def _handle_snapshots(self, request):
        return self._json({kind: snap.to_dict() for kind, snap in self._devices.items()})

    async def _handle_data(self, request):
        hp, pumps = self._hp, self._pumps
        return self._json({
            "cold_pump": pumps.coils[reg.index(reg.COLD_PUMP_COIL)],
            "cold_flow": pumps.discretes[reg.index(reg.COLD_FLOW_DISCRETE)],
            "reject_pump": pumps.coils[reg.index(reg.REJECT_PUMP_COIL)],
            "reject_flow": pumps.discretes[reg.index(reg.REJECT_FLOW_DISCRETE)],
            "heatpump_on": hp.coils[reg.index(reg.BMS_ON_OFF_COIL)],
            "setpoint": hp.holdings[reg.index(reg.COOLING_SETPOINT_HOLDING)] / 10,
            "in_temp": hp.holdings[reg.index(reg.IN_TEMP_HOLDING)] / 10,
            "out_temp": hp.holdings[reg.index(reg.OUT_TEMP_HOLDING)] / 10,
        })

    async def _handle_status(self, request):
        """Home-automation status; flow fields are true when water is moving."""
        hp, pumps = self._hp, self._pumps
        return self._json({
            "on": hp.coils[reg.index(reg.BMS_ON_OFF_COIL)],
            "setpoint": hp.holdings[reg.index(reg.COOLING_SETPOINT_HOLDING)] / 10,
            "in_temperature": hp.holdings[reg.index(reg.IN_TEMP_HOLDING)] / 10,
            "out_temperature": hp.holdings[reg.index(reg.OUT_TEMP_HOLDING)] / 10,
            "speed": hp.holdings[reg.index(reg.MOTOR_SPEED_HOLDING)],
            "current": hp.holdings[reg.index(reg.MOTOR_CURRENT_HOLDING)] / 10,
            "voltage": hp.holdings[reg.index(reg.MOTOR_VOLTAGE_HOLDING)],
            "cold_pump": pumps.coils[reg.index(reg.COLD_PUMP_COIL)],
            "cold_flow": not pumps.discretes[reg.index(reg.COLD_FLOW_DISCRETE)],
            "reject_pump": pumps.coils[reg.index(reg.REJECT_PUMP_COIL)],
            "reject_flow": not pumps.discretes[reg.index(reg.REJECT_FLOW_DISCRETE)],
            "alarms": reg.active_alarms(hp.coils),
        })

    async def _handle_samples(self, request):
        if not self._sample_log:
            return self._json({"error": "sample log not enabled"}, 503)
        now = time.time()
        try:
            start = float(request.query.get("start", now - 3600))
            end = float(request.query.get("end", now))
            limit = min(int(request.query.get("limit", "1000")), 10000)
        except ValueError:
            return self._json({"error": "start, end and limit must be numbers"}, 400)
        return self._json(self._sample_log.query(start, end, limit))

    # --- Register writes ---

    async def _handle_toggle_coil(self, request):
        device, address = self._resolve(request)
        if device is None or address is None:
            return self._json({"error": "unknown device or coil"}, 404)
        i = address - device.coil_start
        if not 0 <= i < len(device.coils):
            return self._json({"error": f"coil {address} out of range"}, 404)

        value = not device.coils[i]
        logger.info("Toggling %s coil %d to %s", device.kind, address, value)
        try:
            await self._bus.write_coil(address, value, device.slave_address)
        except TransportError as e:
            return self._json({"error": str(e)}, 502)
        return self._json({"kind": device.kind, "coil": address, "value": value, "ok": True})

    async def _handle_write_holding(self, request):
        device, address = self._resolve(request)
        if device is None or address is None:
            return self._json({"error": "unknown device or register"}, 404)
        if not 0 <= address - device.holding_start < len(device.holdings):
            return self._json({"error": f"holding {address} out of range"}, 404)

        body = await self._read_body(request)
        if body is None:
            return self._json({"error": "invalid JSON body"}, 400)
        value = body.get("value")
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 0xFFFF:
            return self._json({"error": "value must be an integer 0-65535"}, 400)

        logger.info("Writing %d to %s holding register %d", value, device.kind, address)
        try:
            if device is self._pumps:
                await self._spaced_pump_write(address, value)
            else:
                await self._bus.write_holding_register(address, value, device.slave_address)
        except TransportError as e:
            return self._json({"error": str(e)}, 502)
        return self._json({"kind": device.kind, "holding": address, "value": value, "ok": True})

    async def _spaced_pump_write(self, address: int, value: int):
        """The pump controller drops writes that arrive back to back."""
        async with self._pump_write_lock:
            wait = self._last_pump_write + PUMP_WRITE_SPACING - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            try:
                await self._bus.write_holding_register(
                    address, value, self._pumps.slave_address)
            finally:
                self._last_pump_write = time.monotonic()

    # --- Heat pump control ---

    async def _handle_start(self, request):
        try:
            result = await self._control.start_with_pumps()
        except TransportError as e:
            return self._json({"request": "StartHeatPump", "status": "ERROR",
                               "error": str(e)}, 502)
        return self._json(result)

    async def _handle_stop(self, request):
        if not await self._control.stop_heat_pump(background_pumps=True):
            return self._json({"request": "StopHeatPump", "status": "ERROR",
                               "error": "heat pump could not be stopped"}, 502)
        return self._json({"status": "OK", "description": "HeatPump Stopped"})

    async def _handle_control(self, request):
        body = await self._read_body(request)
        if body is None or not isinstance(body.get("heatpump"), bool):
            return self._json({"error": "body must be {\"heatpump\": true|false}"}, 400)
        if body["heatpump"]:
            return await self._handle_start(request)
        return await self._handle_stop(request)

    async def _handle_setpoint(self, request):
        body = await self._read_body(request)
        if body is None:
            return self._json({"error": "invalid JSON body"}, 400)
        try:
            setpoint = float(body.get("setpoint"))
        except (TypeError, ValueError):
            return self._json({"error": "setpoint must be a number"}, 400)
        try:
            await self._control.set_cooling_setpoint(setpoint)
        except ValueError as e:
            return self._json({"error": str(e)}, 400)
        except TransportError as e:
            return self._json({"request": "SetCoolingSetpoint", "status": "ERROR",
                               "error": str(e)}, 502)
        return self._json({"status": "OK", "setpoint": setpoint})

    # --- Health and logs ---

    async def _handle_health(self, request):
        if not self._health_callback:
            return self._json({"status": "unknown"}, 503)
        try:
            result = self._health_callback()
        except Exception:
            logger.exception("Failed to build health report")
            return self._json({"status": "error"}, 500)
        status_code = 200 if result.get("status") == "healthy" else 503
        return self._json(result, status_code)

    async def _handle_system_logs(self, request):
        """GET /api/system/logs: log records from the ring buffer."""
        if not self._log_buffer:
            return self._json({"error": "log buffer not available"}, 503)
        level = request.query.get("level")
        try:
            limit = min(int(request.query.get("limit", "200")), 1000)
        except ValueError:
            return self._json({"error": "limit must be an integer"}, 400)
        search = request.query.get("search")
        records = self._log_buffer.get_records(level=level, limit=limit, search=search)
        return self._json({"logs": records, "count": len(records)})

    # --- Live feed ---

    async def _handle_ws(self, request):
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        observer = WebSocketObserver(ws)
        self._hub.register(observer)
        logger.info("WebSocket client connected from %s", request.remote)

        # New clients get a full picture straight away
        if self._refresh_callback:
            try:
                await self._refresh_callback()
            except Exception:
                logger.exception("Refresh for new WebSocket client failed")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
        finally:
            self._hub.unregister(observer)
            logger.info("WebSocket client disconnected")
        return ws

    async def start(self):
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self._port)
        await site.start()
        logger.info("Web API started on http://0.0.0.0:%d", self._port)

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
