# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""SQLite log of heat pump samples, written every few ticks."""

import logging
import sqlite3
import time
from pathlib import Path

from . import registers as reg
from .snapshot import DeviceSnapshot

logger = logging.getLogger(__name__)

HOLDING_COLUMNS = [
    "cold_water_in", "cold_water_out", "ambient_temperature",
    "suction_temperature_evi", "condensor_coil_temperature",
    "suction_pressure_evi", "suction_temperature", "suction_pressure",
    "discharge_temperature", "discharge_pressure",
    "pump_aout", "unit_status", "cooling_set_point", "heating_set_point",
    "cool_heat_mode_selection", "compressor_demand",
    "main_valve_superheat", "main_valve_opening_steps", "main_valve_opening_percent",
    "auxilliary_valve_superheat", "auxilliary_valve_opening_steps",
    "auxilliary_valve_opening_percent",
    "compressor_rotate_speed", "inverter_status", "motor_current",
    "motor_voltage", "inverter_temperature", "bus_voltage",
]

COIL_COLUMNS = [
    "water_flow_switch", "emergency_switch", "end_terminal_signal_switch",
    "high_fan", "low_fan", "four_way_valve", "main_water_pump",
    "three_port_valve", "crankshaft_heater", "chassis_heater",
    "end_terminal_water_pump", "electric_heater", "unit_start",
]

COLUMNS = (
    HOLDING_COLUMNS
    + ["ground_loop_in_temp", "ground_loop_out_temp"]
    + COIL_COLUMNS
    + ["alarms", "reject_in_temp", "reject_out_temp", "insolation"]
)


class SampleLog:
    def __init__(self, db_path: str):
        self._db_path = db_path
        self._rows_written = 0
        self._write_errors = 0

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def _create_tables(self):
        holding_cols = ",\n".join(f"{c} INTEGER" for c in HOLDING_COLUMNS)
        coil_cols = ",\n".join(f"{c} INTEGER" for c in COIL_COLUMNS)
        self._conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS heatpump (
                logged REAL NOT NULL,
                {holding_cols},
                ground_loop_in_temp INTEGER,
                ground_loop_out_temp INTEGER,
                {coil_cols},
                alarms TEXT,
                reject_in_temp INTEGER,
                reject_out_temp INTEGER,
                insolation INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_heatpump_logged ON heatpump(logged);
        """)
        self._conn.commit()

    @staticmethod
    def build_row(heat_pump: DeviceSnapshot, pumps: DeviceSnapshot) -> list:
        """Positional values for one row, in COLUMNS order."""
        holdings = heat_pump.holding_values()
        coils = heat_pump.coil_values()
        inputs = pumps.input_values()
        return (
            holdings[:len(HOLDING_COLUMNS)]
            + [inputs[reg.index(reg.GROUND_LOOP_IN_INPUT)],
               inputs[reg.index(reg.GROUND_LOOP_OUT_INPUT)]]
            + [int(c) for c in coils[:len(COIL_COLUMNS)]]
            + [reg.alarm_summary(coils),
               inputs[reg.index(reg.REJECT_TEMP_IN_INPUT)],
               inputs[reg.index(reg.REJECT_TEMP_OUT_INPUT)],
               inputs[reg.index(reg.INSOLATION_INPUT)]]
        )

    def record(self, heat_pump: DeviceSnapshot, pumps: DeviceSnapshot,
               ts: float | None = None):
        row = self.build_row(heat_pump, pumps)
        placeholders = ", ".join("?" for _ in range(len(COLUMNS) + 1))
        try:
            self._conn.execute(
                f"INSERT INTO heatpump (logged, {', '.join(COLUMNS)}) VALUES ({placeholders})",
                [ts if ts is not None else time.time()] + row,
            )
            self._conn.commit()
        except sqlite3.Error:
            self._write_errors += 1
            raise
        self._rows_written += 1

    def query(self, start: float, end: float, limit: int = 1000) -> list[dict]:
        rows = self._conn.execute(
            "SELECT * FROM heatpump WHERE logged >= ? AND logged <= ? "
            "ORDER BY logged LIMIT ?",
            (start, end, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    def get_health(self) -> dict:
        return {
            "db_path": self._db_path,
            "rows_written": self._rows_written,
            "write_errors": self._write_errors,
            "healthy": self._write_errors == 0,
        }

    def close(self):
        try:
            self._conn.close()
        except Exception:
            logger.debug("Error closing sample log", exc_info=True)
