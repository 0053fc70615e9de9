# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Register map for the heat pump and the pump controller.

Addresses below are Modbus protocol addresses. Every region on both
devices starts at address 1, so a region index is ``address - 1``.
"""

from dataclasses import dataclass

KIND_HEAT_PUMP = "hp"
KIND_PUMP_CONTROLLER = "p"


@dataclass(frozen=True)
class DeviceLayout:
    kind: str
    name: str
    coils: int
    discretes: int
    inputs: int
    holdings: int
    coil_start: int = 1
    discrete_start: int = 1
    input_start: int = 1
    holding_start: int = 1


HEAT_PUMP_LAYOUT = DeviceLayout(
    KIND_HEAT_PUMP, "heat pump", coils=138, discretes=0, inputs=0, holdings=28,
)
PUMP_CONTROLLER_LAYOUT = DeviceLayout(
    KIND_PUMP_CONTROLLER, "pump controller", coils=8, discretes=4, inputs=16, holdings=6,
)

LAYOUTS = {
    KIND_HEAT_PUMP: HEAT_PUMP_LAYOUT,
    KIND_PUMP_CONTROLLER: PUMP_CONTROLLER_LAYOUT,
}

# --- Pump controller ---

# Coils
HOT_PUMP_COIL = 1
COLD_PUMP_COIL = 2
REJECT_PUMP_COIL = 3
INVERTER_CONTACTOR_COIL = 4   # N/C contacts feed the heat pump inverter

# Discrete inputs: set means NO flow
COLD_FLOW_DISCRETE = 2
REJECT_FLOW_DISCRETE = 3

# Holding registers: pump override setting, >99 means commanded on
COLD_PUMP_SETTING = 3
REJECT_PUMP_SETTING = 4
PUMP_SETTING_ON = 100
PUMP_SETTING_OFF = 0
PUMP_SETTING_ON_THRESHOLD = 99

# Input registers
REJECT_TEMP_IN_INPUT = 4
REJECT_TEMP_OUT_INPUT = 5
INSOLATION_INPUT = 8
GROUND_LOOP_IN_INPUT = 12
GROUND_LOOP_OUT_INPUT = 13

# --- Heat pump ---

# Coils
WATER_FLOW_SWITCH_COIL = 1
MAIN_WATER_PUMP_COIL = 7
UNIT_START_COIL = 13
ALARM_RESET_COIL = 16
BMS_ON_OFF_COIL = 17
WATER_FLOW_SWITCH_ALARM_COIL = 53
INVERTER_OFFLINE_ALARM_COIL = 138

# Coils above this address are alarms
LAST_STATUS_COIL = 17

# Holding registers (x10 where noted)
IN_TEMP_HOLDING = 1            # x10
OUT_TEMP_HOLDING = 2           # x10
COOLING_SETPOINT_HOLDING = 13  # x10
MOTOR_SPEED_HOLDING = 23
INVERTER_STATUS_HOLDING = 24   # 0=stopped, 1=running
MOTOR_CURRENT_HOLDING = 25     # x10
MOTOR_VOLTAGE_HOLDING = 26

INVERTER_RUNNING = 1


def index(address: int) -> int:
    """Region index of a protocol address (all regions start at 1)."""
    return address - 1


HEAT_PUMP_COIL_NAMES: dict[int, str] = {
    1: "Water Flow Switch",
    2: "Remote OnOff",
    3: "Terminal Switch",
    4: "High Fan",
    5: "Low Fan",
    6: "Four Way Valve",
    7: "Main Water Pump",
    8: "Three Port Valve For Water Circuit",
    9: "Crankshaft Heater",
    10: "Chassis Heater",
    11: "End Terminal Water Pump",
    12: "Electric Heater",
    13: "Unit Start",
    14: "Cooling Mode",
    15: "Heating Mode",
    16: "Alarm Reset",
    17: "BMS On Off",
    18: "Suction Pressure Probe Alarm",
    19: "Suction Temperature Probe Alarm",
    20: "Exhaust Pressure Probe Alarm",
    21: "Exhaust Temperature Probe Alarm",
    22: "Main Valve Low Super Heat Alarm",
    23: "Main Valve LOP Alarm",
    24: "Main Valve MOP Alarm",
    25: "Main Valve Low Suction Temperature",
    26: "Main Valve Adaptation PID Error",
    27: "Main Valve Range Error",
    28: "Main Valve High Condensing Temperature",
    29: "Main Valve Motor Failure",
    30: "Main Valve Emergency Shutdown Alarm",
    31: "Main Valve Sequence Error",
    32: "Main Valve Position Signal Error",
    33: "Auxiliary Valve Low Superheat Alarm",
    34: "Auxiliary Valve LOP Alarm",
    35: "Auxiliary Valve MOP Alarm",
    36: "Auxiliary Valve Range Error",
    37: "Auxiliary Valve High Condensing Temperature",
    38: "Auxiliary Valve Low Suction Temperature",
    39: "Auxiliary Valve Motor Error",
    40: "Auxiliary Valve Adaptive PID Error",
    41: "Auxiliary Valve Emergency Shutdown Alarm",
    42: "Auxiliary Valve Sequence Error",
    43: "Auxiliary Valve Position Signal Error",
    44: "Water In Temperature Probe Alarm",
    45: "Water Out Temperature Probe Alarm",
    46: "Ambient Temperature Probe Alarm",
    47: "Coil Temperature Probe Alarm",
    48: "Enthalpy Suction Temperature Probe Alarm",
    49: "Enthalpy Suction Pressure Probe Alarm",
    50: "Storage Type Variables Frequently Written",
    51: "Storage Variable Write Error",
    52: "PumpActive",
    53: "WaterFlowSwitchAlarm",
    54: "HighPressureAlarm",
    55: "LowPressureAlarm",
    56: "WaterOutTemperatureTooHighAlarm",
    57: "WaterOutTemperatureTooLowAlarm",
    58: "WaterInOutDeltaTemperature",
    59: "BLDC-Starting pressure difference is too high",
    60: "BLDC Compressor Off",
    61: "BLDC Out Of Operation Range",
    62: "BLDCCompressorStartupFailureRetry",
    63: "BLDCCompressorStartupFailureLock",
    64: "BLDCLowPressureDeltaDifference",
    65: "BLDCExhaustTemperatureTooHigh",
    66: "EnvelopeHighPressureRatio",
    67: "EnvelopeExhaustPressureHigh",
    68: "EnvelopeElectricCurrentHigh",
    69: "EnvelopeSuctionPressureHigh",
    70: "EnvelopeLowPressureRatio",
    71: "Envelope Low Pressure Delta Difference",
    72: "Envelope Exhaust Pressure Low",
    73: "Envelope Suction Pressure Low",
    74: "Envelope Exhaust Temperature High",
    75: "Over Current",
    76: "Motor Overload",
    77: "DC Bus Over Voltage",
    78: "DC Bus Under Voltage",
    79: "Inverter Overheating",
    80: "Inverter Under Temperature",
    81: "OverCurrent HW",
    82: "Motor Overheat",
    83: "IGBT Module Failure",
    84: "CPU Failure",
    85: "Parameter Missing",
    86: "Bus Voltage Fluctuation",
    87: "DataCommunicationFailure",
    88: "ThermistorFailure",
    89: "AutomaticAdjustmentFailure",
    90: "InverterDisabled",
    91: "MotorPhaseSequenceFailure",
    92: "FanFailure",
    93: "SpeedFailure",
    94: "PFCModuleFailure",
    95: "PFCOvervoltage",
    96: "PFCUndervoltage",
    97: "STODetectionError_1",
    98: "STODetectionError_2",
    99: "GroundFault",
    100: "CPUSynchronizationError1",
    101: "CPUSynchronizationError2",
    102: "InverterOverload",
    103: "UCsafetyFault",
    104: "UnexpectedRestart",
    105: "UnexpectedStop",
    106: "Current Measurement Fault",
    107: "Current Unbalanced",
    108: "Over Current Safety",
    109: "STO Alarm",
    110: "STO Hardware Alarm",
    111: "Power Supply Missing",
    112: "HW Fault Command Buffer",
    113: "HW Fault Heater",
    114: "Data Communication Fault",
    115: "Compressor Stall Detect",
    116: "DC bus Over Current",
    117: "HWF DC bus Current",
    118: "DC bus voltage",
    119: "HWF DC bus voltage",
    120: "Input Voltage",
    121: "HWFInputVoltage",
    122: "DCbusPowerAlarm",
    123: "HWFPowerMismatch",
    124: "NTCOverTemperature",
    125: "NTCUnderTemperature",
    126: "NTCFault",
    127: "HWFSyncFault",
    128: "InvalidParameter",
    129: "FWFault",
    130: "HWFault",
    131: "PowerAndSafetyReserved1",
    132: "PowerAndSafetyReserved2",
    133: "PowerAndSafetyReserved3",
    134: "PowerAndSafetyReserved4",
    135: "PowerAndSafetyReserved5",
    136: "PowerAndSafetyReserved6",
    137: "PowerAndSafetyReserved7",
    138: "InverterOfflineAlarm",
}


def active_alarms(coils: list[bool]) -> list[str]:
    """Names of the heat pump alarm coils currently set, in address order."""
    return [
        HEAT_PUMP_COIL_NAMES[addr]
        for addr in sorted(HEAT_PUMP_COIL_NAMES)
        if addr > LAST_STATUS_COIL and index(addr) < len(coils) and coils[index(addr)]
    ]


def alarm_summary(coils: list[bool]) -> str:
    return " : ".join(active_alarms(coils))
