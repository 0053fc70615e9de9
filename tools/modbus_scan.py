#!/usr/bin/env python3
"""Scan serial ports for the heat pump and pump controller.

Opens each USB serial port, then asks slaves 1 and 10 for their first
holding register. Run with the supervisor stopped: only one process can
own the port.
"""
import glob
import sys

import serial
from serial.tools import list_ports
from pymodbus.client import ModbusSerialClient

SLAVES = {1: "heat pump", 10: "pump controller"}


def candidate_ports():
    ports = {p.device for p in list_ports.comports()}
    ports.update(glob.glob("/dev/ttyUSB*"))
    ports.update(glob.glob("/dev/ttyACM*"))
    return sorted(ports)


def port_opens(port, baud):
    try:
        ser = serial.Serial(port=port, baudrate=baud, bytesize=8,
                            parity="N", stopbits=2, timeout=1)
    except serial.SerialException as e:
        return f"OPEN FAILED: {e}"
    ser.close()
    return None


def probe_slaves(port, baud):
    client = ModbusSerialClient(port=port, baudrate=baud, bytesize=8,
                                parity="N", stopbits=2, timeout=1)
    if not client.connect():
        return {slave: "no connection" for slave in SLAVES}
    results = {}
    try:
        for slave in SLAVES:
            try:
                rr = client.read_holding_registers(address=1, count=1, device_id=slave)
            except Exception as e:
                results[slave] = f"ERROR {e}"
                continue
            if rr.isError():
                results[slave] = f"error response {rr}"
            else:
                results[slave] = f"holding 1 = {rr.registers[0]}"
    finally:
        client.close()
    return results


def main():
    baud = int(sys.argv[1]) if len(sys.argv) > 1 else 19200
    ports = candidate_ports()
    if not ports:
        print("No serial ports found")
        return

    print(f"=== Scanning {len(ports)} serial ports at {baud} 8N2 ===\n")
    for port in ports:
        error = port_opens(port, baud)
        if error:
            print(f"  · {port}: {error}")
            continue
        for slave, result in probe_slaves(port, baud).items():
            found = "holding" in result
            status = "✓" if found else "·"
            print(f"  {status} {port} slave {slave} ({SLAVES[slave]}): {result}")


if __name__ == "__main__":
    main()
