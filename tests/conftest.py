# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Pytest configuration: shared fixtures and HTML report metadata."""

import os
import platform
import subprocess
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "supervisor"))

from heatpump.mock_bus import MockBus
from heatpump.registers import HEAT_PUMP_LAYOUT, PUMP_CONTROLLER_LAYOUT
from heatpump.snapshot import DeviceSnapshot


def _git(cmd: str) -> str:
    """Run a git command and return stripped output, or '' on failure."""
    try:
        return subprocess.check_output(
            ["git"] + cmd.split(), stderr=subprocess.DEVNULL
        ).decode().strip()
    except Exception:
        return ""


def pytest_configure(config):
    """Add project metadata to HTML report (only if pytest-metadata installed)."""
    try:
        from pytest_metadata.plugin import metadata_key
    except ImportError:
        return

    config.stash[metadata_key]["Project"] = "Heat Pump Supervisor"
    config.stash[metadata_key]["Git Commit"] = _git("rev-parse --short HEAD")
    config.stash[metadata_key]["Python"] = platform.python_version()
    config.stash[metadata_key]["Timestamp"] = datetime.now().isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeSleep:
    """Records requested sleeps and returns immediately."""

    def __init__(self):
        self.calls: list[float] = []
        self.hooks: list = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        for hook in list(self.hooks):
            hook(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def heat_pump():
    return DeviceSnapshot.for_layout(HEAT_PUMP_LAYOUT, 1)


@pytest.fixture
def pumps():
    return DeviceSnapshot.for_layout(PUMP_CONTROLLER_LAYOUT, 10)


@pytest.fixture
def mock_bus():
    bus = MockBus(heat_pump_slave=1, pump_slave=10)
    bus._connected = True
    return bus
