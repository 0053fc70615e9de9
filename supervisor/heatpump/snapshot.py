# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""In-memory mirror of one Modbus device's register space.

A DeviceSnapshot holds the four Modbus regions (coils, discrete inputs,
input registers, holding registers) for one slave on the bus. Region
lengths are fixed when the snapshot is built. The supervisor keeps one
long-lived "retained" snapshot per device; each poll reads into a blank
copy and folds it into the retained one with update().
"""

import json
from typing import Any

from .registers import DeviceLayout


class KindMismatchError(Exception):
    """Raised when snapshots of different device kinds (or shapes) are mixed."""


class DeviceSnapshot:
    def __init__(
        self,
        kind: str,
        coils: int = 0,
        coil_start: int = 1,
        discretes: int = 0,
        discrete_start: int = 1,
        inputs: int = 0,
        input_start: int = 1,
        holdings: int = 0,
        holding_start: int = 1,
        slave_address: int = 1,
    ):
        self.kind = kind
        self.coils: list[bool] = [False] * coils
        self.discretes: list[bool] = [False] * discretes
        self.inputs: list[int] = [0] * inputs
        self.holdings: list[int] = [0] * holdings
        self._coil_start = coil_start
        self._discrete_start = discrete_start
        self._input_start = input_start
        self._holding_start = holding_start
        self._slave_address = slave_address

    @classmethod
    def for_layout(cls, layout: DeviceLayout, slave_address: int) -> "DeviceSnapshot":
        return cls(
            layout.kind,
            coils=layout.coils, coil_start=layout.coil_start,
            discretes=layout.discretes, discrete_start=layout.discrete_start,
            inputs=layout.inputs, input_start=layout.input_start,
            holdings=layout.holdings, holding_start=layout.holding_start,
            slave_address=slave_address,
        )

    def blank_like(self) -> "DeviceSnapshot":
        """Zero-valued snapshot with this snapshot's kind, shape, starts and slave."""
        return DeviceSnapshot(
            self.kind,
            coils=len(self.coils), coil_start=self._coil_start,
            discretes=len(self.discretes), discrete_start=self._discrete_start,
            inputs=len(self.inputs), input_start=self._input_start,
            holdings=len(self.holdings), holding_start=self._holding_start,
            slave_address=self._slave_address,
        )

    # --- Read-only addressing ---

    @property
    def coil_start(self) -> int:
        return self._coil_start

    @property
    def discrete_start(self) -> int:
        return self._discrete_start

    @property
    def input_start(self) -> int:
        return self._input_start

    @property
    def holding_start(self) -> int:
        return self._holding_start

    @property
    def slave_address(self) -> int:
        return self._slave_address

    def coil_address(self, index: int) -> int:
        return self._coil_start + index

    def holding_address(self, index: int) -> int:
        return self._holding_start + index

    @property
    def shape(self) -> tuple[int, int, int, int]:
        return (len(self.coils), len(self.discretes),
                len(self.inputs), len(self.holdings))

    # --- Diff / copy ---

    def _check_compatible(self, other: "DeviceSnapshot"):
        if other.kind != self.kind:
            raise KindMismatchError(
                f"cannot mix snapshot kinds {self.kind!r} and {other.kind!r}"
            )
        if other.shape != self.shape:
            raise KindMismatchError(
                f"{self.kind!r} snapshot shape {self.shape} != {other.shape}"
            )

    def compare(self, other: "DeviceSnapshot") -> bool:
        """True iff every element of all four regions is pairwise equal.

        Raises KindMismatchError for a snapshot of another kind or shape.
        """
        self._check_compatible(other)
        return (
            self.coils == other.coils
            and self.discretes == other.discretes
            and self.inputs == other.inputs
            and self.holdings == other.holdings
        )

    def update(self, other: "DeviceSnapshot"):
        """Overwrite all four regions and the slave address from other, in place.

        The compatibility check runs before anything is touched, so a
        rejected update leaves this snapshot exactly as it was.
        """
        self._check_compatible(other)
        self.coils[:] = other.coils
        self.discretes[:] = other.discretes
        self.inputs[:] = other.inputs
        self.holdings[:] = other.holdings
        self._slave_address = other.slave_address

    # --- Accessors for the sample log ---

    def coil_values(self) -> list[bool]:
        return list(self.coils)

    def holding_values(self) -> list[int]:
        return list(self.holdings)

    def input_values(self) -> list[int]:
        return list(self.inputs)

    # --- Serialization ---

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "coil": list(self.coils),
            "discrete": list(self.discretes),
            "input": list(self.inputs),
            "holding": list(self.holdings),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def __repr__(self) -> str:
        return (
            f"DeviceSnapshot(kind={self.kind!r}, shape={self.shape}, "
            f"slave={self._slave_address})"
        )
