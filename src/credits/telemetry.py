"""Device registry and telemetry readings.

The live feed (MQTT) is outside this package; readings arrive here already
parsed. ``TelemetrySimulator`` stands in for the feed when no devices are
connected.
"""

from __future__ import annotations

import bisect
import random
import threading
from dataclasses import dataclass, field
from typing import Protocol

from ..errors import DeviceNotFoundError
from ..protocol.messages import now_ms


@dataclass(frozen=True)
class Reading:
    """One sensor sample. ``temperature``/``humidity`` are impact values."""

    device_id: str
    co2_value: float
    energy_value: float
    temperature: float
    humidity: float
    verified: bool
    timestamp: int


@dataclass(frozen=True)
class Device:
    device_id: str
    owner_id: str
    created_at: int = field(default_factory=now_ms)


class TelemetryStore(Protocol):
    """Read side consumed by the credit engine."""

    def get_device(self, device_id: str) -> Device | None:
        ...

    def devices(self) -> list[Device]:
        ...

    def query_readings(self, device_id: str, start: int, end: int) -> list[Reading]:
        ...


class InMemoryTelemetryStore:
    """Readings kept per device, sorted by timestamp."""

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._readings: dict[str, list[Reading]] = {}
        self._lock = threading.Lock()

    def register_device(self, device_id: str, owner_id: str, created_at: int | None = None) -> Device:
        """Register a device (idempotent; the first registration wins)."""
        with self._lock:
            existing = self._devices.get(device_id)
            if existing is not None:
                return existing
            device = Device(device_id, owner_id, created_at if created_at is not None else now_ms())
            self._devices[device_id] = device
            self._readings[device_id] = []
            return device

    def get_device(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def devices(self) -> list[Device]:
        return list(self._devices.values())

    def add_reading(self, reading: Reading) -> None:
        with self._lock:
            if reading.device_id not in self._devices:
                raise DeviceNotFoundError(f"Device not found: {reading.device_id}", deviceId=reading.device_id)
            readings = self._readings[reading.device_id]
            keys = [r.timestamp for r in readings]
            readings.insert(bisect.bisect_right(keys, reading.timestamp), reading)

    def add_readings(self, readings: list[Reading]) -> None:
        for reading in readings:
            self.add_reading(reading)

    def query_readings(self, device_id: str, start: int, end: int) -> list[Reading]:
        """Readings with ``start <= timestamp <= end`` in timestamp order."""
        with self._lock:
            readings = self._readings.get(device_id, [])
            keys = [r.timestamp for r in readings]
            lo = bisect.bisect_left(keys, start)
            hi = bisect.bisect_right(keys, end)
            return readings[lo:hi]


class TelemetrySimulator:
    """Generates plausible sequestration readings.

    Ranges follow the field simulator: CO2 reduction is a 50-150 unit
    sequestration rate scaled by 80-100% efficiency, energy saved 5-25
    units, small temperature/humidity impacts, 90% of samples verified.
    """

    def __init__(self, store: InMemoryTelemetryStore, rng: random.Random | None = None) -> None:
        self.store = store
        self.rng = rng or random.Random()

    def reading(self, device_id: str, timestamp: int) -> Reading:
        sequestration_rate = 50 + self.rng.random() * 100
        efficiency = 0.8 + self.rng.random() * 0.2
        return Reading(
            device_id=device_id,
            co2_value=sequestration_rate * efficiency,
            energy_value=5 + self.rng.random() * 20,
            temperature=self.rng.random() * 1.5,
            humidity=self.rng.random() * 2.0,
            verified=self.rng.random() < 0.9,
            timestamp=timestamp,
        )

    def generate(self, device_id: str, count: int, start: int, end: int) -> list[Reading]:
        """Store ``count`` readings spread evenly over ``[start, end]``."""
        if count <= 0:
            return []
        step = (end - start) / count
        readings = [self.reading(device_id, int(start + step * (i + 1))) for i in range(count)]
        self.store.add_readings(readings)
        return readings
