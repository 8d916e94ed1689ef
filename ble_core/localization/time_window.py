"""
Time-Window Aggregation of Asynchronous Sensor Readings.

Sensors report on their own schedule: a device may be seen by sensor A at
12:00:01 and by sensor B at 12:00:10. Readings that fall inside a window
around the query time are treated as simultaneous.

- TimeWindowAggregator: symmetric window over the historical store,
  first-seen reading per (sensor, device) wins
- LiveReadingBuffer: trailing window over live reports, latest reading
  per sensor wins
"""

from typing import Dict, List, Optional
from dataclasses import dataclass
import logging
import time

from ble_core.proto.observation import DeviceReading, Observation, SensorReport
from ble_core.localization.reading_store import ReadingStore
from ble_core.metrics import get_metrics

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 15000


@dataclass
class TimeWindowConfig:
    """
    Configuration for time-window aggregation.

    Attributes:
        window_ms: Half-width of the window around the query time (ms)
    """

    window_ms: int = DEFAULT_WINDOW_MS

    def __post_init__(self):
        """Validate configuration."""
        if self.window_ms < 0:
            raise ValueError(f"window_ms cannot be negative: {self.window_ms}")


class TimeWindowAggregator:
    """
    Collect per-device observations around a target time.

    Usage:
        aggregator = TimeWindowAggregator(store, TimeWindowConfig(window_ms=15000))
        by_device = aggregator.collect(target_ms)

        for device_id, observations in by_device.items():
            estimate = solver.solve(device_id, observations)

    Notes:
        - Timestamps are visited in ascending order, so the earliest
          reading of a (sensor, device) pair inside the window is kept
          and later duplicates are discarded
        - Devices appear in the order they were first seen
    """

    def __init__(self, store: ReadingStore, config: Optional[TimeWindowConfig] = None):
        """
        Initialize aggregator.

        Args:
            store: Historical reading store to read from
            config: Window configuration (uses defaults if None)
        """
        self.store = store
        self.config = config or TimeWindowConfig()

    @property
    def window_ms(self) -> int:
        return self.config.window_ms

    def set_window_ms(self, window_ms: int):
        """
        Change the window half-width.

        Raises:
            ValueError: If window_ms is negative
        """
        self.config = TimeWindowConfig(window_ms=window_ms)
        logger.info(f"Time sync window set to {window_ms}ms ({window_ms / 1000.0:.1f}s)")

    def collect(self, target_ms: int) -> Dict[str, List[Observation]]:
        """
        Gather observations for every device seen near target_ms.

        Args:
            target_ms: Query time (epoch ms)

        Returns:
            Device ID to observations (empty if nothing is in range)
        """
        window = self.config.window_ms
        devices: Dict[str, List[Observation]] = {}
        seen: set = set()

        for ts in self.store.timestamps_between(target_ms - window, target_ms + window):
            for report in self.store.reports_at(ts):
                for reading in report.readings:
                    key = (report.sensor_id, reading.device_id)
                    if key in seen:
                        continue
                    seen.add(key)

                    devices.setdefault(reading.device_id, []).append(
                        report.to_observation(reading, target_ms)
                    )

        logger.debug(
            f"Window {target_ms} +/- {window}ms: "
            f"{len(devices)} device(s), {len(seen)} reading(s)"
        )
        return devices


@dataclass
class _BufferedReading:
    sensor_id: str
    sensor_lat: float
    sensor_lng: float
    reading: DeviceReading
    received_ms: int


class LiveReadingBuffer:
    """
    Trailing-window buffer for live sensor reports.

    Usage:
        buffer = LiveReadingBuffer(window_ms=15000)
        buffer.add_report(report)            # on every incoming message

        by_device = buffer.collect()         # on the caller's debounce tick

    Notes:
        - Readings are stamped with their arrival time, not the report time
        - collect() prunes readings older than the window and forgets
          devices with nothing left
        - For each sensor only the most recent reading is used
    """

    def __init__(self, window_ms: int = DEFAULT_WINDOW_MS):
        self.config = TimeWindowConfig(window_ms=window_ms)
        self.metrics = get_metrics()
        self._buffer: Dict[str, List[_BufferedReading]] = {}

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def device_ids(self) -> List[str]:
        return list(self._buffer)

    def add_report(self, report: SensorReport, received_ms: Optional[int] = None):
        """
        Buffer every reading of a live report.

        Args:
            report: Incoming sensor report
            received_ms: Arrival time (epoch ms, defaults to now)
        """
        if received_ms is None:
            received_ms = int(time.time() * 1000)

        for reading in report.readings:
            self._buffer.setdefault(reading.device_id, []).append(_BufferedReading(
                sensor_id=report.sensor_id,
                sensor_lat=report.lat,
                sensor_lng=report.lng,
                reading=reading,
                received_ms=received_ms,
            ))

    def collect(self, now_ms: Optional[int] = None) -> Dict[str, List[Observation]]:
        """
        Prune stale readings and return the latest reading per sensor.

        Args:
            now_ms: Current time (epoch ms, defaults to now)

        Returns:
            Device ID to observations
        """
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        cutoff = now_ms - self.config.window_ms

        devices: Dict[str, List[Observation]] = {}
        for device_id in list(self._buffer):
            readings = self._buffer[device_id]
            recent = [r for r in readings if r.received_ms >= cutoff]

            stale = len(readings) - len(recent)
            if stale:
                self.metrics.increment_drop('stale_reading', stale)

            if not recent:
                del self._buffer[device_id]
                continue
            self._buffer[device_id] = recent

            latest: Dict[str, _BufferedReading] = {}
            for r in recent:
                current = latest.get(r.sensor_id)
                if current is None or r.received_ms > current.received_ms:
                    latest[r.sensor_id] = r

            devices[device_id] = [
                Observation(
                    sensor_id=r.sensor_id,
                    sensor_lat=r.sensor_lat,
                    sensor_lng=r.sensor_lng,
                    distance_m=r.reading.distance_m,
                    rssi=r.reading.rssi,
                    device_id=device_id,
                    original_timestamp_ms=r.received_ms,
                    time_offset_ms=r.received_ms - now_ms,
                )
                for r in latest.values()
            ]

        return devices

    def clear(self):
        """Forget all buffered readings."""
        self._buffer.clear()
