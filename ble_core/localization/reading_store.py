"""
Historical Reading Store.

Holds every sensor report of the loaded dataset, indexed by timestamp,
and validates raw report entries at the ingestion boundary so that the
solver only ever sees well-formed observations.

Raw entry format (one per sensor and timestamp):

    {
        "device_key": "sensor-01",           # or "deviceKey"
        "gps": [50.0, 6.0],
        "timestamp": "2024-05-01T12:00:00Z",  # or epoch milliseconds
        "devices": [
            {"mac_hashed": "ab12...", "distance_m": 4.2, "rssi": -71},
        ]
    }
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple
from datetime import datetime, timezone
import bisect
import logging
import math
import numbers
import time

from ble_core.proto.observation import DeviceReading, Observation, SensorReport
from ble_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class InvalidReportError(ValueError):
    """Raised when a raw sensor entry cannot be turned into a SensorReport."""


def parse_timestamp_ms(value: Any) -> int:
    """
    Normalize a timestamp to integer epoch milliseconds.

    Args:
        value: ISO-8601 string (a trailing "Z" is accepted), datetime, or
            number of epoch milliseconds

    Returns:
        Epoch milliseconds

    Raises:
        ValueError: If the value cannot be interpreted
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, numbers.Real):
        if not math.isfinite(value):
            raise ValueError(f"Invalid timestamp: {value!r}")
        return int(round(value))
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Invalid timestamp: {value!r}") from e
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def _parse_device(device: Any) -> Optional[DeviceReading]:
    """Turn one raw device item into a reading, or None if it is unusable."""
    if not isinstance(device, dict):
        return None

    device_id = device.get('mac_hashed')
    if not device_id or not isinstance(device_id, str):
        return None

    distance = device.get('distance_m')
    if not _is_number(distance):
        distance = device.get('distance')
    if not _is_number(distance) or distance < 0:
        return None

    rssi = device.get('rssi')
    rssi = int(rssi) if _is_number(rssi) else None

    return DeviceReading(device_id=device_id, distance_m=float(distance), rssi=rssi)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, numbers.Real)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def parse_sensor_report(entry: Dict) -> SensorReport:
    """
    Validate one raw sensor entry.

    Args:
        entry: Raw entry dictionary (see module docstring)

    Returns:
        SensorReport with all usable device readings

    Raises:
        InvalidReportError: Missing sensor ID, GPS position or timestamp
            format problems

    Notes:
        - A missing timestamp is replaced by the current time
        - Device items without mac_hashed or a numeric, non-negative
          distance are skipped, not fatal
    """
    if not isinstance(entry, dict):
        raise InvalidReportError(f"Entry must be an object, got {type(entry).__name__}")

    sensor_id = entry.get('device_key') or entry.get('deviceKey')
    if not sensor_id or not isinstance(sensor_id, str):
        raise InvalidReportError("Missing or invalid device_key")

    gps = entry.get('gps')
    if not isinstance(gps, (list, tuple)) or len(gps) < 2:
        raise InvalidReportError("Missing or invalid GPS coordinates")

    try:
        lat = float(gps[0])
        lng = float(gps[1])
    except (TypeError, ValueError) as e:
        raise InvalidReportError("Invalid GPS coordinate values") from e

    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise InvalidReportError("Invalid GPS coordinate values")

    raw_timestamp = entry.get('timestamp')
    if raw_timestamp in (None, ''):
        timestamp_ms = int(time.time() * 1000)
    else:
        try:
            timestamp_ms = parse_timestamp_ms(raw_timestamp)
        except ValueError as e:
            raise InvalidReportError(str(e)) from e

    devices = entry.get('devices') or []
    if not isinstance(devices, list):
        devices = []

    readings = []
    for device in devices:
        reading = _parse_device(device)
        if reading is None:
            get_metrics().increment_drop('invalid_reading')
            continue
        readings.append(reading)

    return SensorReport(
        sensor_id=sensor_id,
        lat=lat,
        lng=lng,
        timestamp_ms=timestamp_ms,
        readings=readings,
    )


class ReadingStore:
    """
    In-memory store of sensor reports, indexed by timestamp.

    Usage:
        store = ReadingStore()
        loaded, errors = store.load_entries(json.load(f))

        for ts in store.timestamps:
            devices = store.get_devices_at(ts)

    Notes:
        - Sensor positions are taken from the first report of each sensor
        - Timestamps are kept sorted in ascending order
    """

    def __init__(self, reports: Optional[Iterable[SensorReport]] = None):
        self.metrics = get_metrics()
        self._reports_by_ts: Dict[int, List[SensorReport]] = {}
        self._timestamps: List[int] = []
        self._sensors: Dict[str, Tuple[float, float]] = {}

        if reports is not None:
            self.load(reports)

    @property
    def timestamps(self) -> List[int]:
        """Sorted unique report timestamps (epoch ms)."""
        return list(self._timestamps)

    @property
    def sensors(self) -> Dict[str, Tuple[float, float]]:
        """Sensor ID to (lat, lng)."""
        return dict(self._sensors)

    def get_sensor(self, sensor_id: str) -> Optional[Tuple[float, float]]:
        """Position of a sensor, or None if unknown."""
        return self._sensors.get(sensor_id)

    def has_data(self) -> bool:
        """Check if any report is loaded."""
        return bool(self._timestamps)

    def __len__(self) -> int:
        return sum(len(reports) for reports in self._reports_by_ts.values())

    def clear(self):
        """Remove all reports."""
        self._reports_by_ts.clear()
        self._timestamps.clear()
        self._sensors.clear()

    def load(self, reports: Iterable[SensorReport]) -> int:
        """
        Replace the dataset.

        Args:
            reports: Sensor reports of the new dataset

        Returns:
            Number of reports loaded
        """
        self.clear()
        count = 0
        for report in reports:
            self.add_report(report)
            count += 1

        logger.info(
            f"Loaded {count} report(s) from {len(self._sensors)} sensor(s) "
            f"over {len(self._timestamps)} timestamp(s)"
        )
        return count

    def load_entries(self, entries: Iterable[Dict]) -> Tuple[int, List[str]]:
        """
        Validate raw entries and replace the dataset with the valid ones.

        Args:
            entries: Raw entry dictionaries

        Returns:
            Tuple of (reports_loaded, error_messages)
        """
        reports = []
        errors = []
        for index, entry in enumerate(entries):
            try:
                reports.append(parse_sensor_report(entry))
            except InvalidReportError as e:
                errors.append(f"Entry {index}: {e}")
                self.metrics.increment_drop('invalid_report')

        if errors:
            logger.warning(f"Rejected {len(errors)} invalid entr{'y' if len(errors) == 1 else 'ies'}")

        return self.load(reports), errors

    def add_report(self, report: SensorReport):
        """Append one report (live ingestion or incremental load)."""
        ts = report.timestamp_ms
        if ts not in self._reports_by_ts:
            self._reports_by_ts[ts] = []
            bisect.insort(self._timestamps, ts)
        self._reports_by_ts[ts].append(report)

        if report.sensor_id not in self._sensors:
            self._sensors[report.sensor_id] = (report.lat, report.lng)

        self.metrics.increment('reports_loaded')

    def timestamps_between(self, start_ms: float, end_ms: float) -> List[int]:
        """Timestamps inside [start_ms, end_ms], ascending."""
        lo = bisect.bisect_left(self._timestamps, start_ms)
        hi = bisect.bisect_right(self._timestamps, end_ms)
        return self._timestamps[lo:hi]

    def reports_at(self, timestamp_ms: int) -> List[SensorReport]:
        """Reports recorded at exactly this timestamp, in arrival order."""
        return list(self._reports_by_ts.get(timestamp_ms, []))

    def get_devices_at(self, timestamp_ms: int) -> Dict[str, List[Observation]]:
        """
        Group the readings of one exact timestamp by device.

        Args:
            timestamp_ms: Report timestamp (epoch ms)

        Returns:
            Device ID to observations, one per reading
        """
        devices: Dict[str, List[Observation]] = {}
        for report in self._reports_by_ts.get(timestamp_ms, []):
            for reading in report.readings:
                devices.setdefault(reading.device_id, []).append(
                    report.to_observation(reading, timestamp_ms)
                )
        return devices
