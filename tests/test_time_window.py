"""
Unit tests for time-window aggregation.

Tests cover:
- Window inclusion around the query time
- First-seen deduplication per (sensor, device)
- Time offsets on observations
- Live trailing buffer pruning and latest-per-sensor selection
"""

import pytest

from ble_core.localization import (
    ReadingStore,
    TimeWindowAggregator,
    TimeWindowConfig,
    LiveReadingBuffer,
    DEFAULT_WINDOW_MS,
)
from ble_core.metrics import get_metrics

from conftest import T0_MS, make_report


SENSOR_A = (50.0, 6.0)
SENSOR_B = (50.001, 6.0)


@pytest.fixture
def async_store():
    """Sensor A sees dev-1 at t0, sensor B sees dev-1 twelve seconds later."""
    return ReadingStore([
        make_report("A", SENSOR_A, T0_MS, {"dev-1": 4.0}),
        make_report("B", SENSOR_B, T0_MS + 12000, {"dev-1": 9.0}),
    ])


class TestTimeWindowConfig:
    """Tests for TimeWindowConfig."""

    def test_default_window(self):
        assert TimeWindowConfig().window_ms == DEFAULT_WINDOW_MS == 15000

    def test_negative_window_rejected(self):
        with pytest.raises(ValueError):
            TimeWindowConfig(window_ms=-1)

    def test_zero_window_allowed(self):
        assert TimeWindowConfig(window_ms=0).window_ms == 0


class TestTimeWindowAggregator:
    """Tests for TimeWindowAggregator.collect()."""

    def test_wide_window_merges_sensors(self, async_store):
        """Test that a 15 s window sees both sensors."""
        aggregator = TimeWindowAggregator(async_store, TimeWindowConfig(window_ms=15000))

        devices = aggregator.collect(T0_MS + 12000)

        assert sorted(o.sensor_id for o in devices["dev-1"]) == ["A", "B"]

    def test_narrow_window_excludes_old_reading(self, async_store):
        """Test that a 5 s window only sees sensor B."""
        aggregator = TimeWindowAggregator(async_store, TimeWindowConfig(window_ms=5000))

        devices = aggregator.collect(T0_MS + 12000)

        assert [o.sensor_id for o in devices["dev-1"]] == ["B"]

    def test_window_bounds_inclusive(self, async_store):
        aggregator = TimeWindowAggregator(async_store, TimeWindowConfig(window_ms=12000))

        devices = aggregator.collect(T0_MS + 12000)

        assert len(devices["dev-1"]) == 2

    def test_window_is_symmetric(self, async_store):
        """Test that readings after the query time are included too."""
        aggregator = TimeWindowAggregator(async_store)

        devices = aggregator.collect(T0_MS)

        assert len(devices["dev-1"]) == 2

    def test_time_offsets(self, async_store):
        aggregator = TimeWindowAggregator(async_store)

        devices = aggregator.collect(T0_MS + 12000)
        offsets = {o.sensor_id: o.time_offset_ms for o in devices["dev-1"]}
        originals = {o.sensor_id: o.original_timestamp_ms for o in devices["dev-1"]}

        assert offsets == {"A": -12000, "B": 0}
        assert originals == {"A": T0_MS, "B": T0_MS + 12000}

    def test_first_seen_reading_wins(self):
        """Test that the earliest reading of a (sensor, device) pair is kept."""
        store = ReadingStore([
            make_report("A", SENSOR_A, T0_MS, {"dev-1": 3.0}),
            make_report("A", SENSOR_A, T0_MS + 1000, {"dev-1": 9.0}),
        ])
        aggregator = TimeWindowAggregator(store)

        devices = aggregator.collect(T0_MS + 1000)

        assert len(devices["dev-1"]) == 1
        assert devices["dev-1"][0].distance_m == 3.0

    def test_same_sensor_different_devices(self):
        store = ReadingStore([
            make_report("A", SENSOR_A, T0_MS, {"dev-1": 3.0, "dev-2": 5.0}),
        ])

        devices = TimeWindowAggregator(store).collect(T0_MS)

        assert set(devices) == {"dev-1", "dev-2"}

    def test_nothing_in_range(self, async_store):
        aggregator = TimeWindowAggregator(async_store, TimeWindowConfig(window_ms=1000))

        assert aggregator.collect(T0_MS + 100000) == {}

    def test_empty_store(self):
        assert TimeWindowAggregator(ReadingStore()).collect(T0_MS) == {}

    def test_set_window_ms(self, async_store):
        aggregator = TimeWindowAggregator(async_store)

        aggregator.set_window_ms(5000)

        assert aggregator.window_ms == 5000
        with pytest.raises(ValueError):
            aggregator.set_window_ms(-5)


class TestLiveReadingBuffer:
    """Tests for LiveReadingBuffer."""

    def test_latest_reading_per_sensor(self):
        buffer = LiveReadingBuffer(window_ms=15000)
        buffer.add_report(make_report("A", SENSOR_A, T0_MS, {"dev-1": 4.0}), received_ms=0)
        buffer.add_report(make_report("A", SENSOR_A, T0_MS, {"dev-1": 6.0}), received_ms=5000)

        devices = buffer.collect(now_ms=6000)

        assert len(devices["dev-1"]) == 1
        assert devices["dev-1"][0].distance_m == 6.0
        assert devices["dev-1"][0].time_offset_ms == -1000

    def test_equal_arrival_keeps_first(self):
        buffer = LiveReadingBuffer()
        buffer.add_report(make_report("A", SENSOR_A, T0_MS, {"dev-1": 4.0}), received_ms=1000)
        buffer.add_report(make_report("A", SENSOR_A, T0_MS, {"dev-1": 6.0}), received_ms=1000)

        devices = buffer.collect(now_ms=1000)

        assert devices["dev-1"][0].distance_m == 4.0

    def test_multiple_sensors(self):
        buffer = LiveReadingBuffer()
        buffer.add_report(make_report("A", SENSOR_A, T0_MS, {"dev-1": 4.0}), received_ms=1000)
        buffer.add_report(make_report("B", SENSOR_B, T0_MS, {"dev-1": 7.0}), received_ms=2000)

        devices = buffer.collect(now_ms=3000)

        assert sorted(o.sensor_id for o in devices["dev-1"]) == ["A", "B"]

    def test_stale_readings_pruned(self):
        buffer = LiveReadingBuffer(window_ms=15000)
        buffer.add_report(make_report("A", SENSOR_A, T0_MS, {"dev-1": 4.0}), received_ms=0)
        buffer.add_report(make_report("B", SENSOR_B, T0_MS, {"dev-1": 7.0}), received_ms=5000)

        devices = buffer.collect(now_ms=16000)

        assert [o.sensor_id for o in devices["dev-1"]] == ["B"]
        assert get_metrics().get_drop_count("stale_reading") == 1

    def test_device_forgotten_when_empty(self):
        buffer = LiveReadingBuffer(window_ms=15000)
        buffer.add_report(make_report("A", SENSOR_A, T0_MS, {"dev-1": 4.0}), received_ms=0)
        assert buffer.device_ids == ["dev-1"]

        devices = buffer.collect(now_ms=30000)

        assert devices == {}
        assert len(buffer) == 0

    def test_clear(self):
        buffer = LiveReadingBuffer()
        buffer.add_report(make_report("A", SENSOR_A, T0_MS, {"dev-1": 4.0}), received_ms=0)

        buffer.clear()

        assert buffer.collect(now_ms=0) == {}
