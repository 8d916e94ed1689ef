"""
BLE position replay tool.

Loads a JSON list of sensor reports, replays the timestamps through a
positioning session and prints one JSON line of device positions per
timestamp.
"""

import sys
import json
import logging
import argparse
from typing import List, Optional

import config
from ble_core.localization import SessionController, parse_timestamp_ms
from ble_core.metrics import get_metrics

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"],
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)


class ReplayRunner:
    """Replay a historical dataset through a SessionController."""

    def __init__(self, session: SessionController, include_observations: bool = False):
        self.session = session
        self.include_observations = include_observations
        self.frame_count = 0
        self.device_count = 0

    def load(self, path: str) -> bool:
        """
        Load sensor entries from a JSON file.

        Returns:
            True if at least one report was loaded
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                entries = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {path}: {e}")
            return False

        if isinstance(entries, dict):
            entries = [entries]
        if not isinstance(entries, list):
            logger.error("Expected a JSON list of sensor entries")
            return False

        loaded, errors = self.session.load_entries(entries)
        for error in errors:
            logger.debug(error)

        logger.info(f"Loaded {loaded} report(s), rejected {len(errors)}")
        return loaded > 0

    def run(self, timestamps: List[int], out=None, indent: Optional[int] = None):
        """Compute and print positions for each timestamp, in order."""
        out = out or sys.stdout

        for ts in timestamps:
            estimates = self.session.compute_all_positions(ts)
            self.frame_count += 1
            self.device_count += len(estimates)

            frame = {
                "timestamp_ms": ts,
                "devices": [
                    e.to_dict(include_observations=self.include_observations)
                    for e in estimates
                ],
            }
            out.write(json.dumps(frame, indent=indent) + "\n")

        logger.info(f"Replayed {self.frame_count} timestamp(s), {self.device_count} position(s)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='BLE device position replay')
    parser.add_argument('data', type=str,
                        help='JSON file with sensor reports')
    parser.add_argument('--timestamp', '-t', type=str, default=None,
                        help='Only compute this timestamp (ISO-8601 or epoch ms)')
    parser.add_argument('--time-window-ms', '-w', type=int, default=None,
                        help='Half-width of the sync window in ms')
    parser.add_argument('--no-smoothing', action='store_true',
                        help='Disable Kalman smoothing')
    parser.add_argument('--observations', action='store_true',
                        help='Include per-sensor observations in the output')
    parser.add_argument('--metrics', '-m', action='store_true',
                        help='Log a metrics summary at the end')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    engine = {}
    if args.time_window_ms is not None:
        if args.time_window_ms < 0:
            logger.error("--time-window-ms cannot be negative")
            return 2
        engine["time_window_ms"] = args.time_window_ms
    if args.no_smoothing:
        engine["smoothing_enabled"] = False

    session = SessionController(config=config.build_session_config(engine=engine))
    runner = ReplayRunner(
        session,
        include_observations=args.observations or config.OUTPUT_CONFIG["include_observations"],
    )

    if not runner.load(args.data):
        return 1

    if args.timestamp is not None:
        text = args.timestamp
        try:
            timestamps = [parse_timestamp_ms(int(text) if text.isdigit() else text)]
        except ValueError as e:
            logger.error(str(e))
            return 2
    else:
        timestamps = session.timestamps

    runner.run(timestamps, indent=config.OUTPUT_CONFIG["indent"])

    if args.metrics:
        logger.info("\n" + get_metrics().format_summary())

    return 0


if __name__ == "__main__":
    sys.exit(main())
