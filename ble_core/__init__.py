"""
BLE Position Engine Core Package.

Estimates positions of anonymous Bluetooth devices from asynchronous
distance readings reported by fixed-location sensors.

Package structure:
- proto: Observation and position estimate schemas
- localization: Projection, lateration, Kalman smoothing, time windows, session
- metrics: Diagnostics, counters, histograms
"""

__version__ = "0.1.0"
__author__ = "BLE Positioning Team"
