"""
Protocol Module: Observation and position estimate schemas.

Records are validated when constructed, so the solver can trust them.
"""

from .observation import (
    Observation,
    DeviceReading,
    SensorReport,
)
from .position_estimate import (
    DevicePositionEstimate,
    QualityLevel,
    SolverStrategy,
    select_strategy,
    QUALITY_BY_STRATEGY,
    CONFIDENCE_BY_STRATEGY,
)

__all__ = [
    # Inputs
    'Observation',
    'DeviceReading',
    'SensorReport',
    # Outputs
    'DevicePositionEstimate',
    'QualityLevel',
    'SolverStrategy',
    'select_strategy',
    'QUALITY_BY_STRATEGY',
    'CONFIDENCE_BY_STRATEGY',
]
