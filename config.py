"""
BLE position engine configuration.
"""

# Engine configuration
ENGINE_CONFIG = {
    "time_window_ms": 15000,         # Half-width of the sync window (ms)
    "smoothing_enabled": True,       # Kalman smoothing on by default
}

# Lateration configuration
LATERATION_CONFIG = {
    "min_distance_m": 0.0,           # Distances <= this are discarded
    "max_distance_m": 200.0,         # Distances >= this are discarded
    "singular_det_threshold": 1e-10,
}

# Kalman smoother configuration
KALMAN_CONFIG = {
    "process_noise": 0.5,
    "measurement_noise": 2.0,
    "dt": 1.0,                       # One call = one logical step
    "initial_position_variance": 100.0,
    "initial_velocity_variance": 10.0,
    "default_quality_m": 5.0,        # Used when the solver reports no variance
}

# Output configuration
OUTPUT_CONFIG = {
    "include_observations": False,   # Attach per-sensor observations to output
    "indent": None,                  # JSON indent (None = one line per timestamp)
}

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def build_session_config(engine=None, lateration=None, kalman=None):
    """
    Build a SessionControllerConfig from the dictionaries above.

    Args:
        engine: Overrides for ENGINE_CONFIG
        lateration: Overrides for LATERATION_CONFIG
        kalman: Overrides for KALMAN_CONFIG

    Returns:
        SessionControllerConfig
    """
    from ble_core.localization import (
        KalmanSmootherConfig,
        LaterationSolverConfig,
        SessionControllerConfig,
    )

    engine_cfg = {**ENGINE_CONFIG, **(engine or {})}
    lateration_cfg = {**LATERATION_CONFIG, **(lateration or {})}
    kalman_cfg = {**KALMAN_CONFIG, **(kalman or {})}

    return SessionControllerConfig(
        time_window_ms=engine_cfg["time_window_ms"],
        smoothing_enabled=engine_cfg["smoothing_enabled"],
        solver_config=LaterationSolverConfig(**lateration_cfg),
        smoother_config=KalmanSmootherConfig(**kalman_cfg),
    )
