"""
Robust position estimation demo configuration.
"""

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

# Synthetic scenario configuration
SCENARIO_CONFIG = {
    "dimensions": 2,
    "num_sources": 150,           # number of located sources
    "area_half_size_m": 50.0,     # sources uniform in [-50, 50] per axis
    "frequency_hz": 2.4e9,        # carrier frequency of every source
    "outlier_ratio": 0.2,         # fraction of perturbed readings
    "outlier_std_m": 10.0,        # std of the perturbation added to outliers
    "transmitted_power_dbm": 20.0,
    "path_loss_exponent": 2.0,
    "seed": None,
}

# Estimator configuration (overrides RobustLaterationConfig defaults)
ESTIMATOR_CONFIG = {
    "confidence": 0.99,
    "max_iterations": 5000,
    "stop_threshold": 1e-5,
    "progress_delta": 0.05,
}

# Output configuration
OUTPUT_CONFIG = {
    "print_metrics": True,        # print metrics summary after the run
    "print_covariance": True,
}
