"""
Robust Position Estimation (RPE) Core Package.

Estimates the 2D/3D position of a receiver from distance-like measurements
(ranging or RSSI) to located radio sources, tolerating outliers through a
quality-score driven PROMedS robust estimator layered on lateration.

Package structure:
- proto: Radio sources, readings, fingerprints and estimation outputs
- localization: Lateration solvers, subset sampling, PROMedS loop, estimators
- metrics: Diagnostics, counters, histograms
- errors: Exception taxonomy
"""

__version__ = "0.1.0"
__author__ = "RPE Team"

from .errors import (
    RPEError,
    ConfigurationError,
    LockedError,
    NotReadyError,
    LaterationError,
    NumericalError,
    ConvergenceError,
    RobustEstimationError,
)
