"""
Localization Module: Lateration, subset sampling, robust estimation.

Key classes:
- MeasurementSet: Flattened (position, distance, std, quality) pairs
- LaterationSolver: Linear / non-linear multi-circle intersection
- QualityScoreSubsetSampler: Quality-biased preliminary subsets
- PROMedSRobustEstimator: Generic weighted median-of-squares loop
- PROMedSRobustLaterationSolver: PROMedS bound to lateration
- PROMedSRobustPositionEstimator2D/3D: Locked facades with listeners
"""

# Measurements
from .measurements import (
    MeasurementSet,
    build_measurements,
    rssi_to_distance,
)

# Lateration
from .lateration import (
    LaterationResult,
    LaterationSolver,
    NonLinearLaterationConfig,
    NonLinearLaterationSolver,
    solve_homogeneous_linear,
    solve_inhomogeneous_linear,
)

# Robust estimation
from .subset_sampler import QualityScoreSubsetSampler
from .promeds import (
    PROMedSRobustEstimator,
    PROMedSResult,
    PROMedSState,
    weighted_median,
)
from .robust_lateration import (
    PROMedSRobustLaterationSolver,
    RobustLaterationConfig,
)

# Estimators
from .position_estimator import (
    RobustPositionEstimator,
    RobustPositionEstimatorListener,
    PROMedSRobustPositionEstimator2D,
    PROMedSRobustPositionEstimator3D,
    create_robust_position_estimator,
)

__all__ = [
    # Measurements
    'MeasurementSet',
    'build_measurements',
    'rssi_to_distance',
    # Lateration
    'LaterationResult',
    'LaterationSolver',
    'NonLinearLaterationConfig',
    'NonLinearLaterationSolver',
    'solve_homogeneous_linear',
    'solve_inhomogeneous_linear',
    # Robust estimation
    'QualityScoreSubsetSampler',
    'PROMedSRobustEstimator',
    'PROMedSResult',
    'PROMedSState',
    'weighted_median',
    'PROMedSRobustLaterationSolver',
    'RobustLaterationConfig',
    # Estimators
    'RobustPositionEstimator',
    'RobustPositionEstimatorListener',
    'PROMedSRobustPositionEstimator2D',
    'PROMedSRobustPositionEstimator3D',
    'create_robust_position_estimator',
]
