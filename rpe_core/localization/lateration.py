"""
Lateration Solvers (multi-circle / multi-sphere intersection).

Single-shot position solvers used by the robust loop:
- solve_inhomogeneous_linear: linear least squares on squared ranges
- solve_homogeneous_linear: SVD null-space on squared ranges
- NonLinearLaterationSolver: Levenberg-Marquardt on weighted range residuals,
  optionally returning the position covariance
- LaterationSolver: linear preliminary solve + optional non-linear refinement

All solvers need at least dims + 1 (position, distance) pairs: 3 in 2D, 4 in 3D.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from rpe_core.errors import ConvergenceError, NotReadyError, NumericalError
from rpe_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# Used for pairs without a known distance standard deviation (m)
DEFAULT_DISTANCE_STANDARD_DEVIATION = 1e-3

# Condition number above which linear systems are considered singular
MAX_CONDITION_NUMBER = 1e12


def min_required_positions(dimensions: int) -> int:
    """Minimum number of (position, distance) pairs for a given dimensionality."""
    return dimensions + 1


@dataclass
class LaterationResult:
    """
    Single-shot lateration output.

    Attributes:
        position: Estimated position, shape (dims,)
        covariance: Position covariance (dims x dims), None if not computed
        chi_sq: Weighted sum of squared range residuals at the solution
        iterations: Non-linear iterations used (0 for linear-only solves)
    """

    position: np.ndarray
    covariance: Optional[np.ndarray] = None
    chi_sq: float = 0.0
    iterations: int = 0


def _validate_inputs(positions, distances, stds=None):
    """Check shapes and return float arrays."""
    positions = np.asarray(positions, dtype=float)
    distances = np.asarray(distances, dtype=float)

    if positions.ndim != 2 or positions.shape[1] not in (2, 3):
        raise NotReadyError(f"Positions must have shape (N, 2|3): {positions.shape}")

    if distances.shape != (positions.shape[0],):
        raise NotReadyError(
            f"Distances shape {distances.shape} does not match {positions.shape[0]} positions"
        )

    required = min_required_positions(positions.shape[1])
    if positions.shape[0] < required:
        raise NotReadyError(
            f"Need at least {required} positions, got {positions.shape[0]}"
        )

    if stds is not None:
        stds = np.asarray(stds, dtype=float)
        if stds.shape != distances.shape:
            raise NotReadyError("Distance standard deviations do not match distances")

    return positions, distances, stds


def solve_inhomogeneous_linear(positions, distances) -> np.ndarray:
    """
    Solve lateration linearly, treating |x|^2 as an extra unknown.

    Each pair gives |x|^2 - 2 p_i.x = d_i^2 - |p_i|^2, i.e. the row
    [1, -2 p_i] applied to [|x|^2, x].

    Raises:
        NotReadyError: Insufficient or malformed input
        NumericalError: Rank-deficient system (e.g. collinear sources)
    """
    positions, distances, _ = _validate_inputs(positions, distances)
    n, dims = positions.shape

    a = np.hstack([np.ones((n, 1)), -2.0 * positions])
    b = distances ** 2 - np.sum(positions ** 2, axis=1)

    try:
        solution, _, rank, singular_values = np.linalg.lstsq(a, b, rcond=None)
    except np.linalg.LinAlgError as e:
        raise NumericalError(f"Linear lateration failed: {e}") from e

    if rank < dims + 1 or singular_values[-1] <= singular_values[0] / MAX_CONDITION_NUMBER:
        raise NumericalError("Linear lateration system is rank deficient")

    return solution[1:]


def solve_homogeneous_linear(positions, distances) -> np.ndarray:
    """
    Solve lateration as a homogeneous system via SVD.

    Each pair gives the row [1, -2 p_i, |p_i|^2 - d_i^2] applied to the
    homogeneous vector [|x|^2, x, 1] (up to scale). The solution is the right
    singular vector of the smallest singular value, dehomogenized.

    Raises:
        NotReadyError: Insufficient or malformed input
        NumericalError: Degenerate geometry or point at infinity
    """
    positions, distances, _ = _validate_inputs(positions, distances)
    n, dims = positions.shape

    a = np.hstack([
        np.ones((n, 1)),
        -2.0 * positions,
        (np.sum(positions ** 2, axis=1) - distances ** 2)[:, np.newaxis],
    ])

    # Row scaling keeps large coordinates from dominating
    a /= np.linalg.norm(a, axis=1, keepdims=True)

    try:
        _, singular_values, vt = np.linalg.svd(a)
    except np.linalg.LinAlgError as e:
        raise NumericalError(f"Homogeneous lateration failed: {e}") from e

    # Null space must be one-dimensional
    if singular_values.size >= dims + 1 and \
            singular_values[dims] <= singular_values[0] / MAX_CONDITION_NUMBER:
        raise NumericalError("Homogeneous lateration null space is degenerate")

    v = vt[-1]
    w = v[-1]
    if abs(w) < np.finfo(float).eps * np.max(np.abs(v)):
        raise NumericalError("Homogeneous lateration solution at infinity")

    return v[1:dims + 1] / w


@dataclass
class NonLinearLaterationConfig:
    """
    Configuration for the non-linear lateration solver.

    Attributes:
        max_iterations: Maximum Levenberg-Marquardt iterations
        tolerance: Relative step / cost change considered converged
        initial_damping: Initial damping factor (lambda)
        max_damping: Damping above which no further progress is possible
    """

    max_iterations: int = 100
    tolerance: float = 1e-12
    initial_damping: float = 1e-3
    max_damping: float = 1e12

    def __post_init__(self):
        """Validate configuration."""
        assert self.max_iterations >= 1, "max_iterations must be >= 1"
        assert self.tolerance > 0, "tolerance must be positive"
        assert 0 < self.initial_damping < self.max_damping, "invalid damping range"


class NonLinearLaterationSolver:
    """
    Levenberg-Marquardt lateration on range residuals.

    Minimizes sum_i ((|x - p_i| - d_i) / sigma_i)^2 starting from the given
    initial position (or the centroid of the positions).

    Usage:
        solver = NonLinearLaterationSolver()
        result = solver.solve(positions, distances, stds, initial_position=guess)
        print(result.position, result.covariance)
    """

    def __init__(self, config: Optional[NonLinearLaterationConfig] = None):
        self.config = config or NonLinearLaterationConfig()

    @staticmethod
    def _residuals_and_jacobian(x, positions, distances, weights):
        diff = x - positions
        ranges = np.linalg.norm(diff, axis=1)
        residuals = (ranges - distances) * weights

        safe_ranges = np.where(ranges > 1e-12, ranges, 1.0)
        jacobian = diff / safe_ranges[:, np.newaxis]
        jacobian[ranges <= 1e-12] = 0.0
        jacobian *= weights[:, np.newaxis]
        return residuals, jacobian

    def solve(
        self,
        positions,
        distances,
        distance_standard_deviations=None,
        initial_position=None,
        compute_covariance: bool = True,
    ) -> LaterationResult:
        """
        Solve for the position.

        Args:
            positions: Source positions, shape (N, dims)
            distances: Distances, shape (N,)
            distance_standard_deviations: Optional per-pair std (m); pairs
                without one use DEFAULT_DISTANCE_STANDARD_DEVIATION
            initial_position: Optional starting point
            compute_covariance: If True, return inv(J^T W J) at the solution

        Returns:
            LaterationResult

        Raises:
            NotReadyError: Insufficient or malformed input
            NumericalError: Singular normal equations
            ConvergenceError: No convergence within max_iterations
        """
        positions, distances, stds = _validate_inputs(
            positions, distances, distance_standard_deviations
        )
        dims = positions.shape[1]

        if stds is None:
            stds = np.full(distances.shape, DEFAULT_DISTANCE_STANDARD_DEVIATION)
        stds = np.where(stds > 0, stds, DEFAULT_DISTANCE_STANDARD_DEVIATION)
        weights = 1.0 / stds

        if initial_position is None:
            x = positions.mean(axis=0)
        else:
            x = np.asarray(initial_position, dtype=float).copy()
            if x.shape != (dims,):
                raise NotReadyError(f"Initial position must have {dims} coordinates")

        cfg = self.config
        damping = cfg.initial_damping
        residuals, jacobian = self._residuals_and_jacobian(x, positions, distances, weights)
        cost = float(residuals @ residuals)
        converged = False
        iteration = 0

        for iteration in range(1, cfg.max_iterations + 1):
            jtj = jacobian.T @ jacobian
            jtr = jacobian.T @ residuals

            if np.max(np.abs(jtr)) <= cfg.tolerance * max(1.0, cost):
                converged = True
                break

            improved = False
            while damping <= cfg.max_damping:
                lhs = jtj + damping * np.diag(np.maximum(np.diag(jtj), 1e-12))
                try:
                    delta = np.linalg.solve(lhs, -jtr)
                except np.linalg.LinAlgError as e:
                    raise NumericalError(f"Singular normal equations: {e}") from e

                x_new = x + delta
                new_residuals, new_jacobian = self._residuals_and_jacobian(
                    x_new, positions, distances, weights
                )
                new_cost = float(new_residuals @ new_residuals)

                if np.isfinite(new_cost) and new_cost <= cost:
                    improved = True
                    break
                damping *= 10.0

            if not improved:
                # No downhill step left: at a (local) minimum
                converged = True
                break

            step = float(np.linalg.norm(delta))
            cost_change = cost - new_cost
            x, residuals, jacobian, cost = x_new, new_residuals, new_jacobian, new_cost
            damping = max(damping / 10.0, 1e-15)

            if step <= cfg.tolerance * (float(np.linalg.norm(x)) + cfg.tolerance) or \
                    cost_change <= cfg.tolerance * max(cost, 1e-300) or cost == 0.0:
                converged = True
                break

        if not np.all(np.isfinite(x)):
            raise ConvergenceError("Non-linear lateration diverged")

        if not converged:
            raise ConvergenceError(
                f"Non-linear lateration did not converge in {cfg.max_iterations} iterations"
            )

        covariance = None
        if compute_covariance:
            covariance = self._covariance(jacobian)

        get_metrics().increment('lateration_solves')

        return LaterationResult(
            position=x,
            covariance=covariance,
            chi_sq=cost,
            iterations=iteration,
        )

    @staticmethod
    def _covariance(jacobian: np.ndarray) -> Optional[np.ndarray]:
        """Position covariance inv(J^T W J); None if not invertible."""
        jtj = jacobian.T @ jacobian
        try:
            if np.linalg.cond(jtj) > 1.0 / np.finfo(float).eps:
                raise np.linalg.LinAlgError("ill-conditioned information matrix")
            covariance = np.linalg.inv(jtj)
        except np.linalg.LinAlgError as e:
            logger.debug("Covariance not available: %s", e)
            get_metrics().increment_drop('covariance_failed')
            return None

        # Symmetrize against round-off
        return 0.5 * (covariance + covariance.T)


class LaterationSolver:
    """
    Lateration solver combining a linear stage and a non-linear refinement.

    Usage:
        solver = LaterationSolver(dimensions=2)
        result = solver.solve(positions, distances, stds)

    Notes:
        - If the linear stage is disabled, the non-linear stage always runs
          (seeded with the initial position hint or the centroid)
        - Covariance is only produced by the non-linear stage
    """

    def __init__(
        self,
        dimensions: int,
        linear_solver_used: bool = True,
        homogeneous_linear_solver_used: bool = False,
        refine_solution: bool = True,
        keep_covariance: bool = True,
        nonlinear_solver: Optional[NonLinearLaterationSolver] = None,
    ):
        if dimensions not in (2, 3):
            raise ValueError(f"Dimensions must be 2 or 3: {dimensions}")

        self.dimensions = dimensions
        self.linear_solver_used = linear_solver_used
        self.homogeneous_linear_solver_used = homogeneous_linear_solver_used
        self.refine_solution = refine_solution
        self.keep_covariance = keep_covariance
        self.nonlinear_solver = nonlinear_solver or NonLinearLaterationSolver()

    @property
    def min_required_positions(self) -> int:
        return min_required_positions(self.dimensions)

    def solve(
        self,
        positions,
        distances,
        distance_standard_deviations: Optional[Sequence[float]] = None,
        initial_position=None,
    ) -> LaterationResult:
        """
        Solve one lateration problem.

        Raises:
            NotReadyError: Fewer than dims + 1 pairs or malformed input
            NumericalError, ConvergenceError: Solver failure
        """
        positions, distances, stds = _validate_inputs(
            positions, distances, distance_standard_deviations
        )
        if positions.shape[1] != self.dimensions:
            raise NotReadyError(
                f"Expected {self.dimensions}D positions, got {positions.shape[1]}D"
            )

        estimate = None
        if self.linear_solver_used:
            if self.homogeneous_linear_solver_used:
                estimate = solve_homogeneous_linear(positions, distances)
            else:
                estimate = solve_inhomogeneous_linear(positions, distances)

        if self.refine_solution or estimate is None:
            return self.nonlinear_solver.solve(
                positions,
                distances,
                stds,
                initial_position=estimate if estimate is not None else initial_position,
                compute_covariance=self.keep_covariance,
            )

        return LaterationResult(position=estimate)
