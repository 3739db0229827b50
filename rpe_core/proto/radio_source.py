"""
Radio source representation.

A radio source is a positioned emitter (e.g. WiFi access point, UWB beacon)
with identity, carrier frequency, optional position uncertainty and an
optional transmitted-power model used to turn RSSI readings into distances.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import math

import numpy as np

from rpe_core.errors import ConfigurationError

DEFAULT_FREQUENCY_HZ = 2.4e9
DEFAULT_PATH_LOSS_EXPONENT = 2.0


@dataclass(frozen=True, eq=False)
class RadioSource:
    """
    Radio source (emitter) with optional location.

    Attributes:
        source_id: Source identifier (e.g. BSSID "00:11:22:33:44:55")
        frequency: Carrier frequency (Hz)
        position: Position (x, y) or (x, y, z) in meters, None if unknown
        position_covariance: Position covariance (dims x dims, m^2), optional
        transmitted_power_dbm: Transmitted power (dBm), required for RSSI
        transmitted_power_std_db: Transmitted power standard deviation (dB)
        path_loss_exponent: Path loss exponent (2.0 in free space)
        path_loss_exponent_std: Path loss exponent standard deviation

    Notes:
        - Identity is (source_id, frequency); readings are matched to located
          sources through `key`, so a reading may reference a source instance
          that carries no position at all.
    """

    source_id: str
    frequency: float = DEFAULT_FREQUENCY_HZ
    position: Optional[Tuple[float, ...]] = None
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_std_db: Optional[float] = None
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT
    path_loss_exponent_std: Optional[float] = None

    def __post_init__(self):
        """Validate and normalize fields."""
        if not self.source_id:
            raise ConfigurationError("source_id must be a non-empty string")

        if not self.frequency > 0:
            raise ConfigurationError(f"Frequency must be positive: {self.frequency}")

        if self.position is not None:
            position = tuple(float(c) for c in self.position)
            if len(position) not in (2, 3):
                raise ConfigurationError(
                    f"Position must have 2 or 3 coordinates: {self.position}"
                )
            object.__setattr__(self, 'position', position)

        if self.position_covariance is not None:
            cov = np.asarray(self.position_covariance, dtype=float)
            dims = self.dimensions
            if dims is None or cov.shape != (dims, dims):
                raise ConfigurationError(
                    f"Position covariance must be {dims}x{dims}: shape {cov.shape}"
                )
            object.__setattr__(self, 'position_covariance', cov)

        for name in ('transmitted_power_std_db', 'path_loss_exponent_std'):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ConfigurationError(f"{name} cannot be negative: {value}")

        if not self.path_loss_exponent > 0:
            raise ConfigurationError(
                f"Path loss exponent must be positive: {self.path_loss_exponent}"
            )

    @property
    def key(self) -> Tuple[str, float]:
        """Identity used to match readings against located sources."""
        return (self.source_id, self.frequency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, RadioSource):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    @property
    def dimensions(self) -> Optional[int]:
        """Number of position coordinates (None when not located)."""
        return len(self.position) if self.position is not None else None

    @property
    def has_position(self) -> bool:
        return self.position is not None

    @property
    def has_power_model(self) -> bool:
        """True if RSSI readings from this source can be turned into distances."""
        return self.transmitted_power_dbm is not None

    @property
    def position_standard_deviation(self) -> Optional[float]:
        """
        Scalar position standard deviation (m).

        Square root of the mean singular value of the position covariance.
        None when no covariance is available or it cannot be decomposed.
        """
        if self.position_covariance is None:
            return None

        try:
            singular_values = np.linalg.svd(self.position_covariance, compute_uv=False)
        except np.linalg.LinAlgError:
            return None

        variance = float(np.mean(singular_values))
        if not math.isfinite(variance):
            return None
        return math.sqrt(variance)

    def to_dict(self) -> dict:
        """Serialize to dictionary (for logging)."""
        return {
            'source_id': self.source_id,
            'frequency': self.frequency,
            'position': self.position,
            'position_std': self.position_standard_deviation,
            'transmitted_power_dbm': self.transmitted_power_dbm,
            'path_loss_exponent': self.path_loss_exponent,
        }
