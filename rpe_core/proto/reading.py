"""
Reading and Fingerprint Schemas.

Defines the per-source observations collected at the unknown position:
- RangingReading: measured distance to a source
- RssiReading: received power from a source (converted to distance later)
- RangingAndRssiReading: both at once

A Fingerprint is the ordered collection of readings taken at one location.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional

from rpe_core.errors import ConfigurationError
from rpe_core.proto.radio_source import RadioSource


class ReadingType(IntEnum):
    """Kind of measurement carried by a reading."""

    RANGING = 0
    RSSI = 1
    RANGING_AND_RSSI = 2


def _check_std(name: str, value: Optional[float]):
    if value is not None and value < 0:
        raise ConfigurationError(f"{name} cannot be negative: {value}")


@dataclass(frozen=True)
class RangingReading:
    """
    Ranging measurement to a radio source.

    Attributes:
        source: Radio source this reading refers to
        distance: Measured distance (m), >= 0
        distance_std: Distance standard deviation (m), if known
    """

    source: RadioSource
    distance: float
    distance_std: Optional[float] = None

    reading_type = ReadingType.RANGING

    def __post_init__(self):
        if self.source is None:
            raise ConfigurationError("Reading source is required")
        if self.distance < 0:
            raise ConfigurationError(f"Distance cannot be negative: {self.distance}")
        _check_std('distance_std', self.distance_std)


@dataclass(frozen=True)
class RssiReading:
    """
    Received signal strength measurement from a radio source.

    Attributes:
        source: Radio source this reading refers to
        rssi_dbm: Received power (dBm)
        rssi_std_db: Received power standard deviation (dB), if known
    """

    source: RadioSource
    rssi_dbm: float
    rssi_std_db: Optional[float] = None

    reading_type = ReadingType.RSSI

    def __post_init__(self):
        if self.source is None:
            raise ConfigurationError("Reading source is required")
        _check_std('rssi_std_db', self.rssi_std_db)


@dataclass(frozen=True)
class RangingAndRssiReading:
    """
    Combined ranging and RSSI measurement from a radio source.

    Contributes two (position, distance) pairs when flattened: the ranging
    distance first, then the RSSI-derived distance.
    """

    source: RadioSource
    distance: float
    rssi_dbm: float
    distance_std: Optional[float] = None
    rssi_std_db: Optional[float] = None

    reading_type = ReadingType.RANGING_AND_RSSI

    def __post_init__(self):
        if self.source is None:
            raise ConfigurationError("Reading source is required")
        if self.distance < 0:
            raise ConfigurationError(f"Distance cannot be negative: {self.distance}")
        _check_std('distance_std', self.distance_std)
        _check_std('rssi_std_db', self.rssi_std_db)


@dataclass
class Fingerprint:
    """
    Readings collected at one (unknown) location.

    Attributes:
        readings: Ordered list of readings (several may share a source)
    """

    readings: list = field(default_factory=list)  # List[Reading]

    def __len__(self) -> int:
        return len(self.readings)

    def sources(self) -> List[RadioSource]:
        """Distinct sources referenced by the readings, in first-seen order."""
        seen = {}
        for reading in self.readings:
            seen.setdefault(reading.source.key, reading.source)
        return list(seen.values())

    def readings_for(self, source: RadioSource) -> list:
        """Get all readings referencing a given source."""
        return [r for r in self.readings if r.source.key == source.key]

    @property
    def num_sources(self) -> int:
        """Number of distinct sources in this fingerprint."""
        return len(self.sources())
