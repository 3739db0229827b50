"""
Protocol Module: Data model for robust position estimation.

- RadioSource: located emitter with optional power model
- Readings: ranging, RSSI and combined measurements tied to a source
- Fingerprint: readings collected at the unknown location
- InliersData / PositionEstimate: estimation outputs
"""

from .radio_source import (
    RadioSource,
    DEFAULT_FREQUENCY_HZ,
    DEFAULT_PATH_LOSS_EXPONENT,
)
from .reading import (
    ReadingType,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    Fingerprint,
)
from .position_estimate import (
    InliersData,
    PositionEstimate,
)

__all__ = [
    'RadioSource',
    'DEFAULT_FREQUENCY_HZ',
    'DEFAULT_PATH_LOSS_EXPONENT',
    'ReadingType',
    'RangingReading',
    'RssiReading',
    'RangingAndRssiReading',
    'Fingerprint',
    'InliersData',
    'PositionEstimate',
]
