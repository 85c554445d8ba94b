"""
Hydropower Reading Feature Extraction

Turns a raw telemetry reading into the fixed 8-dimensional feature vector the
Isolation Forest is trained on:

- six raw sensor quantities (flow, head, energy, pH, turbidity, temperature)
- power density: generated energy per unit of flow x head
- efficiency ratio: generated energy over the physics-theoretical energy

Each value is mapped linearly from its domain bounds onto [0, 1] and clamped,
so out-of-domain readings are squashed rather than rejected. Extraction is
deterministic and never raises; missing fields fall back to typical values.

Example:
    >>> from mrv_guardian.features.reading_features import FeatureExtractor
    >>> extractor = FeatureExtractor()
    >>> vector = extractor.extract({
    ...     'flowRate_m3_per_s': 2.5, 'headHeight_m': 45, 'generatedKwh': 936
    ... })
    >>> len(vector)
    8
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np

RHO = 1000.0  # water density, kg/m3
G = 9.81  # gravitational acceleration, m/s2
ASSUMED_EFFICIENCY = 0.85
THEORETICAL_FLOOR = 1e-6

FEATURE_NAMES: List[str] = [
    'flowRate_m3_per_s',
    'headHeight_m',
    'generatedKwh',
    'pH',
    'turbidity_ntu',
    'temperature_celsius',
    'powerDensity',
    'efficiencyRatio',
]

N_FEATURES = len(FEATURE_NAMES)


@dataclass(frozen=True)
class DomainBounds:
    """Normalisation range for a single feature."""
    min: float
    max: float

    def normalise(self, value: float) -> float:
        """Map ``value`` onto [0, 1]; a degenerate range maps to 0."""
        if self.max == self.min:
            return 0.0
        scaled = (value - self.min) / (self.max - self.min)
        return min(1.0, max(0.0, scaled))

    def to_dict(self) -> Dict[str, float]:
        return {'min': self.min, 'max': self.max}


# Run-of-river hydropower ranges (India), fixed by domain knowledge.
DOMAIN_BOUNDS: Dict[str, DomainBounds] = {
    'flowRate_m3_per_s': DomainBounds(0.1, 50.0),
    'headHeight_m': DomainBounds(3.0, 250.0),
    'generatedKwh': DomainBounds(0.0, 6000.0),
    'pH': DomainBounds(4.0, 11.0),
    'turbidity_ntu': DomainBounds(0.0, 500.0),
    'temperature_celsius': DomainBounds(0.0, 45.0),
    'powerDensity': DomainBounds(0.0, 60.0),
    'efficiencyRatio': DomainBounds(0.0, 3.0),
}

# Accepted spellings for each Reading field, first match wins.
_FIELD_ALIASES: Dict[str, tuple] = {
    'flow_rate': ('flow_rate', 'flowRate_m3_per_s', 'flowRate'),
    'head_height': ('head_height', 'headHeight_m', 'head'),
    'generated_kwh': ('generated_kwh', 'generatedKwh', 'generated_energy'),
    'ph': ('ph', 'pH'),
    'turbidity': ('turbidity', 'turbidity_ntu'),
    'temperature': ('temperature', 'temperature_celsius'),
    'timestamp': ('timestamp',),
    'device_id': ('device_id', 'deviceId'),
}


def _as_float(value: Any, default: Optional[float]) -> Optional[float]:
    """Coerce ``value`` to a finite float, falling back to ``default``."""
    if value is None or isinstance(value, bool):
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(result):
        return default
    return result


@dataclass
class Reading:
    """
    A single raw telemetry reading from a hydropower plant.

    Optional water-quality fields are left as ``None`` when the sensor did
    not report them; the extractor substitutes typical values.
    """
    flow_rate: Optional[float] = None  # m3/s
    head_height: Optional[float] = None  # m
    generated_kwh: Optional[float] = None
    ph: Optional[float] = None
    turbidity: Optional[float] = None  # NTU
    temperature: Optional[float] = None  # Celsius
    timestamp: Optional[Union[str, datetime]] = None
    device_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'Reading':
        """Build a Reading from a dict using camelCase or snake_case keys."""
        values: Dict[str, Any] = {}
        consumed = set()
        for attr, aliases in _FIELD_ALIASES.items():
            for alias in aliases:
                if alias in data and data[alias] is not None:
                    values[attr] = data[alias]
                    consumed.add(alias)
                    break
        for attr in ('flow_rate', 'head_height', 'generated_kwh', 'ph', 'turbidity', 'temperature'):
            if attr in values:
                values[attr] = _as_float(values[attr], None)
        extra = {k: v for k, v in data.items() if k not in consumed}
        return cls(extra=extra, **values)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise using the camelCase wire field names."""
        timestamp = self.timestamp
        if isinstance(timestamp, datetime):
            timestamp = timestamp.isoformat()
        return {
            'flowRate_m3_per_s': self.flow_rate,
            'headHeight_m': self.head_height,
            'generatedKwh': self.generated_kwh,
            'pH': self.ph,
            'turbidity_ntu': self.turbidity,
            'temperature_celsius': self.temperature,
            'timestamp': timestamp,
            'deviceId': self.device_id,
        }


ReadingLike = Union[Reading, Mapping[str, Any]]


def as_reading(reading: ReadingLike) -> Reading:
    """Accept either a Reading or a mapping."""
    if isinstance(reading, Reading):
        return reading
    if isinstance(reading, Mapping):
        return Reading.from_mapping(reading)
    return Reading()


def theoretical_energy(
    flow_rate: float,
    head_height: float,
    efficiency: float = ASSUMED_EFFICIENCY
) -> float:
    """
    Physics-theoretical output in kW: rho * g * Q * H * eta / 1000.

    Returns 0 when flow or head is not positive.
    """
    if flow_rate <= 0 or head_height <= 0:
        return 0.0
    return RHO * G * flow_rate * head_height * efficiency / 1000.0


class FeatureExtractor:
    """
    Deterministic reading -> feature vector transform.

    Example:
        >>> extractor = FeatureExtractor()
        >>> X = extractor.extract_many(readings)
        >>> X.shape
        (len(readings), 8)
    """

    DEFAULT_PH = 7.0
    DEFAULT_TURBIDITY = 10.0
    DEFAULT_TEMPERATURE = 18.0

    def __init__(self, bounds: Optional[Dict[str, DomainBounds]] = None):
        self.bounds = bounds or DOMAIN_BOUNDS
        self.feature_names = list(FEATURE_NAMES)

    def raw_features(self, reading: ReadingLike) -> Dict[str, float]:
        """Un-normalised feature values, including the two derived ratios."""
        r = as_reading(reading)
        flow = _as_float(r.flow_rate, 0.0)
        head = _as_float(r.head_height, 0.0)
        energy = _as_float(r.generated_kwh, 0.0)

        # the product can underflow to zero for tiny positive inputs
        denom = flow * head
        if flow > 0 and head > 0 and denom > 0:
            theoretical = theoretical_energy(flow, head)
            power_density = energy / denom
        else:
            theoretical = THEORETICAL_FLOOR
            power_density = 0.0

        return {
            'flowRate_m3_per_s': flow,
            'headHeight_m': head,
            'generatedKwh': energy,
            'pH': _as_float(r.ph, self.DEFAULT_PH),
            'turbidity_ntu': _as_float(r.turbidity, self.DEFAULT_TURBIDITY),
            'temperature_celsius': _as_float(r.temperature, self.DEFAULT_TEMPERATURE),
            'powerDensity': power_density,
            'efficiencyRatio': energy / max(theoretical, THEORETICAL_FLOOR),
        }

    def extract(self, reading: ReadingLike) -> np.ndarray:
        """
        Convert a reading into a normalised 8-element vector in [0, 1].

        Args:
            reading: Reading instance or mapping with reading fields

        Returns:
            Float array of shape (8,)
        """
        raw = self.raw_features(reading)
        return np.array(
            [self.bounds[name].normalise(raw[name]) for name in self.feature_names],
            dtype=float
        )

    def extract_many(self, readings: Iterable[ReadingLike]) -> np.ndarray:
        """Extract features for many readings into an (n, 8) array."""
        rows = [self.extract(r) for r in readings]
        if not rows:
            return np.empty((0, N_FEATURES), dtype=float)
        return np.vstack(rows)

    def bounds_dict(self) -> Dict[str, Dict[str, float]]:
        return {name: self.bounds[name].to_dict() for name in self.feature_names}


_default_extractor = FeatureExtractor()


def extract_features(reading: ReadingLike) -> np.ndarray:
    """Module-level shortcut using the default domain bounds."""
    return _default_extractor.extract(reading)
