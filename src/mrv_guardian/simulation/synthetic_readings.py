"""
Synthetic Hydropower Telemetry Generator

Generates labelled hydropower readings to bootstrap the Isolation Forest
when no real labelled fraud exists yet.

Label distribution (drawn independently per sample):
    80%  normal             energy within +-15% of theoretical
    10%  fraud_inflate      2x-10x theoretical (carbon-credit inflation)
     5%  fraud_underreport  20%-55% of theoretical
     5%  sensor_fault       energy unrelated to physics (0-50000 kWh)

Samples are spread evenly over the twelve calendar months. Each month belongs
to a hydrological season that scales the base flow, so the detector sees the
monsoon, transition and dry regimes rather than a single one.

Physics basis: P_kW = rho * g * Q * H * eta / 1000

Example:
    >>> from mrv_guardian.simulation.synthetic_readings import SyntheticDataGenerator
    >>> generator = SyntheticDataGenerator(random_state=42)
    >>> samples = generator.generate(2000)
    >>> normal = [s for s in samples if s.label == 'normal']
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from loguru import logger

from mrv_guardian.features.reading_features import Reading, theoretical_energy
from mrv_guardian.utils import RandomState, make_rng

LABEL_NORMAL = 'normal'
LABEL_FRAUD_INFLATE = 'fraud_inflate'
LABEL_FRAUD_UNDERREPORT = 'fraud_underreport'
LABEL_SENSOR_FAULT = 'sensor_fault'

ANOMALY_LABELS = (LABEL_FRAUD_INFLATE, LABEL_FRAUD_UNDERREPORT, LABEL_SENSOR_FAULT)


@dataclass(frozen=True)
class SeasonProfile:
    """Hydrological regime for a calendar month."""
    name: str
    flow_multiplier: Tuple[float, float]


HIGH_FLOW = SeasonProfile('monsoon', (2.5, 3.5))
TRANSITION = SeasonProfile('transition', (1.5, 2.0))
LOW_FLOW = SeasonProfile('dry', (0.8, 1.2))

# Index 0 is January.
MONTHLY_SEASONS: List[SeasonProfile] = [
    LOW_FLOW, LOW_FLOW, LOW_FLOW, LOW_FLOW,  # Jan-Apr
    TRANSITION,  # May
    HIGH_FLOW, HIGH_FLOW, HIGH_FLOW, HIGH_FLOW,  # Jun-Sep
    TRANSITION, TRANSITION,  # Oct-Nov
    LOW_FLOW,  # Dec
]


@dataclass
class SyntheticSample:
    """One labelled synthetic reading."""
    reading: Reading
    label: str
    theoretical_energy: float
    month: int
    season: str
    flow_multiplier: float

    @property
    def is_anomaly(self) -> bool:
        return self.label != LABEL_NORMAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reading': self.reading.to_dict(),
            'label': self.label,
            'theoreticalKwh': self.theoretical_energy,
            'month': self.month,
            'season': self.season,
            'flowMultiplier': self.flow_multiplier,
        }


class SyntheticDataGenerator:
    """
    Seeded generator of labelled hydropower readings.

    Args:
        random_state: Seed or shared numpy Generator
        base_year: Calendar year used for sample timestamps
    """

    def __init__(self, random_state: RandomState = None, base_year: int = 2024):
        self.rng = make_rng(random_state)
        self.base_year = base_year

    def _uniform(self, low: float, high: float) -> float:
        return float(self.rng.uniform(low, high))

    def _timestamp(self, month: int) -> datetime:
        start = datetime(self.base_year, month, 1)
        if month == 12:
            end = datetime(self.base_year + 1, 1, 1)
        else:
            end = datetime(self.base_year, month + 1, 1)
        offset = self._uniform(0.0, (end - start).total_seconds())
        return start + timedelta(seconds=int(offset))

    def generate_sample(self, month: int, device_id: Optional[str] = None) -> SyntheticSample:
        """
        Generate a single labelled reading for a calendar month (1-12).
        """
        season = MONTHLY_SEASONS[month - 1]
        multiplier = self._uniform(*season.flow_multiplier)

        flow = round(self._uniform(0.5, 5.0) * multiplier, 3)
        head = round(self._uniform(10.0, 90.0), 1)
        efficiency = self._uniform(0.75, 0.92)
        theoretical = theoretical_energy(flow, head, efficiency)

        r = self.rng.random()
        if r < 0.80:
            energy = theoretical * self._uniform(0.85, 1.15)
            label = LABEL_NORMAL
        elif r < 0.90:
            energy = theoretical * self._uniform(2.0, 10.0)
            label = LABEL_FRAUD_INFLATE
        elif r < 0.95:
            energy = theoretical * self._uniform(0.20, 0.55)
            label = LABEL_FRAUD_UNDERREPORT
        else:
            energy = self._uniform(0.0, 50000.0)
            label = LABEL_SENSOR_FAULT

        reading = Reading(
            flow_rate=flow,
            head_height=head,
            generated_kwh=round(energy, 2),
            ph=round(self._uniform(6.2, 8.8), 2),
            turbidity=round(self._uniform(1.0, 60.0), 1),
            temperature=round(self._uniform(5.0, 32.0), 1),
            timestamp=self._timestamp(month),
            device_id=device_id,
        )
        return SyntheticSample(
            reading=reading,
            label=label,
            theoretical_energy=round(theoretical, 2),
            month=month,
            season=season.name,
            flow_multiplier=multiplier,
        )

    def generate(self, n: int = 2000) -> List[SyntheticSample]:
        """
        Generate ``n`` labelled samples spread evenly over the twelve months.

        Args:
            n: Number of samples

        Returns:
            List of SyntheticSample
        """
        samples = [
            self.generate_sample(month=i % 12 + 1, device_id=f"SYNTH-{i:05d}")
            for i in range(n)
        ]
        logger.info(f"Generated {n} synthetic readings: {label_counts(samples)}")
        return samples

    def generate_frame(self, n: int = 2000) -> pd.DataFrame:
        """Generate samples and return them as a flat DataFrame."""
        return to_frame(self.generate(n))


def label_counts(samples: List[SyntheticSample]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for sample in samples:
        counts[sample.label] = counts.get(sample.label, 0) + 1
    return counts


def split_dataset(
    samples: List[SyntheticSample],
    train_fraction: float = 0.80
) -> Dict[str, List[SyntheticSample]]:
    """
    Split into a normal-only training set and a labelled validation set.

    The Isolation Forest is unsupervised, so anomalies never enter training.

    Returns:
        Dict with 'train', 'val_normal' and 'val_anomalies'
    """
    normal = [s for s in samples if s.label == LABEL_NORMAL]
    anomalies = [s for s in samples if s.label != LABEL_NORMAL]
    cut = int(len(normal) * train_fraction)
    return {
        'train': normal[:cut],
        'val_normal': normal[cut:],
        'val_anomalies': anomalies,
    }


def to_frame(samples: List[SyntheticSample]) -> pd.DataFrame:
    """Flatten samples into one row per reading."""
    rows = []
    for sample in samples:
        row = sample.reading.to_dict()
        row.update({
            'label': sample.label,
            'theoreticalKwh': sample.theoretical_energy,
            'month': sample.month,
            'season': sample.season,
            'flowMultiplier': sample.flow_multiplier,
        })
        rows.append(row)
    return pd.DataFrame(rows)
