"""
Holt-Winters Generation Forecaster

Triple exponential smoothing (additive trend and seasonality) over an
aggregated generation series, used to flag plants that produce less than
expected for the hour of day.

Features:
- Additive level, trend and seasonal components
- 95% band from the population std of the training history
- Underperformance severity grading against the band and the point forecast
- Plain-dict snapshots that keep enough history statistics to predict after restore

Example:
    >>> from mrv_guardian.models.forecasting import HoltWintersForecaster
    >>> forecaster = HoltWintersForecaster(season_length=24)
    >>> forecaster.train(hourly_kwh)
    >>> forecaster.predict(steps=24)[0]
    {'step': 1, 'forecast': 1012.4, 'lower': 620.3, 'upper': 1404.5}
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from loguru import logger

from mrv_guardian.exceptions import ModelNotFittedError

Observation = Union[float, int, Mapping[str, Any]]

SEVERITY_NORMAL = 'NORMAL'
SEVERITY_LOW = 'LOW'
SEVERITY_MEDIUM = 'MEDIUM'
SEVERITY_HIGH = 'HIGH'
SEVERITY_UNKNOWN = 'UNKNOWN'

Z_95 = 1.96


def _observation_value(observation: Observation) -> float:
    """A bare number, or a mapping carrying ``generatedKwh`` or ``value``."""
    if isinstance(observation, Mapping):
        value = observation.get('generatedKwh') or observation.get('value') or 0.0
    else:
        value = observation
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class ForecastState:
    """Fitted smoothing state, swapped in as a whole after training."""
    level: float
    trend: float
    seasonal: tuple
    history_length: int
    history_std: float


class HoltWintersForecaster:
    """
    Additive Holt-Winters forecaster.

    Args:
        alpha: Level smoothing
        beta: Trend smoothing
        gamma: Seasonal smoothing
        season_length: Observations per season (24 for hourly data)
    """

    def __init__(
        self,
        alpha: float = 0.2,
        beta: float = 0.1,
        gamma: float = 0.1,
        season_length: int = 24
    ):
        if season_length < 1:
            raise ValueError(f"season_length must be positive, got {season_length}")
        self.alpha = alpha
        self.beta = beta
        self.gamma = gamma
        self.season_length = season_length
        self._state: Optional[ForecastState] = None

    @classmethod
    def from_config(cls, config) -> 'HoltWintersForecaster':
        return cls(
            alpha=config.alpha,
            beta=config.beta,
            gamma=config.gamma,
            season_length=config.season_length,
        )

    @property
    def trained(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> Optional[ForecastState]:
        return self._state

    def train(self, series: Sequence[Observation]) -> Dict[str, Any]:
        """
        Fit the smoothing state to a historical series.

        Args:
            series: Numbers, or mappings with ``generatedKwh`` / ``value``

        Returns:
            Status dict; ``insufficient_data`` leaves the previous state in place
        """
        L = self.season_length
        required = 2 * L
        if series is None or len(series) < required:
            provided = 0 if series is None else len(series)
            logger.warning(
                f"Forecaster needs at least {required} observations, got {provided}"
            )
            return {'status': 'insufficient_data', 'required': required, 'provided': provided}

        values = np.array([_observation_value(o) for o in series], dtype=float)

        level = float(values[:L].mean())
        trend = float((values[L:2 * L].mean() - level) / L)
        seasonal = [float(values[i::L].mean() - level) for i in range(L)]

        for t, observation in enumerate(values):
            slot = t % L
            prev_level, prev_trend, prev_seasonal = level, trend, seasonal[slot]
            level = self.alpha * (observation - prev_seasonal) + \
                (1 - self.alpha) * (prev_level + prev_trend)
            trend = self.beta * (level - prev_level) + (1 - self.beta) * prev_trend
            seasonal[slot] = self.gamma * (observation - level) + \
                (1 - self.gamma) * prev_seasonal

        self._state = ForecastState(
            level=float(level),
            trend=float(trend),
            seasonal=tuple(seasonal),
            history_length=len(values),
            history_std=float(values.std()),
        )
        logger.info(
            f"Forecaster trained on {len(values)} observations: "
            f"level={level:.2f}, trend={trend:.4f}"
        )
        return {
            'status': 'trained',
            'observations': len(values),
            'level': self._state.level,
            'trend': self._state.trend,
        }

    def predict(self, steps: int = 24) -> List[Dict[str, float]]:
        """
        Forecast the next ``steps`` observations with a 95% band.

        Returns:
            List of {step, forecast, lower, upper}
        """
        state = self._state
        if state is None:
            raise ModelNotFittedError("Forecaster not trained. Call train() first.")

        margin = Z_95 * state.history_std
        forecasts = []
        for h in range(1, steps + 1):
            slot = (state.history_length + h - 1) % self.season_length
            value = state.level + h * state.trend + state.seasonal[slot]
            forecasts.append({
                'step': h,
                'forecast': max(0.0, value),
                'lower': max(0.0, value - margin),
                'upper': value + margin,
            })
        return forecasts

    def check_underperformance(self, actual: float, step: int = 1) -> Dict[str, Any]:
        """
        Grade an actual observation against the forecast for ``step``.

        Severity is HIGH below the lower band, MEDIUM more than 10% under the
        forecast, LOW more than 5% under, NORMAL otherwise. An untrained
        forecaster answers UNKNOWN instead of raising.
        """
        if not self.trained:
            return {
                'underperforming': False,
                'severity': SEVERITY_UNKNOWN,
                'actual': actual,
                'message': 'Forecaster not trained',
            }

        step = max(1, int(step))
        expected = self.predict(step)[step - 1]
        forecast = expected['forecast']
        delta = actual - forecast
        delta_percent = delta / forecast * 100 if forecast > 0 else 0.0

        if actual < expected['lower']:
            severity = SEVERITY_HIGH
        elif delta_percent < -10:
            severity = SEVERITY_MEDIUM
        elif delta_percent < -5:
            severity = SEVERITY_LOW
        else:
            severity = SEVERITY_NORMAL

        underperforming = severity != SEVERITY_NORMAL
        if underperforming:
            message = f"Generation {abs(delta_percent):.1f}% below forecast. Check for maintenance needs."
            logger.warning(f"Underperformance ({severity}): actual={actual}, forecast={forecast:.2f}")
        else:
            message = 'Generation within expected range'

        return {
            'underperforming': underperforming,
            'severity': severity,
            'actual': actual,
            'forecast': forecast,
            'lower': expected['lower'],
            'upper': expected['upper'],
            'delta': delta,
            'deltaPercent': round(delta_percent, 2),
            'message': message,
        }

    def to_snapshot(self) -> Dict[str, Any]:
        state = self._state
        return {
            'alpha': self.alpha,
            'beta': self.beta,
            'gamma': self.gamma,
            'seasonLength': self.season_length,
            'level': state.level if state else None,
            'trend': state.trend if state else None,
            'seasonal': list(state.seasonal) if state else [],
            'trained': state is not None,
            'historyLength': state.history_length if state else 0,
            'historyStd': state.history_std if state else 0.0,
        }

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> 'HoltWintersForecaster':
        model = cls(
            alpha=float(snapshot['alpha']),
            beta=float(snapshot['beta']),
            gamma=float(snapshot['gamma']),
            season_length=int(snapshot['seasonLength']),
        )
        if snapshot.get('trained'):
            model._state = ForecastState(
                level=float(snapshot['level']),
                trend=float(snapshot['trend']),
                seasonal=tuple(float(s) for s in snapshot['seasonal']),
                history_length=int(snapshot.get('historyLength', 0)),
                history_std=float(snapshot.get('historyStd', 0.0)),
            )
        return model
