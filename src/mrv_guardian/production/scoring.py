"""
Scorers: in-process, out-of-process, and a bounded-latency fallback policy.

A Scorer turns a normalised feature vector into a ScoreResult. The detector
never cares where the score came from:

- ForestScorer wraps an in-process IsolationForest
- SubprocessScorer pipes ``{"features": [...]}`` JSON to an external command
  (for example ``mrv-guardian score --model ...``) with a hard timeout
- FallbackScorer runs a primary scorer under a timeout and answers from a
  fallback scorer on timeout, error or low confidence

Example:
    >>> primary = SubprocessScorer(['mrv-guardian', 'score', '--model', 'model.json'])
    >>> scorer = FallbackScorer(primary, ForestScorer(forest), timeout_seconds=2.0)
    >>> scorer.score(features).method
    'isolation_forest'
"""

import json
import subprocess
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from loguru import logger

from mrv_guardian.exceptions import ScorerError
from mrv_guardian.models.isolation_forest import (
    IsolationForest,
    ScoreResult,
    confidence_from_score,
)


class Scorer(ABC):
    """Turns one feature vector into a ScoreResult."""

    name = 'scorer'

    @abstractmethod
    def score(self, features: Sequence[float]) -> ScoreResult:
        pass


class ForestScorer(Scorer):
    """Scores with an in-process IsolationForest."""

    name = 'isolation_forest'

    def __init__(self, forest: IsolationForest):
        self.forest = forest

    def score(self, features: Sequence[float]) -> ScoreResult:
        return self.forest.score(features)


class SubprocessScorer(Scorer):
    """
    Scores by running an external command per request.

    The command receives ``{"features": [...]}`` on stdin and must print a
    JSON object with at least ``score``; ``isAnomaly``, ``confidence`` and
    ``threshold`` are filled in when missing.

    Args:
        command: argv of the scoring process
        timeout_seconds: Hard limit per call
        threshold: Threshold used when the process does not report one
    """

    name = 'subprocess'

    def __init__(self, command: List[str], timeout_seconds: float = 5.0, threshold: float = 0.5):
        if not command:
            raise ValueError("SubprocessScorer needs a command")
        self.command = list(command)
        self.timeout_seconds = timeout_seconds
        self.threshold = threshold

    def score(self, features: Sequence[float]) -> ScoreResult:
        request = json.dumps({'features': [float(v) for v in np.asarray(features, dtype=float)]})
        try:
            completed = subprocess.run(
                self.command,
                input=request,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ScorerError(f"Scorer timed out after {self.timeout_seconds}s") from e
        except OSError as e:
            raise ScorerError(f"Failed to start scorer {self.command[0]!r}: {e}") from e

        if completed.returncode != 0:
            raise ScorerError(
                f"Scorer exited with {completed.returncode}: {completed.stderr.strip()[:200]}"
            )

        try:
            response = json.loads(completed.stdout)
            score = float(response['score'])
        except (ValueError, KeyError, TypeError) as e:
            raise ScorerError(f"Scorer returned invalid output: {completed.stdout[:200]!r}") from e

        threshold = float(response.get('threshold', self.threshold))
        return ScoreResult(
            score=score,
            is_anomaly=bool(response.get('isAnomaly', score > threshold)),
            confidence=float(response.get('confidence', confidence_from_score(score))),
            threshold=threshold,
            method=self.name,
        )


class FallbackScorer(Scorer):
    """
    Bounded-latency policy around a primary scorer.

    The primary runs on an executor and is given ``timeout_seconds``. On
    timeout, on error, or when its confidence is below ``min_confidence``,
    the fallback scorer answers and the method is tagged ``<name>_fallback``.

    Args:
        primary: Preferred scorer
        fallback: Scorer used when the primary cannot answer in time
        timeout_seconds: Time allowed for the primary
        min_confidence: Primary answers below this confidence are discarded
        executor: Shared executor; one is created when omitted
    """

    def __init__(
        self,
        primary: Scorer,
        fallback: Scorer,
        timeout_seconds: float = 5.0,
        min_confidence: float = 0.0,
        executor: Optional[Executor] = None
    ):
        self.primary = primary
        self.fallback = fallback
        self.timeout_seconds = timeout_seconds
        self.min_confidence = min_confidence
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix='guardian-scorer'
        )
        self._lock = threading.Lock()
        self._counts = {
            'primary': 0,
            'fallback': 0,
            'timeouts': 0,
            'errors': 0,
            'lowConfidence': 0,
        }

    @property
    def name(self) -> str:
        return self.primary.name

    def _count(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._counts[key] += 1

    def score(self, features: Sequence[float]) -> ScoreResult:
        future = self._executor.submit(self.primary.score, features)
        try:
            result = future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError:
            future.cancel()
            logger.warning(f"Primary scorer timed out after {self.timeout_seconds}s, using fallback")
            self._count('timeouts')
        except Exception as e:
            logger.warning(f"Primary scorer failed ({e}), using fallback")
            self._count('errors')
        else:
            if result.confidence >= self.min_confidence:
                self._count('primary')
                return result
            logger.warning(
                f"Primary confidence {result.confidence:.3f} below "
                f"{self.min_confidence}, using fallback"
            )
            self._count('lowConfidence')

        fallback = self.fallback.score(features)
        self._count('fallback')
        return replace(fallback, method=f"{fallback.method}_fallback")

    def stats(self) -> Dict[str, Any]:
        """Counters of primary and fallback use."""
        with self._lock:
            counts = dict(self._counts)
        total = counts['primary'] + counts['fallback']
        counts['total'] = total
        counts['fallbackRate'] = counts['fallback'] / total if total else 0.0
        return counts

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)
