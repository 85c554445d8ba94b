"""
Feedback Storage for Active Learning

Append-only JSON file of operator corrections to detector verdicts. Each
entry records what the model said (``originalLabel``) and what a human
decided (``correctLabel``), both ``anomaly`` or ``normal``.

Usage Example:
    >>> from mrv_guardian.production.feedback_store import FeedbackStore
    >>> store = FeedbackStore('data/feedback.json')
    >>> store.load()
    >>> store.add_feedback({'readingId': 'r-1', 'originalLabel': 'anomaly',
    ...                     'correctLabel': 'normal', 'confidence': 0.62})
    >>> store.stats()['falsePositives']
    1
"""

import json
import secrets
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from mrv_guardian.config import ActiveLearningConfig
from mrv_guardian.exceptions import SnapshotError
from mrv_guardian.production.active_learning import FeedbackEntry, Verdict
from mrv_guardian.production.model_store import write_atomic
from mrv_guardian.features.reading_features import as_reading

LABEL_ANOMALY = 'anomaly'
LABEL_NORMAL = 'normal'
LABELS = (LABEL_ANOMALY, LABEL_NORMAL)
REQUIRED_FIELDS = ('readingId', 'originalLabel', 'correctLabel')

_VERDICTS = {
    (LABEL_ANOMALY, LABEL_ANOMALY): Verdict.TRUE_POSITIVE,
    (LABEL_ANOMALY, LABEL_NORMAL): Verdict.FALSE_POSITIVE,
    (LABEL_NORMAL, LABEL_ANOMALY): Verdict.FALSE_NEGATIVE,
    (LABEL_NORMAL, LABEL_NORMAL): Verdict.TRUE_NEGATIVE,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class FeedbackStore:
    """
    Persistent store of human corrections.

    Entries are guarded by a lock, so concurrent ``add_feedback`` calls never
    lose an entry and every save writes a complete list.

    Args:
        file_path: JSON file holding the list of entries
        min_entries_for_insights: Below this, insights are not computed
        retrain_every: Recommend a retrain at every multiple of this count
    """

    def __init__(
        self,
        file_path: Union[str, Path] = 'data/feedback.json',
        min_entries_for_insights: int = 10,
        retrain_every: int = 50
    ):
        self.file_path = Path(file_path)
        self.min_entries_for_insights = min_entries_for_insights
        self.retrain_every = retrain_every
        self.feedback: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ActiveLearningConfig) -> 'FeedbackStore':
        return cls(
            file_path=config.feedback_path or 'data/feedback.json',
            retrain_every=config.min_feedback_for_retrain,
        )

    def _entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self.feedback)

    def load(self) -> int:
        """Load entries from disk; a missing file starts an empty store."""
        if not self.file_path.exists():
            logger.info(f"No feedback file at {self.file_path}, starting fresh")
            with self._lock:
                self.feedback = []
            return 0

        try:
            with open(self.file_path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise SnapshotError(f"Unreadable feedback file: {e}", str(self.file_path)) from e

        if not isinstance(data, list):
            raise SnapshotError("Feedback file does not hold a list", str(self.file_path))

        with self._lock:
            self.feedback = data
        logger.info(f"Loaded {len(data)} feedback entries from {self.file_path}")
        return len(data)

    def save(self) -> None:
        with self._lock:
            write_atomic(list(self.feedback), self.file_path)

    def add_feedback(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate, append and persist one correction.

        Args:
            entry: Mapping with readingId, originalLabel and correctLabel,
                plus optional confidence, reading and notes

        Returns:
            The stored entry with its generated id and timestamp
        """
        missing = [name for name in REQUIRED_FIELDS if not entry.get(name)]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")
        for name in ('originalLabel', 'correctLabel'):
            if entry[name] not in LABELS:
                raise ValueError(f"{name} must be one of {LABELS}, got {entry[name]!r}")

        timestamp = _now_ms()
        stored = {
            'id': f"fb_{timestamp}_{secrets.token_hex(5)}",
            'timestamp': timestamp,
            'readingId': entry['readingId'],
            'originalLabel': entry['originalLabel'],
            'correctLabel': entry['correctLabel'],
            'confidence': entry.get('confidence'),
            'reading': entry.get('reading'),
            'notes': entry.get('notes'),
        }
        with self._lock:
            self.feedback.append(stored)
            try:
                write_atomic(list(self.feedback), self.file_path)
            except SnapshotError:
                self.feedback.pop()
                raise
        return stored

    def get_feedback(
        self,
        correct_label: Optional[str] = None,
        confidence: Optional[float] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Filter entries.

        Args:
            correct_label: Keep entries with this human label
            confidence: Keep entries whose model confidence is below this
                (entries without one count as 1.0)
            start: Earliest timestamp, epoch milliseconds
            end: Latest timestamp, epoch milliseconds
            limit: Keep only the most recent ``limit`` entries
        """
        result = self._entries()
        if correct_label is not None:
            result = [f for f in result if f['correctLabel'] == correct_label]
        if confidence is not None:
            result = [f for f in result if (f.get('confidence') or 1.0) < confidence]
        if start is not None:
            result = [f for f in result if f['timestamp'] >= start]
        if end is not None:
            result = [f for f in result if f['timestamp'] <= end]
        if limit:
            result = result[-limit:]
        return result

    def stats(self) -> Dict[str, Any]:
        """Confusion matrix of model label vs human label, with rates."""
        entries = self._entries()
        counts = {verdict: 0 for verdict in Verdict}
        for f in entries:
            verdict = _VERDICTS.get((f['originalLabel'], f['correctLabel']))
            if verdict is not None:
                counts[verdict] += 1

        tp = counts[Verdict.TRUE_POSITIVE]
        fp = counts[Verdict.FALSE_POSITIVE]
        fn = counts[Verdict.FALSE_NEGATIVE]
        tn = counts[Verdict.TRUE_NEGATIVE]
        total = len(entries)

        precision = tp / (tp + fp) if tp + fp else 0.0
        recall = tp / (tp + fn) if tp + fn else 0.0
        return {
            'total': total,
            'truePositives': tp,
            'falsePositives': fp,
            'falseNegatives': fn,
            'trueNegatives': tn,
            'precision': precision,
            'recall': recall,
            'accuracy': (tp + tn) / total if total else 0.0,
            'f1Score': 2 * precision * recall / (precision + recall) if precision + recall else 0.0,
            'falsePositiveRate': fp / (fp + tn) if fp + tn else 0.0,
            'falseNegativeRate': fn / (tp + fn) if tp + fn else 0.0,
        }

    def insights(self) -> Dict[str, Any]:
        """Actionable summary and whether the detector should be retrained."""
        stats = self.stats()
        insights = {'summary': '', 'recommendations': [], 'needsRetraining': False}

        if stats['total'] < self.min_entries_for_insights:
            insights['summary'] = 'Insufficient feedback data for insights'
            return insights

        enough_for_retrain = stats['total'] >= self.retrain_every
        if stats['falsePositiveRate'] > 0.2:
            insights['recommendations'].append(
                f"High false positive rate ({stats['falsePositiveRate']:.1%}). Model is too "
                f"sensitive. Consider increasing the anomaly threshold."
            )
            insights['needsRetraining'] = enough_for_retrain

        if stats['falseNegativeRate'] > 0.2:
            insights['recommendations'].append(
                f"High false negative rate ({stats['falseNegativeRate']:.1%}). Model is missing "
                f"anomalies. Consider decreasing the threshold."
            )
            insights['needsRetraining'] = enough_for_retrain

        if stats['accuracy'] > 0.9 and stats['f1Score'] > 0.85:
            insights['summary'] = 'Model performing well. Accuracy and F1 score are excellent.'
        elif stats['accuracy'] > 0.75:
            insights['summary'] = 'Model performing adequately but has room for improvement.'
        else:
            insights['summary'] = 'Model performance is poor. Retraining strongly recommended.'
            insights['needsRetraining'] = True

        if enough_for_retrain and stats['total'] % self.retrain_every == 0:
            insights['recommendations'].append(
                f"{stats['total']} feedback samples collected. Consider retraining the model."
            )
            insights['needsRetraining'] = True

        return insights

    def export_for_training(self) -> List[Dict[str, Any]]:
        """Entries as weighted training samples; uncertain predictions weigh more."""
        return [
            {
                'features': f.get('reading'),
                'label': 1 if f['correctLabel'] == LABEL_ANOMALY else 0,
                'weight': 1 - f['confidence'] if f.get('confidence') else 1.0,
            }
            for f in self._entries()
        ]

    def to_active_learner_entries(self) -> List[FeedbackEntry]:
        """Entries that carry a reading, converted for ``ActiveLearner.add_feedback``."""
        entries = []
        for f in self._entries():
            verdict = _VERDICTS.get((f['originalLabel'], f['correctLabel']))
            if verdict is None or not f.get('reading'):
                continue
            entries.append(FeedbackEntry(
                reading=as_reading(f['reading']),
                verdict=verdict,
                notes=f.get('notes') or '',
            ))
        return entries

    def clear(self) -> None:
        """Drop every entry and persist the empty store."""
        with self._lock:
            self.feedback = []
            write_atomic([], self.file_path)
