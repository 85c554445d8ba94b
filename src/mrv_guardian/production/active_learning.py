"""
Active Learning Loop

Human-in-the-loop model improvement. Operators label detector verdicts as
true/false positives/negatives; the learner keeps running confusion counts,
decides when the detector should be retrained, and feeds the confirmed
readings back into ``AnomalyDetector.retrain``.

Usage Example:
    >>> from mrv_guardian.production.active_learning import ActiveLearner, Verdict
    >>> learner = ActiveLearner(detector)
    >>> learner.record(reading, Verdict.FALSE_POSITIVE, operator='ops-1')
    >>> if learner.should_retrain():
    ...     learner.retrain()
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from mrv_guardian.config import ActiveLearningConfig
from mrv_guardian.exceptions import InsufficientTrainingDataError
from mrv_guardian.features.reading_features import ReadingLike, as_reading


class Verdict(str, Enum):
    """Operator judgement of a detector verdict."""
    TRUE_POSITIVE = "true_positive"
    FALSE_POSITIVE = "false_positive"
    TRUE_NEGATIVE = "true_negative"
    FALSE_NEGATIVE = "false_negative"


# Confirmed-normal readings and missed anomalies are what the detector retrains on.
RETRAIN_VERDICTS = (Verdict.TRUE_NEGATIVE, Verdict.FALSE_NEGATIVE)


@dataclass
class FeedbackEntry:
    """One operator label."""
    reading: ReadingLike
    verdict: Verdict
    operator: str = 'unknown'
    notes: str = ''
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reading': as_reading(self.reading).to_dict(),
            'verdict': self.verdict.value,
            'operator': self.operator,
            'notes': self.notes,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeedbackEntry':
        timestamp = data.get('timestamp')
        return cls(
            reading=as_reading(data['reading']),
            verdict=Verdict(data['verdict']),
            operator=data.get('operator', 'unknown'),
            notes=data.get('notes', ''),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(),
        )


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


class ActiveLearner:
    """
    Feedback buffer, confusion counts and retrain trigger for an AnomalyDetector.

    Attributes:
        detector: AnomalyDetector to score with and retrain
        config: Retrain thresholds
        feedback_buffer: Entries not yet consumed by a retrain
        retrain_history: One record per successful retrain
    """

    def __init__(self, detector, config: Optional[ActiveLearningConfig] = None):
        self.detector = detector
        self.config = config or ActiveLearningConfig()
        self.feedback_buffer: List[FeedbackEntry] = []
        self.retrain_history: List[Dict[str, Any]] = []
        self.counts: Dict[Verdict, int] = {v: 0 for v in Verdict}
        self._lock = threading.Lock()

    def add_feedback(self, entry: FeedbackEntry) -> None:
        """Buffer one label and update the running confusion counts."""
        with self._lock:
            self.feedback_buffer.append(entry)
            self.counts[entry.verdict] += 1
            total = sum(self.counts.values())
        logger.info(f"Feedback added: {entry.verdict.value} (total: {total})")

    def record(
        self,
        reading: ReadingLike,
        verdict: Any,
        operator: str = 'unknown',
        notes: str = ''
    ) -> FeedbackEntry:
        """Build and add an entry; ``verdict`` may be a Verdict or its string value."""
        entry = FeedbackEntry(
            reading=reading,
            verdict=Verdict(verdict),
            operator=operator,
            notes=notes,
        )
        self.add_feedback(entry)
        return entry

    @property
    def buffer_size(self) -> int:
        with self._lock:
            return len(self.feedback_buffer)

    def false_positive_rate(self) -> float:
        with self._lock:
            fp = self.counts[Verdict.FALSE_POSITIVE]
            tn = self.counts[Verdict.TRUE_NEGATIVE]
        return _ratio(fp, fp + tn)

    def should_retrain(self) -> bool:
        """Enough buffered feedback, or too many false positives."""
        buffered = self.buffer_size
        if buffered >= self.config.min_feedback_for_retrain:
            return True

        fp_rate = self.false_positive_rate()
        if fp_rate > self.config.max_false_positive_rate and \
                buffered >= self.config.min_feedback_for_fp_trigger:
            logger.warning(f"High false positive rate ({fp_rate:.1%}), triggering retrain")
            return True
        return False

    def retrain(self) -> bool:
        """
        Retrain the detector on confirmed normals and missed anomalies.

        A successful retrain clears every entry that was buffered when it
        started; entries added meanwhile stay. Any failure leaves the buffer
        untouched.

        Returns:
            True if the detector was retrained
        """
        with self._lock:
            snapshot = list(self.feedback_buffer)

        if not snapshot:
            logger.warning("No feedback to retrain on")
            return False

        corpus = [e.reading for e in snapshot if e.verdict in RETRAIN_VERDICTS]
        if len(corpus) < self.config.min_retrain_corpus:
            logger.warning(
                f"Insufficient feedback for retraining: {len(corpus)} usable entries, "
                f"need {self.config.min_retrain_corpus}"
            )
            return False

        logger.info(f"Retraining with {len(corpus)} of {len(snapshot)} feedback entries")
        try:
            self.detector.retrain(corpus)
        except InsufficientTrainingDataError as e:
            logger.warning(f"Retrain rejected by detector: {e}")
            return False

        drained = {id(e) for e in snapshot}
        with self._lock:
            self.feedback_buffer = [
                e for e in self.feedback_buffer if id(e) not in drained
            ]
        self.retrain_history.append({
            'timestamp': datetime.now().isoformat(),
            'feedbackCount': len(snapshot),
            'metrics': self.metrics(),
        })
        logger.info("Retrain from feedback successful")
        return True

    def metrics(self) -> Dict[str, Any]:
        """Confusion counts with precision, recall, F1, accuracy and FP rate."""
        with self._lock:
            tp = self.counts[Verdict.TRUE_POSITIVE]
            fp = self.counts[Verdict.FALSE_POSITIVE]
            tn = self.counts[Verdict.TRUE_NEGATIVE]
            fn = self.counts[Verdict.FALSE_NEGATIVE]
        total = tp + fp + tn + fn
        precision = _ratio(tp, tp + fp)
        recall = _ratio(tp, tp + fn)
        return {
            'totalFeedback': total,
            'truePositives': tp,
            'falsePositives': fp,
            'trueNegatives': tn,
            'falseNegatives': fn,
            'accuracy': _ratio(tp + tn, total),
            'precision': precision,
            'recall': recall,
            'f1Score': 2 * precision * recall / (precision + recall) if precision + recall else 0.0,
            'falsePositiveRate': _ratio(fp, fp + tn),
            'totalRetrains': len(self.retrain_history),
        }

    def get_uncertain_readings(self, readings: List[ReadingLike], top_n: int = 10) -> List[Dict[str, Any]]:
        """
        Readings whose score sits closest to indecision, for human review.

        Returns:
            Up to ``top_n`` dicts of {reading, result, uncertainty}, most uncertain first
        """
        scored = []
        for reading in readings:
            result = self.detector.detect(reading)
            scored.append({
                'reading': reading,
                'result': result,
                'uncertainty': 1 - abs(result['score'] - 0.5) * 2,
            })
        scored.sort(key=lambda item: item['uncertainty'], reverse=True)
        return scored[:top_n]

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            buffer = [e.to_dict() for e in self.feedback_buffer]
            counts = {v.value: n for v, n in self.counts.items()}
        return {
            'feedbackBuffer': buffer,
            'retrainHistory': list(self.retrain_history),
            'counts': counts,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        detector,
        config: Optional[ActiveLearningConfig] = None
    ) -> 'ActiveLearner':
        learner = cls(detector, config)
        learner.feedback_buffer = [FeedbackEntry.from_dict(e) for e in data.get('feedbackBuffer', [])]
        learner.retrain_history = list(data.get('retrainHistory', []))
        for verdict, n in data.get('counts', {}).items():
            learner.counts[Verdict(verdict)] = int(n)
        return learner
