"""
Isolation Forest

A from-scratch Isolation Forest (Liu, Ting & Zhou, ICDM 2008) over normalised
feature vectors. Anomalies are isolated by fewer random splits, so their
average path length through the ensemble is short and their score is close
to 1.

- Each tree is grown on a random subsample (shuffle then slice).
- Every split picks a feature with non-zero spread in the current partition
  and a split value uniformly between that feature's min and max.
- Leaves that stop early are corrected with the expected path length of an
  unsuccessful BST search over the points left in them.
- The anomaly threshold is calibrated from training scores using the
  contamination rate.

Trees are frozen dataclasses and serialise to plain nested dicts, so a
restored forest scores exactly like the original.

Example:
    >>> from mrv_guardian.models.isolation_forest import IsolationForest
    >>> forest = IsolationForest(n_trees=100, subsample_size=256, random_state=42)
    >>> forest.fit(X_train)
    >>> result = forest.score(x)
    >>> result.is_anomaly, result.score
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from loguru import logger

from mrv_guardian.exceptions import (
    InsufficientTrainingDataError,
    ModelNotFittedError,
    SnapshotError,
)
from mrv_guardian.utils import RandomState, make_rng

EULER_MASCHERONI = 0.5772156649
SNAPSHOT_VERSION = '1.0'
ALGORITHM = 'IsolationForest'


def average_path_length(n: int) -> float:
    """
    Expected path length of an unsuccessful BST search over ``n`` points.

    Used both to correct leaves that still hold several points and to
    normalise path lengths across subsample sizes.
    """
    if n <= 1:
        return 0.0
    if n == 2:
        return 1.0
    return 2.0 * (math.log(n - 1) + EULER_MASCHERONI) - 2.0 * (n - 1) / n


@dataclass(frozen=True)
class LeafNode:
    """Terminal node holding the number of training points that reached it."""
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {'isLeaf': True, 'size': self.size}


@dataclass(frozen=True)
class SplitNode:
    """Internal node: ``x[feature_index] < split_value`` goes left."""
    feature_index: int
    split_value: float
    left: 'Node'
    right: 'Node'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'isLeaf': False,
            'featureIndex': self.feature_index,
            'splitValue': self.split_value,
            'left': self.left.to_dict(),
            'right': self.right.to_dict(),
        }


Node = Union[LeafNode, SplitNode]


def node_from_dict(data: Dict[str, Any]) -> Node:
    """Rebuild a tree from its nested-dict snapshot."""
    if data['isLeaf']:
        return LeafNode(size=int(data['size']))
    return SplitNode(
        feature_index=int(data['featureIndex']),
        split_value=float(data['splitValue']),
        left=node_from_dict(data['left']),
        right=node_from_dict(data['right']),
    )


def build_tree(
    data: np.ndarray,
    depth: int,
    max_depth: int,
    rng: np.random.Generator
) -> Node:
    """
    Grow one isolation tree by recursive random partitioning.

    Args:
        data: (m, d) array of points in the current partition
        depth: Depth of the current node
        max_depth: Depth at which growth stops
        rng: Random source

    Returns:
        Root node of the (sub)tree
    """
    n = data.shape[0]
    if n <= 1 or depth >= max_depth:
        return LeafNode(size=n)

    n_features = data.shape[1]
    feature, low, high = 0, 0.0, 0.0
    for _ in range(2 * n_features):
        feature = int(rng.integers(n_features))
        column = data[:, feature]
        low, high = float(column.min()), float(column.max())
        if low < high:
            break

    # Every sampled feature was constant in this partition.
    if low == high:
        return LeafNode(size=n)

    split = float(rng.uniform(low, high))
    if split <= low:
        split = float(np.nextafter(low, high))
    elif split >= high:
        split = float(np.nextafter(high, low))

    goes_left = data[:, feature] < split
    return SplitNode(
        feature_index=feature,
        split_value=split,
        left=build_tree(data[goes_left], depth + 1, max_depth, rng),
        right=build_tree(data[~goes_left], depth + 1, max_depth, rng),
    )


def path_length(node: Node, sample: Sequence[float], depth: int = 0) -> float:
    """Path length of one sample through one tree, with leaf correction."""
    while isinstance(node, SplitNode):
        node = node.left if sample[node.feature_index] < node.split_value else node.right
        depth += 1
    return depth + average_path_length(node.size)


def _accumulate_path_lengths(
    node: Node,
    X: np.ndarray,
    rows: np.ndarray,
    depth: int,
    out: np.ndarray
) -> None:
    """Vectorised ``path_length`` for many samples at once."""
    if isinstance(node, LeafNode):
        out[rows] += depth + average_path_length(node.size)
        return
    goes_left = X[rows, node.feature_index] < node.split_value
    if goes_left.any():
        _accumulate_path_lengths(node.left, X, rows[goes_left], depth + 1, out)
    if not goes_left.all():
        _accumulate_path_lengths(node.right, X, rows[~goes_left], depth + 1, out)


@dataclass(frozen=True)
class ScoreResult:
    """Outcome of scoring one feature vector."""
    score: float
    is_anomaly: bool
    confidence: float
    threshold: float
    method: str = 'isolation_forest'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.score,
            'isAnomaly': self.is_anomaly,
            'confidence': self.confidence,
            'threshold': self.threshold,
            'method': self.method,
        }


def confidence_from_score(score: float) -> float:
    """Distance from indecision (0.5), scaled to [0, 1]."""
    return min(1.0, abs(score - 0.5) * 2.0)


class IsolationForest:
    """
    Unsupervised Isolation Forest anomaly detector.

    Args:
        n_trees: Number of trees
        subsample_size: Points drawn per tree
        contamination: Expected fraction of anomalies, used for the threshold
        feature_names: Optional labels for the feature columns
        random_state: Seed or shared numpy Generator

    Example:
        >>> forest = IsolationForest(n_trees=50, random_state=7).fit(X)
        >>> forest.score(X[0]).to_dict()
    """

    def __init__(
        self,
        n_trees: int = 100,
        subsample_size: int = 256,
        contamination: float = 0.10,
        feature_names: Optional[List[str]] = None,
        random_state: RandomState = None
    ):
        if n_trees < 1:
            raise ValueError(f"n_trees must be positive, got {n_trees}")
        if subsample_size < 1:
            raise ValueError(f"subsample_size must be positive, got {subsample_size}")
        if not 0.0 <= contamination < 1.0:
            raise ValueError(f"contamination must be in [0, 1), got {contamination}")

        self.n_trees = n_trees
        self.subsample_size = subsample_size
        self.contamination = contamination
        self.feature_names = list(feature_names) if feature_names is not None else None
        self.rng = make_rng(random_state)

        self._trees: Tuple[Node, ...] = ()
        self.trained = False
        self.training_size = 0
        self.threshold = 0.5

    @property
    def trees(self) -> Tuple[Node, ...]:
        return self._trees

    def fit(self, X: Union[np.ndarray, Sequence[Sequence[float]]]) -> 'IsolationForest':
        """
        Grow the forest and calibrate the anomaly threshold.

        Args:
            X: (n, d) array of normalised feature vectors

        Returns:
            Self
        """
        X = np.asarray(X, dtype=float)
        if X.size == 0:
            raise InsufficientTrainingDataError(1, 0, what='feature vectors')
        if X.ndim != 2:
            raise ValueError(f"Expected a 2-D array of feature vectors, got shape {X.shape}")

        n = X.shape[0]
        sample_size = min(self.subsample_size, n)
        max_depth = math.ceil(math.log2(sample_size)) + 1 if sample_size > 1 else 1

        logger.info(
            f"Fitting Isolation Forest: {self.n_trees} trees, "
            f"subsample={sample_size}, n={n}"
        )

        trees = []
        for _ in range(self.n_trees):
            order = self.rng.permutation(n)
            sample = X[order[:sample_size]]
            trees.append(build_tree(sample, 0, max_depth, self.rng))

        scores = np.sort(self._raw_scores(X, tuple(trees), n))
        index = min(int(math.floor(n * (1 - self.contamination))), n - 1)

        self._trees = tuple(trees)
        self.training_size = n
        self.threshold = float(scores[index])
        self.trained = True

        logger.info(f"Isolation Forest fitted, threshold={self.threshold:.6f}")
        return self

    def _raw_scores(self, X: np.ndarray, trees: Tuple[Node, ...], training_size: int) -> np.ndarray:
        if not trees:
            return np.zeros(X.shape[0])
        totals = np.zeros(X.shape[0])
        rows = np.arange(X.shape[0])
        for tree in trees:
            _accumulate_path_lengths(tree, X, rows, 0, totals)
        mean_path = totals / len(trees)
        norm = average_path_length(min(self.subsample_size, training_size)) or 1.0
        return np.power(2.0, -mean_path / norm)

    def _check_vectors(self, X: Union[np.ndarray, Sequence]) -> np.ndarray:
        if not self.trained:
            raise ModelNotFittedError("Isolation Forest not fitted. Call fit() first.")
        X = np.atleast_2d(np.asarray(X, dtype=float))
        if self.feature_names is not None and X.shape[1] != len(self.feature_names):
            raise ValueError(
                f"Expected {len(self.feature_names)} features, got {X.shape[1]}"
            )
        return X

    def raw_scores(self, X: Union[np.ndarray, Sequence]) -> np.ndarray:
        """Anomaly scores in (0, 1] for many vectors; near 1 is anomalous."""
        X = self._check_vectors(X)
        return self._raw_scores(X, self._trees, self.training_size)

    def score(self, sample: Sequence[float]) -> ScoreResult:
        """
        Score one feature vector.

        Args:
            sample: Normalised feature vector

        Returns:
            ScoreResult with score, anomaly flag, confidence and threshold
        """
        raw = float(self.raw_scores(sample)[0])
        return ScoreResult(
            score=raw,
            is_anomaly=raw > self.threshold,
            confidence=confidence_from_score(raw),
            threshold=self.threshold,
        )

    def score_many(self, X: Union[np.ndarray, Sequence]) -> List[ScoreResult]:
        """Score many vectors at once."""
        return [
            ScoreResult(
                score=float(raw),
                is_anomaly=bool(raw > self.threshold),
                confidence=confidence_from_score(float(raw)),
                threshold=self.threshold,
            )
            for raw in self.raw_scores(X)
        ]

    def to_snapshot(self) -> Dict[str, Any]:
        """Serialise to plain nested dicts."""
        return {
            'version': SNAPSHOT_VERSION,
            'algorithm': ALGORITHM,
            'treeCount': self.n_trees,
            'subsampleSize': self.subsample_size,
            'contamination': self.contamination,
            'featureNames': self.feature_names,
            'trained': self.trained,
            'trainingCorpusSize': self.training_size,
            'anomalyThreshold': self.threshold,
            'trees': [tree.to_dict() for tree in self._trees],
        }

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> 'IsolationForest':
        """Restore a forest produced by ``to_snapshot``."""
        if snapshot.get('algorithm') != ALGORITHM:
            raise SnapshotError(f"Not an {ALGORITHM} snapshot: {snapshot.get('algorithm')!r}")
        try:
            forest = cls(
                n_trees=int(snapshot['treeCount']),
                subsample_size=int(snapshot['subsampleSize']),
                contamination=float(snapshot['contamination']),
                feature_names=snapshot.get('featureNames'),
            )
            forest._trees = tuple(node_from_dict(t) for t in snapshot['trees'])
            forest.trained = bool(snapshot['trained'])
            forest.training_size = int(snapshot['trainingCorpusSize'])
            forest.threshold = float(snapshot['anomalyThreshold'])
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotError(f"Malformed {ALGORITHM} snapshot: {e}") from e

        if forest.trained and len(forest._trees) != forest.n_trees:
            raise SnapshotError(
                f"Snapshot declares {forest.n_trees} trees but holds {len(forest._trees)}"
            )
        return forest

    def __repr__(self) -> str:
        return (
            f"IsolationForest(n_trees={self.n_trees}, subsample_size={self.subsample_size}, "
            f"contamination={self.contamination}, trained={self.trained})"
        )
