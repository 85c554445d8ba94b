"""
Command line entry point: ``mrv-guardian``.

Subcommands:
    train   Train on synthetic normals, evaluate on held-out data, save a snapshot
    score   Score one JSON request from stdin (out-of-process scorer protocol)
    info    Print snapshot metadata

Example:
    $ mrv-guardian train --samples 5000 --output models/isolation_forest.json --seed 42
    $ echo '{"reading": {"flowRate_m3_per_s": 2.5, "headHeight_m": 45,
    ...  "generatedKwh": 9360}}' | mrv-guardian score --model models/isolation_forest.json
"""

import argparse
import json
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

from loguru import logger

from mrv_guardian import __version__
from mrv_guardian.config import GuardianConfig
from mrv_guardian.exceptions import GuardianError
from mrv_guardian.features.reading_features import FeatureExtractor
from mrv_guardian.models.isolation_forest import IsolationForest
from mrv_guardian.production.anomaly_service import AnomalyDetector
from mrv_guardian.production.model_store import load_snapshot
from mrv_guardian.simulation.synthetic_readings import (
    SyntheticDataGenerator,
    label_counts,
    split_dataset,
)


def _forest_from_snapshot(data: Dict[str, Any]) -> IsolationForest:
    """Accept a detector snapshot (wrapping ``forest``) or a bare forest snapshot."""
    return IsolationForest.from_snapshot(data.get('forest', data))


def cmd_train(args: argparse.Namespace) -> int:
    config = GuardianConfig.from_yaml(args.config)
    if args.seed is not None:
        config.forest = replace(config.forest, random_state=args.seed)
    config.detector = replace(config.detector, model_path=None, auto_train=False)

    generator = SyntheticDataGenerator(random_state=args.seed)
    samples = generator.generate(args.samples)

    print(f"Label distribution ({args.samples} samples):")
    for label, count in sorted(label_counts(samples).items()):
        print(f"  {label:<20} {count:>6} ({count / args.samples:.1%})")

    split = split_dataset(samples)
    detector = AnomalyDetector.from_config(config, random_state=args.seed)
    detector.retrain([s.reading for s in split['train']])

    metrics = detector.evaluate(split['val_normal'] + split['val_anomalies'])
    print(f"Threshold: {detector.state.forest.threshold:.4f}")
    print(
        f"Validation: precision={metrics['precision']:.3f} recall={metrics['recall']:.3f} "
        f"f1={metrics['f1']:.3f} accuracy={metrics['accuracy']:.3f}"
    )

    path = detector.save(args.output)
    detector.close()
    print(f"Saved model to {path}")
    return 0


def cmd_score(args: argparse.Namespace) -> int:
    forest = _forest_from_snapshot(load_snapshot(args.model))
    try:
        request = json.loads(sys.stdin.read())
    except ValueError as e:
        print(f"Invalid JSON request: {e}", file=sys.stderr)
        return 2

    if 'features' in request:
        features = request['features']
    elif 'reading' in request:
        features = FeatureExtractor().extract(request['reading'])
    else:
        print("Request needs 'features' or 'reading'", file=sys.stderr)
        return 2

    print(json.dumps(forest.score(features).to_dict()))
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    data = load_snapshot(args.model)
    forest = _forest_from_snapshot(data)
    info = {
        'version': data.get('version'),
        'algorithm': data.get('algorithm'),
        'trainedOn': data.get('trainedOn', forest.training_size),
        'trainedAt': data.get('trainedAt'),
        'nTrees': forest.n_trees,
        'subsampleSize': forest.subsample_size,
        'contamination': forest.contamination,
        'threshold': forest.threshold,
        'features': forest.feature_names,
        'hasDriftBaseline': 'driftBaseline' in data,
    }
    print(json.dumps(info, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mrv-guardian',
        description='Hydropower MRV anomaly detection (Isolation Forest)',
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('--log-level', default='WARNING', help='loguru level for stderr')
    sub = parser.add_subparsers(dest='command', required=True)

    train = sub.add_parser('train', help='train on synthetic data and save a snapshot')
    train.add_argument('--samples', type=int, default=5000)
    train.add_argument('--output', default='models/isolation_forest.json')
    train.add_argument('--seed', type=int, default=None)
    train.add_argument('--config', default=None, help='YAML configuration file')
    train.set_defaults(func=cmd_train)

    score = sub.add_parser('score', help='score one JSON request read from stdin')
    score.add_argument('--model', required=True)
    score.set_defaults(func=cmd_score)

    info = sub.add_parser('info', help='print snapshot metadata')
    info.add_argument('--model', required=True)
    info.set_defaults(func=cmd_info)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    try:
        return args.func(args)
    except GuardianError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
