"""
Snapshot persistence for trained models.

Snapshots are plain dicts written either as JSON (default) or with joblib,
chosen by file suffix. A sha256 checksum over the canonical JSON form of the
payload is stored alongside it and verified on load.

Writes go to a temporary file in the target directory and are moved into
place with ``os.replace``, so a crash never leaves a half-written snapshot.
"""

import hashlib
import json
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Union

import joblib
from loguru import logger

from mrv_guardian.exceptions import SnapshotError

PathLike = Union[str, Path]


class SnapshotFormat(str, Enum):
    """Snapshot serialization format."""
    JSON = "json"
    JOBLIB = "joblib"


def format_for_path(path: PathLike) -> SnapshotFormat:
    """``.joblib`` and ``.pkl`` use joblib; everything else is JSON."""
    if Path(path).suffix.lower() in ('.joblib', '.pkl'):
        return SnapshotFormat.JOBLIB
    return SnapshotFormat.JSON


def compute_checksum(payload: Dict[str, Any]) -> str:
    """Compute sha256 of the payload (minus any checksum) for integrity checking."""
    body = {k: v for k, v in payload.items() if k != 'checksum'}
    canonical = json.dumps(body, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def write_atomic(data: Any, path: PathLike) -> Path:
    """
    Write ``data`` to ``path`` via a temporary file and ``os.replace``.

    The temporary file lives in the target directory and is removed on
    every error path. Any filesystem or serialisation failure, including an
    unwritable target directory, is raised as SnapshotError.
    """
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=path.parent)
        with os.fdopen(fd, 'wb') as f:
            if format_for_path(path) == SnapshotFormat.JOBLIB:
                joblib.dump(data, f)
            else:
                f.write(json.dumps(data, indent=2).encode('utf-8'))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except (OSError, TypeError, ValueError) as e:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise SnapshotError(f"Failed to write snapshot: {e}", str(path)) from e
    return path


def save_snapshot(payload: Dict[str, Any], path: PathLike, with_checksum: bool = True) -> Path:
    """
    Atomically write a snapshot.

    Args:
        payload: JSON-compatible dict
        path: Target file; its suffix picks the format
        with_checksum: Add a ``checksum`` entry before writing

    Returns:
        Path written
    """
    data = dict(payload)
    if with_checksum:
        data['checksum'] = compute_checksum(data)

    path = write_atomic(data, path)
    logger.info(f"Saved {format_for_path(path).value} snapshot to {path}")
    return path


def load_snapshot(path: PathLike, verify: bool = True) -> Dict[str, Any]:
    """
    Read a snapshot written by ``save_snapshot``.

    Raises:
        SnapshotError: The file is missing, unreadable, or fails its checksum
    """
    path = Path(path)
    if not path.exists():
        raise SnapshotError("Snapshot not found", str(path))

    try:
        if format_for_path(path) == SnapshotFormat.JOBLIB:
            data = joblib.load(path)
        else:
            with open(path, 'r') as f:
                data = json.load(f)
    except Exception as e:
        raise SnapshotError(f"Unreadable snapshot: {e}", str(path)) from e

    if not isinstance(data, dict):
        raise SnapshotError("Snapshot is not a mapping", str(path))

    expected = data.get('checksum')
    if verify and expected is not None and compute_checksum(data) != expected:
        raise SnapshotError("Snapshot checksum mismatch", str(path))

    logger.info(f"Loaded snapshot from {path}")
    return data
