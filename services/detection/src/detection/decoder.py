"""Raw detector tensor decoding.

SSD-style models return four buffers per frame: boxes, class ids, scores and
a detection count. Depending on the runtime the boxes arrive flat (4·N
values) or nested (N×4, optionally with a leading batch axis), and the other
buffers may be batched as 1×N. ``decode_output`` normalizes all of these into
a list of RawCandidate with boxes clamped to [0, 1].
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import numpy as np

_BOX_FIELDS = 4


@dataclass
class RawModelOutput:
    """The four output buffers of one inference call."""

    boxes: Any = None       # [ymin, xmin, ymax, xmax] per detection, normalized
    class_ids: Any = None
    scores: Any = None
    count: Any = None


@dataclass(frozen=True)
class RawCandidate:
    class_id: float
    score: float
    ymin: float
    xmin: float
    ymax: float
    xmax: float


def decode_output(raw: RawModelOutput, max_detections: int = 10) -> list[RawCandidate]:
    """Decode one frame's model output into raw candidates.

    Args:
        raw: Output buffers as returned by the inference runtime.
        max_detections: Model contract maximum N; the declared count is clamped to it.

    Returns:
        At most ``count`` candidates. Rows missing from short buffers decode as
        zeros; rows containing NaN or infinite values are dropped.
    """
    count = _declared_count(raw.count, max_detections)
    if count == 0:
        return []

    boxes = _box_rows(raw.boxes, count)
    class_ids = _vector(raw.class_ids, count)
    scores = _vector(raw.scores, count)

    candidates: list[RawCandidate] = []
    for i in range(count):
        row = boxes[i]
        if not (np.isfinite(row).all() and math.isfinite(scores[i]) and math.isfinite(class_ids[i])):
            continue
        ymin, xmin, ymax, xmax = np.clip(row, 0.0, 1.0).tolist()
        candidates.append(
            RawCandidate(
                class_id=float(class_ids[i]),
                score=min(1.0, max(0.0, float(scores[i]))),
                ymin=ymin,
                xmin=xmin,
                ymax=ymax,
                xmax=xmax,
            )
        )
    return candidates


def _declared_count(value: Any, max_detections: int) -> int:
    """Resolve the declared detection count; unusable values mean "all N"."""
    if value is None:
        return max_detections
    try:
        arr = np.asarray(value, dtype=np.float64).ravel()
    except (TypeError, ValueError):
        return max_detections
    if arr.size == 0 or not math.isfinite(arr[0]):
        return max_detections
    return int(min(max(round(float(arr[0])), 0), max_detections))


def _box_rows(boxes: Any, count: int) -> np.ndarray:
    """Return a (count, 4) float array from a flat or nested box buffer."""
    if boxes is None:
        return np.zeros((count, _BOX_FIELDS), dtype=np.float64)

    try:
        arr = np.asarray(boxes, dtype=np.float64)
    except ValueError:
        # Nested rows of unequal length
        return _ragged_rows(boxes, count)

    if arr.ndim >= 2 and arr.shape[-1] == _BOX_FIELDS:
        # Nested N×4, possibly with leading batch axes (1×N×4)
        rows = arr.reshape(-1, _BOX_FIELDS)
    else:
        # Flat 4·N
        flat = arr.ravel()
        short = -flat.size % _BOX_FIELDS
        if short:
            flat = np.concatenate([flat, np.zeros(short)])
        rows = flat.reshape(-1, _BOX_FIELDS)

    if len(rows) >= count:
        return rows[:count]
    padded = np.zeros((count, _BOX_FIELDS), dtype=np.float64)
    padded[: len(rows)] = rows
    return padded


def _ragged_rows(boxes: Any, count: int) -> np.ndarray:
    """Convert nested rows one at a time.

    Short rows are zero-padded; a row that does not convert to numbers
    becomes NaN so ``decode_output`` drops that candidate alone.
    """
    rows = list(boxes)
    # Leading batch axis: [[row, row, ...]]
    if len(rows) == 1 and isinstance(rows[0], (list, tuple, np.ndarray)):
        if len(rows[0]) and np.ndim(rows[0][0]) >= 1:
            rows = list(rows[0])

    out = np.zeros((count, _BOX_FIELDS), dtype=np.float64)
    for i, row in enumerate(rows[:count]):
        try:
            values = np.asarray(row, dtype=np.float64).ravel()[:_BOX_FIELDS]
        except (TypeError, ValueError):
            out[i] = np.nan
            continue
        out[i, : values.size] = values
    return out


def _vector(values: Any, count: int) -> np.ndarray:
    """Flatten a 1-D or 1×N buffer to exactly ``count`` values, zero-padded."""
    out = np.zeros(count, dtype=np.float64)
    if values is None:
        return out
    flat = np.asarray(values, dtype=np.float64).ravel()[:count]
    out[: flat.size] = flat
    return out
