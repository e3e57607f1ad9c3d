"""Box overlap and per-label non-maximum suppression."""
from __future__ import annotations

from collections import defaultdict
from typing import Protocol

from vision_shared.events.schemas import Detection

from detection.config import DetectionConfig


class _Box(Protocol):
    x: float
    y: float
    width: float
    height: float


def iou(a: _Box, b: _Box) -> float:
    """Intersection over union of two x/y/width/height boxes.

    Returns 0.0 for disjoint boxes and when the union has no area.
    """
    x1 = max(a.x, b.x)
    y1 = max(a.y, b.y)
    x2 = min(a.x + a.width, b.x + b.width)
    y2 = min(a.y + a.height, b.y + b.height)
    inter = max(0.0, x2 - x1) * max(0.0, y2 - y1)
    union = a.width * a.height + b.width * b.height - inter
    if union <= 0:
        return 0.0
    return inter / union


def suppress(detections: list[Detection], config: DetectionConfig) -> list[Detection]:
    """Greedy NMS run independently for each label.

    Only same-label boxes compete; co-located objects of different classes
    both survive.
    """
    by_label: dict[str, list[Detection]] = defaultdict(list)
    for det in detections:
        by_label[det.label].append(det)

    selected: list[Detection] = []
    for group in by_label.values():
        group.sort(key=lambda d: d.confidence, reverse=True)
        kept: list[Detection] = []
        for cand in group:
            if len(kept) >= config.max_per_label:
                break
            if all(iou(cand, other) <= config.nms_iou_threshold for other in kept):
                kept.append(cand)
        selected.extend(kept)

    selected.sort(key=lambda d: d.confidence, reverse=True)
    return selected[: config.max_detections]
