"""Confidence filter: threshold, label, scale to screen space, reject large boxes."""
from __future__ import annotations

from vision_shared.events.schemas import Detection, FrameDimensions

from detection.config import DetectionConfig
from detection.decoder import RawCandidate
from detection.labels import LabelTable


def filter_candidates(
    candidates: list[RawCandidate],
    frame: FrameDimensions,
    labels: LabelTable,
    config: DetectionConfig,
) -> list[Detection]:
    """Turn decoded candidates into screen-space Detections.

    Keeps candidates with ``score >= confidence_threshold``. A box covering
    more than ``large_box_ratio`` of the frame survives only when its score
    is at least ``large_box_min_confidence``.
    """
    detections: list[Detection] = []
    for cand in candidates:
        if cand.score < config.confidence_threshold:
            continue

        x = cand.xmin * frame.width
        y = cand.ymin * frame.height
        width = (cand.xmax - cand.xmin) * frame.width
        height = (cand.ymax - cand.ymin) * frame.height
        if width <= 0 or height <= 0:
            continue

        area_ratio = (width * height) / frame.area
        if area_ratio > config.large_box_ratio and cand.score < config.large_box_min_confidence:
            continue

        label, color = labels.lookup(cand.class_id)
        detections.append(
            Detection(
                label=label,
                confidence=cand.score,
                x=x,
                y=y,
                width=width,
                height=height,
                color=color,
            )
        )
    return detections
