"""Detection engine configuration."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DetectionConfig:
    """Constants of the post-processing and tracking pipeline.

    Fixed at engine construction; tests build their own instances to
    parameterize thresholds.
    """

    # Model contract
    max_raw_detections: int = 10

    # Confidence filter
    confidence_threshold: float = 0.6
    large_box_ratio: float = 0.5         # fraction of frame area
    large_box_min_confidence: float = 0.8

    # Per-label NMS
    nms_iou_threshold: float = 0.5
    max_per_label: int = 5
    max_detections: int = 5              # global output cap

    # Tracker hysteresis
    match_iou: float = 0.4
    add_threshold: float = 0.55          # start a track
    keep_threshold: float = 0.45         # continue a track
    max_misses: int = 8
    empty_streak_limit: int = 5
    geometry_alpha: float = 0.6          # weight of the current box
    confidence_alpha: float = 0.7        # EMA weight of the current score
    confidence_decay: float = 0.9

    # Frame admission
    target_fps: float = 10.0

    # Throughput logging interval (frames)
    log_interval: int = 100

    labels_yaml: str = ""

    @property
    def frame_budget_s(self) -> float:
        return 1.0 / self.target_fps


def build_config(settings) -> DetectionConfig:
    """Build DetectionConfig from shared Settings."""
    return DetectionConfig(
        max_raw_detections=settings.max_raw_detections,
        confidence_threshold=settings.confidence_threshold,
        large_box_ratio=settings.large_box_ratio,
        large_box_min_confidence=settings.large_box_min_confidence,
        nms_iou_threshold=settings.nms_iou_threshold,
        max_per_label=settings.max_per_label,
        max_detections=settings.max_detections,
        match_iou=settings.match_iou,
        add_threshold=settings.add_threshold,
        keep_threshold=settings.keep_threshold,
        max_misses=settings.max_misses,
        empty_streak_limit=settings.empty_streak_limit,
        geometry_alpha=settings.geometry_alpha,
        confidence_alpha=settings.confidence_alpha,
        confidence_decay=settings.confidence_decay,
        target_fps=settings.target_fps,
        log_interval=settings.log_interval,
        labels_yaml=settings.labels_yaml,
    )
