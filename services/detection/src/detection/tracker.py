"""IoU tracker with hysteresis for the live overlay.

Each frame's suppressed detections are matched against the tracks carried
over from the previous frame:

  matched     → geometry and confidence smoothed toward the detection, misses = 0
  unmatched   → misses += 1, dropped once misses > max_misses
  new & ≥ add → spawns a track

``step`` is a pure function of (state, detections): the caller commits the
returned state only when the whole frame succeeded.
"""
from __future__ import annotations

from dataclasses import dataclass, replace

from vision_shared.events.schemas import Detection

from detection.config import DetectionConfig
from detection.nms import iou


@dataclass(frozen=True)
class Track:
    label: str
    confidence: float
    x: float
    y: float
    width: float
    height: float
    color: str
    misses: int = 0

    @classmethod
    def from_detection(cls, det: Detection) -> "Track":
        return cls(
            label=det.label,
            confidence=det.confidence,
            x=det.x,
            y=det.y,
            width=det.width,
            height=det.height,
            color=det.color,
        )

    def to_detection(self) -> Detection:
        return Detection(
            label=self.label,
            confidence=self.confidence,
            x=self.x,
            y=self.y,
            width=self.width,
            height=self.height,
            color=self.color,
        )


@dataclass(frozen=True)
class TrackerState:
    tracks: tuple[Track, ...] = ()
    last_output: tuple[Detection, ...] = ()   # fallback for short empty runs
    empty_streak: int = 0                     # consecutive frames re-emitting last_output


@dataclass
class _Match:
    index: int = -1
    overlap: float = 0.0


def _best_match(track: Track, detections: list[Detection], claimed: list[bool]) -> _Match:
    best = _Match()
    for i, det in enumerate(detections):
        if claimed[i] or det.label != track.label:
            continue
        overlap = iou(det, track)
        if overlap > best.overlap:
            best = _Match(index=i, overlap=overlap)
    return best


def _smooth(track: Track, cand: Detection, config: DetectionConfig) -> Track:
    a = config.geometry_alpha
    # A dip below keep decays gently instead of snapping down
    if cand.confidence >= config.keep_threshold or cand.confidence >= config.add_threshold:
        target = cand.confidence
    else:
        target = max(cand.confidence, track.confidence * config.confidence_decay)
    b = config.confidence_alpha
    return Track(
        label=cand.label,
        confidence=min(1.0, b * target + (1 - b) * track.confidence),
        x=a * cand.x + (1 - a) * track.x,
        y=a * cand.y + (1 - a) * track.y,
        width=a * cand.width + (1 - a) * track.width,
        height=a * cand.height + (1 - a) * track.height,
        color=cand.color,
        misses=0,
    )


def step(
    state: TrackerState,
    detections: list[Detection],
    config: DetectionConfig,
) -> tuple[TrackerState, list[Detection]]:
    """Advance the tracker by one frame.

    Args:
        state: Tracker state after the previous frame (not modified).
        detections: This frame's detections after NMS.
        config: Thresholds and smoothing weights.

    Returns:
        (next_state, output) where output holds at most ``max_detections``
        detections sorted by confidence descending.
    """
    claimed = [False] * len(detections)
    tracks: list[Track] = []

    for track in state.tracks:
        match = _best_match(track, detections, claimed)
        if match.index >= 0 and match.overlap >= config.match_iou:
            claimed[match.index] = True
            tracks.append(_smooth(track, detections[match.index], config))
        else:
            tracks.append(replace(track, misses=track.misses + 1))

    for i, det in enumerate(detections):
        if not claimed[i] and det.confidence >= config.add_threshold:
            tracks.append(Track.from_detection(det))

    tracks = [t for t in tracks if t.misses <= config.max_misses]
    tracks.sort(key=lambda t: t.confidence, reverse=True)
    tracks = tracks[: config.max_detections]

    output = [t.to_detection() for t in tracks]
    last_output, empty_streak = state.last_output, state.empty_streak

    if output:
        last_output, empty_streak = tuple(output), 0
    elif last_output and empty_streak < config.empty_streak_limit:
        empty_streak += 1
        output = list(last_output)
    else:
        last_output, empty_streak = (), 0

    return TrackerState(tracks=tuple(tracks), last_output=last_output, empty_streak=empty_streak), output

