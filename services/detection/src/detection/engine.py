"""Live detection engine: camera frame → decode → filter → NMS → track → overlay.

One engine serves one preview session. ``on_frame`` is the camera callback:
it returns quickly for frames it does not admit (capturing, throttled, busy,
no model) and otherwise runs the whole pipeline synchronously before
returning. Tracker state is committed only after a frame completes, so a
failing frame leaves the previous tracks untouched.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Protocol

import numpy as np

from vision_shared.events.schemas import Detection, FrameDimensions, OverlayUpdate
from vision_shared.logging import get_logger

from detection.config import DetectionConfig
from detection.decoder import RawModelOutput, decode_output
from detection.filtering import filter_candidates
from detection.labels import LabelTable
from detection.nms import suppress
from detection.overlay import OverlayChannel
from detection.throttle import FrameThrottle
from detection.tracker import TrackerState, step

log = get_logger(__name__)

# Most recent distinct error messages remembered for log de-duplication
_MAX_SEEN_ERRORS = 256


@dataclass
class CameraFrame:
    """A frame handed over by the camera collaborator."""

    width: int
    height: int
    pixels: np.ndarray | None = None
    timestamp_ns: int = 0


class InferenceModel(Protocol):
    """On-device detector producing the raw SSD output buffers."""

    def run(self, frame: CameraFrame) -> RawModelOutput: ...


@dataclass
class EngineStats:
    processed: int = 0
    throttled: int = 0
    busy: int = 0
    paused: int = 0
    no_model: int = 0
    failed: int = 0
    over_budget: int = 0


class DetectionEngine:
    """Runs the post-processing and tracking pipeline for one camera session.

    Args:
        config: Pipeline constants.
        labels: Label table for class id → (label, color).
        channel: Overlay handoff receiving each frame's detections.
        model: Inference collaborator; may be attached later via ``attach_model``.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        config: DetectionConfig,
        labels: LabelTable,
        channel: OverlayChannel,
        model: InferenceModel | None = None,
        clock=time.monotonic,
    ) -> None:
        self._cfg = config
        self._labels = labels
        self._channel = channel
        self._model = model
        self._clock = clock
        self._throttle = FrameThrottle(config.target_fps, clock=clock)
        self._busy = threading.Lock()
        self._capturing = threading.Event()
        # Guards stats counters, the warn-once flag and first-frame dimensions
        self._admission = threading.Lock()

        self._state = TrackerState()
        self._dimensions: FrameDimensions | None = None
        self._frame_seq = 0
        self._seen_errors: OrderedDict[str, None] = OrderedDict()
        self._warned_missing_model = False
        self._t_start = clock()
        self.stats = EngineStats()

        log.info(
            "engine_ready",
            target_fps=config.target_fps,
            confidence_threshold=config.confidence_threshold,
            max_detections=config.max_detections,
            model_attached=model is not None,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def dimensions(self) -> FrameDimensions | None:
        return self._dimensions

    @property
    def capturing(self) -> bool:
        return self._capturing.is_set()

    def attach_model(self, model: InferenceModel) -> None:
        self._model = model
        self._warned_missing_model = False
        log.info("model_attached")

    def set_capturing(self, capturing: bool) -> None:
        """Pause (True) or resume (False) processing without touching tracks."""
        if capturing:
            self._capturing.set()
        else:
            self._capturing.clear()

    def capture_snapshot(self) -> list[Detection]:
        """Pause processing and return the detections to store with a photo."""
        self.set_capturing(True)
        snapshot = self._channel.snapshot()
        log.info("capture_snapshot", detections=len(snapshot))
        return snapshot

    def resume(self) -> None:
        self.set_capturing(False)

    def reset(self) -> None:
        """End of session: drop tracks and clear the overlay."""
        with self._busy:
            self._state = TrackerState()
            self._throttle.reset()
            self._channel.clear()
        log.info("engine_reset")

    def on_frame(self, frame: CameraFrame) -> list[Detection] | None:
        """Camera callback. Returns the frame's output, or None if it was skipped."""
        if self._capturing.is_set():
            self._count("paused")
            return None

        if self._dimensions is None:
            self._establish_dimensions(frame.width, frame.height)

        model = self._model
        if model is None:
            with self._admission:
                self.stats.no_model += 1
                warn = not self._warned_missing_model
                self._warned_missing_model = True
            if warn:
                log.warning("model_unavailable", message="inference model not attached yet")
            return None

        if not self._throttle.admit():
            self._count("throttled")
            return None

        return self._run_exclusive(
            lambda: model.run(frame), timestamp_ns=frame.timestamp_ns
        )

    def process_output(
        self,
        raw: RawModelOutput,
        frame_width: float | None = None,
        frame_height: float | None = None,
        timestamp_ns: int = 0,
    ) -> list[Detection] | None:
        """Run stages 1-5 on already-computed model output.

        Bypasses throttling and the model; still honours the capture signal
        and sequential execution.
        """
        if self._capturing.is_set():
            self._count("paused")
            return None
        if self._dimensions is None and frame_width and frame_height:
            self._establish_dimensions(frame_width, frame_height)
        return self._run_exclusive(lambda: raw, timestamp_ns=timestamp_ns)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _count(self, counter: str) -> None:
        with self._admission:
            setattr(self.stats, counter, getattr(self.stats, counter) + 1)

    def _establish_dimensions(self, width: float, height: float) -> None:
        if width <= 0 or height <= 0:
            return
        with self._admission:
            if self._dimensions is not None:
                return
            self._dimensions = FrameDimensions(width=width, height=height)
        self._channel.publish_dimensions(self._dimensions)

    def _run_exclusive(
        self, produce: Callable[[], RawModelOutput], timestamp_ns: int
    ) -> list[Detection] | None:
        # A frame arriving mid-processing is dropped, never queued
        if not self._busy.acquire(blocking=False):
            self._count("busy")
            return None
        try:
            t0 = self._clock()
            try:
                if self._dimensions is None:
                    raise RuntimeError("frame dimensions unknown")
                raw = produce()
                state, output = self._pipeline(self._state, raw, self._dimensions)
            except Exception as exc:
                self._count("failed")
                self._log_frame_error(exc)
                return None

            self._state = state
            self._frame_seq += 1
            self._channel.publish(
                OverlayUpdate(
                    frame_seq=self._frame_seq,
                    timestamp_ns=timestamp_ns,
                    detections=tuple(output),
                )
            )
            self._record_timing(self._clock() - t0, len(output))
            return output
        finally:
            self._busy.release()

    def _pipeline(
        self,
        state: TrackerState,
        raw: RawModelOutput,
        dimensions: FrameDimensions,
    ) -> tuple[TrackerState, list[Detection]]:
        candidates = decode_output(raw, self._cfg.max_raw_detections)
        filtered = filter_candidates(candidates, dimensions, self._labels, self._cfg)
        selected = suppress(filtered, self._cfg)
        return step(state, selected, self._cfg)

    def _log_frame_error(self, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        if message in self._seen_errors:
            self._seen_errors.move_to_end(message)
            return
        self._seen_errors[message] = None
        if len(self._seen_errors) > _MAX_SEEN_ERRORS:
            self._seen_errors.popitem(last=False)
        log.error(
            "frame_processing_error",
            error=message,
            error_type=type(exc).__name__,
            frame_seq=self._frame_seq,
        )

    def _record_timing(self, elapsed: float, n_detections: int) -> None:
        self._count("processed")
        if elapsed > self._cfg.frame_budget_s:
            self._count("over_budget")
            log.warning(
                "frame_over_budget",
                elapsed_ms=round(elapsed * 1000, 1),
                budget_ms=round(self._cfg.frame_budget_s * 1000, 1),
            )

        if self.stats.processed % self._cfg.log_interval == 0:
            elapsed_total = self._clock() - self._t_start
            fps = self.stats.processed / elapsed_total if elapsed_total > 0 else 0
            log.info(
                "engine_throughput",
                frames=self.stats.processed,
                fps=round(fps, 1),
                detections_this_frame=n_detections,
                tracks=len(self._state.tracks),
                throttled=self.stats.throttled,
                failed=self.stats.failed,
            )
