"""Overlay handoff — single-slot "latest value" cells.

The processing thread publishes; the UI thread reads whatever is newest.
Publishing overwrites the slot and never waits for a reader, so a slow
renderer cannot push backpressure onto frame processing.
"""
from __future__ import annotations

import threading
from typing import Generic, TypeVar

from vision_shared.events.schemas import Detection, FrameDimensions, OverlayUpdate
from vision_shared.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class LatestValue(Generic[T]):
    """Thread-safe single-slot cell with a version counter."""

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._version = 0
        self._cond = threading.Condition(threading.Lock())

    def set(self, value: T) -> int:
        with self._cond:
            self._value = value
            self._version += 1
            self._cond.notify_all()
            return self._version

    def get(self) -> tuple[T, int]:
        with self._cond:
            return self._value, self._version

    def wait_for_update(self, after_version: int, timeout: float | None = None) -> tuple[T, int]:
        """Block the *reader* until the version moves past ``after_version``.

        Returns the current (value, version) on timeout as well.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._version > after_version, timeout=timeout)
            return self._value, self._version


class OverlayChannel:
    """Carries per-frame detection lists and the one-time frame size to the overlay."""

    def __init__(self) -> None:
        self._updates: LatestValue[OverlayUpdate] = LatestValue(OverlayUpdate(frame_seq=-1))
        self._dimensions: LatestValue[FrameDimensions | None] = LatestValue(None)
        self._last_non_empty: LatestValue[tuple[Detection, ...]] = LatestValue(())

    # ------------------------------------------------------------------
    # Producer side (processing thread)
    # ------------------------------------------------------------------

    def publish(self, update: OverlayUpdate) -> None:
        self._updates.set(update)
        if update.detections:
            self._last_non_empty.set(update.detections)

    def publish_dimensions(self, dimensions: FrameDimensions) -> None:
        self._dimensions.set(dimensions)
        log.info("frame_dimensions_published", width=dimensions.width, height=dimensions.height)

    # ------------------------------------------------------------------
    # Consumer side (overlay / UI thread)
    # ------------------------------------------------------------------

    def latest(self) -> OverlayUpdate:
        return self._updates.get()[0]

    @property
    def version(self) -> int:
        return self._updates.get()[1]

    def wait_for_update(
        self, after_version: int, timeout: float | None = None
    ) -> tuple[OverlayUpdate, int]:
        return self._updates.wait_for_update(after_version, timeout)

    @property
    def dimensions(self) -> FrameDimensions | None:
        return self._dimensions.get()[0]

    def snapshot(self) -> list[Detection]:
        """Detections to attach to a captured photo.

        Prefers the current list; falls back to the last non-empty one so a
        capture during a momentary dropout still records what was on screen.
        """
        current = self.latest().detections
        if current:
            return list(current)
        return list(self._last_non_empty.get()[0])

    def clear(self) -> None:
        self._updates.set(OverlayUpdate(frame_seq=-1))
        self._last_non_empty.set(())
