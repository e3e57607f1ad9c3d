"""Pydantic v2 schemas for values handed from the detection engine to the overlay.

Overlay handoff:
  FrameDimensions   — announced once per preview session
  Detection         — one labeled, colored box in screen-space pixels
  OverlayUpdate     — the ordered detection list of one processed frame
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class FrameDimensions(_FrozenModel):
    """Screen-space size of the preview, fixed after the first processed frame."""

    width: float = Field(gt=0, description="Frame width in pixels")
    height: float = Field(gt=0, description="Frame height in pixels")

    @property
    def area(self) -> float:
        return self.width * self.height


class Detection(_FrozenModel):
    """A labeled bounding box ready for overlay rendering."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0, description="Score in [0,1]")
    x: float = Field(description="Left edge in screen pixels")
    y: float = Field(description="Top edge in screen pixels")
    width: float
    height: float
    color: str = Field(description="Categorical color, e.g. '#FF6B6B'")


class OverlayUpdate(_FrozenModel):
    """Final detection list for one processed frame.

    At most ``max_detections`` entries, sorted by confidence descending.
    """

    frame_seq: int = Field(description="Monotonically increasing processed-frame counter")
    timestamp_ns: int = Field(default=0, description="Camera timestamp of the source frame")
    detections: tuple[Detection, ...] = ()
