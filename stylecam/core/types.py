# core/types.py
import math
from dataclasses import dataclass, field
from typing import Any, List, Tuple


@dataclass(frozen=True)
class FrameDescriptor:
    """Dimensions of the current frame. Read fresh every tick, never cached."""
    width: int = 0
    height: int = 0
    has_frame: bool = False

    @property
    def ready(self) -> bool:
        return self.has_frame and self.width > 0 and self.height > 0


def _unit(value: float) -> bool:
    return not math.isnan(value) and 0.0 <= value <= 1.0


@dataclass(frozen=True)
class NormalizedBox:
    """Box relative to the frame; every component lies in [0, 1]."""
    x: float
    y: float
    w: float
    h: float

    def __post_init__(self):
        for name in ("x", "y", "w", "h"):
            if not _unit(float(getattr(self, name))):
                raise ValueError(f"NormalizedBox.{name}={getattr(self, name)!r} outside [0, 1]")

    @classmethod
    def from_pixels(cls, x: float, y: float, w: float, h: float, width: int, height: int) -> "NormalizedBox":
        """Normalize a pixel rect, clamping it into the frame first."""
        x = min(max(0.0, float(x)), float(width))
        y = min(max(0.0, float(y)), float(height))
        w = min(max(0.0, float(w)), float(width) - x)
        h = min(max(0.0, float(h)), float(height) - y)
        return cls(x / width, y / height, w / width, h / height)

    def to_pixels(self, width: int, height: int) -> Tuple[float, float, float, float]:
        return (self.x * width, self.y * height, self.w * width, self.h * height)


@dataclass(frozen=True)
class RawFaceDetection:
    """
    One face as reported by a FaceDetectionModel.

    Coordinates are in the model's working resolution, not the display
    resolution; the face pipeline rescales them.
    """
    box: Tuple[float, float, float, float]  # x, y, w, h
    age: float
    gender: str
    gender_probability: float
    landmarks: List[Tuple[float, float]] = field(default_factory=list)


@dataclass(frozen=True)
class PipelineOutput:
    """Annotations produced by one pipeline tick, with the frame they belong to."""
    items: Tuple[Any, ...]
    frame: FrameDescriptor
