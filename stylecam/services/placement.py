"""
Box placement policies for the clothing classifier.

The classifier only returns class probabilities, so every accepted label is
given a box by a placement policy. Both policies work in display pixels and
hand back a NormalizedBox clamped inside the frame.
"""

import random
import logging
from abc import ABC, abstractmethod
from typing import Optional

from stylecam.core.types import FrameDescriptor, NormalizedBox

logger = logging.getLogger(__name__)

FIXED_CORNER = "fixed-corner"
RANDOM = "random"
POLICIES = (FIXED_CORNER, RANDOM)
CORNERS = ("top-left", "top-right", "bottom-left", "bottom-right")


class PlacementPolicy(ABC):
    """Assigns a box to the `slot`-th accepted label of a tick."""

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def place(self, slot: int, frame: FrameDescriptor) -> NormalizedBox: ...


def _fit(offset: float, size: float, limit: int) -> float:
    return min(max(0.0, offset), max(0.0, float(limit) - size))


class FixedCornerPlacement(PlacementPolicy):
    """
    Fixed-size box anchored at a corner of the frame, `margin_px` from both edges.

    Additional labels in the same tick are stacked away from the corner
    vertically, one box plus one margin per slot.
    """

    def __init__(self, box_size_px: int = 100, margin_px: int = 10, corner: str = "bottom-left"):
        if corner not in CORNERS:
            raise ValueError(f"Unknown corner {corner!r}; expected one of {CORNERS}")
        if box_size_px <= 0:
            raise ValueError("box_size_px must be > 0")
        self.box_size_px = int(box_size_px)
        self.margin_px = max(0, int(margin_px))
        self.corner = corner

    def name(self) -> str:
        return FIXED_CORNER

    def place(self, slot: int, frame: FrameDescriptor) -> NormalizedBox:
        width, height = frame.width, frame.height
        w = float(min(self.box_size_px, width))
        h = float(min(self.box_size_px, height))
        step = (self.box_size_px + self.margin_px) * max(0, slot)

        if self.corner.endswith("left"):
            x = float(self.margin_px)
        else:
            x = width - self.margin_px - w

        if self.corner.startswith("top"):
            y = float(self.margin_px + step)
        else:
            y = height - self.margin_px - h - step

        return NormalizedBox.from_pixels(_fit(x, w, width), _fit(y, h, height), w, h, width, height)


class RandomPlacement(PlacementPolicy):
    """Uniformly random fixed-size box fully inside the frame. Not for production."""

    def __init__(self, box_size_px: int = 100, seed: Optional[int] = None):
        if box_size_px <= 0:
            raise ValueError("box_size_px must be > 0")
        self.box_size_px = int(box_size_px)
        self._rng = random.Random(seed)

    def name(self) -> str:
        return RANDOM

    def place(self, slot: int, frame: FrameDescriptor) -> NormalizedBox:
        width, height = frame.width, frame.height
        w = float(min(self.box_size_px, width))
        h = float(min(self.box_size_px, height))
        x = self._rng.random() * (width - w)
        y = self._rng.random() * (height - h)
        return NormalizedBox.from_pixels(x, y, w, h, width, height)


def build_placement_policy(policy: str = FIXED_CORNER, box_size_px: int = 100, margin_px: int = 10,
                           corner: str = "bottom-left", seed: Optional[int] = None) -> PlacementPolicy:
    if policy == FIXED_CORNER:
        return FixedCornerPlacement(box_size_px=box_size_px, margin_px=margin_px, corner=corner)
    if policy == RANDOM:
        logger.warning("[Placement] Random box placement selected; boxes are not localized")
        return RandomPlacement(box_size_px=box_size_px, seed=seed)
    raise ValueError(f"Unknown placement policy {policy!r}; expected one of {POLICIES}")
