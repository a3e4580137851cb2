"""
Clothing annotation pipeline.

Per tick:
1. Read the frame (skip if not ready)
2. Build a transient (1, S, S, 3) float buffer in [0, 1]
3. Classify -> one probability per label
4. Keep labels with probability strictly above the threshold
5. Place a box for each kept label and convert it to display pixels

The buffer is released exactly once before the tick returns, whatever the
outcome of the classification call.
"""

import logging
from typing import Callable, Optional

import cv2
import numpy as np

from stylecam.core.errors import ConfigMismatch, InferenceFailure
from stylecam.core.types import PipelineOutput
from stylecam.ml.base import ClothingClassifierModel
from stylecam.ml.labels import LabelCatalog
from stylecam.schemas.annotations import ClothingAnnotation
from stylecam.services.annotation_store import CLOTHING_KEY
from stylecam.services.face_pipeline import read_frame, round_half_up
from stylecam.services.placement import FixedCornerPlacement, PlacementPolicy
from stylecam.video.frame_source import FrameSource

logger = logging.getLogger(__name__)


class ImageBuffer:
    """Normalized model input owned by a single tick. Use as a context manager."""

    def __init__(self, array: np.ndarray):
        self._array: Optional[np.ndarray] = array

    @classmethod
    def from_frame(cls, pixels: np.ndarray, size: int) -> "ImageBuffer":
        resized = cv2.resize(pixels, (size, size), interpolation=cv2.INTER_NEAREST)
        normalized = resized.astype(np.float32) / 255.0
        return cls(np.expand_dims(normalized, axis=0))

    @property
    def array(self) -> np.ndarray:
        if self._array is None:
            raise RuntimeError("ImageBuffer used after dispose()")
        return self._array

    @property
    def disposed(self) -> bool:
        return self._array is None

    def dispose(self) -> None:
        self._array = None

    def __enter__(self) -> "ImageBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()


BufferFactory = Callable[[np.ndarray, int], ImageBuffer]


def clothing_label(label: str, probability: float) -> str:
    return f"{label}: {round_half_up(probability * 10000) / 100:.2f}%"


class ClothingAnnotationPipeline:
    """Owns the classifier handle, the label catalog and the placement policy."""

    key = CLOTHING_KEY

    def __init__(self, model: ClothingClassifierModel, frame_source: FrameSource, labels: LabelCatalog,
                 placement: Optional[PlacementPolicy] = None, threshold: float = 0.5,
                 working_resolution: int = 224, buffer_factory: BufferFactory = ImageBuffer.from_frame):
        if not 0.0 < threshold < 1.0:
            raise ValueError(f"threshold must be in (0, 1), got {threshold}")
        if working_resolution <= 0:
            raise ValueError(f"working_resolution must be > 0, got {working_resolution}")
        self.model = model
        self.frame_source = frame_source
        self.labels = labels
        self.placement = placement or FixedCornerPlacement()
        self.threshold = float(threshold)
        self.working_resolution = int(working_resolution)
        self._buffer_factory = buffer_factory

    async def run_once(self) -> PipelineOutput:
        frame, pixels = read_frame(self.frame_source)

        with self._buffer_factory(pixels, self.working_resolution) as buffer:
            try:
                raw = await self.model.classify(buffer.array)
                probabilities = np.asarray(raw, dtype=np.float64).reshape(-1)
            except Exception as e:
                raise InferenceFailure(self.key, e) from e

        if probabilities.size != len(self.labels):
            raise ConfigMismatch(expected=len(self.labels), actual=int(probabilities.size))
        if np.isnan(probabilities).any():
            raise InferenceFailure(self.key, message="classifier returned NaN")
        probabilities = np.clip(probabilities, 0.0, 1.0)

        items = []
        for index in np.flatnonzero(probabilities > self.threshold):
            probability = float(probabilities[index])
            label = self.labels[int(index)]
            box = self.placement.place(len(items), frame).to_pixels(frame.width, frame.height)
            items.append(ClothingAnnotation(
                label=label,
                label_index=int(index),
                probability=probability,
                box=box,
                text=clothing_label(label, probability),
            ))

        logger.debug("[ClothingPipeline] %d of %d label(s) above %.2f", len(items), len(self.labels), self.threshold)
        return PipelineOutput(items=tuple(items), frame=frame)
