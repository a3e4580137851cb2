from abc import ABC, abstractmethod
from typing import List, Sequence, Tuple

import numpy as np

from stylecam.core.types import RawFaceDetection


class FaceDetectionModel(ABC):
    """
    Face detector with landmarks and age/gender heads.

    detect() takes an H x W x 3 uint8 RGB frame and returns detections in the
    model's own working resolution (see working_size), in detector order.
    """

    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def working_size(self) -> Tuple[int, int]: ...

    @abstractmethod
    async def detect(self, frame: np.ndarray) -> List[RawFaceDetection]: ...

    def close(self) -> None:
        pass


class ClothingClassifierModel(ABC):
    """
    Whole-image clothing classifier.

    classify() takes a (1, S, S, 3) float32 buffer with values in [0, 1] and
    returns one probability per label, index-aligned with the LabelCatalog.
    """

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def classify(self, buffer: np.ndarray) -> Sequence[float]: ...

    def close(self) -> None:
        pass
