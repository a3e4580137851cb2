import asyncio
import logging
from pathlib import Path
from typing import List, Union

import numpy as np
import torch
import torch.nn.functional as F

from stylecam.core.errors import LoadFailure
from stylecam.core.readiness import MODELS
from stylecam.ml.base import ClothingClassifierModel
from stylecam.ml.device import load_torchscript

logger = logging.getLogger(__name__)


def _is_distribution(values: torch.Tensor) -> bool:
    if values.numel() == 0:
        return False
    return bool(values.min() >= 0.0) and bool(values.max() <= 1.0) and abs(float(values.sum()) - 1.0) < 1e-3


class TorchClothingClassifier(ClothingClassifierModel):
    """
    TorchScript clothing classifier.

    Takes the NHWC buffer built by the clothing pipeline and permutes it to
    NCHW. Raw logits are turned into probabilities with softmax; outputs that
    already form a distribution are passed through.
    """

    def __init__(self, weights: Union[str, Path], device: torch.device, half: bool = False):
        self.device = device
        self.half = bool(half and device.type == "cuda")
        try:
            self.model = load_torchscript(weights, device)
        except Exception as e:
            raise LoadFailure(MODELS, e, f"clothing weights {weights}: {e}") from e
        if self.half:
            self.model = self.model.half()
            logger.info("[ClothingModel] Using half precision on CUDA.")
        logger.info("[ClothingModel] Loaded from %s (device=%s)", weights, device)

    def name(self) -> str:
        return "torchscript_clothing"

    async def classify(self, buffer: np.ndarray) -> List[float]:
        return await asyncio.to_thread(self._classify_sync, buffer)

    def _classify_sync(self, buffer: np.ndarray) -> List[float]:
        tensor = torch.from_numpy(buffer).permute(0, 3, 1, 2).to(self.device)
        if self.half:
            tensor = tensor.half()
        with torch.no_grad():
            out = self.model(tensor)[0].float()
        if not _is_distribution(out):
            out = F.softmax(out, dim=0)
        return out.cpu().tolist()
