# ml/device.py
import logging

import torch

logger = logging.getLogger(__name__)


def select_device(use_gpu: bool = True) -> torch.device:
    """
    Pick the inference device with fallback to CPU.

    Returns:
        torch.device: cuda if requested and available, else cpu
    """
    if use_gpu and torch.cuda.is_available():
        device = torch.device("cuda")
        torch.backends.cudnn.benchmark = True
        logger.info("[Device] GPU (CUDA) detected and enabled: %s", torch.cuda.get_device_name(0))
        return device
    if use_gpu:
        logger.warning("[Device] GPU requested but CUDA not available. Falling back to CPU.")
    else:
        logger.info("[Device] CPU mode selected")
    return torch.device("cpu")


def load_torchscript(path, device: torch.device) -> torch.jit.ScriptModule:
    """Load a TorchScript module in eval mode on `device`."""
    module = torch.jit.load(str(path), map_location=device)
    module.eval()
    return module
