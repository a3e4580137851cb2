"""
Error taxonomy for the detection pipeline.

Only LoadFailure and ConfigMismatch are fatal. FrameNotReady and
InferenceFailure are per-tick conditions and are contained by the scheduler.
"""

from typing import Optional


class StyleCamError(Exception):
    """Base class for all pipeline errors."""


class LoadFailure(StyleCamError):
    """A model, its weights or its label metadata could not be loaded."""

    def __init__(self, subsystem: str, cause: Optional[BaseException] = None, message: str = ""):
        self.subsystem = subsystem
        self.cause = cause
        detail = message or (f"{type(cause).__name__}: {cause}" if cause else "load failed")
        super().__init__(f"[{subsystem}] {detail}")


class FrameNotReady(StyleCamError):
    """Frame missing or zero-sized. The tick is skipped silently."""


class InferenceFailure(StyleCamError):
    """The detection/classification call itself raised or returned garbage."""

    def __init__(self, task: str, cause: Optional[BaseException] = None, message: str = ""):
        self.task = task
        self.cause = cause
        detail = message or (f"{type(cause).__name__}: {cause}" if cause else "inference failed")
        super().__init__(f"[{task}] {detail}")


class ConfigMismatch(StyleCamError):
    """Label catalog length differs from the classifier output length."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"label catalog has {expected} labels but classifier returned {actual} outputs"
        )
