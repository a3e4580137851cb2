"""
Face annotation pipeline.

Per tick: read the frame, run the face model at its working resolution,
then map every box and landmark back to display pixels with independent x
and y scale factors so positions survive aspect-ratio changes.
"""

import math
import logging
from typing import List, Tuple

import numpy as np
from pydantic import ValidationError

from stylecam.core.errors import FrameNotReady, InferenceFailure
from stylecam.core.types import FrameDescriptor, PipelineOutput, RawFaceDetection
from stylecam.ml.base import FaceDetectionModel
from stylecam.schemas.annotations import FaceAnnotation, Gender
from stylecam.services.annotation_store import FACE_KEY
from stylecam.video.frame_source import FrameSource

logger = logging.getLogger(__name__)


def read_frame(source: FrameSource) -> Tuple[FrameDescriptor, np.ndarray]:
    """
    Read the descriptor and pixels for this tick.

    The descriptor is rebuilt from the pixel array actually returned, so a
    frame swapped in between the two reads cannot produce mismatched sizes.
    """
    frame = source.current_frame()
    if not frame.ready:
        raise FrameNotReady("no frame available")
    pixels = source.read_pixels()
    if pixels is None or pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise FrameNotReady("frame disappeared before read")
    h, w = pixels.shape[:2]
    return FrameDescriptor(width=int(w), height=int(h), has_frame=True), pixels


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def face_label(age: float, gender: str, gender_probability: float) -> str:
    return f"{round_half_up(age)} yrs | {gender} ({round_half_up(gender_probability * 100)}%)"


def scale_detection(raw: RawFaceDetection, sx: float, sy: float) -> FaceAnnotation:
    x, y, w, h = raw.box
    gender = Gender(raw.gender)
    probability = min(1.0, max(0.0, float(raw.gender_probability)))
    return FaceAnnotation(
        box=(x * sx, y * sy, w * sx, h * sy),
        landmarks=tuple((px * sx, py * sy) for px, py in raw.landmarks),
        age=max(0.0, float(raw.age)),
        gender=gender,
        gender_probability=probability,
        text=face_label(raw.age, gender.value, probability),
    )


class FaceAnnotationPipeline:
    """Owns the face model handle; produces FaceAnnotations in display pixels."""

    key = FACE_KEY

    def __init__(self, model: FaceDetectionModel, frame_source: FrameSource):
        self.model = model
        self.frame_source = frame_source

    async def run_once(self) -> PipelineOutput:
        frame, pixels = read_frame(self.frame_source)

        try:
            raw: List[RawFaceDetection] = list(await self.model.detect(pixels))
        except Exception as e:
            raise InferenceFailure(self.key, e) from e

        work_w, work_h = self.model.working_size
        sx = frame.width / float(work_w)
        sy = frame.height / float(work_h)

        try:
            items = tuple(scale_detection(det, sx, sy) for det in raw)
        except (ValueError, ValidationError) as e:
            raise InferenceFailure(self.key, e, f"malformed detection: {e}") from e

        logger.debug("[FacePipeline] %d face(s) on %dx%d frame", len(items), frame.width, frame.height)
        return PipelineOutput(items=items, frame=frame)
