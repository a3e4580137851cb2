import asyncio
import logging
from pathlib import Path
from typing import List, Tuple, Union

import cv2
import numpy as np
import torch

from stylecam.core.errors import LoadFailure
from stylecam.core.readiness import MODELS
from stylecam.core.types import RawFaceDetection
from stylecam.ml.base import FaceDetectionModel
from stylecam.ml.device import load_torchscript

logger = logging.getLogger(__name__)

AGE_GENDER_INPUT = 64


class CascadeFaceModel(FaceDetectionModel):
    """
    Face detector running at a fixed square working resolution.

    - Faces: OpenCV Haar frontal-face cascade
    - Landmarks: eye centres from the Haar eye cascade, inside each face box
    - Age/gender: TorchScript net on a 64x64 RGB crop, outputs [age, male_logit]

    All coordinates are reported in working-resolution pixels.
    """

    def __init__(self, age_gender_weights: Union[str, Path], device: torch.device,
                 working_size: int = 416, min_face_px: int = 24):
        self.device = device
        self._size = (int(working_size), int(working_size))
        self.min_face_px = int(min_face_px)

        self.face_cascade = cv2.CascadeClassifier(cv2.data.haarcascades + "haarcascade_frontalface_default.xml")
        self.eye_cascade = cv2.CascadeClassifier(cv2.data.haarcascades + "haarcascade_eye.xml")
        if self.face_cascade.empty() or self.eye_cascade.empty():
            raise LoadFailure(MODELS, message="haar cascades not found; check opencv-python install")

        try:
            self.age_gender = load_torchscript(age_gender_weights, device)
        except Exception as e:
            raise LoadFailure(MODELS, e, f"age/gender weights {age_gender_weights}: {e}") from e
        logger.info("[FaceModel] Loaded (working size %dx%d, device=%s)", self._size[0], self._size[1], device)

    def name(self) -> str:
        return "haar_age_gender"

    @property
    def working_size(self) -> Tuple[int, int]:
        return self._size

    async def detect(self, frame: np.ndarray) -> List[RawFaceDetection]:
        return await asyncio.to_thread(self._detect_sync, frame)

    def _detect_sync(self, frame: np.ndarray) -> List[RawFaceDetection]:
        resized = cv2.resize(frame, self._size)
        gray = cv2.cvtColor(resized, cv2.COLOR_RGB2GRAY)
        faces = self.face_cascade.detectMultiScale(
            gray, scaleFactor=1.1, minNeighbors=5, minSize=(self.min_face_px, self.min_face_px)
        )
        if len(faces) == 0:
            return []

        crops = []
        landmarks = []
        for (x, y, w, h) in faces:
            crop = cv2.resize(resized[y:y + h, x:x + w], (AGE_GENDER_INPUT, AGE_GENDER_INPUT))
            crops.append(crop)
            eyes = self.eye_cascade.detectMultiScale(gray[y:y + h, x:x + w], scaleFactor=1.1, minNeighbors=5)
            landmarks.append([(float(x + ex + ew / 2.0), float(y + ey + eh / 2.0)) for (ex, ey, ew, eh) in eyes])

        batch = torch.from_numpy(np.stack(crops).astype(np.float32) / 255.0).permute(0, 3, 1, 2).to(self.device)
        with torch.no_grad():
            out = self.age_gender(batch).float().cpu().numpy()

        detections = []
        for (x, y, w, h), points, row in zip(faces, landmarks, out):
            male_prob = float(1.0 / (1.0 + np.exp(-float(row[1]))))
            is_male = male_prob >= 0.5
            detections.append(RawFaceDetection(
                box=(float(x), float(y), float(w), float(h)),
                age=max(0.0, float(row[0])),
                gender="male" if is_male else "female",
                gender_probability=male_prob if is_male else 1.0 - male_prob,
                landmarks=points,
            ))
        return detections
