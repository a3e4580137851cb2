from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class FaceAnnotation(BaseModel):
    model_config = ConfigDict(frozen=True)

    box: Tuple[float, float, float, float]  # [x, y, width, height] in display pixels
    landmarks: Tuple[Tuple[float, float], ...] = ()
    age: float = Field(ge=0.0)
    gender: Gender
    gender_probability: float = Field(ge=0.0, le=1.0)
    text: str = ""


class ClothingAnnotation(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    label_index: int = Field(ge=0)
    probability: float = Field(ge=0.0, le=1.0)
    box: Tuple[float, float, float, float]  # [x, y, width, height] in display pixels
    text: str = ""


Annotation = Union[FaceAnnotation, ClothingAnnotation]


class AnnotationSnapshot(BaseModel):
    """Whole-list snapshot published for one pipeline key."""
    model_config = ConfigDict(frozen=True)

    key: str
    items: Tuple[Annotation, ...] = ()
    timestamp: float = 0.0
    sequence: int = 0
    frame_width: int = 0
    frame_height: int = 0


class TaskStats(BaseModel):
    interval_ms: int
    busy: bool
    disabled: bool
    ticks_run: int
    ticks_skipped: int
    ticks_not_ready: int
    failures: int
    discarded: int
    last_latency_ms: float


class StatusResponse(BaseModel):
    active: bool
    subsystems: Dict[str, str]
    errors: Dict[str, str]
    scheduler_running: bool
    tasks: Dict[str, TaskStats]
    disabled_tasks: List[str]
    last_fatal: Optional[str] = None
