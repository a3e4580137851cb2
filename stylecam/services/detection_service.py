"""
Detection Service: startup orchestration for the annotation pipeline.

Startup order:
1. Scheduler starts and follows the readiness gate (idle until active)
2. Video source starts; its first frame marks `video` ready
3. Inference backend is selected and warmed up -> `backend` ready
4. Models and label metadata load off the loop -> `models` ready,
   or `models` FAILED with a LoadFailure (no retry, gate stays inactive)

Fatal errors (LoadFailure, ConfigMismatch) are surfaced once each.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

import torch

from stylecam.config_loader import PipelineConfig
from stylecam.core.errors import LoadFailure, StyleCamError
from stylecam.core.readiness import BACKEND, MODELS, ReadinessGate
from stylecam.ml.base import ClothingClassifierModel, FaceDetectionModel
from stylecam.ml.clothing_model import TorchClothingClassifier
from stylecam.ml.device import select_device
from stylecam.ml.face_model import CascadeFaceModel
from stylecam.ml.labels import LabelCatalog, load_label_catalog
from stylecam.scheduler.detection_scheduler import DetectionScheduler
from stylecam.schemas.annotations import StatusResponse, TaskStats
from stylecam.services.annotation_store import AnnotationStore
from stylecam.services.clothing_pipeline import ClothingAnnotationPipeline
from stylecam.services.face_pipeline import FaceAnnotationPipeline
from stylecam.services.placement import build_placement_policy
from stylecam.video.frame_source import FrameSource

logger = logging.getLogger(__name__)

FaceModelFactory = Callable[[PipelineConfig, torch.device], FaceDetectionModel]
ClothingModelFactory = Callable[[PipelineConfig, torch.device], ClothingClassifierModel]
LabelLoader = Callable[[str], LabelCatalog]
DeviceSelector = Callable[[bool], torch.device]


def default_face_model(settings: PipelineConfig, device: torch.device) -> FaceDetectionModel:
    return CascadeFaceModel(settings.model_path(settings.face_weights), device,
                            working_size=settings.face_working_size)


def default_clothing_model(settings: PipelineConfig, device: torch.device) -> ClothingClassifierModel:
    return TorchClothingClassifier(settings.model_path(settings.clothing_weights), device,
                                   half=settings.use_fp16)


def warm_up(device: torch.device) -> None:
    """Touch the device once so the first real inference does not pay the init cost."""
    sample = torch.zeros((1, 3, 8, 8), device=device)
    _ = (sample * 2.0).sum().item()
    if device.type == "cuda":
        torch.cuda.synchronize()


class DetectionService:
    """
    Owns the gate, the store, the scheduler and both pipelines.

    Models are injected through factories so tests can swap in fakes without
    touching weights on disk.
    """

    def __init__(self, settings: PipelineConfig, frame_source: FrameSource,
                 gate: Optional[ReadinessGate] = None, store: Optional[AnnotationStore] = None,
                 face_model_factory: FaceModelFactory = default_face_model,
                 clothing_model_factory: ClothingModelFactory = default_clothing_model,
                 label_loader: LabelLoader = load_label_catalog,
                 device_selector: DeviceSelector = select_device):
        self.settings = settings
        self.frame_source = frame_source
        self.gate = gate or ReadinessGate()
        self.store = store or AnnotationStore()
        self.scheduler = DetectionScheduler(
            self.gate, self.store, on_fatal=self._on_task_fatal,
            stats_log_interval_s=settings.stats_log_interval_s,
        )

        self._face_model_factory = face_model_factory
        self._clothing_model_factory = clothing_model_factory
        self._label_loader = label_loader
        self._device_selector = device_selector

        self.device: Optional[torch.device] = None
        self.face_model: Optional[FaceDetectionModel] = None
        self.clothing_model: Optional[ClothingClassifierModel] = None
        self.labels: Optional[LabelCatalog] = None
        self.fatal_errors: List[str] = []
        self._remove_failure_listener = self.gate.add_failure_listener(self._on_load_failure)
        self._started = False
        self._stopped = False

    # ========== LIFECYCLE ==========

    async def start(self) -> None:
        if self._stopped:
            logger.warning("[Service] Stopped service cannot be restarted; create a new DetectionService")
            return
        if self._started:
            logger.warning("[Service] Already started")
            return
        self._started = True

        await self.scheduler.start()
        start_source = getattr(self.frame_source, "start", None)
        if callable(start_source):
            start_source()

        if not await self._init_backend():
            return
        await self._load_models()

    async def stop(self) -> None:
        """Release models and the video source. Final: the service cannot be started again."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("[Service] Stopping...")
        await self.scheduler.shutdown()
        stop_source = getattr(self.frame_source, "stop", None)
        if callable(stop_source):
            stop_source()
        for model in (self.face_model, self.clothing_model):
            if model is not None:
                try:
                    model.close()
                except Exception:
                    logger.exception("[Service] Error closing %s", model.name())
        if self._remove_failure_listener:
            self._remove_failure_listener()
            self._remove_failure_listener = None
        logger.info("[Service] Stopped")

    # ========== STARTUP STEPS ==========

    async def _init_backend(self) -> bool:
        try:
            self.device = await asyncio.to_thread(self._device_selector, self.settings.use_gpu)
            await asyncio.to_thread(warm_up, self.device)
        except Exception as e:
            self.gate.mark_failed(BACKEND, LoadFailure(BACKEND, e))
            return False
        logger.info("[Service] Inference backend ready (%s)", self.device)
        self.gate.mark_ready(BACKEND)
        return True

    async def _load_models(self) -> None:
        self.gate.begin_loading(MODELS)
        try:
            face, clothing, labels = await asyncio.to_thread(self._load_models_sync)
        except LoadFailure as e:
            self.gate.mark_failed(MODELS, e)
            return
        except Exception as e:
            self.gate.mark_failed(MODELS, LoadFailure(MODELS, e))
            return

        self.face_model, self.clothing_model, self.labels = face, clothing, labels
        try:
            self._register_pipelines()
        except ValueError as e:
            self.gate.mark_failed(MODELS, LoadFailure(MODELS, e, f"pipeline setup: {e}"))
            return
        self.gate.mark_ready(MODELS)

    def _load_models_sync(self) -> Tuple[FaceDetectionModel, ClothingClassifierModel, LabelCatalog]:
        s = self.settings
        labels = self._label_loader(str(s.model_path(s.metadata)))
        face = self._face_model_factory(s, self.device)
        clothing = self._clothing_model_factory(s, self.device)
        logger.info("[Service] Models loaded: face=%s clothing=%s labels=%d",
                    face.name(), clothing.name(), len(labels))
        return face, clothing, labels

    def _register_pipelines(self) -> None:
        s = self.settings
        placement = build_placement_policy(
            s.placement_policy, box_size_px=s.box_size_px, margin_px=s.margin_px,
            corner=s.placement_corner, seed=s.placement_seed,
        )
        face_pipeline = FaceAnnotationPipeline(self.face_model, self.frame_source)
        clothing_pipeline = ClothingAnnotationPipeline(
            self.clothing_model, self.frame_source, self.labels,
            placement=placement, threshold=s.clothing_threshold,
            working_resolution=s.working_resolution,
        )
        self.scheduler.add_task(face_pipeline, s.face_interval_ms)
        self.scheduler.add_task(clothing_pipeline, s.clothing_interval_ms)

    # ========== FATAL ERRORS ==========

    def _on_load_failure(self, subsystem: str, error: Optional[BaseException]) -> None:
        message = f"{subsystem}: {error}"
        self.fatal_errors.append(message)
        logger.critical("[Service] FATAL load failure, pipeline will not start: %s", message)

    def _on_task_fatal(self, task: str, error: StyleCamError) -> None:
        message = f"{task}: {error}"
        self.fatal_errors.append(message)
        logger.critical("[Service] FATAL: %s task disabled: %s", task, error)

    # ========== STATUS ==========

    def status(self) -> StatusResponse:
        last_fatal = self.scheduler.last_fatal or (self.fatal_errors[-1] if self.fatal_errors else None)
        return StatusResponse(
            active=self.gate.active,
            subsystems=self.gate.states(),
            errors=self.gate.errors(),
            scheduler_running=self.scheduler.running,
            tasks={name: TaskStats(**stats) for name, stats in self.scheduler.stats().items()},
            disabled_tasks=self.scheduler.disabled_tasks(),
            last_fatal=last_fatal,
        )
