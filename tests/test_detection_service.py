import asyncio
import unittest

import torch

from stylecam.config_loader import PipelineConfig
from stylecam.core.errors import LoadFailure
from stylecam.core.readiness import BACKEND, MODELS, VIDEO, ReadinessGate, SubsystemState
from stylecam.core.types import RawFaceDetection
from stylecam.ml.labels import LabelCatalog
from stylecam.schemas.annotations import StatusResponse
from stylecam.services.annotation_store import CLOTHING_KEY, FACE_KEY
from stylecam.services.detection_service import DetectionService, warm_up
from stylecam.video.frame_source import InjectedFrameSource

from tests.fakes import FakeClothingModel, FakeFaceModel, make_frame

SETTINGS = PipelineConfig(face_interval_ms=10, clothing_interval_ms=20, stats_log_interval_s=0,
                          clothing_threshold=0.4, use_gpu=False)
FACE = RawFaceDetection(box=(104, 208, 52, 104), age=30, gender="female", gender_probability=0.9)


class TestDetectionService(unittest.IsolatedAsyncioTestCase):
    def _service(self, labels=("shirt", "jacket"), outputs=(0.75, 0.1), label_loader=None):
        gate = ReadinessGate()
        self.source = InjectedFrameSource(gate)
        self.face_model = FakeFaceModel([FACE])
        self.clothing_model = FakeClothingModel(outputs)
        service = DetectionService(
            SETTINGS, self.source, gate=gate,
            face_model_factory=lambda settings, device: self.face_model,
            clothing_model_factory=lambda settings, device: self.clothing_model,
            label_loader=label_loader or (lambda path: LabelCatalog(labels)),
            device_selector=lambda use_gpu: torch.device("cpu"),
        )
        self.addAsyncCleanup(service.stop)
        return service

    async def test_01_startup_activates_on_first_frame(self):
        service = self._service()
        await service.start()

        self.assertEqual(service.gate.state(BACKEND), SubsystemState.READY)
        self.assertEqual(service.gate.state(MODELS), SubsystemState.READY)
        self.assertFalse(service.gate.active)
        self.assertEqual(set(service.scheduler.tasks), {FACE_KEY, CLOTHING_KEY})

        self.source.push(make_frame(640, 480))
        self.assertEqual(service.gate.state(VIDEO), SubsystemState.READY)
        await asyncio.sleep(0.1)

        face = service.store.get_latest(FACE_KEY)
        clothing = service.store.get_latest(CLOTHING_KEY)
        self.assertGreater(face.sequence, 0)
        self.assertEqual(face.items[0].text, "30 yrs | female (90%)")
        self.assertEqual([item.label for item in clothing.items], ["shirt"])
        self.assertEqual(service.fatal_errors, [])

    async def test_02_load_failure_keeps_gate_closed(self):
        def broken_loader(path):
            raise LoadFailure(MODELS, message=f"cannot read {path}")

        service = self._service(label_loader=broken_loader)
        with self.assertLogs("stylecam.services.detection_service", level="CRITICAL"):
            await service.start()

        self.assertEqual(service.gate.state(MODELS), SubsystemState.FAILED)
        self.assertEqual(len(service.fatal_errors), 1)
        self.source.push(make_frame())
        await asyncio.sleep(0.05)
        self.assertFalse(service.gate.active)
        self.assertEqual(service.scheduler.tasks, {})
        self.assertEqual(self.face_model.calls, 0)
        self.assertIn("cannot read", service.status().errors[MODELS])

    async def test_03_backend_failure(self):
        service = self._service()

        def no_device(use_gpu):
            raise RuntimeError("driver missing")

        service._device_selector = no_device
        await service.start()
        self.assertEqual(service.gate.state(BACKEND), SubsystemState.FAILED)
        self.assertEqual(service.gate.state(MODELS), SubsystemState.IDLE)
        self.assertEqual(len(service.fatal_errors), 1)

    async def test_04_label_mismatch_disables_clothing_only(self):
        service = self._service(labels=("shirt", "jacket", "dress"), outputs=(0.9, 0.1))
        await service.start()
        self.source.push(make_frame())
        await asyncio.sleep(0.1)

        status = service.status()
        self.assertIsInstance(status, StatusResponse)
        self.assertEqual(status.disabled_tasks, [CLOTHING_KEY])
        self.assertIn(CLOTHING_KEY, status.last_fatal)
        self.assertEqual(self.clothing_model.calls, 1)
        self.assertTrue(status.tasks[FACE_KEY].ticks_run > 1)
        self.assertEqual(len(service.fatal_errors), 1)

    async def test_05_stop_closes_models_and_halts(self):
        service = self._service()
        await service.start()
        self.source.push(make_frame())
        await asyncio.sleep(0.03)
        await service.stop()

        self.assertTrue(self.face_model.closed)
        self.assertTrue(self.clothing_model.closed)
        self.assertFalse(service.scheduler.running)
        calls = self.face_model.calls
        await asyncio.sleep(0.03)
        self.assertEqual(self.face_model.calls, calls)

    async def test_06_stopped_service_is_not_restarted(self):
        service = self._service()
        await service.start()
        await service.stop()

        with self.assertLogs("stylecam.services.detection_service", level="WARNING"):
            await service.start()
        self.assertEqual(service.gate.state(MODELS), SubsystemState.READY)
        self.assertFalse(service.scheduler.running)
        self.assertEqual(service.fatal_errors, [])
        self.assertEqual(len(service.scheduler.tasks), 2)

    def test_07_warm_up_on_cpu(self):
        warm_up(torch.device("cpu"))


if __name__ == "__main__":
    unittest.main()
