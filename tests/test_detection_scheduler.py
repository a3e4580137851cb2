import asyncio
import unittest
from unittest import mock

from stylecam.core.errors import ConfigMismatch, FrameNotReady, InferenceFailure
from stylecam.core.readiness import BACKEND, MODELS, VIDEO, ReadinessGate
from stylecam.schemas.annotations import ClothingAnnotation
from stylecam.scheduler.detection_scheduler import DetectionScheduler, PeriodicTask
from stylecam.services.annotation_store import CLOTHING_KEY, FACE_KEY, AnnotationStore

from tests.fakes import FakePipeline

SHIRT = ClothingAnnotation(label="shirt", label_index=0, probability=0.75, box=(10, 370, 100, 100))


def ready_gate() -> ReadinessGate:
    gate = ReadinessGate()
    gate.begin_loading(MODELS)
    gate.mark_ready(MODELS)
    gate.mark_ready(VIDEO)
    gate.mark_ready(BACKEND)
    return gate


class TestDetectionScheduler(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.gate = ready_gate()
        self.store = AnnotationStore()
        self.on_fatal = mock.Mock()
        self.scheduler = DetectionScheduler(self.gate, self.store, on_fatal=self.on_fatal,
                                            stats_log_interval_s=0)

    async def asyncTearDown(self):
        await self.scheduler.shutdown(wait=True, timeout=1.0)

    async def test_01_runs_and_publishes(self):
        face = FakePipeline(FACE_KEY, script=[()])
        clothing = FakePipeline(CLOTHING_KEY, script=[(SHIRT,)])
        self.scheduler.add_task(face, 10)
        self.scheduler.add_task(clothing, 20)
        await self.scheduler.start()
        await asyncio.sleep(0.15)

        self.assertTrue(self.scheduler.running)
        self.assertGreater(face.calls, clothing.calls)
        snapshot = self.store.get_latest(CLOTHING_KEY)
        self.assertGreater(snapshot.sequence, 0)
        self.assertEqual(snapshot.items, (SHIRT,))
        self.assertEqual((snapshot.frame_width, snapshot.frame_height), (640, 480))

    async def test_02_busy_task_skips_ticks(self):
        """A slow pipeline never overlaps itself: calls <= elapsed / duration + 1"""
        duration = 0.05
        slow = FakePipeline(CLOTHING_KEY, delay=duration)
        task = self.scheduler.add_task(slow, 10)

        loop = asyncio.get_running_loop()
        started = loop.time()
        await self.scheduler.start()
        await asyncio.sleep(0.3)
        elapsed = loop.time() - started

        self.assertEqual(slow.max_in_flight, 1)
        self.assertLessEqual(slow.calls, elapsed / duration + 1)
        self.assertGreaterEqual(slow.calls, 2)
        self.assertGreater(task.ticks_skipped, 0)

    async def test_03_idle_until_gate_active(self):
        gate = ReadinessGate()
        scheduler = DetectionScheduler(gate, self.store, stats_log_interval_s=0)
        pipeline = FakePipeline(FACE_KEY)
        scheduler.add_task(pipeline, 10)
        await scheduler.start()
        await asyncio.sleep(0.05)
        self.assertEqual(pipeline.calls, 0)
        self.assertFalse(scheduler.running)

        gate.begin_loading(MODELS)
        gate.mark_ready(MODELS)
        gate.mark_ready(VIDEO)
        gate.mark_ready(BACKEND)
        await asyncio.sleep(0.05)
        self.assertGreater(pipeline.calls, 0)
        await scheduler.shutdown()

    async def test_04_gate_drop_halts_both_tasks(self):
        face = FakePipeline(FACE_KEY)
        clothing = FakePipeline(CLOTHING_KEY)
        self.scheduler.add_task(face, 10)
        self.scheduler.add_task(clothing, 10)
        await self.scheduler.start()
        await asyncio.sleep(0.05)

        self.gate.mark_not_ready(VIDEO)
        self.assertFalse(self.scheduler.running)
        # Let runs admitted before the drop finish
        await asyncio.sleep(0.005)
        halted = (face.calls, clothing.calls)
        await asyncio.sleep(0.06)
        self.assertEqual((face.calls, clothing.calls), halted)

        self.gate.mark_ready(VIDEO)
        await asyncio.sleep(0.05)
        self.assertGreater(face.calls, halted[0])
        self.assertGreater(clothing.calls, halted[1])

    async def test_04b_admitted_run_never_starts_after_gate_drop(self):
        """A tick admitted just before the gate drops must not reach the model"""
        pipeline = FakePipeline(FACE_KEY)
        task = self.scheduler.add_task(pipeline, 1000)
        await self.scheduler.start()

        self.scheduler._tick(task, self.scheduler._epoch)
        self.gate.mark_not_ready(VIDEO)
        await asyncio.sleep(0.01)

        self.assertEqual(pipeline.calls, 0)
        self.assertEqual(task.discarded, 1)
        self.assertFalse(task.busy)
        self.assertIsNone(task.inflight)

    async def test_05_gate_change_from_other_thread(self):
        pipeline = FakePipeline(FACE_KEY)
        self.scheduler.add_task(pipeline, 10)
        await self.scheduler.start()
        await asyncio.to_thread(self.gate.mark_not_ready, VIDEO)
        await asyncio.sleep(0.02)
        self.assertFalse(self.scheduler.running)

    async def test_06_in_flight_result_discarded_after_shutdown(self):
        pipeline = FakePipeline(CLOTHING_KEY, delay=0.1, script=[(SHIRT,)])
        task = self.scheduler.add_task(pipeline, 10)
        await self.scheduler.start()
        await asyncio.sleep(0.03)
        self.assertTrue(task.busy)

        await self.scheduler.shutdown(wait=True)
        self.assertEqual(pipeline.calls, 1)
        self.assertEqual(task.discarded, 1)
        self.assertFalse(task.busy)
        self.assertEqual(self.store.get_latest(CLOTHING_KEY).sequence, 0)

    async def test_06b_shutdown_timeout_cancels_in_flight_run(self):
        pipeline = FakePipeline(CLOTHING_KEY, delay=5.0)
        task = self.scheduler.add_task(pipeline, 10)
        await self.scheduler.start()
        await asyncio.sleep(0.03)
        inflight = task.inflight
        self.assertIsNotNone(inflight)

        with self.assertLogs("stylecam.scheduler.detection_scheduler", level="WARNING"):
            await self.scheduler.shutdown(wait=True, timeout=0.05)
        self.assertTrue(inflight.cancelled())
        self.assertFalse(task.busy)
        self.assertIsNone(task.inflight)
        self.assertEqual(self.store.get_latest(CLOTHING_KEY).sequence, 0)

    async def test_07_config_mismatch_disables_task_once(self):
        broken = FakePipeline(CLOTHING_KEY, script=[ConfigMismatch(expected=3, actual=4)])
        healthy = FakePipeline(FACE_KEY)
        self.scheduler.add_task(broken, 10)
        self.scheduler.add_task(healthy, 10)
        await self.scheduler.start()
        await asyncio.sleep(0.1)

        self.assertEqual(broken.calls, 1)
        self.on_fatal.assert_called_once()
        self.assertEqual(self.on_fatal.call_args[0][0], CLOTHING_KEY)
        self.assertEqual(self.scheduler.disabled_tasks(), [CLOTHING_KEY])
        self.assertIn("clothing", self.scheduler.last_fatal)
        self.assertGreater(healthy.calls, 2)

    async def test_08_inference_failure_keeps_previous_snapshot(self):
        pipeline = FakePipeline(CLOTHING_KEY, script=[(SHIRT,), InferenceFailure(CLOTHING_KEY, RuntimeError("x"))])
        task = self.scheduler.add_task(pipeline, 10)
        with self.assertLogs("stylecam.scheduler.detection_scheduler", level="ERROR"):
            await self.scheduler.start()
            await asyncio.sleep(0.08)

        snapshot = self.store.get_latest(CLOTHING_KEY)
        self.assertEqual(snapshot.sequence, 1)
        self.assertEqual(snapshot.items, (SHIRT,))
        self.assertGreater(task.failures, 0)
        self.assertTrue(self.scheduler.running)

    async def test_09_frame_not_ready_is_silent(self):
        pipeline = FakePipeline(FACE_KEY, script=[FrameNotReady("no frame")])
        task = self.scheduler.add_task(pipeline, 10)
        await self.scheduler.start()
        await asyncio.sleep(0.05)
        self.assertGreater(task.ticks_not_ready, 0)
        self.assertEqual(task.failures, 0)
        self.assertEqual(self.store.get_latest(FACE_KEY).sequence, 0)

    async def test_10_unexpected_error_is_contained(self):
        pipeline = FakePipeline(FACE_KEY, script=[KeyError("boom"), ()])
        task = self.scheduler.add_task(pipeline, 10)
        with self.assertLogs("stylecam.scheduler.detection_scheduler", level="ERROR"):
            await self.scheduler.start()
            await asyncio.sleep(0.05)
        self.assertEqual(task.failures, 1)
        self.assertGreater(self.store.get_latest(FACE_KEY).sequence, 0)

    async def test_11_stats(self):
        self.scheduler.add_task(FakePipeline(FACE_KEY), 100)
        stats = self.scheduler.stats()[FACE_KEY]
        self.assertEqual(stats["interval_ms"], 100)
        self.assertFalse(stats["busy"])
        self.assertEqual(stats["ticks_run"], 0)

    def test_12_task_validation(self):
        with self.assertRaises(ValueError):
            PeriodicTask(FakePipeline(FACE_KEY), 0)
        self.scheduler.add_task(FakePipeline(FACE_KEY), 10)
        with self.assertRaises(ValueError):
            self.scheduler.add_task(FakePipeline(FACE_KEY), 10)


if __name__ == "__main__":
    unittest.main()
