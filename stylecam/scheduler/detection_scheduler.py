"""
Detection Scheduler: periodic, non-overlapping pipeline ticks.

DESIGN RULES:
1. One asyncio loop; pipeline bodies only suspend while awaiting a model call
2. Each task has its own fixed cadence and its own busy flag
3. A tick that fires while the previous run of the same task is still busy
   is DROPPED, never queued
4. Tasks run only while the readiness gate is active
5. Gate deactivation / shutdown cancels timers and bumps the epoch; a run that
   finishes under an old epoch has its result discarded, never published
6. No exception escapes a tick
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Protocol

from stylecam.core.errors import ConfigMismatch, FrameNotReady, InferenceFailure, StyleCamError
from stylecam.core.readiness import ReadinessGate
from stylecam.core.types import PipelineOutput
from stylecam.services.annotation_store import AnnotationStore

logger = logging.getLogger(__name__)

FatalCallback = Callable[[str, StyleCamError], None]


class Pipeline(Protocol):
    key: str

    async def run_once(self) -> PipelineOutput: ...


class PeriodicTask:
    """Book-keeping for one scheduled pipeline."""

    def __init__(self, pipeline: Pipeline, interval_ms: int):
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be > 0, got {interval_ms}")
        self.pipeline = pipeline
        self.name = pipeline.key
        self.interval_ms = int(interval_ms)
        self.interval = self.interval_ms / 1000.0

        self.busy = False
        self.disabled = False
        self.timer: Optional[asyncio.Task] = None
        self.inflight: Optional[asyncio.Task] = None

        self.ticks_run = 0
        self.ticks_skipped = 0
        self.ticks_not_ready = 0
        self.failures = 0
        self.discarded = 0
        self.last_latency_ms = 0.0

    def stats(self) -> dict:
        return {
            "interval_ms": self.interval_ms,
            "busy": self.busy,
            "disabled": self.disabled,
            "ticks_run": self.ticks_run,
            "ticks_skipped": self.ticks_skipped,
            "ticks_not_ready": self.ticks_not_ready,
            "failures": self.failures,
            "discarded": self.discarded,
            "last_latency_ms": round(self.last_latency_ms, 2),
        }


class DetectionScheduler:
    """
    Runs the face and clothing pipelines at independent cadences.

    Key behaviors:
    - start() must be awaited on the loop that will run the pipelines
    - Follows the readiness gate: starts when active, stops when inactive
    - Gate callbacks from other threads are marshalled onto the loop
    - ConfigMismatch permanently disables the offending task (reported once)
    """

    def __init__(self, gate: ReadinessGate, store: AnnotationStore,
                 on_fatal: Optional[FatalCallback] = None, stats_log_interval_s: float = 5.0):
        self.gate = gate
        self.store = store
        self.on_fatal = on_fatal
        self.stats_log_interval_s = stats_log_interval_s

        self._tasks: Dict[str, PeriodicTask] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._remove_listener: Optional[Callable[[], None]] = None
        self._running = False
        self._epoch = 0
        self._stats_task: Optional[asyncio.Task] = None
        self.last_fatal: Optional[str] = None

    # ========== SETUP ==========

    def add_task(self, pipeline: Pipeline, interval_ms: int) -> PeriodicTask:
        if pipeline.key in self._tasks:
            raise ValueError(f"Task already registered: {pipeline.key}")
        task = PeriodicTask(pipeline, interval_ms)
        self._tasks[task.name] = task
        logger.info("[Scheduler] Registered task '%s' every %d ms", task.name, task.interval_ms)
        if self._running:
            self._start_timer(task, self._epoch)
        return task

    @property
    def tasks(self) -> Dict[str, PeriodicTask]:
        return dict(self._tasks)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Bind to the running loop and follow the gate from now on."""
        if self._loop is not None:
            logger.warning("[Scheduler] Already started")
            return
        self._loop = asyncio.get_running_loop()
        self._remove_listener = self.gate.add_listener(self._on_gate_change)
        logger.info("[Scheduler] Started; waiting for readiness gate")
        if self.gate.active:
            self._activate()

    async def shutdown(self, wait: bool = True, timeout: float = 5.0) -> None:
        """Cancel timers; optionally let in-flight runs finish (their results are discarded)."""
        logger.info("[Scheduler] Shutting down...")
        if self._remove_listener:
            self._remove_listener()
            self._remove_listener = None
        timers = [t.timer for t in self._tasks.values() if t.timer]
        self._deactivate()
        self._loop = None

        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        inflight = [t.inflight for t in self._tasks.values() if t.inflight]
        if wait and inflight:
            done, pending = await asyncio.wait(inflight, timeout=timeout)
            if pending:
                logger.warning("[Scheduler] %d in-flight run(s) still busy after %.1fs", len(pending), timeout)
                for t in pending:
                    t.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("[Scheduler] Shutdown complete")

    # ========== GATE FOLLOWING ==========

    def _on_gate_change(self, active: bool) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            self._sync_with_gate()
            return
        try:
            loop.call_soon_threadsafe(self._sync_with_gate)
        except RuntimeError as e:
            # Loop already closed during shutdown
            logger.debug("[Scheduler] Gate change after loop closed: %s", e)

    def _sync_with_gate(self) -> None:
        if self._loop is None:
            return
        if self.gate.active:
            self._activate()
        else:
            self._deactivate()

    def _activate(self) -> None:
        if self._running:
            return
        self._running = True
        self._epoch += 1
        for task in self._tasks.values():
            if not task.disabled:
                self._start_timer(task, self._epoch)
        if self.stats_log_interval_s > 0:
            self._stats_task = self._loop.create_task(self._stats_loop(self._epoch))
        logger.info("[Scheduler] ACTIVE (epoch=%d, tasks=%s)", self._epoch, ", ".join(self._tasks))

    def _deactivate(self) -> None:
        if not self._running:
            return
        self._running = False
        self._epoch += 1
        for task in self._tasks.values():
            if task.timer:
                task.timer.cancel()
                task.timer = None
        if self._stats_task:
            self._stats_task.cancel()
            self._stats_task = None
        logger.info("[Scheduler] HALTED (epoch=%d)", self._epoch)

    # ========== TICKS ==========

    def _start_timer(self, task: PeriodicTask, epoch: int) -> None:
        task.timer = self._loop.create_task(self._timer_loop(task, epoch), name=f"timer-{task.name}")

    async def _timer_loop(self, task: PeriodicTask, epoch: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + task.interval
        while True:
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            if epoch != self._epoch or task.disabled:
                return
            self._tick(task, epoch)

            deadline += task.interval
            now = loop.time()
            if deadline <= now:
                # Loop fell behind: drop the missed deadlines instead of bursting
                missed = int((now - deadline) // task.interval) + 1
                task.ticks_skipped += missed
                deadline += missed * task.interval

    def _tick(self, task: PeriodicTask, epoch: int) -> None:
        if task.busy:
            task.ticks_skipped += 1
            logger.debug("[Scheduler] %s busy; tick dropped", task.name)
            return
        task.busy = True
        task.inflight = self._loop.create_task(self._run(task, epoch), name=f"run-{task.name}")

    async def _run(self, task: PeriodicTask, epoch: int) -> None:
        if epoch != self._epoch:
            # Admitted before a halt, never started
            task.discarded += 1
            task.busy = False
            task.inflight = None
            logger.debug("[Scheduler] %s run dropped before start (stale epoch %d)", task.name, epoch)
            return
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            output = await task.pipeline.run_once()
        except FrameNotReady as e:
            task.ticks_not_ready += 1
            logger.debug("[Scheduler] %s skipped: %s", task.name, e)
        except ConfigMismatch as e:
            self._disable(task, e)
        except InferenceFailure as e:
            task.failures += 1
            logger.error("[Scheduler] %s inference error: %s", task.name, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task.failures += 1
            logger.exception("[Scheduler] %s unexpected error: %s", task.name, e)
        else:
            task.ticks_run += 1
            task.last_latency_ms = (loop.time() - started) * 1000.0
            if epoch != self._epoch:
                task.discarded += 1
                logger.debug("[Scheduler] %s result discarded (stale epoch %d)", task.name, epoch)
                return
            try:
                self.store.replace(task.name, output.items, output.frame.width, output.frame.height)
            except Exception:
                logger.exception("[Scheduler] %s publish failed", task.name)
        finally:
            task.busy = False
            task.inflight = None

    def _disable(self, task: PeriodicTask, error: StyleCamError) -> None:
        if task.disabled:
            return
        task.disabled = True
        if task.timer:
            task.timer.cancel()
            task.timer = None
        self.last_fatal = f"{task.name}: {error}"
        logger.error("[Scheduler] %s DISABLED: %s", task.name, error)
        if self.on_fatal:
            try:
                self.on_fatal(task.name, error)
            except Exception:
                logger.exception("[Scheduler] on_fatal callback error")

    # ========== STATS ==========

    def stats(self) -> Dict[str, dict]:
        return {name: task.stats() for name, task in self._tasks.items()}

    def disabled_tasks(self) -> List[str]:
        return [name for name, task in self._tasks.items() if task.disabled]

    async def _stats_loop(self, epoch: int) -> None:
        while epoch == self._epoch:
            await asyncio.sleep(self.stats_log_interval_s)
            for task in self._tasks.values():
                logger.info(
                    "[Scheduler] %s: run=%d skipped=%d not_ready=%d failures=%d latency=%.1fms",
                    task.name, task.ticks_run, task.ticks_skipped, task.ticks_not_ready,
                    task.failures, task.last_latency_ms,
                )
