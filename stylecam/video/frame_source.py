import threading
import time
import logging
from abc import ABC, abstractmethod
from typing import Optional, Union

import cv2
import numpy as np

from stylecam.core.readiness import VIDEO, ReadinessGate
from stylecam.core.types import FrameDescriptor

logger = logging.getLogger(__name__)


class FrameSource(ABC):
    """
    Read-only view of the live video stream.

    Implementations swap in a new frame array on every capture and never
    mutate a frame after publishing it, so readers need no lock.
    """

    @abstractmethod
    def current_frame(self) -> FrameDescriptor: ...

    @abstractmethod
    def read_pixels(self) -> Optional[np.ndarray]:
        """Latest frame as an H x W x 3 uint8 RGB array, or None."""
        ...


class InjectedFrameSource(FrameSource):
    """
    Frame source fed from outside (uploads, tests, replays).

    The first pushed frame marks the gate's video subsystem ready; clear()
    marks it not ready again.
    """

    def __init__(self, gate: Optional[ReadinessGate] = None):
        self._gate = gate
        self._lock = threading.Lock()
        self._frame: Optional[np.ndarray] = None
        self.frame_id = 0

    def push(self, frame: np.ndarray) -> None:
        if frame is None or frame.ndim != 3 or frame.shape[2] != 3:
            raise ValueError("Expected an H x W x 3 frame")
        with self._lock:
            first = self._frame is None
            self._frame = frame
            self.frame_id += 1
        if first and self._gate is not None:
            self._gate.mark_ready(VIDEO)

    def clear(self) -> None:
        with self._lock:
            had_frame = self._frame is not None
            self._frame = None
        if had_frame and self._gate is not None:
            self._gate.mark_not_ready(VIDEO)

    def current_frame(self) -> FrameDescriptor:
        with self._lock:
            frame = self._frame
        if frame is None:
            return FrameDescriptor()
        h, w = frame.shape[:2]
        return FrameDescriptor(width=int(w), height=int(h), has_frame=True)

    def read_pixels(self) -> Optional[np.ndarray]:
        with self._lock:
            return self._frame


class CameraFrameSource(InjectedFrameSource):
    """
    OpenCV capture running on a background reader thread.

    The stream is considered lost after `max_failed_reads` consecutive failed
    reads; the video subsystem then drops back to not-ready until frames
    arrive again.
    """

    def __init__(self, device: Union[int, str] = 0, gate: Optional[ReadinessGate] = None,
                 max_failed_reads: int = 30, reopen_delay_s: float = 1.0):
        super().__init__(gate=gate)
        self.device = device
        self.max_failed_reads = max(1, int(max_failed_reads))
        self.reopen_delay_s = reopen_delay_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cap = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("[Camera] Already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._read_loop, name="camera-reader", daemon=True)
        self._thread.start()
        logger.info("[Camera] Reader started (device=%s)", self.device)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=3.0)
            if self._thread.is_alive():
                logger.warning("[Camera] Reader did not stop within timeout")
        self._thread = None
        self.clear()
        logger.info("[Camera] Reader stopped")

    def _open(self) -> bool:
        self._cap = cv2.VideoCapture(self.device)
        if not self._cap.isOpened():
            logger.error("[Camera] Could not open device %s", self.device)
            self._cap.release()
            self._cap = None
            return False
        w = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        h = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        logger.info("[Camera] Opened device %s (%dx%d)", self.device, w, h)
        return True

    def _read_loop(self) -> None:
        failed_reads = 0
        try:
            while not self._stop.is_set():
                if self._cap is None and not self._open():
                    self._stop.wait(self.reopen_delay_s)
                    continue

                ok, frame = self._cap.read()
                if not ok or frame is None or frame.size == 0:
                    failed_reads += 1
                    if failed_reads == self.max_failed_reads:
                        logger.warning("[Camera] Stream lost after %d failed reads", failed_reads)
                        self.clear()
                        self._cap.release()
                        self._cap = None
                        failed_reads = 0
                    else:
                        time.sleep(0.01)
                    continue

                failed_reads = 0
                # Frames are published as new arrays; nothing downstream writes to them.
                self.push(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
        except Exception:
            logger.exception("[Camera] Reader crashed")
            self.clear()
        finally:
            if self._cap is not None:
                self._cap.release()
                self._cap = None
            logger.info("[Camera] Video capture released")
