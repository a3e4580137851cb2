"""
ReadinessGate: composite readiness of the inference subsystems.

States per subsystem:
    models:  IDLE -> LOADING -> READY
    video:   IDLE -> READY  (first playable frame; back to IDLE if the stream is lost)
    backend: IDLE -> READY  (inference backend selected and warmed up)

Any subsystem may move to FAILED, which is terminal. The gate is active iff
every subsystem is READY, so a single failure keeps it closed for good.
"""

import threading
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

MODELS = "models"
VIDEO = "video"
BACKEND = "backend"
SUBSYSTEMS = (MODELS, VIDEO, BACKEND)


class SubsystemState(Enum):
    IDLE = "IDLE"
    LOADING = "LOADING"
    READY = "READY"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ReadinessFlags:
    """Point-in-time view of the three readiness flags."""
    models_loaded: bool = False
    video_ready: bool = False
    backend_ready: bool = False

    @property
    def active(self) -> bool:
        return self.models_loaded and self.video_ready and self.backend_ready


ActiveListener = Callable[[bool], None]
FailureListener = Callable[[str, Optional[BaseException]], None]


class ReadinessGate:
    """
    Tracks independent subsystem states and exposes one `active` predicate.

    Listeners registered with add_listener() are called with the new value
    whenever `active` flips. Failure listeners are called exactly once per
    failed subsystem. Callbacks run on the thread that caused the transition,
    outside the internal lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._states: Dict[str, SubsystemState] = {name: SubsystemState.IDLE for name in SUBSYSTEMS}
        self._errors: Dict[str, Optional[BaseException]] = {}
        self._active = False
        self._listeners: List[ActiveListener] = []
        self._failure_listeners: List[FailureListener] = []

    # ========== QUERIES ==========

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    def flags(self) -> ReadinessFlags:
        with self._lock:
            return ReadinessFlags(
                models_loaded=self._states[MODELS] is SubsystemState.READY,
                video_ready=self._states[VIDEO] is SubsystemState.READY,
                backend_ready=self._states[BACKEND] is SubsystemState.READY,
            )

    def state(self, subsystem: str) -> SubsystemState:
        self._check(subsystem)
        with self._lock:
            return self._states[subsystem]

    def states(self) -> Dict[str, str]:
        with self._lock:
            return {name: state.value for name, state in self._states.items()}

    def errors(self) -> Dict[str, str]:
        with self._lock:
            return {name: str(err) for name, err in self._errors.items() if err is not None}

    @property
    def failed(self) -> bool:
        with self._lock:
            return any(s is SubsystemState.FAILED for s in self._states.values())

    # ========== LISTENERS ==========

    def add_listener(self, listener: ActiveListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return remove

    def add_failure_listener(self, listener: FailureListener) -> Callable[[], None]:
        with self._lock:
            self._failure_listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._failure_listeners:
                    self._failure_listeners.remove(listener)
        return remove

    # ========== TRANSITIONS ==========

    def begin_loading(self, subsystem: str) -> None:
        self._transition(subsystem, SubsystemState.LOADING, allowed_from=(SubsystemState.IDLE,))

    def mark_ready(self, subsystem: str) -> None:
        # models must pass through LOADING; video and backend go straight from IDLE
        if subsystem == MODELS:
            allowed = (SubsystemState.LOADING,)
        else:
            allowed = (SubsystemState.IDLE, SubsystemState.LOADING)
        self._transition(subsystem, SubsystemState.READY, allowed_from=allowed)

    def mark_not_ready(self, subsystem: str) -> None:
        """Drop a READY subsystem back to IDLE (e.g. video stream lost)."""
        self._transition(subsystem, SubsystemState.IDLE, allowed_from=(SubsystemState.READY,))

    def mark_failed(self, subsystem: str, error: Optional[BaseException] = None) -> None:
        self._check(subsystem)
        with self._lock:
            if self._states[subsystem] is SubsystemState.FAILED:
                return
            self._states[subsystem] = SubsystemState.FAILED
            self._errors[subsystem] = error
            changed, active = self._reevaluate()
            failure_listeners = list(self._failure_listeners)
            listeners = list(self._listeners) if changed else []

        logger.error("[Gate] %s FAILED: %s", subsystem, error)
        self._notify(listeners, active)
        for listener in failure_listeners:
            try:
                listener(subsystem, error)
            except Exception:
                logger.exception("[Gate] Failure listener error")

    # ========== INTERNALS ==========

    def _transition(self, subsystem: str, target: SubsystemState, allowed_from) -> None:
        self._check(subsystem)
        with self._lock:
            current = self._states[subsystem]
            if current is target:
                return
            if current not in allowed_from:
                logger.warning("[Gate] Ignoring %s transition %s -> %s", subsystem, current.value, target.value)
                return
            self._states[subsystem] = target
            changed, active = self._reevaluate()
            listeners = list(self._listeners) if changed else []

        logger.info("[Gate] %s: %s -> %s", subsystem, current.value, target.value)
        self._notify(listeners, active)

    def _reevaluate(self):
        active = all(s is SubsystemState.READY for s in self._states.values())
        changed = active != self._active
        self._active = active
        return changed, active

    def _notify(self, listeners: List[ActiveListener], active: bool) -> None:
        if not listeners:
            return
        logger.info("[Gate] Pipeline %s", "ACTIVE" if active else "INACTIVE")
        for listener in listeners:
            try:
                listener(active)
            except Exception:
                logger.exception("[Gate] Listener error")

    @staticmethod
    def _check(subsystem: str) -> None:
        if subsystem not in SUBSYSTEMS:
            raise ValueError(f"Unknown subsystem: {subsystem}")
