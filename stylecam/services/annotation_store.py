"""
AnnotationStore: latest-snapshot holder shared by the pipelines and renderers.

Each key ("face", "clothing") holds exactly one immutable AnnotationSnapshot.
replace() is the only mutator and swaps the whole snapshot under a lock, so a
reader sees either the previous list or the new one, never a mix.
"""

import threading
import time
import logging
from typing import Callable, Dict, Iterable, List

from stylecam.schemas.annotations import Annotation, AnnotationSnapshot

logger = logging.getLogger(__name__)

FACE_KEY = "face"
CLOTHING_KEY = "clothing"

UpdateListener = Callable[[str, AnnotationSnapshot], None]


class AnnotationStore:
    """
    Holds one snapshot per pipeline key and notifies subscribers on publish.

    Subscribers are called synchronously after the swap, on the publishing
    thread. A failing subscriber is logged and skipped.
    """

    def __init__(self, keys: Iterable[str] = (FACE_KEY, CLOTHING_KEY)):
        self._lock = threading.Lock()
        self._snapshots: Dict[str, AnnotationSnapshot] = {
            key: AnnotationSnapshot(key=key) for key in keys
        }
        self._listeners: List[UpdateListener] = []

    @property
    def keys(self) -> List[str]:
        with self._lock:
            return list(self._snapshots)

    def replace(self, key: str, items: Iterable[Annotation], frame_width: int = 0, frame_height: int = 0) -> AnnotationSnapshot:
        """Publish a full replacement list for `key`."""
        # Build the snapshot before taking the lock; readers only ever get a finished one.
        frozen = tuple(items)
        with self._lock:
            if key not in self._snapshots:
                raise KeyError(f"Unknown annotation key: {key}")
            previous = self._snapshots[key]
            snapshot = AnnotationSnapshot(
                key=key,
                items=frozen,
                timestamp=time.time(),
                sequence=previous.sequence + 1,
                frame_width=int(frame_width),
                frame_height=int(frame_height),
            )
            self._snapshots[key] = snapshot
            listeners = list(self._listeners)

        logger.debug("[Store] %s <- %d item(s) (seq=%d)", key, len(frozen), snapshot.sequence)
        for listener in listeners:
            try:
                listener(key, snapshot)
            except Exception:
                logger.exception("[Store] Subscriber error for key %s", key)
        return snapshot

    def get_latest(self, key: str) -> AnnotationSnapshot:
        with self._lock:
            if key not in self._snapshots:
                raise KeyError(f"Unknown annotation key: {key}")
            return self._snapshots[key]

    def get_all(self) -> Dict[str, AnnotationSnapshot]:
        with self._lock:
            return dict(self._snapshots)

    def subscribe(self, listener: UpdateListener) -> Callable[[], None]:
        """Register an on_update(key, snapshot) callback. Returns the unsubscribe handle."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe
