"""Progress tracking and observer fan-out"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Progress:
    total_steps: int = 0
    completed_steps: int = 0
    last_message: str = ""

    @property
    def percent(self) -> float:
        if self.total_steps <= 0:
            return 0.0
        return round(100.0 * self.completed_steps / self.total_steps, 1)


ProgressListener = Callable[[Progress], None]


class ProgressTracker:
    """Thread-safe progress counter.

    `completed_steps` never decreases and never exceeds `total_steps`. Every change is
    forwarded to the optional listener with a copy of the current state.
    """

    def __init__(self, total_steps: int = 0, listener: Optional[ProgressListener] = None):
        self._progress = Progress(total_steps=max(0, total_steps))
        self._listener = listener
        self._lock = threading.Lock()

    def _emit(self, snapshot: Progress) -> None:
        if self._listener is not None:
            self._listener(snapshot)

    def set_total(self, total_steps: int, message: str = "") -> Progress:
        with self._lock:
            # Never shrink below what has already been completed.
            self._progress.total_steps = max(total_steps, self._progress.completed_steps)
            if message:
                self._progress.last_message = message
            snapshot = self._snapshot()
        self._emit(snapshot)
        return snapshot

    def advance(self, steps: int = 1, message: str = "") -> Progress:
        with self._lock:
            if steps > 0:
                target = self._progress.completed_steps + steps
                if self._progress.total_steps:
                    target = min(target, self._progress.total_steps)
                self._progress.completed_steps = max(self._progress.completed_steps, target)
            if message:
                self._progress.last_message = message
            snapshot = self._snapshot()
        self._emit(snapshot)
        return snapshot

    def _snapshot(self) -> Progress:
        return Progress(
            total_steps=self._progress.total_steps,
            completed_steps=self._progress.completed_steps,
            last_message=self._progress.last_message,
        )

    def snapshot(self) -> Progress:
        with self._lock:
            return self._snapshot()


class ProgressBroadcaster:
    """Bounded observer registry keyed by operation id.

    Subscriptions are dropped when the operation is closed, so callbacks never outlive
    the operation they watch.
    """

    def __init__(self, max_observers: int = 16):
        self.max_observers = max_observers
        self._observers: Dict[str, List[ProgressListener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, operation_id: str, callback: ProgressListener) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        with self._lock:
            callbacks = self._observers.setdefault(operation_id, [])
            if len(callbacks) >= self.max_observers:
                raise ValueError(
                    f"Operation {operation_id} already has {self.max_observers} observers"
                )
            callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                current = self._observers.get(operation_id)
                if current and callback in current:
                    current.remove(callback)
                    if not current:
                        self._observers.pop(operation_id, None)

        return unsubscribe

    def publish(self, operation_id: str, progress: Progress) -> None:
        with self._lock:
            callbacks = list(self._observers.get(operation_id, ()))
        for callback in callbacks:
            try:
                callback(progress)
            except Exception as e:
                logger.error(f"Progress observer for operation {operation_id} failed: {e}")

    def close(self, operation_id: str) -> None:
        with self._lock:
            self._observers.pop(operation_id, None)

    def observer_count(self, operation_id: str) -> int:
        with self._lock:
            return len(self._observers.get(operation_id, ()))
