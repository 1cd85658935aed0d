from __future__ import annotations

import queue
import time
from contextlib import contextmanager
from threading import Condition, Event, Lock, Thread
from typing import Callable, Iterator

from . import events
from .api_models import RoutingConfiguration


class RWLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class RuntimeState:
    """Latest emitted snapshot, shared between the consumer and the API."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.config: RoutingConfiguration | None = None
        self.generation = 0
        self.updated_at: float | None = None

    def set_config(self, config: RoutingConfiguration) -> int:
        with self.lock:
            self.config = config
            self.generation += 1
            self.updated_at = time.time()
            return self.generation

    def get_config(self) -> RoutingConfiguration | None:
        with self.lock:
            return self.config

    def status(self) -> dict[str, object]:
        with self.lock:
            return {
                "generation": self.generation,
                "updated_at": self.updated_at,
                "routers": len(self.config.http.routers) if self.config else 0,
            }


class SnapshotConsumer:
    """Drains the reconciler's handoff channel and publishes each snapshot."""

    def __init__(
        self,
        channel: "queue.Queue[RoutingConfiguration]",
        runtime: RuntimeState,
        writer: Callable[[RoutingConfiguration], None] | None = None,
    ):
        self.channel = channel
        self.runtime = runtime
        self.writer = writer
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="crp-consumer", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def consume_one(self, timeout: float | None = None) -> bool:
        try:
            config = self.channel.get(timeout=timeout)
        except queue.Empty:
            return False
        gen = self.runtime.set_config(config)
        if self.writer is not None:
            try:
                self.writer(config)
            except OSError as e:
                events.log_event("ERROR", f"Failed to write routes file: {e}", code=events.CONFIG_SEND_FAILED)
        events.log_event("DEBUG", f"Published configuration generation {gen}")
        return True

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.consume_one(timeout=1.0)
