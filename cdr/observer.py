from __future__ import annotations

import time
from threading import Event, Lock, Thread
from typing import Callable

from . import db
from .errors import InstanceNotFound, ObserverUnavailable
from .models import HealthStatus, ObservedInstance, Snapshot
from .orchestrator import Orchestrator
from .retry import backoff_delay
from .settings import settings


class ClusterObserver:
    """Produces immutable snapshots of the instances a backend is running.

    A background poller refreshes the snapshot every `poll_interval_s`;
    `snapshot()` polls on demand. Readers use `latest()`, which never waits
    for a poll in progress.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        app: str | None = None,
        poll_interval_s: float | None = None,
        retries: int | None = None,
        backoff_base_s: float | None = None,
        backoff_cap_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.orchestrator = orchestrator
        self.app = app or settings.app_name
        self.poll_interval_s = settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        self.retries = settings.observer_retries if retries is None else max(0, int(retries))
        self.backoff_base_s = settings.backoff_base_s if backoff_base_s is None else backoff_base_s
        self.backoff_cap_s = settings.backoff_cap_s if backoff_cap_s is None else backoff_cap_s
        self._sleep = sleep

        self._lock = Lock()
        self._poll_lock = Lock()
        self._latest: Snapshot | None = None
        self._seq = 0
        self._stale = False
        self._stop = Event()
        self._thr: Thread | None = None
        self._listeners: list[Callable[[Snapshot], None]] = []

    def subscribe(self, listener: Callable[[Snapshot], None]) -> None:
        """Call `listener` with every newly published snapshot."""
        self._listeners.append(listener)

    # --- reads ---

    def latest(self) -> Snapshot | None:
        with self._lock:
            return self._latest

    @property
    def stale(self) -> bool:
        with self._lock:
            return self._stale

    # --- polling ---

    def snapshot(self) -> Snapshot:
        """Poll the backend now.

        Retries `retries` times with exponential backoff, then raises
        ObserverUnavailable. The previous snapshot is kept (marked stale).
        """
        with self._poll_lock:
            return self._poll_with_retries()

    def poll_if_idle(self) -> Snapshot | None:
        """Poll now unless a poll is already running.

        Returns None without waiting when another poll holds the backend;
        its result will show up in `latest()`.
        """
        if not self._poll_lock.acquire(blocking=False):
            return None
        try:
            return self._poll_with_retries()
        finally:
            self._poll_lock.release()

    def _poll_with_retries(self) -> Snapshot:
        last_err: Exception | None = None
        for attempt in range(self.retries + 1):
            if attempt:
                self._sleep(backoff_delay(attempt - 1, self.backoff_base_s, self.backoff_cap_s))
            started = time.monotonic()
            try:
                instances = self._poll_once()
            except Exception as e:
                last_err = e
                continue
            return self._publish(instances, started)

        with self._lock:
            self._stale = True
        msg = f"Orchestrator unreachable after {self.retries + 1} attempts: {type(last_err).__name__}: {last_err}"
        db.log_event("WARN", msg, app=self.app)
        raise ObserverUnavailable(msg) from last_err

    def _poll_once(self) -> frozenset[ObservedInstance]:
        out: set[ObservedInstance] = set()
        for info in self.orchestrator.list_instances():
            try:
                health = self.orchestrator.get_instance_health(info.instance_id)
            except InstanceNotFound:
                # removed between list and health lookup
                health = HealthStatus.TERMINATED
            out.add(
                ObservedInstance(
                    instance_id=info.instance_id,
                    image_digest=info.image,
                    health_status=health,
                    last_seen_revision=info.revision,
                )
            )
        return frozenset(out)

    def _publish(self, instances: frozenset[ObservedInstance], started: float) -> Snapshot:
        # taken_at is when listing began: anything mutated after that may be missing
        with self._lock:
            self._seq += 1
            snap = Snapshot(instances=instances, seq=self._seq, taken_at=started)
            self._latest = snap
            self._stale = False
        for listener in list(self._listeners):
            listener(snap)
        return snap

    # --- background poller ---

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="cdr-observer", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.snapshot()
            except ObserverUnavailable:
                pass  # already logged; keep the previous snapshot
            except Exception as e:
                db.log_event("ERROR", f"Observer poll failed: {type(e).__name__}: {e}", app=self.app)
            self._stop.wait(max(0.1, self.poll_interval_s))
