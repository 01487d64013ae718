import os as _os
import sys
import threading
import time
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from cdr import db  # noqa: E402
from cdr.controller import Controller  # noqa: E402
from cdr.errors import ActionTransientFailure  # noqa: E402
from cdr.executor import ActionExecutor  # noqa: E402
from cdr.observer import ClusterObserver  # noqa: E402
from cdr.orchestrator import InMemoryOrchestrator  # noqa: E402
from cdr.reconciler import Reconciler  # noqa: E402
from cdr.settings import settings  # noqa: E402
from cdr.store import DesiredStateStore  # noqa: E402


def no_sleep(_s: float) -> None:
    pass


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", replace(settings, db_path=str(tmp_path / "cdr.db")))
    db.init_db()


@pytest.fixture
def make_controller():
    built = []

    def _make(orch, app="web", executor_timeout_s=2.0, **reconciler_kwargs):
        store = DesiredStateStore(app=app)
        observer = ClusterObserver(orch, app=app, poll_interval_s=0.05, sleep=no_sleep)
        executor = ActionExecutor(orch, timeout_s=executor_timeout_s, sleep=no_sleep)
        reconciler_kwargs.setdefault("verify_interval_s", 0)
        reconciler_kwargs.setdefault("poll_interval_s", 0)
        reconciler = Reconciler(store, observer, executor, sleep=no_sleep, **reconciler_kwargs)
        ctl = Controller(store=store, observer=observer, executor=executor, reconciler=reconciler)
        built.append(ctl)
        return ctl

    yield _make
    for ctl in built:
        ctl.stop()


class FlakyOrchestrator(InMemoryOrchestrator):
    """Fails the next `fail_lists` list calls and `fail_creates` create calls."""

    def __init__(self, **kw):
        super().__init__(**kw)
        self.fail_lists = 0
        self.fail_creates = 0
        self.list_calls = 0

    def list_instances(self):
        self.list_calls += 1
        if self.fail_lists > 0:
            self.fail_lists -= 1
            raise ConnectionError("orchestrator unreachable")
        return super().list_instances()

    def create_instance(self, instance_id, image, port, revision):
        if self.fail_creates > 0:
            self.fail_creates -= 1
            raise ActionTransientFailure("429 Too Many Requests")
        return super().create_instance(instance_id, image, port, revision)


class TimeoutAfterCreate(InMemoryOrchestrator):
    """The first create for each id succeeds on the backend but the caller sees a timeout."""

    def __init__(self, **kw):
        super().__init__(**kw)
        self.timed_out: set[str] = set()

    def create_instance(self, instance_id, image, port, revision):
        super().create_instance(instance_id, image, port, revision)
        if instance_id not in self.timed_out:
            self.timed_out.add(instance_id)
            raise TimeoutError(f"create {instance_id} timed out")


class BlockingOrchestrator(InMemoryOrchestrator):
    """Creates for `block_image` wait until `release` is set."""

    def __init__(self, block_image: str, **kw):
        super().__init__(**kw)
        self.block_image = block_image
        self.entered = threading.Event()
        self.release = threading.Event()

    def create_instance(self, instance_id, image, port, revision):
        if image == self.block_image:
            self.entered.set()
            self.release.wait(5)
        return super().create_instance(instance_id, image, port, revision)


class HeldListOrchestrator(InMemoryOrchestrator):
    """list_instances reads the fleet, then waits for `release` while `hold` is set."""

    def __init__(self, **kw):
        super().__init__(**kw)
        self.hold = False
        self.listing = threading.Event()
        self.release = threading.Event()

    def list_instances(self):
        listed = super().list_instances()
        if self.hold:
            self.listing.set()
            self.release.wait(5)
        return listed


class ConcurrencyTracker(InMemoryOrchestrator):
    """Records how many creates run at the same time."""

    def __init__(self, delay_s: float = 0.02, **kw):
        super().__init__(**kw)
        self.delay_s = delay_s
        self._track = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def create_instance(self, instance_id, image, port, revision):
        with self._track:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.delay_s)
            return super().create_instance(instance_id, image, port, revision)
        finally:
            with self._track:
                self.in_flight -= 1


def wait_for(predicate, timeout_s: float = 5.0) -> bool:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()
