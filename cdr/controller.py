from __future__ import annotations

from dataclasses import dataclass

from . import db
from .executor import ActionExecutor
from .observer import ClusterObserver
from .orchestrator import InMemoryOrchestrator, Orchestrator
from .reconciler import Reconciler
from .settings import settings
from .store import DesiredStateStore


def make_orchestrator(backend: str | None = None) -> Orchestrator:
    backend = (backend or settings.backend).lower()
    if backend == "memory":
        return InMemoryOrchestrator()
    if backend == "docker":
        from .docker_ops import DockerOrchestrator

        return DockerOrchestrator()
    raise ValueError(f"Unknown backend {backend!r} (expected docker|memory).")


@dataclass
class Controller:
    store: DesiredStateStore
    observer: ClusterObserver
    executor: ActionExecutor
    reconciler: Reconciler

    @classmethod
    def build(cls, orchestrator: Orchestrator | None = None, **reconciler_kwargs) -> "Controller":
        orch = orchestrator or make_orchestrator()
        store = DesiredStateStore()
        observer = ClusterObserver(orch, app=store.app)
        executor = ActionExecutor(orch)
        reconciler = Reconciler(store, observer, executor, **reconciler_kwargs)
        return cls(store=store, observer=observer, executor=executor, reconciler=reconciler)

    def start(self) -> None:
        db.init_db()
        self.observer.start()
        self.reconciler.start()

    def stop(self) -> None:
        self.reconciler.stop()
        self.observer.stop()
        self.reconciler.join(timeout=5)
        self.observer.join(timeout=5)
        self.executor.shutdown()
