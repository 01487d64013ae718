from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock

from .errors import ActionPermanentFailure, InstanceNotFound
from .models import HealthStatus, InstanceInfo


class Orchestrator(ABC):
    """The four operations the reconciler needs from a cluster backend.

    Backends raise ActionTransientFailure for retryable errors,
    ActionPermanentFailure for errors that retrying cannot fix and
    InstanceNotFound for unknown ids.
    """

    @abstractmethod
    def list_instances(self) -> list[InstanceInfo]: ...

    @abstractmethod
    def create_instance(self, instance_id: str, image: str, port: int, revision: int) -> None: ...

    @abstractmethod
    def delete_instance(self, instance_id: str) -> None: ...

    @abstractmethod
    def get_instance_health(self, instance_id: str) -> HealthStatus: ...


@dataclass
class _MemInstance:
    image: str
    port: int
    revision: int
    health: HealthStatus
    checks: int = 0


class InMemoryOrchestrator(Orchestrator):
    """Simulated cluster kept in process memory.

    New instances report STARTING for `ready_after` health checks, then READY.
    Images listed in `invalid_images` are rejected as permanent failures.
    """

    def __init__(self, ready_after: int = 0, invalid_images: set[str] | None = None):
        self.ready_after = max(0, int(ready_after))
        self.invalid_images = set(invalid_images or ())
        self._lock = Lock()
        self._instances: dict[str, _MemInstance] = {}
        self.create_calls = 0
        self.delete_calls = 0

    def list_instances(self) -> list[InstanceInfo]:
        with self._lock:
            return [
                InstanceInfo(instance_id=k, image=v.image, revision=v.revision)
                for k, v in sorted(self._instances.items())
            ]

    def create_instance(self, instance_id: str, image: str, port: int, revision: int) -> None:
        if not image or image in self.invalid_images:
            raise ActionPermanentFailure(f"invalid image reference: {image!r}")
        with self._lock:
            self.create_calls += 1
            if instance_id in self._instances:
                return
            health = HealthStatus.STARTING if self.ready_after else HealthStatus.READY
            self._instances[instance_id] = _MemInstance(image=image, port=port, revision=revision, health=health)

    def delete_instance(self, instance_id: str) -> None:
        with self._lock:
            self.delete_calls += 1
            if self._instances.pop(instance_id, None) is None:
                raise InstanceNotFound(instance_id)

    def get_instance_health(self, instance_id: str) -> HealthStatus:
        with self._lock:
            inst = self._instances.get(instance_id)
            if inst is None:
                raise InstanceNotFound(instance_id)
            inst.checks += 1
            if inst.health == HealthStatus.STARTING and inst.checks >= self.ready_after:
                inst.health = HealthStatus.READY
            return inst.health

    def set_health(self, instance_id: str, health: HealthStatus) -> None:
        with self._lock:
            self._instances[instance_id].health = health
