from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, Union


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class HealthStatus(str, Enum):
    STARTING = "starting"
    READY = "ready"
    FAILING = "failing"
    TERMINATED = "terminated"


class Outcome(str, Enum):
    IN_PROGRESS = "in_progress"
    CONVERGED = "converged"
    FAILED = "failed"


class Phase(str, Enum):
    PENDING = "pending"
    DIFFING = "diffing"
    ACTING = "acting"
    VERIFYING = "verifying"
    CONVERGED = "converged"
    FAILED = "failed"


SUPERSEDED = "superseded"


@dataclass(frozen=True)
class DesiredState:
    revision: int
    image_reference: str
    replica_count: int
    exposed_port: int
    app: str = "app"
    source: str = "api"
    created_at: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class InstanceInfo:
    """What a backend reports for one instance, before health is looked up."""

    instance_id: str
    image: str
    revision: int = 0


@dataclass(frozen=True)
class ObservedInstance:
    instance_id: str
    image_digest: str
    health_status: HealthStatus
    last_seen_revision: int


@dataclass(frozen=True)
class Snapshot:
    instances: frozenset[ObservedInstance]
    seq: int
    taken_at: float  # time.monotonic() when listing started

    def __iter__(self) -> Iterator[ObservedInstance]:
        return iter(self.instances)

    def __len__(self) -> int:
        return len(self.instances)

    def ids(self) -> set[str]:
        return {i.instance_id for i in self.instances}


@dataclass(frozen=True)
class Create:
    instance_id: str
    image: str
    port: int
    revision: int

    kind = "create"


@dataclass(frozen=True)
class Update:
    instance_id: str
    new_image: str
    replacement_id: str
    port: int
    revision: int

    kind = "update"


@dataclass(frozen=True)
class Delete:
    instance_id: str

    kind = "delete"


ReconciliationAction = Union[Create, Update, Delete]


@dataclass(frozen=True)
class ActionOutcome:
    action: ReconciliationAction
    ok: bool
    reason: str = ""
    attempts: int = 1
    permanent: bool = False


@dataclass(frozen=True)
class ConvergenceRecord:
    revision: int
    started_at: str
    completed_at: str | None
    outcome: Outcome
    phase: Phase
    reason: str = ""
    attempts: int = 0

    @property
    def terminal(self) -> bool:
        return self.outcome in {Outcome.CONVERGED, Outcome.FAILED}
