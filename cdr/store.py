from __future__ import annotations

from threading import Lock
from typing import Callable

from . import db
from .errors import ValidationError
from .models import DesiredState
from .settings import settings

Listener = Callable[[DesiredState], None]


def validate_desired(image_reference: str, replica_count: int, exposed_port: int) -> None:
    if not isinstance(image_reference, str) or not image_reference.strip():
        raise ValidationError("image_reference must be a non-empty string.")
    if any(c.isspace() for c in image_reference):
        raise ValidationError("image_reference must not contain whitespace.")
    if isinstance(replica_count, bool) or not isinstance(replica_count, int):
        raise ValidationError("replica_count must be an integer.")
    if replica_count < 0:
        raise ValidationError(f"replica_count must be >= 0 (got {replica_count}).")
    if isinstance(exposed_port, bool) or not isinstance(exposed_port, int):
        raise ValidationError("exposed_port must be an integer.")
    if not 1 <= exposed_port <= 65535:
        raise ValidationError(f"exposed_port must be within 1-65535 (got {exposed_port}).")


class DesiredStateStore:
    """Versioned desired state for one application lineage.

    Records are immutable; every accepted proposal gets the next revision and
    subscribers (the reconciler) are notified after the record is persisted.
    """

    def __init__(self, app: str | None = None):
        self.app = app or settings.app_name
        self._lock = Lock()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def propose(
        self,
        image_reference: str,
        replica_count: int,
        exposed_port: int,
        source: str = "api",
    ) -> DesiredState:
        validate_desired(image_reference, replica_count, exposed_port)
        with self._lock:
            state = db.insert_desired_state(self.app, image_reference.strip(), replica_count, exposed_port, source)
            listeners = list(self._listeners)
        db.log_event(
            "INFO",
            f"Proposed {state.image_reference} x{state.replica_count} on port {state.exposed_port} ({source})",
            app=self.app,
            revision=state.revision,
        )
        for notify in listeners:
            notify(state)
        return state

    def current(self) -> DesiredState | None:
        return db.latest_desired_state(self.app)

    def get(self, revision: int) -> DesiredState | None:
        return db.get_desired_state(self.app, revision)

    def history(self, limit: int = 50) -> list[DesiredState]:
        return db.list_desired_states(self.app, limit)

    def latest_revision(self) -> int:
        cur = self.current()
        return cur.revision if cur else 0
