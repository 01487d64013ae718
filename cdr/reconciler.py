from __future__ import annotations

import time
from dataclasses import replace
from threading import Event, Lock, Thread
from typing import Callable

from . import db
from .alerts import notify_revision_failed
from .errors import ObserverUnavailable, Superseded
from .executor import ActionExecutor
from .models import (
    SUPERSEDED,
    ConvergenceRecord,
    Create,
    Delete,
    DesiredState,
    Outcome,
    Phase,
    ReconciliationAction,
    Snapshot,
    Update,
    utc_now,
)
from .observer import ClusterObserver
from .planner import is_converged, plan_actions, rolling_cap
from .settings import settings
from .store import DesiredStateStore


class Reconciler:
    """Drives the observed fleet toward the latest desired-state revision.

    One revision is reconciled at a time, on a single thread, which is the
    only writer of convergence records:

        PENDING -> DIFFING -> ACTING -> VERIFYING -> CONVERGED | FAILED
                      ^                     |
                      +---------------------+  (up to max_verify_attempts)

    A newer revision preempts the running one at the next phase boundary or
    action group; actions already handed to the executor are allowed to
    finish and their outcomes are recorded.

    Snapshots come from `observer.latest()`. When that one predates the last
    mutation the reconciler polls itself, unless a poll is already running,
    in which case it returns and resumes when that poll publishes.
    """

    def __init__(
        self,
        store: DesiredStateStore,
        observer: ClusterObserver,
        executor: ActionExecutor,
        max_verify_attempts: int | None = None,
        verify_interval_s: float | None = None,
        poll_interval_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.observer = observer
        self.executor = executor
        self.app = store.app
        self.max_verify_attempts = max(
            1, settings.max_verify_attempts if max_verify_attempts is None else int(max_verify_attempts)
        )
        self.verify_interval_s = settings.verify_interval_s if verify_interval_s is None else verify_interval_s
        self.poll_interval_s = settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        self._sleep = sleep

        self._lock = Lock()
        self._newest = 0
        self._mutated_at = 0.0
        self._verify_from = 0.0
        self._wake = Event()
        self._stop = Event()
        self._thr: Thread | None = None

        store.subscribe(self._on_proposed)
        observer.subscribe(self._on_snapshot)

    # --- read interface ---

    def status(self, revision: int) -> ConvergenceRecord | None:
        return db.get_record(self.app, revision)

    def records(self, limit: int = 50) -> list[ConvergenceRecord]:
        return db.list_records(self.app, limit)

    # --- background loop ---

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="cdr-reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)

    def _on_proposed(self, state: DesiredState) -> None:
        with self._lock:
            self._newest = max(self._newest, state.revision)
        self._wake.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started", app=self.app)
        while not self._stop.is_set():
            self._wake.clear()
            try:
                self._tick()
            except ObserverUnavailable:
                pass  # logged by the observer; retried on the next tick
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}", app=self.app)
            self._wake.wait(max(0.1, self.poll_interval_s))

    def _tick(self) -> None:
        revision = self.store.latest_revision()
        if not revision:
            return
        rec = self.status(revision)
        if rec and rec.terminal:
            return
        self.run_revision(revision)

    # --- state machine ---

    def run_revision(self, revision: int) -> ConvergenceRecord:
        """Reconcile one revision until it converges, fails or is superseded.

        Returns the record still IN_PROGRESS when the only fresh enough
        snapshot is the one a running poll will publish; that poll wakes the
        background loop and calling again resumes the revision. Raises
        ObserverUnavailable (record left IN_PROGRESS in DIFFING) when no fresh
        snapshot can be taken.
        """
        desired = self.store.get(revision)
        if desired is None:
            raise LookupError(f"unknown revision {revision}")

        rec = self.status(revision)
        if rec and rec.terminal:
            return rec
        if rec is None:
            rec = ConvergenceRecord(
                revision=revision,
                started_at=utc_now(),
                completed_at=None,
                outcome=Outcome.IN_PROGRESS,
                phase=Phase.PENDING,
            )
            db.save_record(self.app, rec)
            db.log_event("INFO", f"Revision {revision} pending", app=self.app, revision=revision)
        self._supersede_older(revision)

        try:
            self._checkpoint(revision)
            if rec.phase != Phase.VERIFYING:
                rec = self._enter(rec, Phase.DIFFING)
            snap: Snapshot | None = None
            while True:
                if rec.phase == Phase.DIFFING:
                    if snap is None:
                        snap = self._fresh_snapshot(rec, self._mutated_at, max_age_s=self.poll_interval_s)
                        if snap is None:
                            return rec
                    actions = plan_actions(desired, snap)
                    if actions:
                        rec = self._enter(rec, Phase.ACTING)
                        failure = self._act(rec, desired, actions)
                        if failure:
                            self._checkpoint(revision)
                            return self._finish(rec, Outcome.FAILED, failure)

                    self._checkpoint(revision)
                    rec = self._enter(rec, Phase.VERIFYING, attempts=rec.attempts + 1)
                    self._verify_from = time.monotonic()
                    if self.verify_interval_s > 0:
                        self._sleep(self.verify_interval_s)

                snap = self._fresh_snapshot(rec, max(self._mutated_at, self._verify_from))
                if snap is None:
                    return rec
                if is_converged(desired, snap):
                    return self._finish(rec, Outcome.CONVERGED)
                if rec.attempts >= self.max_verify_attempts:
                    return self._finish(rec, Outcome.FAILED, f"not converged after {rec.attempts} attempts")

                self._checkpoint(revision)
                rec = self._enter(rec, Phase.DIFFING)
        except Superseded as e:
            db.log_event("WARN", str(e), app=self.app, revision=revision)
            return self._finish(rec, Outcome.FAILED, SUPERSEDED)

    def _newest_revision(self) -> int:
        with self._lock:
            newest = self._newest
        return max(newest, self.store.latest_revision())

    def _checkpoint(self, revision: int) -> None:
        newest = self._newest_revision()
        if newest > revision:
            raise Superseded(revision, newest)

    def _supersede_older(self, revision: int) -> None:
        for old in self.records():
            if old.revision < revision and not old.terminal:
                self._finish(old, Outcome.FAILED, SUPERSEDED)

    def _enter(self, rec: ConvergenceRecord, phase: Phase, attempts: int | None = None) -> ConvergenceRecord:
        rec = replace(rec, phase=phase, reason="", attempts=rec.attempts if attempts is None else attempts)
        db.save_record(self.app, rec)
        return rec

    def _finish(self, rec: ConvergenceRecord, outcome: Outcome, reason: str = "") -> ConvergenceRecord:
        current = self.status(rec.revision)
        if current and current.terminal:
            return current
        phase = Phase.CONVERGED if outcome == Outcome.CONVERGED else Phase.FAILED
        rec = replace(rec, outcome=outcome, phase=phase, reason=reason, completed_at=utc_now())
        db.save_record(self.app, rec)
        if outcome == Outcome.CONVERGED:
            db.log_event("INFO", f"Revision {rec.revision} converged", app=self.app, revision=rec.revision)
        else:
            db.log_event("ERROR" if reason != SUPERSEDED else "WARN", f"Revision {rec.revision} failed: {reason}", app=self.app, revision=rec.revision)
            if reason != SUPERSEDED:
                notify_revision_failed(self.app, rec)
        return rec

    # --- snapshots ---

    def _on_snapshot(self, snap: Snapshot) -> None:
        self._wake.set()

    def _fresh_snapshot(self, rec: ConvergenceRecord, since: float, max_age_s: float | None = None) -> Snapshot | None:
        """Latest snapshot listed after `since`, polling only if the observer is idle.

        None means a poll is already running; it is never waited for.
        """
        snap = self.observer.latest()
        if (
            snap is not None
            and not self.observer.stale
            and snap.taken_at > since
            and (max_age_s is None or time.monotonic() - snap.taken_at <= max_age_s)
        ):
            return snap
        try:
            return self.observer.poll_if_idle()
        except ObserverUnavailable as e:
            # No actions until a fresh snapshot succeeds.
            db.save_record(self.app, replace(rec, phase=Phase.DIFFING, reason=f"observer unavailable: {e}"))
            raise

    # --- acting ---

    def _act(self, rec: ConvergenceRecord, desired: DesiredState, actions: list[ReconciliationAction]) -> str | None:
        """Run Deletes, Creates, Updates as consecutive groups.

        Returns the first permanent failure reason, if any.
        """
        cap = max(1, rolling_cap(desired.replica_count))
        groups = [
            [a for a in actions if isinstance(a, Delete)],
            [a for a in actions if isinstance(a, Create)],
            [a for a in actions if isinstance(a, Update)],
        ]
        for group in groups:
            if not group:
                continue
            self._checkpoint(rec.revision)
            outcomes = self.executor.execute_batch(
                group,
                max_concurrency=cap,
                proceed=lambda: self._newest_revision() <= rec.revision,
            )
            self._mutated_at = time.monotonic()
            permanent = None
            for o in outcomes:
                db.insert_action_outcome(self.app, rec.revision, o)
                if not o.ok:
                    db.log_event(
                        "ERROR" if o.permanent else "WARN",
                        f"{o.action.kind} {o.action.instance_id} failed after {o.attempts} attempt(s): {o.reason}",
                        app=self.app,
                        revision=rec.revision,
                    )
                    if o.permanent and permanent is None:
                        permanent = f"{o.action.kind} {o.action.instance_id}: {o.reason}"
            if permanent:
                return permanent
        return None
