from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, Sequence

from .errors import ActionPermanentFailure, ActionTransientFailure, InstanceNotFound
from .models import ActionOutcome, Create, Delete, ReconciliationAction, Update
from .orchestrator import Orchestrator
from .retry import backoff_delay
from .settings import settings


class ActionExecutor:
    """Applies reconciliation actions against an orchestrator.

    Each attempt at an action gets one `timeout_s` deadline shared by all of
    its backend calls; transient failures (including timeouts) are retried
    `retries` times with exponential backoff, permanent ones are returned
    immediately. Creates are idempotent: the instance id is
    looked up before every (re)issue, so a call that timed out but succeeded
    is not duplicated.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        timeout_s: float | None = None,
        retries: int | None = None,
        backoff_base_s: float | None = None,
        backoff_cap_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.orchestrator = orchestrator
        self.timeout_s = settings.action_timeout_s if timeout_s is None else timeout_s
        self.retries = settings.action_retries if retries is None else max(0, int(retries))
        self.backoff_base_s = settings.backoff_base_s if backoff_base_s is None else backoff_base_s
        self.backoff_cap_s = settings.backoff_cap_s if backoff_cap_s is None else backoff_cap_s
        self._sleep = sleep
        # Timed-out calls keep their worker until the backend returns.
        self._calls = ThreadPoolExecutor(max_workers=32, thread_name_prefix="cdr-call")

    def shutdown(self) -> None:
        self._calls.shutdown(wait=False)

    def execute(self, action: ReconciliationAction) -> ActionOutcome:
        last = ""
        attempts = 0
        for attempt in range(self.retries + 1):
            if attempt:
                self._sleep(backoff_delay(attempt - 1, self.backoff_base_s, self.backoff_cap_s))
            attempts += 1
            try:
                self._apply(action, time.monotonic() + self.timeout_s)
                return ActionOutcome(action=action, ok=True, attempts=attempts)
            except ActionPermanentFailure as e:
                return ActionOutcome(action=action, ok=False, reason=str(e), attempts=attempts, permanent=True)
            except ActionTransientFailure as e:
                last = str(e)
        return ActionOutcome(
            action=action,
            ok=False,
            reason=f"gave up after {attempts} attempts: {last}",
            attempts=attempts,
        )

    def execute_batch(
        self,
        actions: Sequence[ReconciliationAction],
        max_concurrency: int = 1,
        proceed: Callable[[], bool] | None = None,
    ) -> list[ActionOutcome]:
        """Run actions with at most `max_concurrency` in flight.

        `proceed` is checked right before each action is dispatched; once it
        returns False the remaining actions are skipped, while those already
        running finish. Returns outcomes of dispatched actions, in input order.
        """
        if not actions:
            return []
        workers = max(1, min(int(max_concurrency), len(actions)))

        def run(action: ReconciliationAction) -> ActionOutcome | None:
            if proceed is not None and not proceed():
                return None
            return self.execute(action)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cdr-action") as pool:
            return [o for o in pool.map(run, actions) if o is not None]

    # --- backend calls ---

    def _apply(self, action: ReconciliationAction, deadline: float) -> None:
        # An Update only starts the replacement; the planner retires the old
        # instance once enough of the fleet is READY.
        if isinstance(action, Create):
            self._ensure_created(deadline, action.instance_id, action.image, action.port, action.revision)
        elif isinstance(action, Delete):
            self._ensure_deleted(deadline, action.instance_id)
        elif isinstance(action, Update):
            self._ensure_created(deadline, action.replacement_id, action.new_image, action.port, action.revision)
        else:
            raise ActionPermanentFailure(f"unknown action {action!r}")

    def _ensure_created(self, deadline: float, instance_id: str, image: str, port: int, revision: int) -> None:
        if self._exists(deadline, instance_id):
            return
        self._call(deadline, self.orchestrator.create_instance, instance_id, image, port, revision)

    def _ensure_deleted(self, deadline: float, instance_id: str) -> None:
        try:
            self._call(deadline, self.orchestrator.delete_instance, instance_id)
        except InstanceNotFound:
            return

    def _exists(self, deadline: float, instance_id: str) -> bool:
        return any(i.instance_id == instance_id for i in self._call(deadline, self.orchestrator.list_instances))

    def _call(self, deadline: float, fn: Callable[..., Any], *args: Any) -> Any:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ActionTransientFailure(f"action timed out after {self.timeout_s}s before {fn.__name__}")
        fut = self._calls.submit(fn, *args)
        try:
            return fut.result(timeout=remaining)
        except FuturesTimeout:
            raise ActionTransientFailure(f"action timed out after {self.timeout_s}s in {fn.__name__}") from None
        except (ActionPermanentFailure, ActionTransientFailure, InstanceNotFound):
            raise
        except Exception as e:
            raise ActionTransientFailure(f"{fn.__name__} failed: {type(e).__name__}: {e}") from e
