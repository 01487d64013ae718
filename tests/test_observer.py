import dataclasses
import threading
import time

import pytest

from cdr.errors import InstanceNotFound, ObserverUnavailable
from cdr.models import HealthStatus, InstanceInfo
from cdr.observer import ClusterObserver
from cdr.orchestrator import InMemoryOrchestrator
from cdr.retry import backoff_delay

from conftest import FlakyOrchestrator, HeldListOrchestrator, wait_for


def _observer(orch, delays=None, **kw):
    sleep = delays.append if delays is not None else (lambda s: None)
    return ClusterObserver(orch, app="web", sleep=sleep, **kw)


def test_snapshot_reports_instances_and_health():
    orch = InMemoryOrchestrator(ready_after=2)
    orch.create_instance("web-r1-0", "app:v1", 8080, 1)
    obs = _observer(orch)

    first = obs.snapshot()
    assert len(first) == 1
    (inst,) = first
    assert inst.instance_id == "web-r1-0"
    assert inst.image_digest == "app:v1"
    assert inst.health_status == HealthStatus.STARTING
    assert inst.last_seen_revision == 1

    second = obs.snapshot()
    assert second.seq == first.seq + 1
    assert {i.health_status for i in second} == {HealthStatus.READY}
    # earlier snapshots are never mutated
    assert {i.health_status for i in first} == {HealthStatus.STARTING}
    with pytest.raises(dataclasses.FrozenInstanceError):
        inst.health_status = HealthStatus.READY
    assert obs.latest() is second


def test_unreachable_backend_raises_after_three_retries_with_backoff():
    orch = FlakyOrchestrator()
    delays = []
    obs = _observer(orch, delays, retries=3, backoff_base_s=0.5, backoff_cap_s=8.0)
    good = obs.snapshot()

    orch.fail_lists = 4
    calls_before = orch.list_calls
    with pytest.raises(ObserverUnavailable):
        obs.snapshot()

    assert orch.list_calls - calls_before == 4
    assert delays == [0.5, 1.0, 2.0]
    # previous snapshot is kept, flagged stale
    assert obs.latest() is good
    assert obs.stale is True


def test_recovers_within_retry_budget():
    orch = FlakyOrchestrator()
    orch.create_instance("web-r1-0", "app:v1", 8080, 1)
    orch.fail_lists = 2
    delays = []
    obs = _observer(orch, delays)

    snap = obs.snapshot()
    assert snap.ids() == {"web-r1-0"}
    assert delays == [0.5, 1.0]
    assert obs.stale is False


def test_backoff_is_capped():
    assert [backoff_delay(n, 0.5, 8.0) for n in range(7)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0, 8.0]


def test_instance_vanishing_between_list_and_health_is_terminated():
    class Vanishing(InMemoryOrchestrator):
        def list_instances(self):
            return [InstanceInfo(instance_id="ghost", image="app:v1", revision=1)]

        def get_instance_health(self, instance_id):
            raise InstanceNotFound(instance_id)

    snap = _observer(Vanishing()).snapshot()
    assert [i.health_status for i in snap] == [HealthStatus.TERMINATED]


def test_background_poller_publishes_snapshots():
    orch = InMemoryOrchestrator()
    obs = _observer(orch, poll_interval_s=0.05)
    assert obs.latest() is None
    obs.start()
    try:
        assert wait_for(lambda: obs.latest() is not None)
        orch.create_instance("web-r1-0", "app:v1", 8080, 1)
        assert wait_for(lambda: obs.latest().ids() == {"web-r1-0"})
    finally:
        obs.stop()
        obs.join(1)


def test_background_poller_survives_outages():
    orch = FlakyOrchestrator()
    obs = _observer(orch, poll_interval_s=0.05, retries=0)
    orch.fail_lists = 3
    obs.start()
    try:
        assert wait_for(lambda: obs.latest() is not None)
        assert obs.stale is False
    finally:
        obs.stop()
        obs.join(1)


def test_poll_if_idle_does_not_wait_for_a_running_poll():
    orch = HeldListOrchestrator()
    obs = _observer(orch)
    orch.hold = True
    t = threading.Thread(target=obs.snapshot)
    t.start()
    try:
        assert orch.listing.wait(5)
        started = time.monotonic()
        assert obs.poll_if_idle() is None
        assert time.monotonic() - started < 0.5
    finally:
        orch.release.set()
        t.join(5)
    assert obs.latest() is not None

    orch.hold = False
    snap = obs.poll_if_idle()
    assert snap is not None and snap.seq == 2


def test_snapshot_is_stamped_when_listing_starts():
    orch = HeldListOrchestrator()
    obs = _observer(orch)
    orch.hold = True
    t = threading.Thread(target=obs.snapshot)
    t.start()
    assert orch.listing.wait(5)
    # the fleet changes after it was listed but before the snapshot is published
    orch.create_instance("web-r1-0", "app:v1", 8080, 1)
    changed_at = time.monotonic()
    orch.release.set()
    t.join(5)

    snap = obs.latest()
    assert snap.ids() == set()
    assert snap.taken_at < changed_at


def test_subscribers_see_every_published_snapshot():
    seen = []
    obs = _observer(InMemoryOrchestrator())
    obs.subscribe(seen.append)
    first = obs.snapshot()
    second = obs.poll_if_idle()
    assert seen == [first, second]
