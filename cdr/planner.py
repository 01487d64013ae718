"""Diff desired state against an observed snapshot.

Pure functions only: the same desired state and snapshot always produce the
same action list.
"""
from __future__ import annotations

import math
from typing import Iterable

from .models import Create, Delete, DesiredState, HealthStatus, ObservedInstance, ReconciliationAction, Update


def rolling_cap(replica_count: int) -> int:
    """Max instances replaced at once during an image change: ceil(n/3)."""
    return math.ceil(max(0, replica_count) / 3)


def instance_name(app: str, revision: int, n: int) -> str:
    return f"{app}-r{revision}-{n}"


def _fresh_names(app: str, revision: int, taken: set[str], count: int) -> list[str]:
    names: list[str] = []
    n = 0
    while len(names) < count:
        name = instance_name(app, revision, n)
        if name not in taken:
            names.append(name)
        n += 1
    return names


def is_converged(desired: DesiredState, instances: Iterable[ObservedInstance]) -> bool:
    items = list(instances)
    return len(items) == desired.replica_count and all(
        i.image_digest == desired.image_reference and i.health_status == HealthStatus.READY for i in items
    )


def plan_actions(desired: DesiredState, instances: Iterable[ObservedInstance]) -> list[ReconciliationAction]:
    """Return Deletes, then Creates, then rolling Updates.

    - TERMINATED and FAILING instances are deleted.
    - Surplus live instances are deleted: stale image first, then not ready,
      then by id. A READY instance is only deleted while the READY count
      stays at or above min(replica_count, READY now), so an instance on the
      old image stays up until its replacement is READY.
    - Creates fill up to replica_count.
    - Retained instances on the wrong image get an Update (which starts the
      replacement only), at most rolling_cap(replica_count) at a time,
      counting already-updated instances that are not READY yet. Instances
      whose replacement is already running are not updated again.
    """
    items = sorted(instances, key=lambda i: i.instance_id)
    taken = {i.instance_id for i in items}
    image = desired.image_reference
    n = desired.replica_count

    doomed = [i for i in items if i.health_status in {HealthStatus.TERMINATED, HealthStatus.FAILING}]
    live = [i for i in items if i not in doomed]

    ranked = sorted(
        live,
        key=lambda i: (i.image_digest == image, i.health_status == HealthStatus.READY, i.instance_id),
    )
    ready_left = sum(1 for i in live if i.health_status == HealthStatus.READY)
    floor = min(n, ready_left)
    retired: list[ObservedInstance] = []
    for i in ranked[: max(0, len(live) - n)]:
        if i.health_status == HealthStatus.READY:
            if ready_left <= floor:
                break
            ready_left -= 1
        retired.append(i)
    doomed.extend(retired)
    kept = [i for i in ranked if i not in retired]

    deletes = [Delete(instance_id=i.instance_id) for i in sorted(doomed, key=lambda i: i.instance_id)]

    new_ids = _fresh_names(desired.app, desired.revision, taken, max(0, n - len(kept)))
    taken.update(new_ids)
    creates = [Create(instance_id=iid, image=image, port=desired.exposed_port, revision=desired.revision) for iid in new_ids]

    # kept is in retirement order, so the first `replacing` stale ones are
    # those whose replacements already run
    stale = [i for i in kept if i.image_digest != image]
    replacing = min(len(stale), max(0, len(kept) - n))
    warming = sum(1 for i in kept if i.image_digest == image and i.health_status != HealthStatus.READY)
    budget = max(0, rolling_cap(n) - warming)
    batch = sorted(stale[replacing : replacing + budget], key=lambda i: i.instance_id)
    replacement_ids = _fresh_names(desired.app, desired.revision, taken, len(batch))
    updates = [
        Update(
            instance_id=i.instance_id,
            new_image=image,
            replacement_id=rid,
            port=desired.exposed_port,
            revision=desired.revision,
        )
        for i, rid in zip(batch, replacement_ids)
    ]

    return [*deletes, *creates, *updates]
