"""Turn source-push events into desired-state proposals.

The CI pipeline builds and pushes `<repository>:<tag>` on every push to the
deploy branch; this module maps the same push event to the image reference
the cluster should run.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Any

from .models import DesiredState
from .settings import settings
from .store import DesiredStateStore

ZERO_SHA = "0" * 40


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check a `sha256=<hex>` HMAC header. Always true when no secret is configured."""
    if not secret:
        return True
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.split("=", 1)[1])


def image_for_push(event: dict[str, Any]) -> str | None:
    """Image reference for a push event, or None if the push is not deployable."""
    ref = event.get("ref") or ""
    if ref != f"refs/heads/{settings.deploy_branch}":
        return None
    if event.get("deleted") or event.get("after") == ZERO_SHA:
        return None
    if settings.tag_strategy == "latest":
        tag = "latest"
    else:
        sha = str(event.get("after") or "")
        if not sha:
            return None
        tag = sha[:7]
    return f"{settings.image_repository}:{tag}"


def handle_push(store: DesiredStateStore, event: dict[str, Any]) -> DesiredState | None:
    """Propose a new revision for a push on the deploy branch.

    Replica count and port carry over from the current desired state.
    """
    image = image_for_push(event)
    if image is None:
        return None
    current = store.current()
    replicas = current.replica_count if current else settings.default_replicas
    port = current.exposed_port if current else settings.default_port
    sha = str(event.get("after") or "")[:7]
    return store.propose(image, replicas, port, source=f"push:{sha}" if sha else "push")
