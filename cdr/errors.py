from __future__ import annotations


class ReconcilerError(Exception):
    pass


class ValidationError(ReconcilerError, ValueError):
    """Desired-state input rejected at proposal time. Never retried."""


class ObserverUnavailable(ReconcilerError):
    """The orchestrator could not be listed after the observer's retry budget."""


class ActionTransientFailure(ReconcilerError):
    """Network error, rate limit or timeout. Safe to retry."""


class ActionPermanentFailure(ReconcilerError):
    """Invalid image reference, quota exceeded, etc. Retrying will not help."""


class InstanceNotFound(ReconcilerError):
    pass


class Superseded(ReconcilerError):
    """A newer revision was proposed while this one was in flight."""

    def __init__(self, revision: int, newer: int):
        super().__init__(f"revision {revision} superseded by {newer}")
        self.revision = revision
        self.newer = newer
