from __future__ import annotations

import re
import time
from typing import Any, Callable

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .errors import ActionPermanentFailure, ActionTransientFailure, InstanceNotFound
from .health import check_health
from .models import HealthStatus, InstanceInfo
from .orchestrator import Orchestrator
from .settings import settings

INSTANCE_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,127}$")

LABEL_APP = "cdr.app"
LABEL_REVISION = "cdr.revision"
LABEL_IMAGE = "cdr.image"
LABEL_PORT = "cdr.port"
LABEL_CREATED = "cdr.created"

_PERMANENT_HINTS = ("quota", "invalid reference format", "manifest unknown", "pull access denied", "no such image")


def classify(e: Exception, what: str) -> Exception:
    """Map a docker-py error onto the transient/permanent taxonomy."""
    if isinstance(e, ImageNotFound):
        return ActionPermanentFailure(f"{what}: image not found: {e}")
    if isinstance(e, APIError):
        text = str(e).lower()
        if any(h in text for h in _PERMANENT_HINTS):
            return ActionPermanentFailure(f"{what}: {e}")
        code = e.status_code or 0
        if code == 429 or code >= 500:
            return ActionTransientFailure(f"{what}: {e}")
        if 400 <= code < 500:
            return ActionPermanentFailure(f"{what}: {e}")
        return ActionTransientFailure(f"{what}: {e}")
    return ActionTransientFailure(f"{what}: {type(e).__name__}: {e}")


class DockerOrchestrator(Orchestrator):
    """Runs instances as labelled containers on a single Docker engine.

    Containers are attached to the CDR network so the controller can probe
    `http://<instance_id>:<port><health_path>` when it runs on that network
    too.
    """

    def __init__(
        self,
        app: str | None = None,
        network: str | None = None,
        health_path: str | None = None,
        client: Any = None,
        probe: Callable[[str, float], tuple[bool, str, float | None]] = check_health,
    ):
        self.app = app or settings.app_name
        self.network = network or settings.docker_network
        self.health_path = health_path or settings.health_path
        self._c = client
        self._probe = probe

    def _client(self) -> Any:
        if self._c is None:
            self._c = docker.from_env()
        return self._c

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")

    def list_instances(self) -> list[InstanceInfo]:
        try:
            containers = self._client().containers.list(all=True, filters={"label": [f"{LABEL_APP}={self.app}"]})
        except (DockerException, requests.RequestException) as e:
            raise classify(e, "list") from e
        out = []
        for x in containers:
            labels = x.labels or {}
            image = labels.get(LABEL_IMAGE) or x.attrs.get("Config", {}).get("Image", "")
            out.append(InstanceInfo(instance_id=x.name, image=image, revision=int(labels.get(LABEL_REVISION, 0))))
        return sorted(out, key=lambda i: i.instance_id)

    def create_instance(self, instance_id: str, image: str, port: int, revision: int) -> None:
        if not INSTANCE_ID_RE.match(instance_id):
            raise ActionPermanentFailure(f"invalid instance id {instance_id!r}")
        labels = {
            LABEL_APP: self.app,
            LABEL_REVISION: str(revision),
            LABEL_IMAGE: image,
            LABEL_PORT: str(int(port)),
            LABEL_CREATED: str(int(time.time())),
        }
        try:
            self.ensure_network()
            self._client().containers.run(
                image,
                detach=True,
                name=instance_id,
                environment={"PORT": str(int(port))},
                network=self.network,
                labels=labels,
                # Replacement is the reconciler's job; keep Docker's restart policy off.
                restart_policy={"Name": "no"},
            )
        except APIError as e:
            if e.status_code == 409:
                # Name taken: a previous attempt already created it.
                return
            raise classify(e, f"create {instance_id}") from e
        except (DockerException, requests.RequestException) as e:
            raise classify(e, f"create {instance_id}") from e

    def delete_instance(self, instance_id: str) -> None:
        try:
            self._client().containers.get(instance_id).remove(force=True)
        except NotFound as e:
            raise InstanceNotFound(instance_id) from e
        except (DockerException, requests.RequestException) as e:
            raise classify(e, f"delete {instance_id}") from e

    def get_instance_health(self, instance_id: str) -> HealthStatus:
        try:
            cont = self._client().containers.get(instance_id)
            cont.reload()
        except NotFound as e:
            raise InstanceNotFound(instance_id) from e
        except (DockerException, requests.RequestException) as e:
            raise classify(e, f"health {instance_id}") from e

        if cont.status in {"created", "restarting"}:
            return HealthStatus.STARTING
        if cont.status == "paused":
            return HealthStatus.FAILING
        if cont.status != "running":
            return HealthStatus.TERMINATED

        # Prefer the image's own HEALTHCHECK when it has one.
        native = (cont.attrs.get("State", {}).get("Health") or {}).get("Status")
        if native == "healthy":
            return HealthStatus.READY
        if native == "starting":
            return HealthStatus.STARTING
        if native == "unhealthy":
            return HealthStatus.FAILING

        labels = cont.labels or {}
        url = f"http://{instance_id}:{labels.get(LABEL_PORT, '80')}{self.health_path}"
        ok, _msg, _latency = self._probe(url, settings.health_timeout_s)
        if ok:
            return HealthStatus.READY
        created = int(labels.get(LABEL_CREATED, 0))
        if time.time() - created < settings.start_grace_s:
            return HealthStatus.STARTING
        return HealthStatus.FAILING
