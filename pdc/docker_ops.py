from __future__ import annotations

import secrets
from dataclasses import dataclass
from threading import Lock
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .errors import OrchestrationUnavailable, PoolNotFound
from .health import check_health
from .orchestration import OrchestrationClient, PoolStatus
from .runtime import RouteTarget, RuntimeState
from .settings import settings


POOL_LABEL = "pdc.pool"
IMAGE_LABEL = "pdc.image"


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    image: str


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


class DockerOrchestrator(OrchestrationClient):
    """Pools as groups of labeled containers on one docker network.

    A pool is every container carrying ``pdc.pool=<name>``; labels make the
    pools re-discoverable after a controller restart. Routing selectors are
    published to the in-process gateway through ``RuntimeState``.
    """

    def __init__(
        self,
        runtime: RuntimeState,
        network: str = settings.docker_network,
        internal_port: int = settings.internal_port,
        health_path: str = settings.health_path,
    ) -> None:
        self.runtime = runtime
        self.network = network
        self.internal_port = internal_port
        self.health_path = health_path
        self._lock = Lock()
        self._known: dict[str, str] = {}  # pool -> image, includes pools scaled to zero
        self._selectors: dict[str, dict[str, int]] = {}

    def _docker(self) -> docker.DockerClient:
        try:
            c = _client()
            c.ping()
            return c
        except DockerException as e:
            raise OrchestrationUnavailable(f"docker is not available: {e}") from e

    def ping(self) -> bool:
        return docker_available()

    def _ensure_network(self, c: docker.DockerClient) -> None:
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")
            log_event("INFO", f"Created docker network '{self.network}'.")

    def _containers(self, c: docker.DockerClient, pool: str) -> list[Any]:
        filters: dict[str, Any] = {"label": [f"{POOL_LABEL}={pool}"]}
        return list(c.containers.list(all=True, filters=filters))

    def _refs(self, c: docker.DockerClient, pool: str) -> list[ContainerRef]:
        return [
            ContainerRef(id=x.id, name=x.name, image=x.labels.get(IMAGE_LABEL, ""))
            for x in self._containers(c, pool)
            if x.status == "running"
        ]

    def _start(self, c: docker.DockerClient, pool: str, image: str) -> ContainerRef:
        name = f"pdc-{pool}-{secrets.token_hex(3)}"
        container = c.containers.run(
            image,
            detach=True,
            name=name,
            network=self.network,
            labels={POOL_LABEL: pool, IMAGE_LABEL: image},
            # Replacement is the controller's job; keep Docker's restart policy off.
            restart_policy={"Name": "no"},
        )
        log_event("INFO", f"Started container {name} from image {image}", service_name=pool, version=image)
        return ContainerRef(id=container.id, name=name, image=image)

    @staticmethod
    def _remove(c: docker.DockerClient, container_id: str) -> None:
        try:
            c.containers.get(container_id).remove(force=True)
        except NotFound:
            return

    def create_or_update_pool(self, name: str, image: str, replica_count: int) -> None:
        replica_count = max(0, int(replica_count))
        try:
            c = self._docker()
            self._ensure_network(c)
            with self._lock:
                self._known[name] = image
            # Stopped containers and containers of another image are replaced.
            keep: list[Any] = []
            for x in self._containers(c, name):
                if x.status == "running" and x.labels.get(IMAGE_LABEL) == image:
                    keep.append(x)
                else:
                    self._remove(c, x.id)
            extra = len(keep) - replica_count
            if extra > 0:
                for x in list(reversed(keep))[:extra]:
                    self._remove(c, x.id)
            for _ in range(max(0, -extra)):
                self._start(c, name, image)
        except DockerException as e:
            raise OrchestrationUnavailable(f"scaling pool '{name}' failed: {e}") from e
        self._refresh_routes()

    def get_pool_status(self, name: str) -> PoolStatus:
        try:
            c = self._docker()
            refs = self._refs(c, name)
        except DockerException as e:
            raise OrchestrationUnavailable(f"reading pool '{name}' failed: {e}") from e
        with self._lock:
            image = self._known.get(name)
        if image is None:
            if not refs:
                raise PoolNotFound(f"pool '{name}' does not exist")
            image = refs[0].image
        ready = 0
        for ref in refs:
            ok, _msg, _latency = check_health(f"{container_http_base(ref.name, self.internal_port)}{self.health_path}")
            if ok:
                ready += 1
        return PoolStatus(name=name, image=image, replica_count=len(refs), ready_count=ready)

    def delete_pool(self, name: str) -> None:
        try:
            c = self._docker()
            for x in self._containers(c, name):
                self._remove(c, x.id)
        except DockerException as e:
            raise OrchestrationUnavailable(f"deleting pool '{name}' failed: {e}") from e
        with self._lock:
            self._known.pop(name, None)
        self._refresh_routes()

    def set_routing_selector(self, service: str, weights: dict[str, int]) -> None:
        with self._lock:
            self._selectors[service] = dict(weights)
        self._refresh_routes(service)

    def get_routing_selector(self, service: str) -> dict[str, int] | None:
        with self._lock:
            weights = self._selectors.get(service)
            return dict(weights) if weights is not None else None

    def delete_routing_selector(self, service: str) -> None:
        with self._lock:
            self._selectors.pop(service, None)
        self.runtime.drop_targets(service)

    def _refresh_routes(self, only: str | None = None) -> None:
        """Rebuild gateway targets from the selectors and running containers."""
        with self._lock:
            selectors = {s: dict(w) for s, w in self._selectors.items() if only is None or s == only}
        if not selectors:
            return
        try:
            c = self._docker()
            for service, weights in selectors.items():
                targets: list[RouteTarget] = []
                for pool, weight in weights.items():
                    if weight <= 0:
                        continue
                    for ref in self._refs(c, pool):
                        base = container_http_base(ref.name, self.internal_port)
                        targets.append(RouteTarget(service=service, pool=pool, base_url=base, weight=weight))
                self.runtime.set_targets(service, targets)
        except DockerException as e:
            raise OrchestrationUnavailable(f"refreshing routes failed: {e}") from e
