from __future__ import annotations

import re
import secrets
from typing import Protocol

import docker
from docker.errors import NotFound

from . import db
from .settings import settings


FLEET_ID_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


def validate_fleet_id(name: str) -> None:
    if not FLEET_ID_RE.match(name):
        raise ValueError(
            "Invalid fleet id. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so the checker cannot be pointed elsewhere.
    if not path.startswith("/"):
        raise ValueError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")


class ComputeProvider(Protocol):
    def launch(self, image: str) -> str: ...

    def terminate(self, member_id: str) -> None: ...

    def is_running(self, member_id: str) -> bool: ...

    def address(self, member_id: str) -> str: ...

    def discover(self) -> list[tuple[str, str]]: ...


class DockerCompute:
    """Fleet members as labelled containers on the FCC docker network.

    Labels let a restarted controller re-discover its members.
    """

    def __init__(self, fleet: str | None = None, port: int | None = None, network: str | None = None):
        self.fleet = fleet or settings.fleet_id
        validate_fleet_id(self.fleet)
        self.port = int(port or settings.worker_port)
        self.network = network or settings.docker_network
        self._names: dict[str, str] = {}

    def _client(self) -> docker.DockerClient:
        return docker.from_env()

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")
            db.log_event("INFO", f"Created docker network '{self.network}'.", fleet=self.fleet)

    def launch(self, image: str) -> str:
        self.ensure_network()
        name = f"fcc-{self.fleet}-{secrets.token_hex(3)}"
        container = self._client().containers.run(
            image,
            detach=True,
            name=name,
            network=self.network,
            labels={"fcc.fleet": self.fleet, "fcc.image": image},
            # Replacement is the controller's job; keep Docker restarts off.
            restart_policy={"Name": "no"},
        )
        self._names[container.id] = name
        db.log_event("INFO", f"Started container {name} from image {image}", fleet=self.fleet, member=container.id)
        return container.id

    def terminate(self, member_id: str) -> None:
        try:
            self._client().containers.get(member_id).remove(force=True)
        except NotFound:
            pass
        self._names.pop(member_id, None)

    def is_running(self, member_id: str) -> bool:
        try:
            cont = self._client().containers.get(member_id)
            cont.reload()
            return cont.status == "running"
        except NotFound:
            return False

    def address(self, member_id: str) -> str:
        """HTTP base URL usable from within the same docker network."""
        name = self._names.get(member_id)
        if name is None:
            name = self._client().containers.get(member_id).name
            self._names[member_id] = name
        return f"http://{name}:{self.port}"

    def discover(self) -> list[tuple[str, str]]:
        """(member_id, image) for running containers labelled with this fleet."""
        containers = self._client().containers.list(filters={"label": [f"fcc.fleet={self.fleet}"]})
        return [(c.id, c.labels.get("fcc.image", "")) for c in containers]
