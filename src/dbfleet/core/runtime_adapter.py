"""Docker runtime adapter for tenant database containers.

Every managed container carries the ``com.pocketbase.managed=true`` label and
is attached to one shared bridge network. Host ports are reserved from an
in-memory set seeded by scanning the runtime at startup; the set only grows,
so a port is never handed out twice during the life of the process. The set is
not shared between processes, so only one control plane may drive a runtime.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from requests.exceptions import RequestException

from dbfleet.core.config import Settings
from dbfleet.core.errors import (
    ContainerOperationFailed,
    ExecFailed,
    ImagePullFailed,
    NotFoundError,
    RuntimeUnavailable,
)
from dbfleet.models.project import ProjectConfig, container_name_for

log = structlog.get_logger()

MANAGED_LABEL = "com.pocketbase.managed"
PROJECT_ID_LABEL = "com.pocketbase.project-id"
PROJECT_SLUG_LABEL = "com.pocketbase.project-slug"

# host subdirectory -> mount point inside the container
DATA_MOUNTS = {
    "pb_data": "/pb_data",
    "pb_public": "/pb_public",
    "pb_migrations": "/pb_migrations",
    "pb_hooks": "/pb_hooks",
}

_MEMORY_PATTERN = re.compile(r"^(\d+)([kmg]?)$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3}
DEFAULT_MEMORY_BYTES = 256 * 1024**2

# APIError subclasses RequestException, so handle it before these.
_UNREACHABLE = (RequestException, ConnectionError)


def parse_memory_limit(limit: str) -> int:
    """Translate ``"256m"`` style limits into bytes."""
    match = _MEMORY_PATTERN.match(limit.strip())
    if match is None:
        return DEFAULT_MEMORY_BYTES
    value, unit = match.groups()
    return int(value) * _MEMORY_UNITS[unit.lower()]


def parse_cpu_limit(limit: str) -> int:
    """Translate a fractional CPU count into NanoCPUs."""
    try:
        value = float(limit)
    except ValueError:
        value = 0.5
    return int(value * 1e9)


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def calculate_cpu_percent(stats: dict[str, Any]) -> float:
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}
    cpu_delta = (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu_stats.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get(
        "system_cpu_usage", 0
    )
    cpu_count = cpu_stats.get("online_cpus") or 1
    if system_delta > 0 and cpu_delta > 0:
        return round(cpu_delta / system_delta * cpu_count * 100, 2)
    return 0.0


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value or value.startswith("0001-01-01"):
        return None
    # Docker reports nanosecond precision; fromisoformat accepts microseconds.
    trimmed = re.sub(r"(\.\d{6})\d+", r"\1", value).replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(trimmed)
    except ValueError:
        return None


@dataclass(slots=True)
class PortBinding:
    host_port: int
    container_port: int


@dataclass(slots=True)
class RuntimeContainerInfo:
    """Point-in-time projection of a container as reported by the runtime."""

    id: str
    name: str
    status: str
    running: bool
    ports: list[PortBinding] = field(default_factory=list)
    created: datetime | None = None
    started: datetime | None = None
    memory_usage: int = 0
    cpu_percent: float = 0.0


@dataclass(slots=True)
class ContainerHandle:
    """Identifiers of a freshly created container."""

    container_id: str
    container_name: str
    port: int


class RuntimeAdapter:
    """Drive the Docker engine on behalf of the orchestrator.

    Methods block; async callers should run them in a worker thread.
    """

    def __init__(
        self,
        settings: Settings,
        docker_client: docker.DockerClient | None = None,
    ) -> None:
        self._settings = settings
        self._client_instance = docker_client
        self._network = settings.network
        self._image = settings.image
        self._base_port = settings.base_port
        self._used_ports: set[int] = set()
        self._ports_lock = threading.Lock()

    @property
    def _client(self) -> docker.DockerClient:
        if self._client_instance is None:
            try:
                self._client_instance = docker.DockerClient(base_url=self._settings.docker_host)
            except DockerException as exc:
                msg = f"Docker is not available at {self._settings.docker_host}: {exc}"
                raise RuntimeUnavailable(msg) from exc
        return self._client_instance

    @property
    def used_ports(self) -> frozenset[int]:
        with self._ports_lock:
            return frozenset(self._used_ports)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except (RuntimeUnavailable, DockerException, *_UNREACHABLE):
            return False

    def initialize(self) -> None:
        """Verify connectivity, ensure the network and seed the port set."""
        if not self.ping():
            msg = "Docker is not available. Please ensure Docker is running."
            raise RuntimeUnavailable(msg)
        self.ensure_network()
        self.scan_existing()
        log.info("runtime.initialized", network=self._network, used_ports=len(self._used_ports))

    def ensure_network(self) -> None:
        try:
            existing = self._client.networks.list(names=[self._network])
            if any(network.name == self._network for network in existing):
                return
            log.info("runtime.network_create", network=self._network)
            self._client.networks.create(
                self._network,
                driver="bridge",
                labels={MANAGED_LABEL: "true"},
            )
        except APIError as exc:
            msg = f"Failed to ensure network {self._network}: {exc}"
            raise ContainerOperationFailed(msg) from exc
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc

    def scan_existing(self) -> set[int]:
        """Record host ports published by every managed container."""
        found: set[int] = set()
        for container in self._managed_containers():
            found.update(self._host_ports(container))
        with self._ports_lock:
            self._used_ports.update(found)
        log.debug("runtime.ports_scanned", used_ports=sorted(found))
        return found

    def reserve_port(self) -> int:
        with self._ports_lock:
            port = self._base_port
            while port in self._used_ports:
                port += 1
            self._used_ports.add(port)
        return port

    def pull_image(self, ref: str | None = None) -> None:
        image = ref or self._image
        repository, tag = _split_image_ref(image)
        log.info("runtime.image_pull", image=image)
        try:
            for event in self._client.api.pull(repository, tag=tag, stream=True, decode=True):
                if "error" in event:
                    raise ImagePullFailed(f"Failed to pull {image}: {event['error']}")
                log.debug("runtime.image_pull_progress", image=image, status=event.get("status"))
        except (ImageNotFound, APIError) as exc:
            raise ImagePullFailed(f"Failed to pull {image}: {exc}") from exc
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc
        log.info("runtime.image_pulled", image=image)

    def create_container(
        self,
        project_id: str,
        slug: str,
        config: ProjectConfig,
    ) -> ContainerHandle:
        container_name = container_name_for(slug)
        port = self.reserve_port()
        data_path = self._settings.project_data_path(project_id)
        for subdir in DATA_MOUNTS:
            (data_path / subdir).mkdir(parents=True, exist_ok=True)

        log.info("runtime.container_create", container=container_name, port=port)
        container_port = f"{self._settings.container_port}/tcp"
        try:
            container = self._client.containers.create(
                image=self._image,
                name=container_name,
                hostname=slug,
                labels=self._labels(project_id, slug),
                ports={container_port: port},
                volumes={
                    str(data_path / subdir): {"bind": target, "mode": "rw"}
                    for subdir, target in DATA_MOUNTS.items()
                },
                restart_policy={"Name": "unless-stopped"},
                mem_limit=parse_memory_limit(config.memory_limit),
                nano_cpus=parse_cpu_limit(config.cpu_limit),
                network=self._network,
            )
        except APIError as exc:
            msg = f"Failed to create container {container_name}: {exc}"
            raise ContainerOperationFailed(msg) from exc
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc

        return ContainerHandle(container_id=container.id, container_name=container_name, port=port)

    def start_container(self, name: str) -> None:
        log.info("runtime.container_start", container=name)
        self._invoke(name, "start", lambda container: container.start())

    def stop_container(self, name: str, timeout: int = 10) -> None:
        log.info("runtime.container_stop", container=name)
        self._invoke(name, "stop", lambda container: container.stop(timeout=timeout))

    def restart_container(self, name: str) -> None:
        log.info("runtime.container_restart", container=name)
        self._invoke(name, "restart", lambda container: container.restart())

    def remove_container(self, name: str) -> None:
        log.info("runtime.container_remove", container=name)
        container = self._get(name)
        try:
            container.stop(timeout=5)
        except (APIError, *_UNREACHABLE) as exc:
            log.debug("runtime.container_stop_ignored", container=name, error=str(exc))
        try:
            container.remove(force=True, v=True)
        except APIError as exc:
            msg = f"Failed to remove container {name}: {exc}"
            raise ContainerOperationFailed(msg) from exc
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc

    def get_container_info(self, name: str) -> RuntimeContainerInfo | None:
        if not name:
            return None
        try:
            container = self._client.containers.get(name)
            container.reload()
            stats = container.stats(stream=False) if container.status == "running" else {}
        except NotFound:
            return None
        except APIError as exc:
            log.warning("runtime.inspect_failed", container=name, error=str(exc))
            return None
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc

        state = container.attrs.get("State", {})
        ports = [
            PortBinding(host_port=int(binding["HostPort"]), container_port=int(key.split("/")[0]))
            for key, bindings in (container.attrs.get("NetworkSettings", {}).get("Ports") or {}).items()
            for binding in bindings or []
            if binding.get("HostPort")
        ]
        return RuntimeContainerInfo(
            id=container.id,
            name=container.name.lstrip("/"),
            status=state.get("Status", container.status),
            running=bool(state.get("Running", container.status == "running")),
            ports=ports,
            created=_parse_timestamp(container.attrs.get("Created")),
            started=_parse_timestamp(state.get("StartedAt")),
            memory_usage=int((stats.get("memory_stats") or {}).get("usage", 0)),
            cpu_percent=calculate_cpu_percent(stats),
        )

    def get_container_logs(self, name: str, tail: int = 100) -> str:
        container = self._get(name)
        try:
            output = container.logs(stdout=True, stderr=True, tail=tail, timestamps=True)
        except APIError as exc:
            msg = f"Failed to read logs for {name}: {exc}"
            raise ContainerOperationFailed(msg) from exc
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc
        return output.decode("utf-8", errors="replace")

    def list_managed(self) -> list[RuntimeContainerInfo]:
        infos = [self.get_container_info(container.name) for container in self._managed_containers()]
        return [info for info in infos if info is not None]

    def exec_in_container(self, name: str, command: Sequence[str]) -> str:
        container = self._get(name)
        try:
            result = container.exec_run(list(command), stdout=True, stderr=True)
        except APIError as exc:
            raise ExecFailed(f"exec in {name} failed: {exc}") from exc
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc
        output = (result.output or b"").decode("utf-8", errors="replace")
        if result.exit_code != 0:
            msg = f"exec in {name} exited with {result.exit_code}: {output.strip()}"
            raise ExecFailed(msg, exit_code=result.exit_code, output=output)
        return output

    def _labels(self, project_id: str, slug: str) -> dict[str, str]:
        router = f"traefik.http.routers.{slug}"
        labels = {
            MANAGED_LABEL: "true",
            PROJECT_ID_LABEL: project_id,
            PROJECT_SLUG_LABEL: slug,
            "traefik.enable": "true",
            f"{router}.rule": f"Host(`{slug}.{self._settings.base_domain}`)",
            f"{router}.entrypoints": "websecure" if self._settings.use_https else "web",
            f"traefik.http.services.{slug}.loadbalancer.server.port": str(
                self._settings.container_port
            ),
        }
        if self._settings.use_https:
            labels[f"{router}.tls"] = "true"
            labels[f"{router}.tls.certresolver"] = self._settings.cert_resolver
        return labels

    def _managed_containers(self) -> list[Container]:
        try:
            return self._client.containers.list(
                all=True, filters={"label": f"{MANAGED_LABEL}=true"}
            )
        except APIError as exc:
            msg = f"Failed to list managed containers: {exc}"
            raise ContainerOperationFailed(msg) from exc
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc

    def _get(self, name: str) -> Container:
        try:
            return self._client.containers.get(name)
        except NotFound as exc:
            raise NotFoundError(f"Container not found: {name}") from exc
        except APIError as exc:
            msg = f"Failed to look up container {name}: {exc}"
            raise ContainerOperationFailed(msg) from exc
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc

    def _invoke(self, name: str, action: str, call: Callable[[Container], object]) -> None:
        container = self._get(name)
        try:
            call(container)
        except APIError as exc:
            msg = f"Failed to {action} container {name}: {exc}"
            raise ContainerOperationFailed(msg) from exc
        except _UNREACHABLE as exc:
            raise RuntimeUnavailable(str(exc)) from exc

    @staticmethod
    def _host_ports(container: Container) -> set[int]:
        ports: set[int] = set()
        published = container.attrs.get("NetworkSettings", {}).get("Ports") or {}
        configured = container.attrs.get("HostConfig", {}).get("PortBindings") or {}
        for bindings in [*published.values(), *configured.values()]:
            for binding in bindings or []:
                try:
                    ports.add(int(binding.get("HostPort", 0)))
                except (TypeError, ValueError):
                    continue
        ports.discard(0)
        return ports


def _split_image_ref(image: str) -> tuple[str, str]:
    name, _, tag = image.rpartition(":")
    if not name or "/" in tag:
        return image, "latest"
    return name, tag
