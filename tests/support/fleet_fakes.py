from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from docker.errors import APIError, NotFound

from dbfleet.core.config import Settings
from dbfleet.core.errors import ExecFailed, NotFoundError
from dbfleet.core.project_manager import ProjectManager
from dbfleet.core.retry import RetryPolicy
from dbfleet.core.runtime_adapter import DATA_MOUNTS, ContainerHandle, RuntimeContainerInfo
from dbfleet.db.catalog import ProjectCatalog
from dbfleet.db.vault import CredentialVault
from dbfleet.models.project import ProjectConfig, container_name_for


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "data_dir": tmp_path / "data",
        "backups_dir": tmp_path / "backups",
        "bootstrap_attempts": 3,
        "bootstrap_delay_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeRuntime:
    """In-memory stand-in for ``RuntimeAdapter`` used by orchestrator tests."""

    def __init__(self, settings: Settings, *, exec_failures: int = 0) -> None:
        self._settings = settings
        self.running: dict[str, bool] = {}
        self.used_ports: set[int] = set()
        self.calls: list[str] = []
        self.exec_failures = exec_failures
        self.exec_commands: list[list[str]] = []
        self.fail: dict[str, Exception] = {}
        self.exec_error: Exception | None = None
        self.pinged = True

    def _maybe_fail(self, action: str) -> None:
        if action in self.fail:
            raise self.fail[action]

    def initialize(self) -> None:
        self.calls.append("initialize")

    def ping(self) -> bool:
        return self.pinged

    def pull_image(self, ref: str | None = None) -> None:
        self.calls.append("pull")
        self._maybe_fail("pull")

    def reserve_port(self) -> int:
        port = self._settings.base_port
        while port in self.used_ports:
            port += 1
        self.used_ports.add(port)
        return port

    def create_container(self, project_id: str, slug: str, config: ProjectConfig) -> ContainerHandle:
        self.calls.append(f"create:{slug}")
        self._maybe_fail("create")
        port = self.reserve_port()
        data_path = self._settings.project_data_path(project_id)
        for subdir in DATA_MOUNTS:
            (data_path / subdir).mkdir(parents=True, exist_ok=True)
        name = container_name_for(slug)
        self.running[name] = False
        return ContainerHandle(container_id=f"cid-{slug}", container_name=name, port=port)

    def start_container(self, name: str) -> None:
        self.calls.append(f"start:{name}")
        self._maybe_fail("start")
        self._require(name)
        self.running[name] = True

    def stop_container(self, name: str, timeout: int = 10) -> None:
        self.calls.append(f"stop:{name}")
        self._maybe_fail("stop")
        self._require(name)
        self.running[name] = False

    def restart_container(self, name: str) -> None:
        self.calls.append(f"restart:{name}")
        self._require(name)
        self.running[name] = True

    def remove_container(self, name: str) -> None:
        self.calls.append(f"remove:{name}")
        self._maybe_fail("remove")
        self._require(name)
        del self.running[name]

    def get_container_info(self, name: str) -> RuntimeContainerInfo | None:
        self._maybe_fail("inspect")
        if name not in self.running:
            return None
        running = self.running[name]
        return RuntimeContainerInfo(
            id=f"cid-{name}",
            name=name,
            status="running" if running else "exited",
            running=running,
        )

    def get_container_logs(self, name: str, tail: int = 100) -> str:
        self._require(name)
        return f"{name} tail={tail}\n"

    def exec_in_container(self, name: str, command: Sequence[str]) -> str:
        self.exec_commands.append(list(command))
        if self.exec_error is not None:
            raise self.exec_error
        if self.exec_failures > 0:
            self.exec_failures -= 1
            raise ExecFailed("service not ready", exit_code=1)
        return "ok"

    def kill(self, name: str) -> None:
        """Remove a container behind the orchestrator's back."""
        self.running.pop(name, None)

    def _require(self, name: str) -> None:
        if name not in self.running:
            raise NotFoundError(f"Container not found: {name}")

    def count(self, prefix: str) -> int:
        return sum(1 for call in self.calls if call.startswith(prefix))


def build_manager(
    tmp_path: Path,
    *,
    runtime: FakeRuntime | None = None,
    sleep: RecordingSleep | None = None,
    **settings_overrides: Any,
) -> tuple[ProjectManager, FakeRuntime]:
    settings = make_settings(tmp_path, **settings_overrides)
    runtime = runtime or FakeRuntime(settings)
    manager = ProjectManager(
        settings,
        runtime,  # type: ignore[arg-type]
        ProjectCatalog(settings),
        CredentialVault(settings),
        bootstrap_policy=RetryPolicy(
            max_attempts=settings.bootstrap_attempts,
            delay_seconds=settings.bootstrap_delay_seconds,
            sleep=sleep or RecordingSleep(),
        ),
        password_factory=lambda: "s3cret-password",
    )
    return manager, runtime


# Docker SDK doubles for RuntimeAdapter tests.


@dataclass
class ExecResult:
    exit_code: int
    output: bytes


@dataclass
class FakeContainer:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    status: str = "created"
    host_ports: list[int] = field(default_factory=list)
    exec_result: ExecResult = field(default_factory=lambda: ExecResult(0, b"done"))
    stop_error: Exception | None = None
    remove_error: Exception | None = None
    exec_error: Exception | None = None
    create_kwargs: dict[str, Any] = field(default_factory=dict)
    removed: bool = False

    @property
    def id(self) -> str:
        return f"id-{self.name}"

    @property
    def attrs(self) -> dict[str, Any]:
        bindings = [{"HostIp": "0.0.0.0", "HostPort": str(port)} for port in self.host_ports]
        return {
            "Created": "2026-01-01T10:00:00.123456789Z",
            "State": {
                "Status": self.status,
                "Running": self.status == "running",
                "StartedAt": "2026-01-01T10:00:05.5Z",
            },
            "NetworkSettings": {"Ports": {"8080/tcp": bindings} if self.status == "running" else {}},
            "HostConfig": {"PortBindings": {"8080/tcp": bindings}},
            "Config": {"Labels": self.labels},
        }

    def reload(self) -> None:
        return None

    def start(self) -> None:
        self.status = "running"

    def stop(self, timeout: int = 10) -> None:
        if self.stop_error is not None:
            raise self.stop_error
        self.status = "exited"

    def restart(self) -> None:
        self.status = "running"

    def remove(self, force: bool = False, v: bool = False) -> None:
        if self.remove_error is not None:
            raise self.remove_error
        self.removed = True

    def stats(self, stream: bool = False) -> dict[str, Any]:
        return {
            "memory_stats": {"usage": 4096},
            "cpu_stats": {"cpu_usage": {"total_usage": 300}, "system_cpu_usage": 2000, "online_cpus": 2},
            "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
        }

    def logs(self, **kwargs: Any) -> bytes:
        return f"logs tail={kwargs.get('tail')}".encode()

    def exec_run(self, cmd: list[str], stdout: bool = True, stderr: bool = True) -> ExecResult:
        if self.exec_error is not None:
            raise self.exec_error
        return self.exec_result


class FakeContainers:
    def __init__(self) -> None:
        self.items: dict[str, FakeContainer] = {}
        self.create_error: Exception | None = None

    def add(self, container: FakeContainer) -> FakeContainer:
        self.items[container.name] = container
        return container

    def list(self, all: bool = False, filters: dict[str, str] | None = None) -> list[FakeContainer]:
        label = (filters or {}).get("label")
        if label is None:
            return list(self.items.values())
        key, _, value = label.partition("=")
        return [c for c in self.items.values() if c.labels.get(key) == value]

    def get(self, name: str) -> FakeContainer:
        if name not in self.items:
            raise NotFound(f"No such container: {name}")
        return self.items[name]

    def create(self, **kwargs: Any) -> FakeContainer:
        if self.create_error is not None:
            raise self.create_error
        ports = [int(port) for port in kwargs.get("ports", {}).values()]
        return self.add(
            FakeContainer(
                name=kwargs["name"],
                labels=kwargs.get("labels", {}),
                host_ports=ports,
                create_kwargs=kwargs,
            )
        )


@dataclass
class FakeNetwork:
    name: str


class FakeNetworks:
    def __init__(self) -> None:
        self.items: list[FakeNetwork] = []
        self.created: list[dict[str, Any]] = []

    def list(self, names: list[str] | None = None) -> list[FakeNetwork]:
        return [n for n in self.items if names is None or n.name in names]

    def create(self, name: str, **kwargs: Any) -> FakeNetwork:
        self.created.append({"name": name, **kwargs})
        network = FakeNetwork(name=name)
        self.items.append(network)
        return network


class FakeLowLevelAPI:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = [{"status": "Downloading"}, {"status": "Pull complete"}]
        self.error: Exception | None = None
        self.pulled: list[tuple[str, str]] = []

    def pull(self, repository: str, tag: str | None = None, stream: bool = False, decode: bool = False):
        if self.error is not None:
            raise self.error
        self.pulled.append((repository, tag or ""))
        return iter(self.events)


class FakeDockerClient:
    def __init__(self) -> None:
        self.containers = FakeContainers()
        self.networks = FakeNetworks()
        self.api = FakeLowLevelAPI()
        self.reachable = True

    def ping(self) -> bool:
        if not self.reachable:
            raise APIError("daemon unreachable")
        return True

