from datetime import timedelta
from typing import Dict, Optional

import fakeredis
import pytest

from mlxctl.config import MlxConfig, OrchestratorConfig, PodmanNodeConfig
from mlxctl.connector.base import Artifact, NodeConnector
from mlxctl.errors import utcnow
from mlxctl.model.handle import BackendKind, ContainerObservation, ContainerStatus, ImageHandle
from mlxctl.model.job import JobSpec
from mlxctl.model.resources import Capacity, parse_memory
from mlxctl.runtime.base import ContainerRuntime, LineStream
from mlxctl.store import StateStore


class FakeRuntime(ContainerRuntime):
    """In-memory containers. Each one exits after ``polls_before_exit`` inspections unless ``hold`` is set."""

    backend = BackendKind.PODMAN

    def __init__(self, node_name: str):
        super().__init__(node_name)
        self.containers: Dict[str, dict] = {}
        self.start_errors = []
        self.inspect_errors = []
        self.exit_codes = []
        self.polls_before_exit = 1
        self.hold = False
        self.started = 0
        self.stopped = []
        self.capacity_value = Capacity(cpu=8.0, memory=parse_memory("32Gi"), gpu=1)
        self.capacity_error: Optional[Exception] = None

    def _build_or_pull(self, image_ref, context_dir):
        return ImageHandle(ref=image_ref, backend=self.backend)

    def _find_live(self, job_id, replica):
        for container_id, container in self.containers.items():
            if container["job_id"] != job_id or container["run"].replica != replica:
                continue
            if container["status"] in (ContainerStatus.CREATED, ContainerStatus.RUNNING):
                return self._handle(container_id, job_id, container["status"], replica)
        return None

    def _start(self, image, run):
        if self.start_errors:
            raise self.start_errors.pop(0)
        self.started += 1
        container_id = f"{self.node_name}-c{self.started}"
        self.containers[container_id] = {
            "job_id": run.job_id,
            "run": run,
            "status": ContainerStatus.RUNNING,
            "exit_code": self.exit_codes.pop(0) if self.exit_codes else 0,
            "polls": 0,
        }
        return self._handle(container_id, run.job_id, ContainerStatus.RUNNING, run.replica)

    def _inspect(self, handle):
        if self.inspect_errors:
            error = self.inspect_errors[0]
            if len(self.inspect_errors) > 1:
                self.inspect_errors.pop(0)
            raise error
        container = self.containers.get(handle.container_id)
        if container is None:
            return ContainerObservation(ContainerStatus.UNKNOWN, reason="container not found")
        container["polls"] += 1
        if container["status"] == ContainerStatus.RUNNING and not self.hold and container["polls"] >= self.polls_before_exit:
            container["status"] = ContainerStatus.EXITED
        if container["status"] == ContainerStatus.EXITED:
            return ContainerObservation(ContainerStatus.EXITED, exit_code=container["exit_code"])
        return ContainerObservation(container["status"])

    def _stop(self, handle, grace_period):
        self.stopped.append((handle.container_id, grace_period))
        container = self.containers.get(handle.container_id)
        if container is not None and container["status"] == ContainerStatus.RUNNING:
            container["status"] = ContainerStatus.EXITED
            container["exit_code"] = 137

    def _logs(self, handle, follow):
        return LineStream([f"{handle.container_id} line {i}\n" for i in range(3)])

    def _capacity(self):
        if self.capacity_error is not None:
            raise self.capacity_error
        return self.capacity_value


class FakeConnector(NodeConnector):
    def __init__(self, node, runtime: FakeRuntime):
        super().__init__(node)
        self._runtime = runtime
        self.opened = 0
        self.closed = 0

    def _build_runtime(self):
        return self._runtime

    def _open(self):
        self.opened += 1

    def _close(self):
        self.closed += 1

    def _push_artifact(self, job):
        return Artifact()


class FakeCluster:
    """Registered nodes backed by fake runtimes; ``connect`` stands in for ``mlxctl.connector.connect``."""

    def __init__(self, store: StateStore):
        self.store = store
        self.runtimes: Dict[str, FakeRuntime] = {}

    def add_node(self, name: str, labels=None, heartbeat_age: float = 0.0, **declared) -> FakeRuntime:
        config = PodmanNodeConfig(name=name, backend="podman", transport="local", labels=labels or {}, **declared)
        self.store.register_node(config)
        runtime = FakeRuntime(name)
        self.runtimes[name] = runtime
        self.store.record_heartbeat(name, runtime.capacity_value, at=utcnow() - timedelta(seconds=heartbeat_age))
        return runtime

    def connect(self, node):
        return FakeConnector(node, self.runtimes[node.name]).open()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def store_factory(redis_server):
    return lambda: StateStore(fakeredis.FakeRedis(server=redis_server, decode_responses=True), namespace="test", reclaim_grace=0.0)


@pytest.fixture
def store(store_factory):
    return store_factory()


@pytest.fixture
def config():
    return MlxConfig(
        orchestrator=OrchestratorConfig(
            max_retries=3,
            lease_seconds=5.0,
            dequeue_timeout=1,
            poll_interval=0.01,
            heartbeat_interval=0.05,
            heartbeat_threshold=60.0,
            unreachable_after=2,
            backoff_base=0.0,
            backoff_max=0.0,
            placement_retry_delay=0.0,
            stop_grace_period=1,
            unknown_timeout=0.0,
        ),
        node_config_list=[],
    )


@pytest.fixture
def cluster(store):
    return FakeCluster(store)


def make_spec(**overrides) -> JobSpec:
    data = {
        "name": "resnet",
        "kind": "train",
        "image": "docker.io/pytorch/pytorch:2.3.0-cuda12.1-cudnn8-runtime",
        "entrypoint": ["python", "train.py", "--epochs", "3"],
        "resources": {"cpu": "2", "memory": "4Gi", "gpu": 0},
    }
    data.update(overrides)
    return JobSpec.from_dict(data)


@pytest.fixture
def spec_factory():
    return make_spec
