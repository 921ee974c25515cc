from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class BackendKind(str, Enum):
    PODMAN = "podman"
    KUBERNETES = "kubernetes"


class ContainerStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    UNKNOWN = "unknown"


@dataclass
class ImageHandle:
    ref: str
    backend: BackendKind


@dataclass
class RunSpec:
    """What to start: everything a backend needs besides the image."""
    job_id: str
    name: str
    command: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    cpu: float = 0.0
    memory: int = 0
    gpu: int = 0
    port: Optional[int] = None
    # published port on the node, one per replica
    host_port: Optional[int] = None
    replica: int = 0
    workdir: Optional[str] = None
    code_dir: Optional[str] = None
    git_url: Optional[str] = None
    git_ref: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerObservation:
    status: ContainerStatus
    exit_code: Optional[int] = None
    reason: Optional[str] = None

    @property
    def exited(self) -> bool:
        return self.status == ContainerStatus.EXITED


@dataclass
class ContainerHandle:
    backend: BackendKind
    container_id: str
    job_id: str
    node: str
    status: ContainerStatus = ContainerStatus.CREATED
    exit_code: Optional[int] = None
    replica: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend": self.backend.value,
            "container_id": self.container_id,
            "job_id": self.job_id,
            "node": self.node,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "replica": self.replica,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContainerHandle":
        return cls(
            backend=BackendKind(data["backend"]),
            container_id=data["container_id"],
            job_id=data["job_id"],
            node=data["node"],
            status=ContainerStatus(data.get("status", ContainerStatus.UNKNOWN.value)),
            exit_code=data.get("exit_code"),
            replica=data.get("replica", 0),
        )
