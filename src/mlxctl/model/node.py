from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple

from mlxctl.config import NodeConfig, node_config_from_dict, node_config_to_dict
from mlxctl.model.handle import BackendKind
from mlxctl.model.job import Job
from mlxctl.model.resources import Capacity, parse_cpu, parse_memory

# What each backend can do with a job's image and code source
BACKEND_CAPABILITIES: Dict[BackendKind, FrozenSet[str]] = {
    BackendKind.PODMAN: frozenset({"image", "build", "code:git", "code:path", "gpu"}),
    BackendKind.KUBERNETES: frozenset({"image", "code:git", "gpu"}),
}


def job_requirements(job: Job) -> FrozenSet[str]:
    spec = job.spec
    needs = {"build" if spec.build_context else "image"}
    if spec.code is not None:
        needs.add("code:git" if spec.code.is_git else "code:path")
    if spec.resources.gpu > 0:
        needs.add("gpu")
    return frozenset(needs)


@dataclass
class NodeHealth:
    last_heartbeat: Optional[datetime] = None
    observed: Optional[Capacity] = None
    failures: int = 0
    unreachable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "observed": self.observed.to_dict() if self.observed else None,
            "failures": self.failures,
            "unreachable": self.unreachable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeHealth":
        return cls(
            last_heartbeat=datetime.fromisoformat(data["last_heartbeat"]) if data.get("last_heartbeat") else None,
            observed=Capacity.from_dict(data["observed"]) if data.get("observed") else None,
            failures=data.get("failures", 0),
            unreachable=data.get("unreachable", False),
        )


@dataclass
class Node:
    config: NodeConfig
    health: NodeHealth = field(default_factory=NodeHealth)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def backend(self) -> BackendKind:
        return BackendKind(self.config.backend)

    @property
    def labels(self) -> Dict[str, str]:
        return getattr(self.config, "labels", {}) or {}

    @property
    def capabilities(self) -> FrozenSet[str]:
        return BACKEND_CAPABILITIES[self.backend]

    @property
    def capacity(self) -> Optional[Capacity]:
        """Observed capacity, clamped by what was declared at registration."""
        observed = self.health.observed
        if observed is None:
            return None
        declared_cpu = getattr(self.config, "cpu", None)
        declared_memory = getattr(self.config, "memory", None)
        declared_gpu = getattr(self.config, "gpu", None)
        return Capacity(
            cpu=min(observed.cpu, parse_cpu(declared_cpu)) if declared_cpu else observed.cpu,
            memory=min(observed.memory, parse_memory(declared_memory)) if declared_memory else observed.memory,
            gpu=min(observed.gpu, declared_gpu) if declared_gpu is not None else observed.gpu,
            running=observed.running,
        )

    def is_fresh(self, now: datetime, threshold: float) -> bool:
        if self.health.last_heartbeat is None:
            return False
        return (now - self.health.last_heartbeat).total_seconds() <= threshold

    def eligibility(self, job: Job, now: datetime, threshold: float) -> Tuple[bool, str]:
        if self.health.unreachable:
            return False, "unreachable"
        if not self.is_fresh(now, threshold):
            return False, "stale heartbeat"
        if job.spec.node and job.spec.node != self.name:
            return False, "not the target node"
        for key, value in job.spec.node_selector.items():
            if self.labels.get(key) != value:
                return False, f"label {key}={value} missing"
        missing = job_requirements(job) - self.capabilities
        if missing:
            return False, f"backend {self.backend.value} lacks {', '.join(sorted(missing))}"
        capacity = self.capacity
        if capacity is None or not capacity.fits(job.spec.resources):
            return False, "insufficient capacity"
        return True, "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {"config": node_config_to_dict(self.config), "health": self.health.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            config=node_config_from_dict(data["config"]),
            health=NodeHealth.from_dict(data.get("health") or {}),
        )
