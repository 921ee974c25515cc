"""
Job model and lifecycle state machine.

    pending -> placed -> dispatching -> running -> succeeded
                  \\           \\           \\-> failed
                   \\-> failed  \\-> failed  \\-> cancelling -> cancelled
    failed -> pending        (retry, while retries remain and the error is retryable)
    pending -> cancelled     (cancel before dispatch)

``create`` and ``transition`` are pure: persisting the result is the state
store's job.
"""

import re
import shlex
import uuid
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dacite import Config, DaciteError, from_dict

from mlxctl.config import ResourceLimits
from mlxctl.errors import ErrorInfo, IllegalTransition, InvalidSpec, utcnow
from mlxctl.model.handle import ContainerHandle
from mlxctl.model.resources import ResourceRequest, parse_cpu, parse_memory

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class JobKind(str, Enum):
    TRAIN = "train"
    DATA = "data"
    SERVE = "serve"


class JobState(str, Enum):
    PENDING = "pending"
    PLACED = "placed"
    DISPATCHING = "dispatching"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"


class JobEvent(str, Enum):
    PLACE = "place"
    DISPATCH = "dispatch"
    START = "start"
    SUCCEED = "succeed"
    FAIL = "fail"
    RETRY = "retry"
    CANCEL = "cancel"
    CONFIRM_CANCEL = "confirm_cancel"


TRANSITIONS: Dict[tuple, JobState] = {
    (JobState.PENDING, JobEvent.PLACE): JobState.PLACED,
    (JobState.PENDING, JobEvent.CANCEL): JobState.CANCELLED,
    (JobState.PLACED, JobEvent.DISPATCH): JobState.DISPATCHING,
    (JobState.PLACED, JobEvent.FAIL): JobState.FAILED,
    (JobState.DISPATCHING, JobEvent.START): JobState.RUNNING,
    (JobState.DISPATCHING, JobEvent.FAIL): JobState.FAILED,
    (JobState.RUNNING, JobEvent.SUCCEED): JobState.SUCCEEDED,
    (JobState.RUNNING, JobEvent.FAIL): JobState.FAILED,
    (JobState.RUNNING, JobEvent.CANCEL): JobState.CANCELLING,
    (JobState.CANCELLING, JobEvent.CONFIRM_CANCEL): JobState.CANCELLED,
    (JobState.FAILED, JobEvent.RETRY): JobState.PENDING,
}

_SPEC_DACITE = Config(cast=[JobKind])


@dataclass
class CodeSource:
    git_url: Optional[str] = None
    git_ref: str = "main"
    path: Optional[str] = None

    @property
    def is_git(self) -> bool:
        return bool(self.git_url)


@dataclass
class JobSpec:
    name: str
    kind: JobKind
    entrypoint: List[str]
    image: Optional[str] = None
    build_context: Optional[str] = None
    resources: ResourceRequest = field(default_factory=ResourceRequest)
    env: Dict[str, str] = field(default_factory=dict)
    node: Optional[str] = None
    node_selector: Dict[str, str] = field(default_factory=dict)
    code: Optional[CodeSource] = None
    port: Optional[int] = None
    max_retries: Optional[int] = None
    # serve jobs only: identical containers on the job's node
    replicas: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobSpec":
        """Build a spec from parsed YAML/JSON. Malformed documents raise ``InvalidSpec``."""
        try:
            data = dict(data)
            if isinstance(data.get("entrypoint"), str):
                data["entrypoint"] = shlex.split(data["entrypoint"])
            elif data.get("entrypoint"):
                data["entrypoint"] = [str(part) for part in data["entrypoint"]]
            if data.get("env"):
                data["env"] = {str(k): str(v) for k, v in data["env"].items()}
            if data.get("resources"):
                # YAML reads `cpu: 2` as an int
                resources = dict(data["resources"])
                for key in ("cpu", "memory"):
                    if key in resources:
                        resources[key] = str(resources[key])
                data["resources"] = resources
            return from_dict(data_class=cls, data=data, config=_SPEC_DACITE)
        except (DaciteError, ValueError, TypeError, AttributeError) as e:
            raise InvalidSpec(f"malformed job spec: {e}")

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["kind"] = self.kind.value
        if self.code is None:
            del out["code"]
        return {k: v for k, v in out.items() if v is not None and v != {}}

    @classmethod
    def from_yaml(cls, text: str) -> "JobSpec":
        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise InvalidSpec(f"job spec is not valid YAML: {e}")
        if not isinstance(raw, dict):
            raise InvalidSpec("job spec must be a mapping")
        return cls.from_dict(raw)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)

    @classmethod
    def load(cls, path: str) -> "JobSpec":
        try:
            text = Path(path).read_text()
        except OSError as e:
            raise InvalidSpec(f"cannot read job spec {path}: {e}")
        return cls.from_yaml(text)


@dataclass
class JobStatus:
    job_id: str
    kind: JobKind
    state: JobState
    attempts: int
    max_retries: int
    terminal: bool
    updated_at: datetime
    node: Optional[str] = None
    backend: Optional[str] = None
    container_id: Optional[str] = None
    last_error: Optional[ErrorInfo] = None
    replicas: int = 1
    running_replicas: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "terminal": self.terminal,
            "updated_at": self.updated_at.isoformat(),
            "node": self.node,
            "backend": self.backend,
            "container_id": self.container_id,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "replicas": self.replicas,
            "running_replicas": self.running_replicas,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobStatus":
        return cls(
            job_id=data["job_id"],
            kind=JobKind(data["kind"]),
            state=JobState(data["state"]),
            attempts=data["attempts"],
            max_retries=data["max_retries"],
            terminal=data["terminal"],
            updated_at=datetime.fromisoformat(data["updated_at"]),
            node=data.get("node"),
            backend=data.get("backend"),
            container_id=data.get("container_id"),
            last_error=ErrorInfo.from_dict(data["last_error"]) if data.get("last_error") else None,
            replicas=data.get("replicas", 1),
            running_replicas=data.get("running_replicas", 0),
        )


@dataclass
class Job:
    job_id: str
    spec: JobSpec
    max_retries: int
    state: JobState = JobState.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_error: Optional[ErrorInfo] = None
    node: Optional[str] = None
    handle: Optional[ContainerHandle] = None
    # containers of replicas 1..n-1; ``handle`` is replica 0
    replica_handles: List[ContainerHandle] = field(default_factory=list)
    history: List[Dict[str, str]] = field(default_factory=list)

    @property
    def handles(self) -> List[ContainerHandle]:
        return ([self.handle] if self.handle else []) + list(self.replica_handles)

    @property
    def kind(self) -> JobKind:
        return self.spec.kind

    @property
    def can_retry(self) -> bool:
        return (
            self.state == JobState.FAILED
            and self.last_error is not None
            and self.last_error.retryable
            and self.attempts <= self.max_retries
        )

    @property
    def is_terminal(self) -> bool:
        if self.state in (JobState.SUCCEEDED, JobState.CANCELLED):
            return True
        return self.state == JobState.FAILED and not self.can_retry

    def status(self) -> JobStatus:
        return JobStatus(
            job_id=self.job_id,
            kind=self.kind,
            state=self.state,
            attempts=self.attempts,
            max_retries=self.max_retries,
            terminal=self.is_terminal,
            updated_at=self.updated_at,
            node=self.node,
            backend=self.handle.backend.value if self.handle else None,
            container_id=self.handle.container_id if self.handle else None,
            last_error=self.last_error,
            replicas=self.spec.replicas,
            running_replicas=len(self.handles) if self.state == JobState.RUNNING else 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "spec": self.spec.to_dict(),
            "max_retries": self.max_retries,
            "state": self.state.value,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "node": self.node,
            "handle": self.handle.to_dict() if self.handle else None,
            "replica_handles": [h.to_dict() for h in self.replica_handles],
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            job_id=data["job_id"],
            spec=JobSpec.from_dict(data["spec"]),
            max_retries=data["max_retries"],
            state=JobState(data["state"]),
            attempts=data.get("attempts", 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            last_error=ErrorInfo.from_dict(data["last_error"]) if data.get("last_error") else None,
            node=data.get("node"),
            handle=ContainerHandle.from_dict(data["handle"]) if data.get("handle") else None,
            replica_handles=[ContainerHandle.from_dict(h) for h in data.get("replica_handles") or []],
            history=list(data.get("history") or []),
        )


def validate(spec: JobSpec, limits: Optional[ResourceLimits] = None) -> List[str]:
    """Return every problem found in ``spec``; an empty list means valid."""
    limits = limits or ResourceLimits()
    problems = []

    if not spec.name or not spec.name.strip():
        problems.append("name must not be empty")
    if not spec.entrypoint or not any(part.strip() for part in spec.entrypoint):
        problems.append("entrypoint must not be empty")
    if bool(spec.image) == bool(spec.build_context):
        problems.append("exactly one of image or build_context is required")

    try:
        cpu = spec.resources.cpu_cores
        if cpu <= 0:
            problems.append("resources.cpu must be positive")
        elif cpu > parse_cpu(limits.cpu):
            problems.append(f"resources.cpu {spec.resources.cpu} exceeds limit {limits.cpu}")
    except ValueError as e:
        problems.append(str(e))
    try:
        memory = spec.resources.memory_bytes
        if memory <= 0:
            problems.append("resources.memory must be positive")
        elif memory > parse_memory(limits.memory):
            problems.append(f"resources.memory {spec.resources.memory} exceeds limit {limits.memory}")
    except ValueError as e:
        problems.append(str(e))
    if spec.resources.gpu < 0:
        problems.append("resources.gpu must not be negative")
    elif spec.resources.gpu > limits.gpu:
        problems.append(f"resources.gpu {spec.resources.gpu} exceeds limit {limits.gpu}")

    if spec.kind == JobKind.SERVE and spec.port is None:
        problems.append("serve jobs require a port")
    if spec.port is not None and not 1 <= spec.port <= 65535:
        problems.append(f"port {spec.port} out of range")
    if spec.replicas < 1:
        problems.append("replicas must be at least 1")
    elif spec.replicas > 1 and spec.kind != JobKind.SERVE:
        problems.append("only serve jobs can run more than one replica")
    elif spec.replicas > limits.replicas:
        problems.append(f"replicas {spec.replicas} exceeds limit {limits.replicas}")

    for key in spec.env:
        if not _ENV_KEY_RE.match(key):
            problems.append(f"invalid environment variable name: {key!r}")

    if spec.code is not None:
        if bool(spec.code.git_url) == bool(spec.code.path):
            problems.append("code needs exactly one of git_url or path")
    if spec.max_retries is not None and spec.max_retries < 0:
        problems.append("max_retries must not be negative")

    return problems


def create(spec: JobSpec, limits: Optional[ResourceLimits] = None, default_max_retries: int = 3) -> Job:
    problems = validate(spec, limits)
    if problems:
        raise InvalidSpec(problems)

    now = utcnow()
    max_retries = spec.max_retries if spec.max_retries is not None else default_max_retries
    return Job(
        job_id=str(uuid.uuid4()),
        spec=spec,
        max_retries=max_retries,
        created_at=now,
        updated_at=now,
        history=[{"state": JobState.PENDING.value, "at": now.isoformat()}],
    )


def transition(job: Job, event: JobEvent, error: Optional[ErrorInfo] = None, node: Optional[str] = None) -> Job:
    target = TRANSITIONS.get((job.state, event))
    if target is None:
        raise IllegalTransition(f"{event.value} is not valid for job {job.job_id} in state {job.state.value}")
    if event == JobEvent.RETRY and not job.can_retry:
        raise IllegalTransition(
            f"job {job.job_id} cannot retry after {job.attempts} attempt(s) (max_retries={job.max_retries})"
        )

    now = utcnow()
    changes: Dict[str, Any] = {
        "state": target,
        "updated_at": now,
        "history": job.history + [{"state": target.value, "at": now.isoformat(), "event": event.value}],
    }
    if event == JobEvent.PLACE:
        changes["attempts"] = job.attempts + 1
        changes["node"] = node
    elif event == JobEvent.FAIL:
        changes["last_error"] = error or ErrorInfo(kind="Unknown", message="unspecified failure")
    elif event == JobEvent.RETRY:
        changes["node"] = None
        changes["handle"] = None
        changes["replica_handles"] = []
    return replace(job, **changes)
