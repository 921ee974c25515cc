from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from mlxctl.errors import MlxError
from mlxctl.model.handle import ContainerHandle, ImageHandle, RunSpec
from mlxctl.model.job import Job
from mlxctl.model.node import Node
from mlxctl.model.resources import Capacity
from mlxctl.runtime.base import REPLICA_LABEL, ContainerRuntime


@dataclass
class Artifact:
    """Where a job's code ended up on the node."""
    code_dir: Optional[str] = None
    context_dir: Optional[str] = None
    git_url: Optional[str] = None
    git_ref: Optional[str] = None


def container_name(job: Job, replica: int = 0) -> str:
    name = f"mlx-{job.job_id[:8]}-{job.attempts}"
    return f"{name}-r{replica}" if replica else name


def image_ref(job: Job) -> str:
    if job.spec.image:
        return job.spec.image
    return f"localhost/mlx-{job.job_id[:8]}:{job.attempts}"


def build_run_spec(job: Job, artifact: Artifact, replica: int = 0) -> RunSpec:
    spec = job.spec
    env = dict(spec.env)
    env.update({
        "MLX_JOB_ID": job.job_id,
        "MLX_JOB_KIND": spec.kind.value,
        "MLX_ATTEMPT": str(job.attempts),
        "MLX_REPLICA": str(replica),
    })
    return RunSpec(
        job_id=job.job_id,
        name=container_name(job, replica),
        command=list(spec.entrypoint),
        env=env,
        cpu=spec.resources.cpu_cores,
        memory=spec.resources.memory_bytes,
        gpu=spec.resources.gpu,
        port=spec.port,
        host_port=spec.port + replica if spec.port else None,
        replica=replica,
        code_dir=artifact.code_dir,
        git_url=artifact.git_url,
        git_ref=artifact.git_ref,
        labels={"mlx.kind": spec.kind.value, REPLICA_LABEL: str(replica)},
    )


class NodeConnector(ABC):
    def __init__(self, node: Node):
        self.node = node
        self._runtime: Optional[ContainerRuntime] = None

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def runtime(self) -> ContainerRuntime:
        if self._runtime is None:
            self._runtime = self._build_runtime()
        return self._runtime

    @abstractmethod
    def _build_runtime(self) -> ContainerRuntime:
        pass

    @abstractmethod
    def _open(self):
        pass

    @abstractmethod
    def _push_artifact(self, job: Job) -> Artifact:
        pass

    def _close(self):
        pass

    def open(self) -> "NodeConnector":
        self._open()
        return self

    def close(self):
        self._close()

    def __enter__(self) -> "NodeConnector":
        return self.open()

    def __exit__(self, *exc):
        self.close()

    def heartbeat(self) -> Capacity:
        capacity = self.runtime.capacity()
        logger.debug(f"[{self.name}] 💓 cpu={capacity.cpu:g} memory={capacity.memory} gpu={capacity.gpu} running={capacity.running}")
        return capacity

    def _locate_artifact(self, job: Job) -> Artifact:
        """Where ``_push_artifact`` put the job's code, without transferring it again."""
        return self._push_artifact(job)

    def deploy(self, job: Job, replica: int = 0) -> ContainerHandle:
        """
        Start replica ``replica`` of ``job``. Replica 0 ships the code and
        builds or pulls the image; further replicas reuse both.
        """
        logger.info(f"[{self.name}] 📦 Deploying job {job.job_id} (attempt {job.attempts}, replica {replica})")
        try:
            if replica == 0:
                artifact = self._push_artifact(job)
                image = self.runtime.build_or_pull(image_ref(job), artifact.context_dir)
            else:
                artifact = self._locate_artifact(job)
                image = ImageHandle(ref=image_ref(job), backend=self.runtime.backend)
            return self.runtime.start(image, build_run_spec(job, artifact, replica))
        except MlxError as e:
            logger.error(f"[{self.name}] ✗ Deploy of job {job.job_id} failed: {e}")
            raise
