import json
import shlex
from typing import List, Optional, Type

from loguru import logger

from mlxctl.errors import (
    BackendUnreachable,
    DeployFailed,
    ImagePullFailed,
    MlxError,
    ResourceUnavailable,
)
from mlxctl.model.handle import (
    BackendKind,
    ContainerHandle,
    ContainerObservation,
    ContainerStatus,
    ImageHandle,
    RunSpec,
)
from mlxctl.model.resources import Capacity
from mlxctl.runtime.base import JOB_LABEL, REPLICA_LABEL, ContainerRuntime, LineStream
from mlxctl.runtime.shell import Shell

CODE_MOUNT = "/workspace"

_UNREACHABLE_MARKERS = (
    "cannot connect to podman",
    "unable to connect to podman",
    "connection refused",
    "command not found",
)
_RESOURCE_MARKERS = (
    "insufficient",
    "cannot allocate memory",
    "no space left on device",
    "unresolvable cdi devices",
    "out of memory",
    "resource temporarily unavailable",
)
_PULL_MARKERS = (
    "image not known",
    "manifest unknown",
    "error pulling image",
    "unable to pull",
    "not found: manifest",
)

_STATE_MAP = {
    "running": ContainerStatus.RUNNING,
    "paused": ContainerStatus.RUNNING,
    "created": ContainerStatus.CREATED,
    "configured": ContainerStatus.CREATED,
    "initialized": ContainerStatus.CREATED,
    "exited": ContainerStatus.EXITED,
    "stopped": ContainerStatus.EXITED,
    "dead": ContainerStatus.EXITED,
}


def classify_podman_error(stderr: str, default: Type[MlxError]) -> MlxError:
    text = stderr.strip()
    lower = text.lower()
    if any(marker in lower for marker in _UNREACHABLE_MARKERS):
        return BackendUnreachable(text)
    if any(marker in lower for marker in _RESOURCE_MARKERS):
        return ResourceUnavailable(text)
    if any(marker in lower for marker in _PULL_MARKERS):
        return ImagePullFailed(text)
    return default(text)


class PodmanRuntime(ContainerRuntime):
    """Rootless Podman driven through the node's shell."""

    backend = BackendKind.PODMAN

    def __init__(self, shell: Shell, node_name: str, podman_bin: str = "podman", gpu_device: str = "nvidia.com/gpu=all"):
        super().__init__(node_name)
        self.shell = shell
        self.podman_bin = podman_bin
        self.gpu_device = gpu_device

    def _podman(self, args: List[str], timeout: Optional[float] = None):
        command = " ".join([self.podman_bin] + [shlex.quote(str(a)) for a in args])
        return self.shell.run(command, timeout=timeout)

    def _build_or_pull(self, image_ref: str, context_dir: Optional[str]) -> ImageHandle:
        if context_dir:
            logger.info(f"[{self.node_name}] 🔨 Building image {image_ref} from {context_dir}")
            result = self._podman(["build", "-t", image_ref, context_dir])
            if not result.ok:
                raise classify_podman_error(result.stderr, DeployFailed)
            return ImageHandle(ref=image_ref, backend=self.backend)

        if self._podman(["image", "exists", image_ref]).ok:
            return ImageHandle(ref=image_ref, backend=self.backend)

        logger.info(f"[{self.node_name}] 📥 Pulling image {image_ref}")
        result = self._podman(["pull", "--quiet", image_ref])
        if not result.ok:
            raise classify_podman_error(result.stderr, ImagePullFailed)
        return ImageHandle(ref=image_ref, backend=self.backend)

    def _list_for_job(self, job_id: str) -> List[dict]:
        result = self._podman(["ps", "-a", "--filter", f"label={JOB_LABEL}={job_id}", "--format", "json"])
        if not result.ok:
            raise classify_podman_error(result.stderr, BackendUnreachable)
        return json.loads(result.stdout or "[]") or []

    def _find_live(self, job_id: str, replica: int) -> Optional[ContainerHandle]:
        for entry in self._list_for_job(job_id):
            if str((entry.get("Labels") or {}).get(REPLICA_LABEL, "0")) != str(replica):
                continue
            status = _STATE_MAP.get(str(entry.get("State", "")).lower(), ContainerStatus.UNKNOWN)
            if status in (ContainerStatus.RUNNING, ContainerStatus.CREATED):
                return self._handle(entry["Id"], job_id, status, replica)
        return None

    def _run_args(self, image: ImageHandle, run: RunSpec) -> List[str]:
        args = ["run", "-d", "--name", run.name, "--label", f"{JOB_LABEL}={run.job_id}"]
        for key, value in run.labels.items():
            args += ["--label", f"{key}={value}"]
        if run.cpu:
            args += ["--cpus", f"{run.cpu:g}"]
        if run.memory:
            args += ["--memory", str(run.memory)]
        if run.gpu:
            args += ["--device", self.gpu_device]
        for key, value in run.env.items():
            args += ["-e", f"{key}={value}"]
        if run.port:
            args += ["-p", f"{run.host_port or run.port}:{run.port}"]
        if run.code_dir:
            args += ["-v", f"{run.code_dir}:{CODE_MOUNT}:Z"]
        workdir = run.workdir or (CODE_MOUNT if run.code_dir else None)
        if workdir:
            args += ["-w", workdir]
        return args + [image.ref] + list(run.command)

    def _start(self, image: ImageHandle, run: RunSpec) -> ContainerHandle:
        result = self._podman(self._run_args(image, run))
        if result.ok:
            return self._handle(result.stdout.strip(), run.job_id, ContainerStatus.RUNNING, run.replica)

        if "already in use" in result.stderr:
            # this attempt's container exists but is no longer live; observe it
            logger.warning(f"[{self.node_name}] Container name {run.name} already taken, adopting it")
            return self._handle(run.name, run.job_id, ContainerStatus.UNKNOWN, run.replica)
        raise classify_podman_error(result.stderr, DeployFailed)

    def _inspect(self, handle: ContainerHandle) -> ContainerObservation:
        result = self._podman(["inspect", "--type", "container", "--format", "json", handle.container_id])
        if not result.ok:
            if "no such" in result.stderr.lower():
                return ContainerObservation(ContainerStatus.UNKNOWN, reason="container not found")
            raise classify_podman_error(result.stderr, BackendUnreachable)

        state = (json.loads(result.stdout)[0] or {}).get("State", {})
        status = _STATE_MAP.get(str(state.get("Status", "")).lower(), ContainerStatus.UNKNOWN)
        reason = "OOMKilled" if state.get("OOMKilled") else state.get("Error") or None
        exit_code = state.get("ExitCode") if status == ContainerStatus.EXITED else None
        return ContainerObservation(status, exit_code=exit_code, reason=reason)

    def _stop(self, handle: ContainerHandle, grace_period: int):
        result = self._podman(["stop", "-t", str(grace_period), handle.container_id], timeout=grace_period + 30)
        if not result.ok and "no such" not in result.stderr.lower():
            raise classify_podman_error(result.stderr, BackendUnreachable)

    def _logs(self, handle: ContainerHandle, follow: bool) -> LineStream:
        args = ["logs"] + (["-f"] if follow else []) + [handle.container_id]
        command = " ".join([self.podman_bin] + [shlex.quote(a) for a in args])
        return self.shell.stream(command)

    def _capacity(self) -> Capacity:
        script = (
            "nproc; "
            "awk '/MemAvailable/ {print $2}' /proc/meminfo; "
            "(nvidia-smi --list-gpus 2>/dev/null || true) | wc -l; "
            f"{self.podman_bin} ps -q --filter label={JOB_LABEL} | wc -l"
        )
        result = self.shell.run(script)
        if not result.ok:
            raise classify_podman_error(result.stderr, BackendUnreachable)
        lines = [line.strip() for line in result.stdout.strip().splitlines()]
        try:
            cpu, mem_kb, gpus, running = (int(v) for v in lines[-4:])
        except ValueError:
            raise BackendUnreachable(f"[{self.node_name}] unexpected capacity output: {result.stdout!r}")
        return Capacity(cpu=float(cpu), memory=mem_kb * 1024, gpu=gpus, running=running)
