from typing import Any, Dict, List, Optional

import requests
from loguru import logger

from mlxctl.errors import (
    AuthFailed,
    BackendUnreachable,
    DeployFailed,
    ImagePullFailed,
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
from mlxctl.model.resources import Capacity, parse_cpu, parse_memory
from mlxctl.runtime.base import JOB_LABEL, REPLICA_LABEL, ContainerRuntime, LineStream

CODE_MOUNT = "/workspace"
_PULL_REASONS = {"ErrImagePull", "ImagePullBackOff", "InvalidImageName", "ErrImageNeverPull"}

_PHASE_MAP = {
    "Pending": ContainerStatus.CREATED,
    "Running": ContainerStatus.RUNNING,
    "Succeeded": ContainerStatus.EXITED,
    "Failed": ContainerStatus.EXITED,
}


class KubernetesRuntime(ContainerRuntime):
    """Pods through the Kubernetes API server. ``session`` carries auth and TLS settings."""

    backend = BackendKind.KUBERNETES

    def __init__(
        self,
        session: requests.Session,
        api_url: str,
        node_name: str,
        namespace: str = "default",
        gpu_resource: str = "nvidia.com/gpu",
        git_image: str = "alpine/git:latest",
        timeout: float = 30.0,
    ):
        super().__init__(node_name)
        self.session = session
        self.api_url = api_url.rstrip("/")
        self.namespace = namespace
        self.gpu_resource = gpu_resource
        self.git_image = git_image
        self.timeout = timeout

    @property
    def _pods_path(self) -> str:
        return f"/api/v1/namespaces/{self.namespace}/pods"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, f"{self.api_url}{path}", **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise BackendUnreachable(f"[{self.node_name}] API server unreachable: {e}")
        if response.status_code in (401, 403) and "exceeded quota" not in response.text:
            raise AuthFailed(f"[{self.node_name}] API server rejected credentials ({response.status_code})")
        if response.status_code >= 500:
            raise BackendUnreachable(f"[{self.node_name}] API server error {response.status_code}: {response.text[:200]}")
        return response

    def _ensure_ok(self, response: requests.Response):
        if not response.ok:
            raise BackendUnreachable(f"[{self.node_name}] API request failed ({response.status_code}): {response.text[:200]}")

    def _build_or_pull(self, image_ref: str, context_dir: Optional[str]) -> ImageHandle:
        if context_dir:
            raise DeployFailed(f"[{self.node_name}] kubernetes nodes cannot build images", retryable=False)
        # the kubelet pulls; pull errors surface through inspect
        return ImageHandle(ref=image_ref, backend=self.backend)

    def _find_live(self, job_id: str, replica: int) -> Optional[ContainerHandle]:
        response = self._request("GET", self._pods_path, params={"labelSelector": f"{JOB_LABEL}={job_id}"})
        self._ensure_ok(response)
        for pod in response.json().get("items", []):
            if pod["metadata"].get("deletionTimestamp"):
                continue
            if (pod["metadata"].get("labels") or {}).get(REPLICA_LABEL, "0") != str(replica):
                continue
            phase = pod.get("status", {}).get("phase")
            if phase in ("Pending", "Running"):
                return self._handle(pod["metadata"]["name"], job_id, _PHASE_MAP[phase], replica)
        return None

    def pod_manifest(self, image: ImageHandle, run: RunSpec) -> Dict[str, Any]:
        resources: Dict[str, Dict[str, str]] = {"requests": {}, "limits": {}}
        if run.cpu:
            resources["requests"]["cpu"] = f"{run.cpu:g}"
            resources["limits"]["cpu"] = f"{run.cpu:g}"
        if run.memory:
            resources["requests"]["memory"] = str(run.memory)
            resources["limits"]["memory"] = str(run.memory)
        if run.gpu:
            resources["limits"][self.gpu_resource] = str(run.gpu)

        container: Dict[str, Any] = {
            "name": "main",
            "image": image.ref,
            "command": list(run.command),
            "env": [{"name": k, "value": v} for k, v in run.env.items()],
            "resources": resources,
        }
        if run.port:
            container["ports"] = [{"containerPort": run.port}]

        spec: Dict[str, Any] = {"restartPolicy": "Never", "containers": [container]}
        if run.git_url:
            spec["volumes"] = [{"name": "code", "emptyDir": {}}]
            spec["initContainers"] = [{
                "name": "fetch-code",
                "image": self.git_image,
                "command": ["sh", "-c", f'git clone "$GIT_URL" {CODE_MOUNT} && cd {CODE_MOUNT} && git checkout "$GIT_REF"'],
                "env": [{"name": "GIT_URL", "value": run.git_url}, {"name": "GIT_REF", "value": run.git_ref or "main"}],
                "volumeMounts": [{"name": "code", "mountPath": CODE_MOUNT}],
            }]
            container["volumeMounts"] = [{"name": "code", "mountPath": CODE_MOUNT}]
        workdir = run.workdir or (CODE_MOUNT if run.git_url else None)
        if workdir:
            container["workingDir"] = workdir

        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {"name": run.name, "labels": {JOB_LABEL: run.job_id, **run.labels}},
            "spec": spec,
        }

    def _start(self, image: ImageHandle, run: RunSpec) -> ContainerHandle:
        response = self._request("POST", self._pods_path, json=self.pod_manifest(image, run))
        if response.status_code == 409:
            logger.warning(f"[{self.node_name}] Pod {run.name} already exists, adopting it")
            return self._handle(run.name, run.job_id, ContainerStatus.UNKNOWN, run.replica)
        if response.status_code == 403:
            raise ResourceUnavailable(f"[{self.node_name}] {response.json().get('message', response.text)}")
        if response.status_code == 422:
            raise DeployFailed(f"[{self.node_name}] pod rejected: {response.json().get('message', response.text)}", retryable=False)
        if not response.ok:
            raise DeployFailed(f"[{self.node_name}] pod creation failed ({response.status_code}): {response.text[:200]}")
        return self._handle(response.json()["metadata"]["name"], run.job_id, replica=run.replica)

    def _inspect(self, handle: ContainerHandle) -> ContainerObservation:
        response = self._request("GET", f"{self._pods_path}/{handle.container_id}")
        if response.status_code == 404:
            return ContainerObservation(ContainerStatus.UNKNOWN, reason="pod not found")
        self._ensure_ok(response)
        status = response.json().get("status", {})
        phase = status.get("phase", "Unknown")

        container_statuses: List[Dict[str, Any]] = status.get("containerStatuses") or []
        main = next((c for c in container_statuses if c.get("name") == "main"), None)
        main_state = (main or {}).get("state", {})

        if phase == "Pending":
            for entry in (status.get("initContainerStatuses") or []) + container_statuses:
                reason = entry.get("state", {}).get("waiting", {}).get("reason")
                if reason in _PULL_REASONS:
                    raise ImagePullFailed(f"[{self.node_name}] {reason}: {entry['state']['waiting'].get('message', '')}")
            for condition in status.get("conditions") or []:
                if condition.get("type") == "PodScheduled" and condition.get("reason") == "Unschedulable":
                    raise ResourceUnavailable(f"[{self.node_name}] {condition.get('message', 'pod unschedulable')}")

        observed = _PHASE_MAP.get(phase, ContainerStatus.UNKNOWN)
        if observed != ContainerStatus.EXITED:
            return ContainerObservation(observed)
        terminated = main_state.get("terminated", {})
        exit_code = terminated.get("exitCode", 0 if phase == "Succeeded" else 1)
        return ContainerObservation(observed, exit_code=exit_code, reason=terminated.get("reason"))

    def _stop(self, handle: ContainerHandle, grace_period: int):
        response = self._request(
            "DELETE",
            f"{self._pods_path}/{handle.container_id}",
            params={"gracePeriodSeconds": grace_period},
        )
        if response.status_code not in (200, 202, 404):
            raise BackendUnreachable(f"[{self.node_name}] pod delete failed ({response.status_code})")

    def _logs(self, handle: ContainerHandle, follow: bool) -> LineStream:
        response = self._request(
            "GET",
            f"{self._pods_path}/{handle.container_id}/log",
            params={"container": "main", "follow": str(follow).lower()},
            stream=True,
            timeout=None if follow else self.timeout,
        )
        self._ensure_ok(response)
        return LineStream(response.iter_lines(decode_unicode=True), cancel=response.close)

    def _capacity(self) -> Capacity:
        response = self._request("GET", "/api/v1/nodes")
        self._ensure_ok(response)
        # a pod must fit on a single cluster node, so report the largest one
        capacity = Capacity()
        for item in response.json().get("items", []):
            conditions = item.get("status", {}).get("conditions") or []
            if not any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions):
                continue
            allocatable = item.get("status", {}).get("allocatable", {})
            capacity.cpu = max(capacity.cpu, parse_cpu(allocatable.get("cpu", "0")))
            capacity.memory = max(capacity.memory, parse_memory(allocatable.get("memory", "0")))
            capacity.gpu = max(capacity.gpu, int(allocatable.get(self.gpu_resource, 0)))

        running = self._request(
            "GET",
            self._pods_path,
            params={"labelSelector": JOB_LABEL, "fieldSelector": "status.phase=Running"},
        )
        self._ensure_ok(running)
        capacity.running = len(running.json().get("items", []))
        return capacity
