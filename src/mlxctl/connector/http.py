import os
from typing import Optional

import requests
from loguru import logger

from mlxctl.config import KubernetesNodeConfig
from mlxctl.connector.base import Artifact, NodeConnector
from mlxctl.errors import AuthFailed, ConnectionFailed, DeployFailed
from mlxctl.model.job import Job
from mlxctl.model.node import Node
from mlxctl.runtime.kubernetes import KubernetesRuntime


class HttpConnector(NodeConnector):
    """Kubernetes cluster reached through its API server."""

    def __init__(self, node: Node, session: Optional[requests.Session] = None):
        super().__init__(node)
        self.config: KubernetesNodeConfig = node.config
        self.session = session

    def _session(self) -> requests.Session:
        if self.session is None:
            token = os.environ.get(self.config.token_env)
            if not token:
                raise AuthFailed(f"[{self.name}] credential variable {self.config.token_env} is not set")
            session = requests.Session()
            session.headers.update({"Authorization": f"Bearer {token}", "Accept": "application/json"})
            session.verify = self.config.ca_cert_path or self.config.verify_tls
            self.session = session
        return self.session

    def _build_runtime(self) -> KubernetesRuntime:
        return KubernetesRuntime(
            self._session(),
            self.config.api_url,
            self.name,
            namespace=self.config.k8s_namespace,
            gpu_resource=self.config.gpu_resource,
            git_image=self.config.git_image,
            timeout=self.config.request_timeout,
        )

    def _open(self):
        session = self._session()
        try:
            response = session.get(f"{self.config.api_url.rstrip('/')}/version", timeout=self.config.request_timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ConnectionFailed(f"[{self.name}] cannot reach API server {self.config.api_url}: {e}")
        if response.status_code in (401, 403):
            raise AuthFailed(f"[{self.name}] API server rejected credentials ({response.status_code})")
        if not response.ok:
            raise ConnectionFailed(f"[{self.name}] API server returned {response.status_code}")
        logger.debug(f"[{self.name}] ✓ Connected to Kubernetes {response.json().get('gitVersion', '?')}")

    def _close(self):
        if self.session is not None:
            self.session.close()

    def _push_artifact(self, job: Job) -> Artifact:
        code = job.spec.code
        if code is None:
            return Artifact()
        if not code.is_git:
            raise DeployFailed(f"[{self.name}] kubernetes nodes only accept git code sources", retryable=False)
        # cloned inside the pod by an init container
        return Artifact(git_url=code.git_url, git_ref=code.git_ref)
