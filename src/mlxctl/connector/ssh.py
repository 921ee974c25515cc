import os
import shlex
import tarfile
import tempfile
from pathlib import Path
from typing import Optional

from fabric import Connection
from loguru import logger
from paramiko import RSAKey
from paramiko.ssh_exception import SSHException

from mlxctl.config import PodmanNodeConfig
from mlxctl.connector.base import Artifact, NodeConnector
from mlxctl.errors import AuthFailed, DeployFailed
from mlxctl.model.job import Job
from mlxctl.model.node import Node
from mlxctl.runtime.podman import PodmanRuntime
from mlxctl.runtime.shell import LocalShell, Shell, SSHShell


def build_connection(config: PodmanNodeConfig) -> Connection:
    connect_kwargs = {}
    try:
        connect_kwargs["pkey"] = RSAKey.from_private_key_file(os.path.expanduser(config.private_key_path))
    except (OSError, SSHException) as e:
        raise AuthFailed(f"[{config.name}] cannot load private key {config.private_key_path}: {e}")
    connect_kwargs["look_for_keys"] = False

    # Handle proxy jump via bastion if specified
    if config.proxy_ip and config.proxy_user:
        gateway = Connection(f"{config.proxy_user}@{config.proxy_ip}:{config.proxy_port}")
    else:
        gateway = None

    return Connection(
        host=config.server_ip,
        user=config.user_name,
        port=config.server_port if config.server_port else None,
        gateway=gateway,
        connect_timeout=config.connect_timeout,
        connect_kwargs=connect_kwargs,
    )


def _skip_git(info: tarfile.TarInfo):
    if info.name == "./.git" or info.name.startswith("./.git/"):
        return None
    return info


def pack_directory(source: str, destination: str) -> str:
    """Tar+gzip ``source`` into ``destination`` and return the archive path."""
    source_path = Path(source).expanduser().resolve()
    if not source_path.is_dir():
        raise DeployFailed(f"code path {source} is not a directory", retryable=False)
    with tarfile.open(destination, "w:gz") as tar:
        tar.add(str(source_path), arcname=".", filter=_skip_git)
    return destination


class SSHConnector(NodeConnector):
    """Podman node reached over SSH (or the local host when ``transport: local``)."""

    def __init__(self, node: Node, shell: Optional[Shell] = None):
        super().__init__(node)
        self.config: PodmanNodeConfig = node.config
        self.shell = shell
        self.work_dir: Optional[str] = None

    def _build_runtime(self) -> PodmanRuntime:
        return PodmanRuntime(self._shell(), self.name, self.config.podman_bin, self.config.gpu_device)

    def _shell(self) -> Shell:
        if self.shell is None:
            if self.config.transport == "local":
                self.shell = LocalShell(self.name)
            else:
                self.shell = SSHShell(self.name, build_connection(self.config))
        return self.shell

    def _open(self):
        shell = self._shell()
        shell.open()
        result = shell.run(f"mkdir -p {self.config.work_dir} && cd {self.config.work_dir} && pwd")
        if not result.ok:
            raise DeployFailed(f"[{self.name}] cannot prepare work dir {self.config.work_dir}: {result.stderr.strip()}")
        self.work_dir = result.stdout.strip().splitlines()[-1]
        logger.debug(f"[{self.name}] ✓ Connected, work dir {self.work_dir}")

    def _close(self):
        if self.shell is not None:
            self.shell.close()

    def _remote(self, command: str, what: str):
        result = self._shell().run(command)
        if not result.ok:
            raise DeployFailed(f"[{self.name}] {what} failed: {result.stderr.strip() or result.stdout.strip()}")
        return result

    def _upload_dir(self, local_dir: str, remote_dir: str):
        with tempfile.TemporaryDirectory() as tmp:
            archive = pack_directory(local_dir, os.path.join(tmp, "artifact.tar.gz"))
            remote_archive = f"{remote_dir}.tar.gz"
            self._shell().put(archive, remote_archive)
        self._remote(
            f"rm -rf {shlex.quote(remote_dir)} && mkdir -p {shlex.quote(remote_dir)} && "
            f"tar xzf {shlex.quote(remote_archive)} -C {shlex.quote(remote_dir)} && rm -f {shlex.quote(remote_archive)}",
            "artifact extraction",
        )

    def _locate_artifact(self, job: Job) -> Artifact:
        if self.work_dir is None:
            self._open()
        job_dir = f"{self.work_dir}/{job.job_id}"
        artifact = Artifact()
        if job.spec.code is not None:
            artifact.code_dir = f"{job_dir}/code"
        if job.spec.build_context:
            if artifact.code_dir:
                artifact.context_dir = f"{artifact.code_dir}/{job.spec.build_context}".rstrip("/")
            else:
                artifact.context_dir = f"{job_dir}/context"
        return artifact

    def _push_artifact(self, job: Job) -> Artifact:
        artifact = self._locate_artifact(job)
        self._remote(f"mkdir -p {shlex.quote(f'{self.work_dir}/{job.job_id}')}", "job dir creation")

        code = job.spec.code
        if code is not None:
            code_dir = artifact.code_dir
            if code.is_git:
                logger.info(f"[{self.name}] 🔄 Fetching {code.git_url}@{code.git_ref}")
                quoted = shlex.quote(code_dir)
                self._remote(
                    f"if [ -d {quoted}/.git ]; then git -C {quoted} fetch --all --quiet; "
                    f"else git clone --quiet {shlex.quote(code.git_url)} {quoted}; fi && "
                    f"git -C {quoted} checkout --quiet {shlex.quote(code.git_ref)}",
                    "git checkout",
                )
            else:
                logger.info(f"[{self.name}] 📤 Uploading {code.path}")
                self._upload_dir(code.path, code_dir)
        elif job.spec.build_context:
            self._upload_dir(job.spec.build_context, artifact.context_dir)
        return artifact
