from .base import JOB_LABEL, ContainerRuntime, LineStream
from .shell import LocalShell, Shell, SSHShell
from .podman import PodmanRuntime
from .kubernetes import KubernetesRuntime

__all__ = [
    "JOB_LABEL",
    "ContainerRuntime",
    "KubernetesRuntime",
    "LineStream",
    "LocalShell",
    "PodmanRuntime",
    "SSHShell",
    "Shell",
]
