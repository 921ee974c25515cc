"""
MLXCtl - Submit, track and manage distributed ML jobs

Jobs (training runs, data pipelines, serving endpoints) are validated locally,
handed to workers through a shared Redis queue and executed in containers on
remote nodes:
- podman: rootless Podman over SSH (or on the local host)
- kubernetes: pods through the cluster API server
"""

from .version import __version__

__author__ = "mlxctl developers"
__license__ = "MIT"
__description__ = "Job orchestration for ML training, data and serving workloads"

__all__ = [
    "__version__",
]
