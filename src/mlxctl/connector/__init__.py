from .base import Artifact, NodeConnector, build_run_spec
from .ssh import SSHConnector
from .http import HttpConnector
from .manage import connect, load_connector

__all__ = [
    "Artifact",
    "HttpConnector",
    "NodeConnector",
    "SSHConnector",
    "build_run_spec",
    "connect",
    "load_connector",
]
