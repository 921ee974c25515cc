from typing import Dict, Type

from mlxctl.connector.base import NodeConnector
from mlxctl.connector.http import HttpConnector
from mlxctl.connector.ssh import SSHConnector
from mlxctl.errors import ConfigError
from mlxctl.model.handle import BackendKind
from mlxctl.model.node import Node

CONNECTOR_CLASS_MAP: Dict[BackendKind, Type[NodeConnector]] = {
    BackendKind.PODMAN: SSHConnector,
    BackendKind.KUBERNETES: HttpConnector,
}


def load_connector(node: Node) -> NodeConnector:
    connector_cls = CONNECTOR_CLASS_MAP.get(node.backend)
    if connector_cls is None:
        raise ConfigError(f"Invalid node backend: {node.config.backend}")
    return connector_cls(node)


def connect(node: Node) -> NodeConnector:
    """Return an opened connector for ``node``."""
    return load_connector(node).open()
