from .mlx_config import (
    BACKEND_CLASS_MAP,
    DEFAULT_CONFIG_PATH,
    KubernetesNodeConfig,
    MlxConfig,
    NodeConfig,
    OrchestratorConfig,
    PodmanNodeConfig,
    ResourceLimits,
    load_config,
    node_config_from_dict,
    node_config_to_dict,
    save_config,
)

__all__ = [
    "BACKEND_CLASS_MAP",
    "DEFAULT_CONFIG_PATH",
    "KubernetesNodeConfig",
    "MlxConfig",
    "NodeConfig",
    "OrchestratorConfig",
    "PodmanNodeConfig",
    "ResourceLimits",
    "load_config",
    "node_config_from_dict",
    "node_config_to_dict",
    "save_config",
]
