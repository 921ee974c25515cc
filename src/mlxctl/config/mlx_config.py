from dataclasses import dataclass, field, asdict
from typing import Optional, List, Type, Union, Any, Dict
from dacite import from_dict, Config
import yaml
import os
from pathlib import Path
from loguru import logger

from mlxctl.errors import ConfigError

DEFAULT_CONFIG_PATH = ".mlx/config.yaml"
DACITE_CONFIG = Config(cast=[float, str])


@dataclass
class OrchestratorConfig:
    """Tunables of the dispatch loop. All durations are seconds."""
    max_retries: int = 3
    workers: int = 4
    lease_seconds: float = 30.0
    dequeue_timeout: float = 5.0
    poll_interval: float = 5.0
    heartbeat_interval: float = 15.0
    heartbeat_threshold: float = 60.0
    unreachable_after: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 300.0
    placement_retry_delay: float = 10.0
    stop_grace_period: int = 10
    unknown_timeout: float = 300.0
    # leaseless processing entries younger than this may still be mid-dequeue
    reclaim_grace: float = 5.0


@dataclass
class ResourceLimits:
    """Ceilings a single job may request."""
    cpu: str = "64"
    memory: str = "512Gi"
    gpu: int = 8
    replicas: int = 8


@dataclass
class NodeConfig:
    name: str
    backend: str


@dataclass
class PodmanNodeConfig(NodeConfig):
    server_ip: str = "localhost"
    user_name: str = field(default_factory=lambda: os.getenv("USER", "root"))
    # "ssh" or "local" (run podman on this host)
    transport: str = "ssh"
    server_port: Optional[int] = None
    private_key_path: str = field(default_factory=lambda: os.path.expanduser("~/.ssh/id_rsa"))
    connect_timeout: float = 10.0

    # Optional: proxy jump (e.g., bastion host)
    proxy_user: Optional[str] = None
    proxy_ip: Optional[str] = None
    proxy_port: Optional[int] = 22

    work_dir: str = "$HOME/.mlx/jobs"
    podman_bin: str = "podman"
    gpu_device: str = "nvidia.com/gpu=all"

    labels: Dict[str, str] = field(default_factory=dict)
    cpu: Optional[str] = None
    memory: Optional[str] = None
    gpu: Optional[int] = None


@dataclass
class KubernetesNodeConfig(NodeConfig):
    api_url: str = "https://kubernetes.default.svc"
    # name of the environment variable holding the bearer token
    token_env: str = "MLX_K8S_TOKEN"
    k8s_namespace: str = "default"
    verify_tls: bool = True
    ca_cert_path: Optional[str] = None
    request_timeout: float = 30.0
    gpu_resource: str = "nvidia.com/gpu"
    git_image: str = "alpine/git:latest"

    labels: Dict[str, str] = field(default_factory=dict)
    cpu: Optional[str] = None
    memory: Optional[str] = None
    gpu: Optional[int] = None


BACKEND_CLASS_MAP: Dict[str, Type[NodeConfig]] = {
    "podman": PodmanNodeConfig,
    "kubernetes": KubernetesNodeConfig,
}

AnyNodeConfig = Union[PodmanNodeConfig, KubernetesNodeConfig]


def node_config_from_dict(data: Dict[str, Any]) -> AnyNodeConfig:
    backend = data.get("backend")
    config_cls = BACKEND_CLASS_MAP.get(backend)
    if not config_cls:
        raise ConfigError(f"Unknown backend '{backend}' in node config.")
    return from_dict(data_class=config_cls, data=data, config=DACITE_CONFIG)


def node_config_to_dict(config: NodeConfig) -> Dict[str, Any]:
    return asdict(config)


def _init_example_podman_node() -> PodmanNodeConfig:
    return PodmanNodeConfig(
        name="gpu-box",
        backend="podman",
        server_ip="SERVER_IP",
        user_name="$USER",
        labels={"gpu": "a100"},
    )


def _init_example_kubernetes_node() -> KubernetesNodeConfig:
    return KubernetesNodeConfig(
        name="cluster",
        backend="kubernetes",
        api_url="https://CLUSTER_API:6443",
        k8s_namespace="mlx",
    )


@dataclass
class MlxConfig:
    redis_url: str = "redis://localhost:6379/0"
    namespace: str = "mlx"
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    node_config_list: List[AnyNodeConfig] = field(default_factory=lambda: [_init_example_podman_node(), _init_example_kubernetes_node()])

    def load_node_config(self, name: str) -> AnyNodeConfig:
        for node in self.node_config_list:
            if node.name == name:
                return node
        raise ConfigError(f"Node config not found for name: {name}")

    @classmethod
    def from_yaml(cls, path: str) -> "MlxConfig":
        if not Path(path).exists():
            raise ConfigError(f"Config file not found at {path}")
        if not path.endswith(".yaml"):
            raise ConfigError("path must end with .yaml")

        with open(path, "r") as f:
            raw_dict = yaml.safe_load(f) or {}

        nodes_raw = raw_dict.pop("nodes", [])
        nodes = [node_config_from_dict(item) for item in nodes_raw]

        config = from_dict(data_class=cls, data=raw_dict, config=DACITE_CONFIG)
        config.node_config_list = nodes
        return config

    def to_yaml(self, path: Optional[str] = DEFAULT_CONFIG_PATH):
        if not path:
            logger.error(f"path is not provided, using default path: {DEFAULT_CONFIG_PATH}")
            path = DEFAULT_CONFIG_PATH

        if not path.endswith(".yaml"):
            raise ConfigError("path must end with .yaml")

        out_dict = asdict(self)
        out_dict["nodes"] = [node_config_to_dict(n) for n in self.node_config_list]
        del out_dict["node_config_list"]

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(out_dict, f, sort_keys=False)

        logger.info(f"Saved config to {path}")


def load_config(path: str = DEFAULT_CONFIG_PATH) -> MlxConfig:
    config = MlxConfig.from_yaml(path)
    redis_url = os.getenv("MLX_REDIS_URL")
    if redis_url:
        config.redis_url = redis_url
    return config


def save_config(config: MlxConfig, path: str):
    config.to_yaml(path)
