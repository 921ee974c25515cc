from .coordinator import Coordinator
from .lease import LeaseKeeper
from .placement import explain, select_node
from .worker import ConnectorPool, HeartbeatMonitor, Worker, WorkerPool, backoff_delay

__all__ = [
    "ConnectorPool",
    "Coordinator",
    "HeartbeatMonitor",
    "LeaseKeeper",
    "Worker",
    "WorkerPool",
    "backoff_delay",
    "explain",
    "select_node",
]
