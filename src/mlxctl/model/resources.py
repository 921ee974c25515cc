"""
Resource quantities in Kubernetes notation ("500m", "2", "4Gi", "512M").
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Union

_MEMORY_SUFFIXES = {
    "": 1,
    "k": 1000, "K": 1000, "M": 1000 ** 2, "G": 1000 ** 3, "T": 1000 ** 4,
    "Ki": 1024, "Mi": 1024 ** 2, "Gi": 1024 ** 3, "Ti": 1024 ** 4,
}
_QUANTITY_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([a-zA-Z]*)\s*$")


def parse_cpu(value: Union[str, int, float]) -> float:
    """Return CPU cores for "500m", "2", 1.5 ..."""
    if isinstance(value, (int, float)):
        return float(value)
    match = _QUANTITY_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid cpu quantity: {value!r}")
    number, suffix = float(match.group(1)), match.group(2)
    if suffix == "m":
        return number / 1000
    if suffix:
        raise ValueError(f"invalid cpu quantity: {value!r}")
    return number


def parse_memory(value: Union[str, int]) -> int:
    """Return bytes for "4Gi", "512M", 1024 ..."""
    if isinstance(value, int):
        return value
    match = _QUANTITY_RE.match(str(value))
    if not match or match.group(2) not in _MEMORY_SUFFIXES:
        raise ValueError(f"invalid memory quantity: {value!r}")
    return int(float(match.group(1)) * _MEMORY_SUFFIXES[match.group(2)])


def format_memory(num_bytes: int) -> str:
    for suffix in ("Ti", "Gi", "Mi", "Ki"):
        unit = _MEMORY_SUFFIXES[suffix]
        if num_bytes >= unit:
            if num_bytes % unit == 0:
                return f"{num_bytes // unit}{suffix}"
            return f"{num_bytes / unit:.1f}{suffix}"
    return str(num_bytes)


@dataclass
class ResourceRequest:
    cpu: str = "1"
    memory: str = "1Gi"
    gpu: int = 0

    @property
    def cpu_cores(self) -> float:
        return parse_cpu(self.cpu)

    @property
    def memory_bytes(self) -> int:
        return parse_memory(self.memory)


@dataclass
class Capacity:
    """Resources of a node: declared at registration or observed by heartbeat."""
    cpu: float = 0.0
    memory: int = 0
    gpu: int = 0
    running: int = 0

    def fits(self, request: ResourceRequest) -> bool:
        return (
            self.cpu >= request.cpu_cores
            and self.memory >= request.memory_bytes
            and self.gpu >= request.gpu
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"cpu": self.cpu, "memory": self.memory, "gpu": self.gpu, "running": self.running}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Capacity":
        return cls(
            cpu=float(data.get("cpu", 0.0)),
            memory=int(data.get("memory", 0)),
            gpu=int(data.get("gpu", 0)),
            running=int(data.get("running", 0)),
        )
