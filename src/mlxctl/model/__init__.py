from .resources import Capacity, ResourceRequest, parse_cpu, parse_memory
from .handle import BackendKind, ContainerHandle, ContainerObservation, ContainerStatus, ImageHandle, RunSpec
from .job import (
    CodeSource,
    Job,
    JobEvent,
    JobKind,
    JobSpec,
    JobState,
    JobStatus,
    create,
    transition,
    validate,
)
from .node import Node, NodeHealth

__all__ = [
    "BackendKind", "Capacity", "CodeSource", "ContainerHandle", "ContainerObservation",
    "ContainerStatus", "ImageHandle", "Job", "JobEvent", "JobKind", "JobSpec", "JobState",
    "JobStatus", "Node", "NodeHealth", "ResourceRequest", "RunSpec", "create",
    "parse_cpu", "parse_memory", "transition", "validate",
]
