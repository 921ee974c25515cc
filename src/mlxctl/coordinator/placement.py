from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from loguru import logger

from mlxctl.model.job import Job
from mlxctl.model.node import Node


def explain(job: Job, nodes: Iterable[Node], now: datetime, threshold: float) -> Dict[str, str]:
    """Why each node is (or is not) eligible for ``job``."""
    return {node.name: node.eligibility(job, now, threshold)[1] for node in nodes}


def select_node(
    job: Job,
    nodes: Iterable[Node],
    now: datetime,
    threshold: float,
    load: Optional[Mapping[str, int]] = None,
) -> Optional[Node]:
    """Pick the least loaded eligible node, ties broken by name. None if nothing fits."""
    load = load or {}
    eligible = []
    for node in nodes:
        ok, reason = node.eligibility(job, now, threshold)
        if ok:
            eligible.append(node)
        else:
            logger.debug(f"[{node.name}] not eligible for job {job.job_id}: {reason}")
    if not eligible:
        return None
    return min(eligible, key=lambda node: (load.get(node.name, 0), node.name))
