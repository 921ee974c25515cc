import threading
from dataclasses import replace
from typing import Dict, Iterator, List, Optional

from loguru import logger

from mlxctl.config import MlxConfig, NodeConfig
from mlxctl.connector import NodeConnector, connect
from mlxctl.coordinator.placement import explain as explain_placement
from mlxctl.coordinator.worker import Connect, HeartbeatMonitor, new_worker_id
from mlxctl.errors import IllegalTransition, InvalidSpec, JobNotFound, MlxError, utcnow
from mlxctl.model.job import Job, JobEvent, JobKind, JobSpec, JobState, JobStatus, create, transition, validate
from mlxctl.model.node import Node
from mlxctl.runtime.base import LineStream
from mlxctl.store import StateStore


class Coordinator:
    """Client-side entry point: everything the CLI does goes through here."""

    def __init__(self, store: StateStore, config: MlxConfig, connect_fn: Connect = connect):
        self.store = store
        self.config = config
        self.connect_fn = connect_fn

    @classmethod
    def from_config(cls, config: MlxConfig) -> "Coordinator":
        store = StateStore.from_url(config.redis_url, config.namespace, config.orchestrator.reclaim_grace)
        store.ping()
        return cls(store, config)

    def submit(self, spec: JobSpec) -> Job:
        job = create(spec, self.config.limits, self.config.orchestrator.max_retries)
        self.store.save_job(job)
        self.store.enqueue(job.job_id)
        logger.info(f"🚀 Submitted {job.kind.value} job {job.job_id} ({spec.name})")
        return job

    def cancel(self, job_id: str) -> Job:
        job_id = self.store.resolve_job_id(job_id)
        job = self.store.load_job(job_id)
        if job.is_terminal:
            logger.info(f"Job {job_id} is already {job.state.value}")
            return job

        self.store.request_cancel(job_id)
        token = f"cancel-{new_worker_id()}"
        if not self.store.try_lease(job_id, token, self.config.orchestrator.lease_seconds):
            logger.info(f"Cancellation of job {job_id} requested, its worker will stop it")
            return job
        try:
            # nobody holds the job: a pending one is cancelled on the spot
            job = self.store.load_job(job_id)
            if job.state == JobState.PENDING:
                job = transition(job, JobEvent.CANCEL)
                self.store.publish_status(job)
                self.store.clear_cancel(job_id)
                logger.info(f"✓ Job {job_id} cancelled")
        finally:
            self.store.drop_lease(job_id, token)
        return job

    def scale(self, job_id: str, replicas: int) -> Job:
        """
        Change the replica count of a serve job. A pending job is updated on
        the spot; a running one is rescaled by the worker that holds it.
        """
        job_id = self.store.resolve_job_id(job_id)
        job = self.store.load_job(job_id)
        if job.kind != JobKind.SERVE:
            raise InvalidSpec(f"job {job_id} is a {job.kind.value} job; only serve jobs scale")
        if job.is_terminal or job.state == JobState.CANCELLING:
            raise IllegalTransition(f"job {job_id} is {job.state.value} and cannot be scaled")
        problems = validate(replace(job.spec, replicas=replicas), self.config.limits)
        if problems:
            raise InvalidSpec(problems)

        self.store.request_scale(job_id, replicas)
        token = f"scale-{new_worker_id()}"
        if not self.store.try_lease(job_id, token, self.config.orchestrator.lease_seconds):
            logger.info(f"Scaling of job {job_id} to {replicas} replica(s) requested, its worker will apply it")
            return job
        try:
            job = self.store.load_job(job_id)
            if job.state in (JobState.PENDING, JobState.FAILED):
                job = replace(job, spec=replace(job.spec, replicas=replicas), updated_at=utcnow())
                self.store.publish_status(job)
                self.store.clear_scale(job_id)
                logger.info(f"✓ Job {job_id} will start with {replicas} replica(s)")
        finally:
            self.store.drop_lease(job_id, token)
        return job

    def remove(self, job_id: str) -> Job:
        """Delete a finished job and its container history. Active jobs must be cancelled first."""
        job = self.get_job(job_id)
        if not job.is_terminal:
            raise IllegalTransition(f"job {job.job_id} is {job.state.value}; cancel it before removing it")
        self.store.delete_job(job.job_id)
        logger.info(f"✓ Removed job {job.job_id}")
        return job

    def remove_by_name(self, name: str, all_jobs: bool = False) -> List[Job]:
        """
        Delete the finished jobs named ``name``. Several matches need
        ``all_jobs``; jobs still active are left in place.
        """
        jobs = [job for job in self.store.list_jobs() if job.spec.name == name]
        if not jobs:
            raise JobNotFound(f"no job named {name}")
        if len(jobs) > 1 and not all_jobs:
            raise MlxError(f"{len(jobs)} jobs are named {name}; give a job id or use --all to remove all of them")

        removed = []
        for job in jobs:
            if not job.is_terminal:
                logger.warning(f"Keeping job {job.job_id}, it is still {job.state.value}")
                continue
            self.store.delete_job(job.job_id)
            removed.append(job)
        logger.info(f"✓ Removed {len(removed)} job(s) named {name}")
        return removed

    def explain(self, job_id: str) -> Dict[str, str]:
        """Eligibility of every registered node for the job, as placement sees it now."""
        job = self.get_job(job_id)
        return explain_placement(job, self.store.list_nodes(), utcnow(), self.config.orchestrator.heartbeat_threshold)

    def get_job(self, job_id: str) -> Job:
        return self.store.load_job(self.store.resolve_job_id(job_id))

    def get_status(self, job_id: str) -> JobStatus:
        return self.get_job(job_id).status()

    def subscribe(self, job_id: str, stop: Optional[threading.Event] = None) -> Iterator[JobStatus]:
        return self.store.subscribe(self.store.resolve_job_id(job_id), stop)

    def list_jobs(self, kind: Optional[JobKind] = None, state: Optional[JobState] = None, limit: Optional[int] = None) -> List[Job]:
        return self.store.list_jobs(kind=kind, state=state, limit=limit)

    def logs(self, job_id: str, follow: bool = False, replica: int = 0) -> LineStream:
        job = self.get_job(job_id)
        handle = next((h for h in job.handles if h.replica == replica), None)
        if handle is None or job.node is None:
            if replica:
                raise MlxError(f"job {job.job_id} has no running replica {replica}")
            raise MlxError(f"job {job.job_id} has not started a container yet")
        connector: NodeConnector = self.connect_fn(self.store.load_node(job.node))
        try:
            stream = connector.runtime.logs(handle, follow=follow)
        except MlxError:
            connector.close()
            raise

        def cancel():
            stream.close()
            connector.close()

        return LineStream(stream, cancel=cancel)

    def register_node(self, config: NodeConfig) -> Node:
        node = self.store.register_node(config)
        logger.info(f"[{node.name}] ✓ Registered {node.backend.value} node")
        return node

    def remove_node(self, name: str):
        """
        Unregister a node. Workers then observe its jobs as unknown and fail
        them with a retryable error once ``unknown_timeout`` passes.
        """
        self.store.load_node(name)
        self.store.remove_node(name)
        logger.info(f"[{name}] Removed node")

    def list_nodes(self) -> List[Node]:
        return self.store.list_nodes()

    def node_load(self, name: str) -> int:
        return self.store.node_load(name)

    def heartbeat_nodes(self) -> List[Node]:
        monitor = HeartbeatMonitor(self.store, self.config, threading.Event(), self.connect_fn)
        try:
            return monitor.check_once()
        finally:
            monitor.pool.close()
