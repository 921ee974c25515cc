import os
import socket
import threading
import time
import uuid
from dataclasses import replace
from typing import Callable, Dict, List, Optional

import redis
from loguru import logger

from mlxctl.config import MlxConfig
from mlxctl.connector import NodeConnector, connect
from mlxctl.coordinator.lease import LeaseKeeper
from mlxctl.coordinator.placement import select_node
from mlxctl.errors import BackendUnreachable, ConnectionFailed, ContainerCrashed, MlxError, NodeNotFound, utcnow
from mlxctl.model.handle import ContainerHandle, ContainerObservation, ContainerStatus
from mlxctl.model.job import Job, JobEvent, JobState, transition
from mlxctl.model.node import Node
from mlxctl.store import StateStore

Connect = Callable[[Node], NodeConnector]


def new_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


def backoff_delay(attempts: int, base: float, maximum: float) -> float:
    return min(base * 2 ** max(attempts - 1, 0), maximum)


class Interrupted(Exception):
    """Processing of a job stopped without changing its state (shutdown or lost lease)."""


class ConnectorPool:
    """Open connectors by node name. Not shared between threads."""

    def __init__(self, store: StateStore, connect_fn: Connect = connect):
        self.store = store
        self.connect_fn = connect_fn
        self._connectors: Dict[str, NodeConnector] = {}

    def get(self, node_name: str) -> NodeConnector:
        connector = self._connectors.get(node_name)
        if connector is None:
            connector = self.connect_fn(self.store.load_node(node_name))
            self._connectors[node_name] = connector
        return connector

    def drop(self, node_name: str):
        connector = self._connectors.pop(node_name, None)
        if connector is not None:
            try:
                connector.close()
            except MlxError as e:
                logger.debug(f"[{node_name}] Ignoring error while closing connector: {e}")

    def close(self):
        for name in list(self._connectors):
            self.drop(name)


class HeartbeatMonitor(threading.Thread):
    """Refreshes node health from heartbeats every ``heartbeat_interval`` seconds."""

    def __init__(self, store: StateStore, config: MlxConfig, stop_event: threading.Event, connect_fn: Connect = connect):
        super().__init__(name="heartbeat", daemon=True)
        self.store = store
        self.orchestrator = config.orchestrator
        self.stop_event = stop_event
        self.pool = ConnectorPool(store, connect_fn)

    def check_once(self) -> List[Node]:
        nodes = []
        for node in self.store.list_nodes():
            try:
                capacity = self.pool.get(node.name).heartbeat()
            except MlxError as e:
                logger.warning(f"[{node.name}] ✗ Heartbeat failed: {e}")
                self.pool.drop(node.name)
                nodes.append(self.store.record_heartbeat_failure(node.name, self.orchestrator.unreachable_after))
                continue
            if node.health.unreachable:
                logger.info(f"[{node.name}] ✓ Reachable again")
            nodes.append(self.store.record_heartbeat(node.name, capacity))
        return nodes

    def run(self):
        try:
            while not self.stop_event.is_set():
                try:
                    self.check_once()
                except redis.RedisError as e:
                    logger.error(f"Heartbeat round failed, state store unavailable: {e}")
                except Exception as e:
                    logger.exception(f"Heartbeat round failed: {e}")
                self.stop_event.wait(self.orchestrator.heartbeat_interval)
        finally:
            self.pool.close()


class Worker:
    """
    One dispatch loop: dequeue a job under lease, drive it through its state
    machine until it is terminal or waiting for a retry, release the lease.

    All decisions are taken from the stored job state, so a job picked up
    after another worker died resumes where it was left.
    """

    def __init__(
        self,
        store: StateStore,
        config: MlxConfig,
        worker_id: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
        connect_fn: Connect = connect,
    ):
        self.store = store
        self.orchestrator = config.orchestrator
        self.worker_id = worker_id or new_worker_id()
        self.stop_event = stop_event or threading.Event()
        self.pool = ConnectorPool(store, connect_fn)

    def run(self):
        logger.info(f"[{self.worker_id}] 🚀 Worker started")
        try:
            while not self.stop_event.is_set():
                try:
                    self.run_once()
                except redis.RedisError as e:
                    logger.error(f"[{self.worker_id}] State store unavailable: {e}")
                    self.stop_event.wait(self.orchestrator.poll_interval)
                except Exception as e:
                    # the lease expires and another worker picks the job up again
                    logger.exception(f"[{self.worker_id}] ✗ Unexpected error while processing a job: {e}")
                    self.stop_event.wait(self.orchestrator.poll_interval)
        finally:
            self.pool.close()
            logger.info(f"[{self.worker_id}] Worker stopped")

    def run_once(self, timeout: Optional[float] = None) -> Optional[Job]:
        job = self.store.dequeue_with_lock(
            self.worker_id,
            self.orchestrator.lease_seconds,
            self.orchestrator.dequeue_timeout if timeout is None else timeout,
        )
        if job is None:
            return None
        return self.process(job)

    def process(self, job: Job) -> Job:
        keeper = LeaseKeeper(self.store, job.job_id, self.worker_id, self.orchestrator.lease_seconds)
        requeue = False
        with keeper:
            try:
                job = self._reconcile(job, keeper)
            except Interrupted as e:
                logger.info(f"[{self.worker_id}] Handing back job {job.job_id}: {e}")
                requeue = True
        self.store.release_lease(job.job_id, self.worker_id, requeue=requeue)
        return job

    def _save(self, job: Job, keeper: LeaseKeeper) -> Job:
        if keeper.lost.is_set():
            raise Interrupted("lease lost")
        self.store.publish_status(job)
        return job

    def _reconcile(self, job: Job, keeper: LeaseKeeper) -> Job:
        if job.state == JobState.FAILED:
            return self._retry(job, keeper) if job.can_retry else job
        if job.state == JobState.PENDING:
            if self.store.cancel_requested(job.job_id):
                logger.info(f"[{self.worker_id}] Job {job.job_id} cancelled before dispatch")
                job = self._save(transition(job, JobEvent.CANCEL), keeper)
                self.store.clear_cancel(job.job_id)
                return job
            return self._launch(job, keeper)
        if job.state in (JobState.PLACED, JobState.DISPATCHING):
            return self._launch(job, keeper)
        if job.state in (JobState.RUNNING, JobState.CANCELLING):
            return self._monitor(job, keeper)
        return job

    def _place(self, job: Job) -> Optional[Node]:
        nodes = self.store.list_nodes()
        load = {node.name: self.store.node_load(node.name) for node in nodes}
        return select_node(job, nodes, utcnow(), self.orchestrator.heartbeat_threshold, load)

    def _launch(self, job: Job, keeper: LeaseKeeper) -> Job:
        if job.state == JobState.PENDING:
            node = self._place(job)
            if node is None:
                delay = self.orchestrator.placement_retry_delay
                logger.info(f"[{self.worker_id}] No eligible node for job {job.job_id}, retrying placement in {delay:g}s")
                self.store.enqueue_delayed(job.job_id, delay)
                return job
            job = self._save(transition(job, JobEvent.PLACE, node=node.name), keeper)
            self.store.add_node_job(node.name, job.job_id)
            logger.info(f"[{self.worker_id}] Job {job.job_id} placed on {node.name} (attempt {job.attempts})")

        try:
            connector = self.pool.get(job.node)
            if job.state == JobState.PLACED:
                job = self._save(transition(job, JobEvent.DISPATCH), keeper)
            requested = self._take_scale_request(job)
            if requested is not None:
                job = self._save(replace(job, spec=replace(job.spec, replicas=requested)), keeper)
            handles = self._deploy_replicas(job, connector)
        except NodeNotFound:
            self.pool.drop(job.node)
            return self._fail(job, BackendUnreachable(f"node {job.node} was removed"), keeper)
        except (ConnectionFailed, BackendUnreachable) as e:
            self.pool.drop(job.node)
            return self._fail(job, e, keeper)
        except MlxError as e:
            return self._fail(job, e, keeper)

        for handle in handles:
            self.store.set_handle(job.job_id, handle)
        job = replace(job, handle=handles[0], replica_handles=handles[1:])
        job = self._save(transition(job, JobEvent.START), keeper)
        names = ", ".join(h.container_id for h in handles)
        logger.info(f"[{self.worker_id}] ✓ Job {job.job_id} running as {names} on {job.node}")
        return self._monitor(job, keeper)

    def _deploy_replicas(self, job: Job, connector: NodeConnector) -> List[ContainerHandle]:
        """Start every replica, stopping those already started if one fails."""
        handles: List[ContainerHandle] = []
        try:
            for replica in range(job.spec.replicas):
                handles.append(connector.deploy(job, replica))
        except MlxError:
            for handle in handles:
                self._stop_container(job, handle, 0)
            raise
        return handles

    def _take_scale_request(self, job: Job) -> Optional[int]:
        requested = self.store.scale_requested(job.job_id)
        if requested is not None:
            self.store.clear_scale(job.job_id)
        return requested

    def _apply_scale(self, job: Job, replicas: int, keeper: LeaseKeeper) -> Job:
        current = job.handles
        if replicas > len(current):
            job = self._scale_up(job, replicas)
        elif replicas < len(current):
            for handle in current[replicas:]:
                self._stop_container(job, handle, self.orchestrator.stop_grace_period)
                self.store.archive_handle(job.job_id, handle.replica)
            job = replace(job, spec=replace(job.spec, replicas=replicas), replica_handles=job.replica_handles[:replicas - 1])
        else:
            job = replace(job, spec=replace(job.spec, replicas=replicas))
        logger.info(f"[{self.worker_id}] ↕ Job {job.job_id} now runs {len(job.handles)} replica(s)")
        return self._save(replace(job, updated_at=utcnow()), keeper)

    def _scale_up(self, job: Job, replicas: int) -> Job:
        added: List[ContainerHandle] = []
        start = len(job.handles)
        try:
            connector = self.pool.get(job.node)
            for replica in range(start, replicas):
                handle = connector.deploy(job, replica)
                self.store.set_handle(job.job_id, handle)
                added.append(handle)
        except MlxError as e:
            logger.warning(f"[{self.worker_id}] Scaling job {job.job_id} stopped at {start + len(added)} replica(s): {e}")
        return replace(
            job,
            spec=replace(job.spec, replicas=start + len(added)),
            replica_handles=job.replica_handles + added,
        )

    def _observe(self, job: Job, handle: ContainerHandle) -> ContainerObservation:
        try:
            return self.pool.get(job.node).runtime.inspect(handle)
        except (ConnectionFailed, BackendUnreachable, NodeNotFound) as e:
            self.pool.drop(job.node)
            return ContainerObservation(ContainerStatus.UNKNOWN, reason=str(e))

    def _stop_container(self, job: Job, handle: ContainerHandle, grace_period: int):
        try:
            self.pool.get(job.node).runtime.stop(handle, grace_period)
        except MlxError as e:
            logger.warning(f"[{self.worker_id}] Stopping container {handle.container_id} of job {job.job_id} failed: {e}")

    def _stop_live(self, job: Job, observations: List[ContainerObservation], grace_period: int):
        for handle, observation in zip(job.handles, observations):
            if not observation.exited:
                self._stop_container(job, handle, grace_period)

    def _monitor(self, job: Job, keeper: LeaseKeeper) -> Job:
        grace = self.orchestrator.stop_grace_period
        unknown_since: Optional[float] = None
        cancel_deadline: Optional[float] = None

        while True:
            if self.stop_event.is_set():
                raise Interrupted("worker shutting down")
            if keeper.lost.is_set():
                raise Interrupted("lease lost")

            if job.state == JobState.RUNNING and self.store.cancel_requested(job.job_id):
                logger.info(f"[{self.worker_id}] Cancelling job {job.job_id}")
                job = self._save(transition(job, JobEvent.CANCEL), keeper)
            if job.state == JobState.CANCELLING and cancel_deadline is None:
                cancel_deadline = time.monotonic() + grace
                for handle in job.handles:
                    self._stop_container(job, handle, grace)
            if job.state == JobState.RUNNING:
                requested = self._take_scale_request(job)
                if requested is not None:
                    job = self._apply_scale(job, requested, keeper)

            try:
                observations = [self._observe(job, handle) for handle in job.handles]
            except MlxError as e:
                if job.state == JobState.CANCELLING:
                    return self._confirm_cancel(job, keeper)
                for handle in job.handles:
                    self._stop_container(job, handle, 0)
                return self._fail(job, e, keeper)
            unknown = [o for o in observations if o.status == ContainerStatus.UNKNOWN]

            if job.state == JobState.CANCELLING:
                if all(o.exited or o.status == ContainerStatus.UNKNOWN for o in observations):
                    return self._confirm_cancel(job, keeper)
                if time.monotonic() >= cancel_deadline:
                    logger.warning(f"[{self.worker_id}] Job {job.job_id} did not stop within {grace}s, forcing")
                    self._stop_live(job, observations, 0)
                    return self._confirm_cancel(job, keeper)
            elif any(o.exited and o.exit_code != 0 for o in observations):
                replica, crashed = next((i, o) for i, o in enumerate(observations) if o.exited and o.exit_code != 0)
                self._stop_live(job, observations, 0)
                where = f" (replica {replica})" if len(observations) > 1 else ""
                return self._fail(
                    job,
                    ContainerCrashed(f"container exited with code {crashed.exit_code}{where}", exit_code=crashed.exit_code),
                    keeper,
                )
            elif all(o.exited for o in observations):
                return self._succeed(job, keeper)
            elif unknown:
                if unknown_since is None:
                    unknown_since = time.monotonic()
                    logger.warning(f"[{self.worker_id}] Job {job.job_id} status unknown: {unknown[0].reason}")
                elif time.monotonic() - unknown_since >= self.orchestrator.unknown_timeout:
                    self._stop_live(job, observations, 0)
                    return self._fail(
                        job,
                        BackendUnreachable(f"no observation of job container for {self.orchestrator.unknown_timeout:g}s"),
                        keeper,
                    )
            else:
                unknown_since = None

            self.stop_event.wait(self.orchestrator.poll_interval)

    def _finish(self, job: Job):
        if job.node:
            self.store.remove_node_job(job.node, job.job_id)
        self.store.clear_cancel(job.job_id)
        self.store.clear_scale(job.job_id)

    def _succeed(self, job: Job, keeper: LeaseKeeper) -> Job:
        job = self._save(transition(job, JobEvent.SUCCEED), keeper)
        self._finish(job)
        logger.info(f"[{self.worker_id}] ✓ Job {job.job_id} succeeded")
        return job

    def _confirm_cancel(self, job: Job, keeper: LeaseKeeper) -> Job:
        job = self._save(transition(job, JobEvent.CONFIRM_CANCEL), keeper)
        self._finish(job)
        logger.info(f"[{self.worker_id}] ✓ Job {job.job_id} cancelled")
        return job

    def _fail(self, job: Job, error: MlxError, keeper: LeaseKeeper) -> Job:
        job = self._save(transition(job, JobEvent.FAIL, error=error.to_info()), keeper)
        if job.node:
            self.store.remove_node_job(job.node, job.job_id)
        if job.can_retry:
            logger.warning(f"[{self.worker_id}] Job {job.job_id} attempt {job.attempts} failed: {error}")
            return self._retry(job, keeper)
        self.store.clear_cancel(job.job_id)
        self.store.clear_scale(job.job_id)
        logger.error(f"[{self.worker_id}] ✗ Job {job.job_id} failed after {job.attempts} attempt(s): {error}")
        return job

    def _retry(self, job: Job, keeper: LeaseKeeper) -> Job:
        delay = backoff_delay(job.attempts, self.orchestrator.backoff_base, self.orchestrator.backoff_max)
        job = self._save(transition(job, JobEvent.RETRY), keeper)
        self.store.enqueue_delayed(job.job_id, delay)
        logger.info(f"[{self.worker_id}] 🔄 Job {job.job_id} requeued in {delay:g}s")
        return job


class WorkerPool:
    """``workers`` dispatch threads plus a heartbeat monitor, stopped together through one event."""

    def __init__(
        self,
        store_factory: Callable[[], StateStore],
        config: MlxConfig,
        workers: Optional[int] = None,
        connect_fn: Connect = connect,
        heartbeat: bool = True,
    ):
        self.config = config
        self.stop_event = threading.Event()
        self.workers = [
            Worker(store_factory(), config, stop_event=self.stop_event, connect_fn=connect_fn)
            for _ in range(workers or config.orchestrator.workers)
        ]
        self.threads = [threading.Thread(target=w.run, name=f"worker-{i}", daemon=True) for i, w in enumerate(self.workers)]
        if heartbeat:
            self.threads.append(HeartbeatMonitor(store_factory(), config, self.stop_event, connect_fn))

    def start(self):
        for thread in self.threads:
            thread.start()
        logger.info(f"🚀 Started {len(self.workers)} worker(s)")

    def shutdown(self, timeout: Optional[float] = None):
        self.stop_event.set()
        for thread in self.threads:
            thread.join(timeout)
        logger.info("All workers stopped")

    def wait(self):
        """Block until shutdown. Ctrl-C stops the pool."""
        try:
            while any(t.is_alive() for t in self.threads) and not self.stop_event.wait(0.5):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down workers")
        finally:
            self.shutdown()
