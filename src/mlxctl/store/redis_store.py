"""
Shared job state over Redis.

Keys (all under ``<namespace>:``):

    queue            list of job ids waiting for a worker (LPUSH in, BLMOVE out)
    processing       list of job ids taken off the queue by some worker
    delayed          zset job id -> unix time it may be re-enqueued
    lease:<id>       worker id holding the job, SET NX PX
    orphans          hash job id -> when a leaseless processing entry was first seen
    job:<id>         job record (JSON)
    jobs             zset job id -> creation time
    status:<id>      pub/sub channel of JobStatus snapshots
    cancel:<id>      cancellation request flag
    scale:<id>       requested replica count of a running serve job
    node:<name>      node registration and health (JSON)
    nodes            set of node names
    node-jobs:<name> set of job ids placed on the node
    handle:<id>      current container handle of replica 0 (JSON)
    handle:<id>:<n>  current container handle of replica n (JSON)
    handles:<id>     list of replaced container handles (JSON)
"""

import json
import threading
import time
from datetime import datetime
from typing import Iterator, List, Optional

import redis
from loguru import logger

from mlxctl.config import NodeConfig
from mlxctl.errors import BackendUnreachable, JobNotFound, NodeNotFound, utcnow
from mlxctl.model.handle import ContainerHandle
from mlxctl.model.job import Job, JobKind, JobState, JobStatus
from mlxctl.model.node import Node, NodeHealth
from mlxctl.model.resources import Capacity


class StateStore:
    def __init__(self, client: redis.Redis, namespace: str = "mlx", reclaim_grace: float = 5.0):
        self.client = client
        self.namespace = namespace
        self.reclaim_grace = reclaim_grace

    @classmethod
    def from_url(cls, url: str, namespace: str = "mlx", reclaim_grace: float = 5.0) -> "StateStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), namespace, reclaim_grace)

    def _key(self, *parts: str) -> str:
        return ":".join((self.namespace,) + parts)

    def ping(self):
        try:
            self.client.ping()
        except redis.RedisError as e:
            raise BackendUnreachable(f"state store unreachable: {e}")

    # Jobs

    def save_job(self, job: Job):
        with self.client.pipeline() as pipe:
            pipe.set(self._key("job", job.job_id), json.dumps(job.to_dict()))
            pipe.zadd(self._key("jobs"), {job.job_id: job.created_at.timestamp()})
            pipe.execute()

    def load_job(self, job_id: str) -> Job:
        raw = self.client.get(self._key("job", job_id))
        if raw is None:
            raise JobNotFound(f"no job with id {job_id}")
        return Job.from_dict(json.loads(raw))

    def resolve_job_id(self, prefix: str) -> str:
        """Expand a unique id prefix (as shown by ``mlx job ls``) to the full job id."""
        if self.client.exists(self._key("job", prefix)):
            return prefix
        matches = [job_id for job_id in self.client.zrange(self._key("jobs"), 0, -1) if job_id.startswith(prefix)]
        if len(matches) != 1:
            raise JobNotFound(f"no job with id {prefix}" if not matches else f"job id prefix {prefix} is ambiguous")
        return matches[0]

    def list_jobs(self, kind: Optional[JobKind] = None, state: Optional[JobState] = None, limit: Optional[int] = None) -> List[Job]:
        job_ids = self.client.zrevrange(self._key("jobs"), 0, -1)
        if not job_ids:
            return []
        jobs = []
        for raw in self.client.mget([self._key("job", job_id) for job_id in job_ids]):
            if raw is None:
                continue
            job = Job.from_dict(json.loads(raw))
            if kind is not None and job.kind != kind:
                continue
            if state is not None and job.state != state:
                continue
            jobs.append(job)
            if limit is not None and len(jobs) >= limit:
                break
        return jobs

    def delete_job(self, job_id: str):
        """Forget a job: its record, handles and pending requests. Queue entries left behind are dropped on dequeue."""
        keys = [self._key(*parts) for parts in (
            ("job", job_id), ("handle", job_id), ("handles", job_id), ("cancel", job_id), ("scale", job_id),
        )]
        keys += list(self.client.scan_iter(match=self._key("handle", job_id, "*")))
        with self.client.pipeline() as pipe:
            pipe.delete(*keys)
            pipe.zrem(self._key("jobs"), job_id)
            pipe.execute()

    def publish_status(self, job: Job):
        """Persist ``job`` and announce its new status to subscribers."""
        with self.client.pipeline() as pipe:
            pipe.set(self._key("job", job.job_id), json.dumps(job.to_dict()))
            pipe.zadd(self._key("jobs"), {job.job_id: job.created_at.timestamp()})
            pipe.publish(self._key("status", job.job_id), json.dumps(job.status().to_dict()))
            pipe.execute()

    def subscribe(self, job_id: str, stop: Optional[threading.Event] = None, poll: float = 1.0) -> Iterator[JobStatus]:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        # subscribe before reading the snapshot so no update falls in between
        pubsub.subscribe(self._key("status", job_id))
        try:
            status = self.load_job(job_id).status()
            yield status
            while not status.terminal:
                if stop is not None and stop.is_set():
                    return
                message = pubsub.get_message(timeout=poll)
                if message is None or message.get("type") != "message":
                    continue
                status = JobStatus.from_dict(json.loads(message["data"]))
                yield status
        finally:
            pubsub.close()

    # Dispatch queue

    def enqueue(self, job_id: str) -> bool:
        return self.client.lpush(self._key("queue"), job_id) > 0

    def enqueue_delayed(self, job_id: str, delay: float):
        self.client.zadd(self._key("delayed"), {job_id: time.time() + delay})

    def queue_length(self) -> int:
        return self.client.llen(self._key("queue"))

    def _promote_due(self):
        delayed = self._key("delayed")
        for job_id in self.client.zrangebyscore(delayed, "-inf", time.time()):
            # whoever removes the entry re-enqueues it
            if self.client.zrem(delayed, job_id):
                self.enqueue(job_id)

    def _reclaim_expired(self):
        """
        Requeue processing entries whose worker lost its lease.

        An entry without a lease may belong to a worker that has just moved it
        and not yet taken the lease, so it is only reclaimed once it has stayed
        leaseless for ``reclaim_grace`` seconds.
        """
        processing = self._key("processing")
        orphans = self._key("orphans")
        now = time.time()
        for job_id in self.client.lrange(processing, 0, -1):
            if self.client.exists(self._key("lease", job_id)):
                self.client.hdel(orphans, job_id)
                continue
            if self.reclaim_grace > 0:
                self.client.hsetnx(orphans, job_id, now)
                first_seen = float(self.client.hget(orphans, job_id) or now)
                if now - first_seen < self.reclaim_grace:
                    continue
            self.client.hdel(orphans, job_id)
            if self.client.lrem(processing, 1, job_id):
                logger.warning(f"Lease on job {job_id} expired, requeueing")
                self.client.rpush(self._key("queue"), job_id)

    def dequeue_with_lock(self, worker_id: str, lease_duration: float, timeout: float) -> Optional[Job]:
        """
        Take the oldest queued job and lease it to ``worker_id``.

        Returns None on timeout, or when the entry turned out to be a duplicate
        of a job that is leased elsewhere, already terminal or deleted.
        """
        self._promote_due()
        self._reclaim_expired()

        processing = self._key("processing")
        job_id = self.client.blmove(self._key("queue"), processing, timeout, src="RIGHT", dest="LEFT")
        if job_id is None:
            return None

        if not self.try_lease(job_id, worker_id, lease_duration):
            # the holder owns its own entry
            self.client.lrem(processing, 1, job_id)
            logger.debug(f"[{worker_id}] Job {job_id} is leased elsewhere, dropping duplicate entry")
            return None

        try:
            job = self.load_job(job_id)
        except JobNotFound:
            self.release_lease(job_id, worker_id)
            return None
        if job.is_terminal:
            self.release_lease(job_id, worker_id)
            return None
        return job

    # Leases

    def try_lease(self, job_id: str, worker_id: str, lease_duration: float) -> bool:
        return bool(self.client.set(self._key("lease", job_id), worker_id, nx=True, px=int(lease_duration * 1000)))

    def lease_holder(self, job_id: str) -> Optional[str]:
        return self.client.get(self._key("lease", job_id))

    def renew_lease(self, job_id: str, worker_id: str, lease_duration: float) -> bool:
        key = self._key("lease", job_id)
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != worker_id:
                    return False
                pipe.multi()
                pipe.pexpire(key, int(lease_duration * 1000))
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    def release_lease(self, job_id: str, worker_id: str, requeue: bool = False) -> bool:
        key = self._key("lease", job_id)
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != worker_id:
                    return False
                pipe.multi()
                pipe.delete(key)
                pipe.lrem(self._key("processing"), 1, job_id)
                pipe.hdel(self._key("orphans"), job_id)
                if requeue:
                    pipe.rpush(self._key("queue"), job_id)
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    def drop_lease(self, job_id: str, holder: str) -> bool:
        """
        Delete a lease taken with ``try_lease`` outside the dispatch queue.

        Unlike ``release_lease`` the processing list is left alone; its entries
        belong to the workers that dequeued the job.
        """
        key = self._key("lease", job_id)
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != holder:
                    return False
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    # Cancellation

    def request_cancel(self, job_id: str):
        self.client.set(self._key("cancel", job_id), utcnow().isoformat())

    def cancel_requested(self, job_id: str) -> bool:
        return bool(self.client.exists(self._key("cancel", job_id)))

    def clear_cancel(self, job_id: str):
        self.client.delete(self._key("cancel", job_id))

    # Scaling

    def request_scale(self, job_id: str, replicas: int):
        self.client.set(self._key("scale", job_id), replicas)

    def scale_requested(self, job_id: str) -> Optional[int]:
        raw = self.client.get(self._key("scale", job_id))
        return int(raw) if raw is not None else None

    def clear_scale(self, job_id: str):
        self.client.delete(self._key("scale", job_id))

    # Container handles

    def _handle_key(self, job_id: str, replica: int) -> str:
        return self._key("handle", job_id) if replica == 0 else self._key("handle", job_id, str(replica))

    def set_handle(self, job_id: str, handle: ContainerHandle):
        current = self.current_handle(job_id, handle.replica)
        with self.client.pipeline() as pipe:
            if current is not None and current.container_id != handle.container_id:
                pipe.rpush(self._key("handles", job_id), json.dumps(current.to_dict()))
            pipe.set(self._handle_key(job_id, handle.replica), json.dumps(handle.to_dict()))
            pipe.execute()

    def archive_handle(self, job_id: str, replica: int):
        """Move the current handle of ``replica`` into the history (replica scaled away)."""
        current = self.current_handle(job_id, replica)
        if current is None:
            return
        with self.client.pipeline() as pipe:
            pipe.rpush(self._key("handles", job_id), json.dumps(current.to_dict()))
            pipe.delete(self._handle_key(job_id, replica))
            pipe.execute()

    def current_handle(self, job_id: str, replica: int = 0) -> Optional[ContainerHandle]:
        raw = self.client.get(self._handle_key(job_id, replica))
        return ContainerHandle.from_dict(json.loads(raw)) if raw else None

    def handle_history(self, job_id: str) -> List[ContainerHandle]:
        return [ContainerHandle.from_dict(json.loads(raw)) for raw in self.client.lrange(self._key("handles", job_id), 0, -1)]

    # Nodes

    def save_node(self, node: Node):
        with self.client.pipeline() as pipe:
            pipe.set(self._key("node", node.name), json.dumps(node.to_dict()))
            pipe.sadd(self._key("nodes"), node.name)
            pipe.execute()

    def register_node(self, config: NodeConfig) -> Node:
        """Store a node registration, keeping the health of an already known node."""
        try:
            health = self.load_node(config.name).health
        except NodeNotFound:
            health = NodeHealth()
        node = Node(config=config, health=health)
        self.save_node(node)
        return node

    def remove_node(self, name: str):
        with self.client.pipeline() as pipe:
            pipe.delete(self._key("node", name))
            pipe.srem(self._key("nodes"), name)
            pipe.execute()

    def load_node(self, name: str) -> Node:
        raw = self.client.get(self._key("node", name))
        if raw is None:
            raise NodeNotFound(f"no node named {name}")
        return Node.from_dict(json.loads(raw))

    def list_nodes(self) -> List[Node]:
        names = sorted(self.client.smembers(self._key("nodes")))
        if not names:
            return []
        raws = self.client.mget([self._key("node", name) for name in names])
        return [Node.from_dict(json.loads(raw)) for raw in raws if raw is not None]

    def record_heartbeat(self, name: str, capacity: Capacity, at: Optional[datetime] = None) -> Node:
        node = self.load_node(name)
        node.health = NodeHealth(last_heartbeat=at or utcnow(), observed=capacity)
        self.save_node(node)
        return node

    def record_heartbeat_failure(self, name: str, unreachable_after: int) -> Node:
        node = self.load_node(name)
        node.health.failures += 1
        if node.health.failures >= unreachable_after and not node.health.unreachable:
            node.health.unreachable = True
            logger.warning(f"[{name}] ✗ Marked unreachable after {node.health.failures} failed heartbeats")
        self.save_node(node)
        return node

    def add_node_job(self, name: str, job_id: str):
        self.client.sadd(self._key("node-jobs", name), job_id)

    def remove_node_job(self, name: str, job_id: str):
        self.client.srem(self._key("node-jobs", name), job_id)

    def node_load(self, name: str) -> int:
        return self.client.scard(self._key("node-jobs", name))
