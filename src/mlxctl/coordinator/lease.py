import threading

import redis
from loguru import logger

from mlxctl.store import StateStore


class LeaseKeeper(threading.Thread):
    """Renews a job lease every third of its duration until stopped; sets ``lost`` if renewal is refused."""

    def __init__(self, store: StateStore, job_id: str, worker_id: str, lease_duration: float):
        super().__init__(name=f"lease-{job_id[:8]}", daemon=True)
        self.store = store
        self.job_id = job_id
        self.worker_id = worker_id
        self.lease_duration = lease_duration
        self.lost = threading.Event()
        self._halt = threading.Event()

    def run(self):
        interval = max(self.lease_duration / 3.0, 0.05)
        while not self._halt.wait(interval):
            try:
                renewed = self.store.renew_lease(self.job_id, self.worker_id, self.lease_duration)
            except redis.RedisError as e:
                logger.warning(f"[{self.worker_id}] Lease renewal for job {self.job_id} failed: {e}")
                continue
            if not renewed:
                logger.warning(f"[{self.worker_id}] ✗ Lost lease on job {self.job_id}")
                self.lost.set()
                return

    def stop(self):
        self._halt.set()
        if self.is_alive():
            self.join()

    def __enter__(self) -> "LeaseKeeper":
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()
