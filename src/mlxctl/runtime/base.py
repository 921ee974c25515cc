import threading
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Iterator, Optional

from loguru import logger

from mlxctl.model.handle import (
    BackendKind,
    ContainerHandle,
    ContainerObservation,
    ContainerStatus,
    ImageHandle,
    RunSpec,
)
from mlxctl.model.resources import Capacity

JOB_LABEL = "mlx.job"
REPLICA_LABEL = "mlx.replica"


class LineStream:
    """
    Lazy sequence of log lines.

    Finite when the underlying source ends (container exited). ``close()`` may
    be called from any thread; it cancels the source and ends iteration.
    """

    def __init__(self, lines: Iterable[str], cancel: Optional[Callable[[], None]] = None):
        self._lines = lines
        self._cancel = cancel
        self._closed = threading.Event()

    def __iter__(self) -> Iterator[str]:
        try:
            for line in self._lines:
                if self._closed.is_set():
                    break
                if isinstance(line, bytes):
                    line = line.decode("utf-8", errors="replace")
                yield line.rstrip("\r\n")
        finally:
            self.close()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self):
        if self._closed.is_set():
            return
        self._closed.set()
        if self._cancel is not None:
            try:
                self._cancel()
            except OSError as e:
                logger.debug(f"Ignoring error while closing log stream: {e}")

    def __enter__(self) -> "LineStream":
        return self

    def __exit__(self, *exc):
        self.close()


class ContainerRuntime(ABC):
    """One container backend on one node. Reports observations, never job state."""

    backend: BackendKind

    def __init__(self, node_name: str):
        self.node_name = node_name

    @abstractmethod
    def _build_or_pull(self, image_ref: str, context_dir: Optional[str]) -> ImageHandle:
        pass

    @abstractmethod
    def _find_live(self, job_id: str, replica: int) -> Optional[ContainerHandle]:
        pass

    @abstractmethod
    def _start(self, image: ImageHandle, run: RunSpec) -> ContainerHandle:
        pass

    @abstractmethod
    def _inspect(self, handle: ContainerHandle) -> ContainerObservation:
        pass

    @abstractmethod
    def _stop(self, handle: ContainerHandle, grace_period: int):
        pass

    @abstractmethod
    def _logs(self, handle: ContainerHandle, follow: bool) -> LineStream:
        pass

    @abstractmethod
    def _capacity(self) -> Capacity:
        pass

    def _handle(
        self, container_id: str, job_id: str, status: ContainerStatus = ContainerStatus.CREATED, replica: int = 0
    ) -> ContainerHandle:
        return ContainerHandle(
            backend=self.backend,
            container_id=container_id,
            job_id=job_id,
            node=self.node_name,
            status=status,
            replica=replica,
        )

    def build_or_pull(self, image_ref: str, context_dir: Optional[str] = None) -> ImageHandle:
        return self._build_or_pull(image_ref, context_dir)

    def start(self, image: ImageHandle, run: RunSpec) -> ContainerHandle:
        """Start the container of one job replica, or return the one still alive for it."""
        existing = self._find_live(run.job_id, run.replica)
        if existing is not None:
            logger.info(f"[{self.node_name}] ✓ Reusing live container {existing.container_id} for job {run.job_id}")
            return existing
        handle = self._start(image, run)
        logger.info(f"[{self.node_name}] 🚀 Started {self.backend.value} container {handle.container_id} for job {run.job_id}")
        return handle

    def inspect(self, handle: ContainerHandle) -> ContainerObservation:
        return self._inspect(handle)

    def stop(self, handle: ContainerHandle, grace_period: int = 10):
        logger.info(f"[{self.node_name}] Stopping container {handle.container_id} (grace {grace_period}s)")
        self._stop(handle, grace_period)

    def logs(self, handle: ContainerHandle, follow: bool = False) -> LineStream:
        return self._logs(handle, follow)

    def capacity(self) -> Capacity:
        return self._capacity()
