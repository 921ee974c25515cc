import threading
import time
from dataclasses import replace

import pytest

from mlxctl.coordinator import Coordinator, HeartbeatMonitor, Worker, WorkerPool, backoff_delay
from mlxctl.errors import (
    BackendUnreachable,
    ConnectionFailed,
    IllegalTransition,
    InvalidSpec,
    JobNotFound,
    MlxError,
    ResourceUnavailable,
)
from mlxctl.model.handle import BackendKind, ContainerHandle, ImageHandle, RunSpec
from mlxctl.model.job import JobEvent, JobState, create, transition

from conftest import FakeRuntime


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def coordinator(store, config, cluster):
    return Coordinator(store, config, connect_fn=cluster.connect)


@pytest.fixture
def worker(store, config, cluster):
    return Worker(store, config, worker_id="w1", connect_fn=cluster.connect)


def _states(job):
    return [entry["state"] for entry in job.history]


def test_backoff_doubles_up_to_maximum():
    assert [backoff_delay(n, 2.0, 10.0) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]
    assert backoff_delay(0, 2.0, 10.0) == 2.0


def test_job_runs_to_success(coordinator, worker, cluster, store, spec_factory):
    cluster.add_node("gpu-1")
    job = coordinator.submit(spec_factory())

    done = worker.run_once(timeout=1)

    assert done.state == JobState.SUCCEEDED
    assert done.attempts == 1
    assert done.handle.container_id == "gpu-1-c1"
    assert _states(done) == ["pending", "placed", "dispatching", "running", "succeeded"]
    assert store.lease_holder(job.job_id) is None
    assert store.node_load("gpu-1") == 0


def test_transient_failures_are_retried(coordinator, worker, cluster, store, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.start_errors = [BackendUnreachable("podman socket gone"), BackendUnreachable("podman socket gone")]
    job = coordinator.submit(spec_factory(max_retries=2))

    first = worker.run_once(timeout=1)
    assert first.state == JobState.PENDING
    assert first.last_error.kind == "BackendUnreachable"
    worker.run_once(timeout=1)
    final = worker.run_once(timeout=1)

    assert final.state == JobState.SUCCEEDED
    assert final.attempts == 3
    states = _states(store.load_job(job.job_id))
    assert states.count("failed") == 2
    assert states[-2:] == ["running", "succeeded"]


def test_exhausted_retries_leave_job_failed(coordinator, worker, cluster, store, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.start_errors = [ResourceUnavailable("no free gpu")]
    job = coordinator.submit(spec_factory(kind="serve", port=8080, max_retries=0))

    failed = worker.run_once(timeout=1)

    assert failed.state == JobState.FAILED
    assert failed.is_terminal
    status = coordinator.get_status(job.job_id)
    assert status.terminal
    assert status.last_error.kind == "ResourceUnavailable"
    assert store.queue_length() == 0
    assert store.client.zcard(store._key("delayed")) == 0


def test_fatal_error_is_not_retried(coordinator, worker, cluster, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.start_errors = [MlxError("malformed run spec")]
    coordinator.submit(spec_factory(max_retries=3))

    failed = worker.run_once(timeout=1)

    assert failed.state == JobState.FAILED
    assert failed.attempts == 1
    assert failed.is_terminal


def test_crashed_container(coordinator, worker, cluster, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.exit_codes = [3]
    coordinator.submit(spec_factory(max_retries=0))

    failed = worker.run_once(timeout=1)

    assert failed.state == JobState.FAILED
    assert failed.last_error.kind == "ContainerCrashed"
    assert "code 3" in failed.last_error.message


def test_lost_container_fails_after_unknown_timeout(coordinator, worker, cluster, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.inspect_errors = [ConnectionFailed("ssh: connection reset")]
    coordinator.submit(spec_factory(max_retries=0))

    failed = worker.run_once(timeout=1)

    assert failed.state == JobState.FAILED
    assert failed.last_error.kind == "BackendUnreachable"


def test_no_eligible_node_waits_without_using_an_attempt(coordinator, worker, store, spec_factory):
    job = coordinator.submit(spec_factory())

    waiting = worker.run_once(timeout=1)

    assert waiting.state == JobState.PENDING
    assert waiting.attempts == 0
    assert store.client.zscore(store._key("delayed"), job.job_id) is not None
    assert store.lease_holder(job.job_id) is None


def test_stale_node_is_skipped_and_its_jobs_untouched(coordinator, worker, cluster, store, spec_factory):
    cluster.add_node("stale", heartbeat_age=600)
    cluster.add_node("fresh")

    running = create(spec_factory())
    running = transition(running, JobEvent.PLACE, node="stale")
    running = transition(running, JobEvent.DISPATCH)
    running = transition(running, JobEvent.START)
    store.save_job(running)

    coordinator.submit(spec_factory())
    done = worker.run_once(timeout=1)

    assert done.node == "fresh"
    assert store.load_job(running.job_id).state == JobState.RUNNING


def test_selector_routes_job(coordinator, worker, cluster, spec_factory):
    cluster.add_node("a100", labels={"gpu": "a100"})
    cluster.add_node("t4", labels={"gpu": "t4"})
    coordinator.submit(spec_factory(node_selector={"gpu": "t4"}))

    assert worker.run_once(timeout=1).node == "t4"


def test_cancel_pending_job(coordinator, worker, cluster, store, spec_factory):
    runtime = cluster.add_node("gpu-1")
    job = coordinator.submit(spec_factory())

    cancelled = coordinator.cancel(job.job_id[:8])

    assert cancelled.state == JobState.CANCELLED
    assert not store.cancel_requested(job.job_id)
    assert worker.run_once(timeout=1) is None
    assert runtime.started == 0


def test_cancel_running_job(coordinator, worker, cluster, store, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.hold = True
    job = coordinator.submit(spec_factory())
    result = {}
    thread = threading.Thread(target=lambda: result.update(job=worker.run_once(timeout=1)))
    thread.start()

    assert wait_for(lambda: store.load_job(job.job_id).state == JobState.RUNNING)
    assert coordinator.cancel(job.job_id).state == JobState.RUNNING
    thread.join(timeout=10)

    assert result["job"].state == JobState.CANCELLED
    assert _states(result["job"])[-2:] == ["cancelling", "cancelled"]
    assert runtime.stopped == [("gpu-1-c1", 1)]


def test_cancel_finished_job_is_a_no_op(coordinator, worker, cluster, store, spec_factory):
    cluster.add_node("gpu-1")
    job = coordinator.submit(spec_factory())
    worker.run_once(timeout=1)

    assert coordinator.cancel(job.job_id).state == JobState.SUCCEEDED
    assert not store.cancel_requested(job.job_id)


def test_submit_rejects_invalid_spec(coordinator, store, spec_factory):
    with pytest.raises(InvalidSpec) as excinfo:
        coordinator.submit(spec_factory(entrypoint=[], resources={"cpu": "0", "memory": "1Gi", "gpu": 0}))
    assert "entrypoint must not be empty" in excinfo.value.problems
    assert store.queue_length() == 0
    assert coordinator.list_jobs() == []


def test_submit_applies_resource_limits(coordinator, spec_factory):
    with pytest.raises(InvalidSpec):
        coordinator.submit(spec_factory(resources={"cpu": "2", "memory": "4Gi", "gpu": 64}))


def test_logs_of_started_job(coordinator, worker, cluster, spec_factory):
    cluster.add_node("gpu-1")
    job = coordinator.submit(spec_factory())
    with pytest.raises(MlxError):
        coordinator.logs(job.job_id)

    worker.run_once(timeout=1)
    with coordinator.logs(job.job_id) as stream:
        assert list(stream) == ["gpu-1-c1 line 0", "gpu-1-c1 line 1", "gpu-1-c1 line 2"]


def test_heartbeat_failures_mark_node_unreachable(coordinator, cluster):
    runtime = cluster.add_node("gpu-1")
    runtime.capacity_error = ConnectionFailed("ssh: no route to host")

    coordinator.heartbeat_nodes()
    assert not coordinator.list_nodes()[0].health.unreachable
    coordinator.heartbeat_nodes()
    assert coordinator.list_nodes()[0].health.unreachable

    runtime.capacity_error = None
    node = coordinator.heartbeat_nodes()[0]
    assert not node.health.unreachable
    assert node.health.failures == 0


def test_start_reuses_live_container():
    runtime = FakeRuntime("gpu-1")
    runtime.hold = True
    image = ImageHandle(ref="python:3.11", backend=runtime.backend)
    run = RunSpec(job_id="job-1", name="mlx-job-1-1", command=["python", "train.py"])

    first = runtime.start(image, run)
    second = runtime.start(image, run)

    assert first.container_id == second.container_id
    assert runtime.started == 1


def test_shutdown_hands_running_job_back(store_factory, store, config, cluster, coordinator, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.hold = True
    job = coordinator.submit(spec_factory())
    pool = WorkerPool(store_factory, config, workers=1, connect_fn=cluster.connect, heartbeat=False)
    pool.start()

    assert wait_for(lambda: store.load_job(job.job_id).state == JobState.RUNNING)
    pool.shutdown(timeout=10)

    assert store.lease_holder(job.job_id) is None
    assert store.load_job(job.job_id).state == JobState.RUNNING
    assert store.queue_length() == 1

    # the next worker resumes monitoring the same container
    runtime.hold = False
    resumed = Worker(store, config, worker_id="w2", connect_fn=cluster.connect).run_once(timeout=1)
    assert resumed.state == JobState.SUCCEEDED
    assert runtime.started == 1


def _running_on(spec, node, container_id="c-old"):
    job = create(spec)
    job = transition(job, JobEvent.PLACE, node=node)
    job = transition(job, JobEvent.DISPATCH)
    handle = ContainerHandle(backend=BackendKind.PODMAN, container_id=container_id, job_id=job.job_id, node=node)
    return transition(replace(job, handle=handle), JobEvent.START)


def test_cancel_after_worker_crash_keeps_job_reclaimable(coordinator, worker, cluster, store, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.hold = True
    job = coordinator.submit(spec_factory())
    claimed = store.dequeue_with_lock("crashed", lease_duration=0.1, timeout=1)
    # the crashed worker got as far as placing the job
    store.publish_status(transition(claimed, JobEvent.PLACE, node="gpu-1"))
    time.sleep(0.2)

    assert coordinator.cancel(job.job_id).state == JobState.PLACED
    assert store.lease_holder(job.job_id) is None
    assert store.client.lrange(store._key("processing"), 0, -1) == [job.job_id]

    done = worker.run_once(timeout=1)
    assert done.job_id == job.job_id
    assert done.state == JobState.CANCELLED


def test_worker_loop_survives_unexpected_errors(worker, monkeypatch):
    calls = []

    def flaky(timeout=None):
        calls.append(timeout)
        if len(calls) == 1:
            raise ValueError("garbled job record")
        worker.stop_event.set()

    monkeypatch.setattr(worker, "run_once", flaky)
    thread = threading.Thread(target=worker.run)
    thread.start()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert len(calls) == 2


def test_heartbeat_monitor_survives_unexpected_errors(store, config, cluster, monkeypatch):
    stop = threading.Event()
    monitor = HeartbeatMonitor(store, config, stop, cluster.connect)
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise KeyError("observed")
        stop.set()
        return []

    monkeypatch.setattr(monitor, "check_once", flaky)
    monitor.start()
    monitor.join(timeout=5)

    assert not monitor.is_alive()
    assert len(calls) == 2


def test_job_on_removed_node_is_retried_elsewhere(coordinator, worker, cluster, store, spec_factory):
    cluster.add_node("gone")
    cluster.add_node("gpu-2")
    job = _running_on(spec_factory(max_retries=1), "gone")
    store.save_job(job)
    store.enqueue(job.job_id)
    coordinator.remove_node("gone")

    retried = worker.run_once(timeout=1)
    assert retried.state == JobState.PENDING
    assert retried.last_error.kind == "BackendUnreachable"

    done = worker.run_once(timeout=1)
    assert done.state == JobState.SUCCEEDED
    assert done.node == "gpu-2"


def test_node_removed_before_deploy_is_a_retryable_failure(coordinator, worker, cluster, store, spec_factory):
    cluster.add_node("gone")
    job = transition(create(spec_factory(max_retries=1)), JobEvent.PLACE, node="gone")
    store.save_job(job)
    store.enqueue(job.job_id)
    coordinator.remove_node("gone")

    retried = worker.run_once(timeout=1)
    assert retried.state == JobState.PENDING
    assert retried.last_error.kind == "BackendUnreachable"
    assert "removed" in retried.last_error.message


def test_explain_reports_each_node(coordinator, cluster, spec_factory):
    cluster.add_node("stale", heartbeat_age=600)
    cluster.add_node("t4", labels={"gpu": "t4"})
    cluster.add_node("a100", labels={"gpu": "a100"})
    job = coordinator.submit(spec_factory(node_selector={"gpu": "a100"}))

    reasons = coordinator.explain(job.job_id[:8])

    assert reasons["a100"] == "ok"
    assert reasons["stale"] == "stale heartbeat"
    assert reasons["t4"] == "label gpu=a100 missing"


def test_serve_job_starts_every_replica(coordinator, worker, cluster, spec_factory):
    runtime = cluster.add_node("gpu-1")
    job = coordinator.submit(spec_factory(kind="serve", port=8080, replicas=3))

    done = worker.run_once(timeout=1)

    assert done.state == JobState.SUCCEEDED
    assert runtime.started == 3
    assert [h.replica for h in done.handles] == [0, 1, 2]
    runs = sorted((c["run"] for c in runtime.containers.values()), key=lambda run: run.replica)
    assert [run.host_port for run in runs] == [8080, 8081, 8082]
    assert runs[2].name == f"mlx-{job.job_id[:8]}-1-r2"


def test_crashed_replica_fails_the_job(coordinator, worker, cluster, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.exit_codes = [0, 4]
    coordinator.submit(spec_factory(kind="serve", port=8080, replicas=2, max_retries=0))

    failed = worker.run_once(timeout=1)

    assert failed.state == JobState.FAILED
    assert failed.last_error.kind == "ContainerCrashed"
    assert "replica 1" in failed.last_error.message


def test_failed_replica_start_stops_started_ones(coordinator, worker, cluster, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.hold = True
    original_start = runtime._start

    def start_once(image, run):
        if run.replica == 1:
            raise ResourceUnavailable("port 8081 in use")
        return original_start(image, run)

    runtime._start = start_once
    coordinator.submit(spec_factory(kind="serve", port=8080, replicas=2, max_retries=0))

    failed = worker.run_once(timeout=1)

    assert failed.state == JobState.FAILED
    assert failed.last_error.kind == "ResourceUnavailable"
    assert runtime.stopped == [("gpu-1-c1", 0)]


def test_scale_pending_job_updates_spec(coordinator, store, spec_factory):
    job = coordinator.submit(spec_factory(kind="serve", port=8080))

    scaled = coordinator.scale(job.job_id, 2)

    assert scaled.spec.replicas == 2
    assert store.load_job(job.job_id).spec.replicas == 2
    assert store.scale_requested(job.job_id) is None
    assert store.lease_holder(job.job_id) is None


def test_scale_running_job_up_and_down(coordinator, worker, cluster, store, spec_factory):
    runtime = cluster.add_node("gpu-1")
    runtime.hold = True
    job = coordinator.submit(spec_factory(kind="serve", port=8080))
    result = {}
    thread = threading.Thread(target=lambda: result.update(job=worker.run_once(timeout=1)))
    thread.start()
    assert wait_for(lambda: store.load_job(job.job_id).state == JobState.RUNNING)

    assert coordinator.scale(job.job_id, 3).spec.replicas == 1
    assert wait_for(lambda: len(store.load_job(job.job_id).handles) == 3)
    assert coordinator.get_status(job.job_id).running_replicas == 3
    assert runtime.started == 3

    coordinator.scale(job.job_id, 1)
    assert wait_for(lambda: len(store.load_job(job.job_id).handles) == 1)
    assert sorted(runtime.stopped) == [("gpu-1-c2", 1), ("gpu-1-c3", 1)]
    assert {h.replica for h in store.handle_history(job.job_id)} == {1, 2}
    assert store.load_job(job.job_id).spec.replicas == 1

    coordinator.cancel(job.job_id)
    thread.join(timeout=10)
    assert result["job"].state == JobState.CANCELLED


def test_scale_is_refused_for_other_kinds_and_finished_jobs(coordinator, worker, cluster, spec_factory):
    cluster.add_node("gpu-1")
    train = coordinator.submit(spec_factory())
    with pytest.raises(InvalidSpec):
        coordinator.scale(train.job_id, 2)

    serve = coordinator.submit(spec_factory(kind="serve", port=8080))
    with pytest.raises(InvalidSpec):
        coordinator.scale(serve.job_id, 0)
    with pytest.raises(InvalidSpec):
        coordinator.scale(serve.job_id, 64)

    coordinator.cancel(serve.job_id)
    with pytest.raises(IllegalTransition):
        coordinator.scale(serve.job_id, 2)


def test_logs_of_a_replica(coordinator, worker, cluster, spec_factory):
    cluster.add_node("gpu-1")
    job = coordinator.submit(spec_factory(kind="serve", port=8080, replicas=2))
    worker.run_once(timeout=1)

    with coordinator.logs(job.job_id, replica=1) as stream:
        assert list(stream)[0] == "gpu-1-c2 line 0"
    with pytest.raises(MlxError):
        coordinator.logs(job.job_id, replica=5)


def test_remove_finished_job(coordinator, worker, cluster, store, spec_factory):
    cluster.add_node("gpu-1")
    job = coordinator.submit(spec_factory())
    worker.run_once(timeout=1)

    assert coordinator.remove(job.job_id[:8]).job_id == job.job_id
    with pytest.raises(JobNotFound):
        coordinator.get_job(job.job_id)
    assert store.current_handle(job.job_id) is None


def test_remove_active_job_is_refused(coordinator, spec_factory):
    job = coordinator.submit(spec_factory())
    with pytest.raises(IllegalTransition):
        coordinator.remove(job.job_id)
    assert coordinator.get_job(job.job_id).state == JobState.PENDING


def test_remove_by_name_needs_all_for_several_jobs(coordinator, spec_factory):
    first = coordinator.submit(spec_factory(name="sweep"))
    second = coordinator.submit(spec_factory(name="sweep"))
    active = coordinator.submit(spec_factory(name="sweep"))
    coordinator.cancel(first.job_id)
    coordinator.cancel(second.job_id)

    with pytest.raises(MlxError):
        coordinator.remove_by_name("sweep")
    with pytest.raises(JobNotFound):
        coordinator.remove_by_name("nothing")

    removed = coordinator.remove_by_name("sweep", all_jobs=True)

    assert {job.job_id for job in removed} == {first.job_id, second.job_id}
    assert [job.job_id for job in coordinator.list_jobs()] == [active.job_id]
