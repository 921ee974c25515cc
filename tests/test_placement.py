from datetime import timedelta

from mlxctl.config import KubernetesNodeConfig, PodmanNodeConfig
from mlxctl.coordinator.placement import explain, select_node
from mlxctl.errors import utcnow
from mlxctl.model.job import create
from mlxctl.model.node import Node, NodeHealth
from mlxctl.model.resources import Capacity, parse_memory

NOW = utcnow()


def node(name, backend="podman", age=0.0, observed_cpu=8.0, memory="32Gi", gpu=1, unreachable=False, **config):
    config_cls = PodmanNodeConfig if backend == "podman" else KubernetesNodeConfig
    health = NodeHealth(
        last_heartbeat=NOW - timedelta(seconds=age),
        observed=Capacity(cpu=observed_cpu, memory=parse_memory(memory), gpu=gpu),
        unreachable=unreachable,
    )
    return Node(config_cls(name=name, backend=backend, **config), health)


def test_least_loaded_node_wins_then_name(spec_factory):
    job = create(spec_factory())
    nodes = [node("b"), node("a"), node("c")]

    assert select_node(job, nodes, NOW, 60).name == "a"
    assert select_node(job, nodes, NOW, 60, load={"a": 2, "b": 1, "c": 1}).name == "b"


def test_stale_and_unreachable_nodes_are_skipped(spec_factory):
    job = create(spec_factory())
    nodes = [node("stale", age=600), node("down", unreachable=True), node("ok")]

    assert select_node(job, nodes, NOW, 60).name == "ok"
    reasons = explain(job, nodes, NOW, 60)
    assert reasons == {"stale": "stale heartbeat", "down": "unreachable", "ok": "ok"}


def test_capacity_must_fit(spec_factory):
    job = create(spec_factory(resources={"cpu": "16", "memory": "4Gi", "gpu": 0}))
    assert select_node(job, [node("small", observed_cpu=8.0)], NOW, 60) is None
    assert select_node(job, [node("big", observed_cpu=32.0)], NOW, 60).name == "big"


def test_declared_capacity_caps_observed(spec_factory):
    job = create(spec_factory(resources={"cpu": "16", "memory": "4Gi", "gpu": 0}))
    assert select_node(job, [node("roomy", observed_cpu=32.0)], NOW, 60).name == "roomy"
    assert select_node(job, [node("capped", observed_cpu=32.0, cpu="8")], NOW, 60) is None


def test_backend_must_support_code_source(spec_factory):
    job = create(spec_factory(code={"path": "./src"}))
    nodes = [node("cluster", backend="kubernetes"), node("box")]
    assert select_node(job, nodes, NOW, 60).name == "box"

    build_job = create(spec_factory(image=None, build_context="."))
    assert select_node(build_job, [node("cluster", backend="kubernetes")], NOW, 60) is None


def test_selector_and_target_node(spec_factory):
    nodes = [node("a100-1", labels={"gpu": "a100"}), node("t4-1", labels={"gpu": "t4"})]

    selected = create(spec_factory(node_selector={"gpu": "t4"}))
    assert select_node(selected, nodes, NOW, 60).name == "t4-1"

    pinned = create(spec_factory(node="a100-1"))
    assert select_node(pinned, nodes, NOW, 60).name == "a100-1"
