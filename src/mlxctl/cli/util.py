import functools
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import typer
from rich import print
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from mlxctl.config import MlxConfig, load_config
from mlxctl.coordinator import Coordinator
from mlxctl.errors import MlxError
from mlxctl.model.job import Job, JobKind, JobState, JobStatus
from mlxctl.model.node import Node
from mlxctl.model.resources import format_memory

STATE_STYLES = {
    JobState.PENDING: "yellow",
    JobState.PLACED: "cyan",
    JobState.DISPATCHING: "cyan",
    JobState.RUNNING: "blue",
    JobState.SUCCEEDED: "green",
    JobState.FAILED: "red",
    JobState.CANCELLING: "magenta",
    JobState.CANCELLED: "magenta",
}


def handle_errors(func):
    """Print orchestration errors and exit non-zero instead of dumping a traceback."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except MlxError as e:
            print(f"[bold red]✗ {e.kind}[/bold red]: {e.message}")
            raise typer.Exit(code=1)

    return wrapper


def get_coordinator(config_path: str) -> Coordinator:
    return Coordinator.from_config(load_config(config_path))


def get_node_name_list(config: MlxConfig) -> List[str]:
    return [node.name for node in config.node_config_list]


def interactive_select_node_name(config: MlxConfig) -> str:
    table = Table(title="Configured Nodes")
    table.add_column("Index", style="cyan", justify="right")
    table.add_column("Node Name", style="magenta")
    table.add_column("Backend", style="green")

    for idx, node in enumerate(config.node_config_list):
        table.add_row(str(idx), node.name, node.backend)

    print(table)

    name_list = get_node_name_list(config)
    while True:
        try:
            idx = int(Prompt.ask("Please select a node by index", choices=[str(i) for i in range(len(name_list))]))
            return name_list[idx]
        except (ValueError, IndexError):
            print("[red]Invalid selection. Please choose a valid index.[/red]")


def parse_env(pairs: Optional[List[str]]) -> Dict[str, str]:
    env = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}")
        key, value = pair.split("=", 1)
        env[key] = value
    return env


def state_text(state: JobState) -> Text:
    return Text(state.value, style=STATE_STYLES.get(state, "white"))


def _ago(at: Optional[datetime]) -> str:
    if at is None:
        return "never"
    seconds = int((datetime.now(at.tzinfo) - at).total_seconds())
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    return f"{seconds // 3600}h ago"


def status_table(status: JobStatus) -> Table:
    table = Table(title=f"[bold magenta]Job {status.job_id}[/bold magenta]", show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Kind", status.kind.value)
    table.add_row("State", state_text(status.state))
    table.add_row("Attempts", f"{status.attempts} (max retries {status.max_retries})")
    table.add_row("Node", status.node or "-")
    table.add_row("Container", f"{status.backend}/{status.container_id}" if status.container_id else "-")
    if status.kind == JobKind.SERVE:
        table.add_row("Replicas", f"{status.running_replicas}/{status.replicas} running")
    table.add_row("Updated", f"{status.updated_at.isoformat(timespec='seconds')} ({_ago(status.updated_at)})")
    if status.last_error is not None:
        table.add_row("Last error", Text(str(status.last_error), style="red"))
    table.add_row("Terminal", "yes" if status.terminal else "no")
    return table


def jobs_table(jobs: Iterable[Job]) -> Table:
    table = Table(title="[bold magenta]Jobs[/bold magenta]")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Kind", style="green")
    table.add_column("State", justify="center")
    table.add_column("Attempts", justify="right")
    table.add_column("Node")
    table.add_column("Created")
    for job in jobs:
        table.add_row(
            job.job_id[:8],
            job.spec.name,
            job.kind.value,
            state_text(job.state),
            str(job.attempts),
            job.node or "-",
            _ago(job.created_at),
        )
    return table


def nodes_table(nodes: Iterable[Node], load: Optional[Dict[str, int]] = None) -> Table:
    load = load or {}
    table = Table(title="[bold magenta]Nodes[/bold magenta]")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Backend", style="green")
    table.add_column("Status", justify="center")
    table.add_column("CPU", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("GPU", justify="right")
    table.add_column("Jobs", justify="right")
    table.add_column("Heartbeat")
    for node in nodes:
        if node.health.unreachable:
            status = Text("❌ UNREACHABLE", style="red")
        elif node.health.last_heartbeat is None:
            status = Text("? UNKNOWN", style="yellow")
        elif node.health.failures:
            status = Text(f"⚠ {node.health.failures} FAILED", style="yellow")
        else:
            status = Text("✅ OK", style="green")
        capacity = node.capacity
        table.add_row(
            node.name,
            node.backend.value,
            status,
            f"{capacity.cpu:g}" if capacity else "-",
            format_memory(capacity.memory) if capacity else "-",
            str(capacity.gpu) if capacity else "-",
            str(load.get(node.name, 0)),
            _ago(node.health.last_heartbeat),
        )
    return table


def placement_table(reasons: Dict[str, str]) -> Table:
    table = Table(title="[bold magenta]Placement[/bold magenta]")
    table.add_column("Node", style="cyan", no_wrap=True)
    table.add_column("Eligible", justify="center")
    table.add_column("Reason")
    for name, reason in sorted(reasons.items()):
        ok = reason == "ok"
        table.add_row(name, Text("✅" if ok else "❌", style="green" if ok else "red"), reason)
    return table
