from typing import Optional

import typer
from rich import print

from mlxctl.cli.util import handle_errors
from mlxctl.config import DEFAULT_CONFIG_PATH, load_config
from mlxctl.connector import connect
from mlxctl.coordinator import Worker, WorkerPool
from mlxctl.store import StateStore

worker_app = typer.Typer(
    name="worker",
    help="Run dispatch workers",
    add_completion=False,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


@worker_app.command(name="run")
@handle_errors
def run_workers(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Number of worker threads (default from config)"),
    once: bool = typer.Option(False, "--once", help="Process at most one queued job, then exit"),
):
    """
    Dispatch queued jobs to nodes until interrupted (Ctrl-C)
    """
    config = load_config(config_path)

    def store_factory() -> StateStore:
        return StateStore.from_url(config.redis_url, config.namespace, config.orchestrator.reclaim_grace)

    store = store_factory()
    store.ping()
    if once:
        job = Worker(store, config, connect_fn=connect).run_once()
        if job is None:
            print("[yellow]Queue is empty[/yellow]")
        else:
            print(f"Job [cyan]{job.job_id}[/cyan] is {job.state.value}")
        return

    pool = WorkerPool(store_factory, config, workers=workers, connect_fn=connect)
    pool.start()
    pool.wait()
