import json
import threading
from typing import List, Optional

import typer
from rich import print

from mlxctl.cli.util import (
    get_coordinator,
    handle_errors,
    jobs_table,
    parse_env,
    placement_table,
    state_text,
    status_table,
)
from mlxctl.config import DEFAULT_CONFIG_PATH
from mlxctl.coordinator import Coordinator
from mlxctl.errors import JobNotFound
from mlxctl.model.job import JobKind, JobSpec, JobState

job_app = typer.Typer(
    name="job",
    help="Submit, inspect, scale, cancel and remove jobs",
    add_completion=False,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _watch(coordinator: Coordinator, job_id: str) -> bool:
    """Print status changes until the job is terminal. Returns True if it succeeded."""
    stop = threading.Event()
    stream = coordinator.subscribe(job_id, stop)
    last = None
    try:
        for status in stream:
            if last is None or (status.state, status.attempts) != (last.state, last.attempts):
                line = f"[cyan]{status.job_id[:8]}[/cyan] {state_text(status.state).markup} attempt {status.attempts}"
                if status.state == JobState.FAILED and status.last_error is not None:
                    line += f" [red]{status.last_error}[/red]"
                print(line)
            last = status
    except KeyboardInterrupt:
        stop.set()
    finally:
        stream.close()
    return last is not None and last.state == JobState.SUCCEEDED


@job_app.command(name="submit")
@handle_errors
def submit_job(
    spec_path: str = typer.Argument(..., help="Path to the job spec YAML"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
    env: Optional[List[str]] = typer.Option(None, "--env", "-e", help="Extra environment variable, KEY=VALUE"),
    node: Optional[str] = typer.Option(None, "--node", "-n", help="Pin the job to a node"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Follow the job status until it finishes"),
):
    """
    Submit a job described by a spec file
    """
    spec = JobSpec.load(spec_path)
    spec.env.update(parse_env(env))
    if node:
        spec.node = node

    coordinator = get_coordinator(config_path)
    job = coordinator.submit(spec)
    print(f"[green]✓ Submitted[/green] {job.kind.value} job [cyan]{job.job_id}[/cyan]")
    if watch and not _watch(coordinator, job.job_id):
        raise typer.Exit(code=1)


@job_app.command(name="status")
@handle_errors
def job_status(
    job_id: str = typer.Argument(..., help="Job id (or a unique prefix)"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
    as_json: bool = typer.Option(False, "--json", help="Print the status as JSON"),
):
    """
    Show the current status of a job; pending jobs also show why each node can or cannot take them
    """
    coordinator = get_coordinator(config_path)
    status = coordinator.get_status(job_id)
    if as_json:
        typer.echo(json.dumps(status.to_dict(), indent=2))
        return
    print(status_table(status))
    if status.state == JobState.PENDING:
        reasons = coordinator.explain(status.job_id)
        if reasons:
            print(placement_table(reasons))
        else:
            print("[yellow]No nodes registered, run `mlx node register` first[/yellow]")


@job_app.command(name="watch")
@handle_errors
def watch_job(
    job_id: str = typer.Argument(..., help="Job id (or a unique prefix)"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
):
    """
    Follow a job's status until it is finished
    """
    if not _watch(get_coordinator(config_path), job_id):
        raise typer.Exit(code=1)


@job_app.command(name="cancel")
@handle_errors
def cancel_job(
    job_id: str = typer.Argument(..., help="Job id (or a unique prefix)"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
):
    """
    Cancel a job; running containers are stopped by the worker holding the job
    """
    job = get_coordinator(config_path).cancel(job_id)
    if job.state == JobState.CANCELLED:
        print(f"[green]✓ Job {job.job_id} cancelled[/green]")
    elif job.is_terminal:
        print(f"[yellow]Job {job.job_id} already {job.state.value}[/yellow]")
    else:
        print(f"[yellow]Cancellation of job {job.job_id} requested[/yellow]")


@job_app.command(name="ls")
@handle_errors
def list_jobs(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
    kind: Optional[JobKind] = typer.Option(None, "--kind", "-k", help="Only jobs of this kind"),
    state: Optional[JobState] = typer.Option(None, "--state", "-s", help="Only jobs in this state"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum number of jobs shown"),
):
    """
    List jobs, newest first
    """
    jobs = get_coordinator(config_path).list_jobs(kind=kind, state=state, limit=limit)
    if not jobs:
        print("[yellow]No jobs found[/yellow]")
        return
    print(jobs_table(jobs))


@job_app.command(name="logs")
@handle_errors
def job_logs(
    job_id: str = typer.Argument(..., help="Job id (or a unique prefix)"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep streaming while the container runs"),
    replica: int = typer.Option(0, "--replica", "-r", help="Replica of a serve job"),
):
    """
    Print the logs of a job's current container
    """
    with get_coordinator(config_path).logs(job_id, follow=follow, replica=replica) as stream:
        try:
            for line in stream:
                typer.echo(line)
        except KeyboardInterrupt:
            pass


@job_app.command(name="scale")
@handle_errors
def scale_job(
    job_id: str = typer.Argument(..., help="Job id (or a unique prefix) of a serve job"),
    replicas: int = typer.Argument(..., help="Number of replicas to run"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
):
    """
    Change the number of replicas of a serve job
    """
    job = get_coordinator(config_path).scale(job_id, replicas)
    if job.spec.replicas == replicas:
        print(f"[green]✓ Job {job.job_id} set to {replicas} replica(s)[/green]")
    else:
        print(f"[yellow]Scaling of job {job.job_id} to {replicas} replica(s) requested[/yellow]")


@job_app.command(name="rm")
@handle_errors
def remove_job(
    target: str = typer.Argument(..., help="Job id (or a unique prefix), or a job name"),
    all_jobs: bool = typer.Option(False, "--all", "-a", help="Remove every finished job with this name"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
):
    """
    Remove finished jobs from the state store, by id or by name
    """
    coordinator = get_coordinator(config_path)
    try:
        removed = [coordinator.remove(target)]
    except JobNotFound:
        removed = coordinator.remove_by_name(target, all_jobs=all_jobs)
    for job in removed:
        print(f"[green]✓ Removed[/green] {job.spec.name} [cyan]{job.job_id}[/cyan]")
    if not removed:
        print(f"[yellow]No finished job named {target} to remove[/yellow]")
