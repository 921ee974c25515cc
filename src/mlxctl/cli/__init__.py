"""
Command Line Interface for mlxctl (Typer-based)

This module provides the ``mlx`` entry point.
"""

import sys

import typer
from loguru import logger

from .init import init_mlx
from .job import job_app
from .node import node_app
from .worker import worker_app

app = typer.Typer(
    name="mlx",
    help="mlx - Submit and manage ML jobs on remote Podman hosts and Kubernetes clusters",
    add_completion=False,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


@app.callback()
def configure_logging(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


app.command(name="init")(init_mlx)
app.add_typer(job_app, name="job")
app.add_typer(node_app, name="node")
app.add_typer(worker_app, name="worker")


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
