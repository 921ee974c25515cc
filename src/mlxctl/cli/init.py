from pathlib import Path

import typer
from loguru import logger

from mlxctl.config import DEFAULT_CONFIG_PATH, MlxConfig, save_config


def init_mlx(
    path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
    force: bool = typer.Option(False, "--force", "-f", help="Force overwrite the config file"),
):
    """
    Write an example config file at the given path (default: ./.mlx/config.yaml)
    """
    if Path(path).exists() and not force:
        logger.warning(f"Config file already exists at {path}, use --force to overwrite")
        return

    save_config(MlxConfig(), path)
