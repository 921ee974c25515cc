import typer
from rich import print

from mlxctl.cli.util import get_node_name_list, handle_errors, interactive_select_node_name, nodes_table
from mlxctl.config import DEFAULT_CONFIG_PATH, load_config
from mlxctl.coordinator import Coordinator
from mlxctl.errors import ConfigError

node_app = typer.Typer(
    name="node",
    help="Register and check compute nodes",
    add_completion=False,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


@node_app.command(name="register")
@handle_errors
def register_node(
    name: str = typer.Option("all", "--name", "-n", help="Name of the node, this command provide `all` as default value"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Interactive select node by name"),
):
    """
    Register nodes from the config file with the shared state store
    """
    config = load_config(config_path)
    if interactive:
        name = interactive_select_node_name(config)
    if name == "all":
        node_configs = list(config.node_config_list)
    else:
        node_configs = [config.load_node_config(name)]
    if not node_configs:
        raise ConfigError(f"no nodes configured in {config_path}, available names: {get_node_name_list(config)}")

    coordinator = Coordinator.from_config(config)
    for node_config in node_configs:
        node = coordinator.register_node(node_config)
        print(f"[green]✓ Registered[/green] [cyan]{node.name}[/cyan] ({node.backend.value})")


@node_app.command(name="ls")
@handle_errors
def list_nodes(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
):
    """
    List registered nodes with their last known health
    """
    coordinator = Coordinator.from_config(load_config(config_path))
    nodes = coordinator.list_nodes()
    if not nodes:
        print("[yellow]No nodes registered, run `mlx node register` first[/yellow]")
        return
    print(nodes_table(nodes, {node.name: coordinator.node_load(node.name) for node in nodes}))


@node_app.command(name="check")
@handle_errors
def check_nodes(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
):
    """
    Heartbeat every registered node now and show the results
    """
    coordinator = Coordinator.from_config(load_config(config_path))
    nodes = coordinator.heartbeat_nodes()
    if not nodes:
        print("[yellow]No nodes registered, run `mlx node register` first[/yellow]")
        return
    print(nodes_table(nodes, {node.name: coordinator.node_load(node.name) for node in nodes}))


@node_app.command(name="remove")
@handle_errors
def remove_node(
    name: str = typer.Argument(..., help="Name of the node"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--path", "-p", help="Path to the config file"),
):
    """
    Remove a node from the state store. Nothing new is placed on it; its running jobs
    turn unknown and are retried elsewhere after the unknown timeout
    """
    Coordinator.from_config(load_config(config_path)).remove_node(name)
    print(f"[green]✓ Removed[/green] [cyan]{name}[/cyan]")
