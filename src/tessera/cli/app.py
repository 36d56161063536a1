"""Main CLI application using Typer."""

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from tessera import __version__

# Create Typer app
app = typer.Typer(
    name="tessera",
    help="tessera - run sandboxed WebAssembly command plugins",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route tessera's loggers through rich on stderr."""
    handler = RichHandler(console=err_console, show_path=False, rich_tracebacks=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger = logging.getLogger("tessera")
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False


@app.callback()
def main(
    ctx: typer.Context,
    config_path: str = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file (default: ~/.tessera/tessera.yaml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Run sandboxed WebAssembly command plugins."""
    from tessera.config.loader import ConfigError, load_config

    try:
        config = load_config(config_path)
    except ConfigError as e:
        err_console.print(str(e), style="red", markup=False)
        raise typer.Exit(1) from e

    configure_logging("DEBUG" if verbose else config.logging.level)
    ctx.obj = config


@app.command()
def version():
    """Show tessera version."""
    console.print(f"tessera version {__version__}")


@app.command("list")
def list_cmd(ctx: typer.Context):
    """List commands provided by installed plugins."""
    from tessera.cli.plugin_cmd import list_commands

    raise typer.Exit(list_commands(ctx.obj))


@app.command()
def info(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Command name"),
):
    """Show a plugin's manifest and declared capabilities."""
    from tessera.cli.plugin_cmd import info_command

    raise typer.Exit(info_command(ctx.obj, name))


@app.command(
    context_settings={
        "allow_extra_args": True,
        "ignore_unknown_options": True,
        "allow_interspersed_args": False,
    },
)
def run(ctx: typer.Context):
    """Run a plugin command: [TRUST FLAGS] NAME [ARGS]...

    Trust flags (--trust-plugin ID, --trust-command NAME and --trust-session
    unless permissions.trust_flag_template says otherwise) go before NAME.
    Everything after NAME is passed to the plugin unchanged.
    """
    from tessera.cli.plugin_cmd import run_command

    config = ctx.find_root().obj
    directives, rest = config.permissions.trust_flag_config().split_args(ctx.args)
    if not rest:
        err_console.print("Missing command name.", style="red")
        raise typer.Exit(1)
    raise typer.Exit(run_command(config, rest[0], rest[1:], directives))


@app.command()
def trust(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Plugin id (file stem) or command name"),
    command: bool = typer.Option(False, "--command", help="NAME is a command name"),
    persistent: bool = typer.Option(False, "--persistent", "-p", help="Remember across runs"),
):
    """Grant every capability to one plugin or command."""
    from tessera.cli.plugin_cmd import trust_subject

    raise typer.Exit(trust_subject(ctx.obj, name, command=command, persistent=persistent))


@app.command()
def watch(ctx: typer.Context):
    """Load plugins and reload them as their files change (Ctrl-C to stop)."""
    from tessera.cli.plugin_cmd import watch_command

    raise typer.Exit(watch_command(ctx.obj))


# Grant commands
grants_app = typer.Typer(help="Inspect and revoke stored permission decisions")
app.add_typer(grants_app, name="grants")


@grants_app.command("list")
def grants_list(
    ctx: typer.Context,
    subject: str = typer.Argument(None, help="Only show plugin:NAME or command:NAME"),
):
    """List stored decisions."""
    from tessera.cli.plugin_cmd import list_grants

    raise typer.Exit(list_grants(ctx.find_root().obj, subject))


@grants_app.command("revoke")
def grants_revoke(
    ctx: typer.Context,
    subject: str = typer.Argument(..., help="plugin:NAME or command:NAME"),
):
    """Forget every decision for a subject."""
    from tessera.cli.plugin_cmd import revoke_grants

    raise typer.Exit(revoke_grants(ctx.find_root().obj, subject))


if __name__ == "__main__":
    app()
