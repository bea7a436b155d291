"""Dev command for the elx CLI."""

import asyncio
import shlex
from pathlib import Path
from typing import Annotated

from typer import Argument, Exit, Option

from elx.cli.dev.logging import configure_dev_logging
from elx.cli.dev.orchestrator import DevOrchestrator
from elx.errors import ConfigError
from elx.utils import console, is_command_available, is_port_available, load_dev_config


def dev_command(
    project_dir: Annotated[
        Path | None,
        Argument(
            help="The path to the project. If not provided, current working directory will be used"
        ),
    ] = None,
    host: Annotated[
        str | None, Option(help="Host the renderer proxy listens on")
    ] = None,
    port: Annotated[
        int | None, Option("--port", "-p", help="Port for the renderer proxy")
    ] = None,
    bundler_port: Annotated[
        int | None,
        Option("--bundler-port", help="Port for the esbuild serve process"),
    ] = None,
    out_dir: Annotated[
        str | None,
        Option("--out-dir", help="Directory esbuild writes renderer assets to"),
    ] = None,
    reload_path: Annotated[
        str | None,
        Option("--reload-path", help="URL path of the live-reload event stream"),
    ] = None,
    host_command: Annotated[
        str | None,
        Option(
            "--host-command",
            help='Command that starts the desktop host (default: "electron .")',
        ),
    ] = None,
    verbose: Annotated[
        bool, Option("--verbose", "-v", help="Show debug logs and proxy access logs")
    ] = False,
):
    """Run esbuild, the renderer proxy and the desktop host until Ctrl+C."""
    if project_dir is None:
        project_dir = Path.cwd()

    try:
        config = load_dev_config(
            project_dir,
            host=host,
            proxy_port=port,
            bundler_port=bundler_port,
            out_dir=out_dir,
            reload_path=reload_path,
            host_command=shlex.split(host_command) if host_command else None,
            verbose=verbose or None,
        )
    except ConfigError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=1)

    esbuild = config.esbuild_command[0]
    if not is_command_available(esbuild):
        console.print(
            f"[red]❌ {esbuild} is not installed. Please install esbuild to continue.[/red]"
        )
        raise Exit(code=1)

    for label, checked_port in (
        ("Proxy", config.proxy_port),
        ("Bundler", config.bundler_port),
    ):
        if not is_port_available(checked_port, config.host):
            console.print(
                f"[red]❌ {label} port {checked_port} is already in use.[/red]"
            )
            raise Exit(code=1)

    configure_dev_logging(verbose=config.verbose, reload_path=config.reload_path)

    console.print(
        f"[bold cyan]🚀 Starting elx dev in {config.project_dir}[/bold cyan]"
    )
    try:
        exit_code = asyncio.run(DevOrchestrator(config).run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user[/yellow]")
        exit_code = 0

    if exit_code != 0:
        raise Exit(code=exit_code)
