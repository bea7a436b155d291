from typer import Typer

from elx import __version__
from elx.cli.dev.commands import dev_command
from elx.utils import console

app = Typer(
    name="elx",
    help="Development orchestrator for esbuild + Electron projects",
    no_args_is_help=True,
)

app.command(name="dev", help="Run the dev environment in the foreground")(dev_command)


@app.command(name="version", help="Show the elx version")
def version():
    console.print(f"elx {__version__}")


if __name__ == "__main__":
    app()
