import logging
import shutil
import socket
import time
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from typing_extensions import override

from elx.constants import CONFIG_FILE_NAMES
from elx.errors import ConfigError
from elx.models import DevConfig

# legacy_windows=False: the VT console path renders the prefixes and emoji on Windows
console = Console(legacy_windows=False, highlight=False)

PREFIX_WIDTH = 14


def format_elapsed_ms(start_time_perf: float) -> str:
    """Human-readable time since a `time.perf_counter()` reading ("840ms", "2s 15ms")."""
    elapsed_ms = int((time.perf_counter() - start_time_perf) * 1000)
    seconds, ms = divmod(elapsed_ms, 1000)
    return f"{seconds}s {ms}ms" if seconds else f"{ms}ms"


def print_with_prefix(prefix: str, text: str, color: str, width: int = PREFIX_WIDTH):
    """Print `text` as `HH:MM:SS.mmm | prefix | line`, one row per line of text."""
    now = time.time()
    stamp = time.strftime("%H:%M:%S", time.localtime(now)) + f".{int(now % 1 * 1000):03d}"
    label = f"[{color}]{escape(prefix).ljust(width)}[/]"
    for line in text.splitlines() or [""]:
        console.print(f"[dim]{stamp}[/] | {label} | {escape(line)}")


class PrefixedLogHandler(logging.Handler):
    """Renders records through `print_with_prefix`; warnings and errors recolor the prefix."""

    def __init__(self, prefix: str, color: str, width: int = PREFIX_WIDTH):
        super().__init__()
        self.prefix: str = prefix
        self.color: str = color
        self.width: int = width

    def _color_for(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.ERROR:
            return "red"
        if record.levelno >= logging.WARNING:
            return "yellow"
        return self.color

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            print_with_prefix(
                self.prefix, self.format(record), self._color_for(record), self.width
            )
        except Exception:
            self.handleError(record)


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def is_command_available(command: str) -> bool:
    """Check if an executable is on PATH (or is an existing file)."""
    return shutil.which(command) is not None or Path(command).is_file()


def find_config_file(project_dir: Path) -> Path | None:
    for name in CONFIG_FILE_NAMES:
        candidate = project_dir / name
        if candidate.is_file():
            return candidate
    return None


def load_dev_config(project_dir: Path, **overrides: Any) -> DevConfig:
    """Build the dev configuration for a project.

    Values come from (lowest to highest precedence) the `DevConfig` defaults,
    `elx.yml`/`elx.yaml` in the project directory and the non-None overrides
    (usually CLI options). A `.env` file in the project directory is loaded
    into the environment so the host process inherits it.

    Raises:
        ConfigError: If the config file cannot be parsed or fails validation
    """
    project_dir = project_dir.resolve()

    dotenv_path = project_dir / ".env"
    if dotenv_path.exists():
        load_dotenv(dotenv_path)

    data: dict[str, Any] = {}
    config_path = find_config_file(project_dir)
    if config_path is not None:
        try:
            loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read {config_path.name}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path.name} must contain a mapping")
        data.update(loaded)

    data.update({k: v for k, v in overrides.items() if v is not None})
    data["project_dir"] = project_dir

    try:
        return DevConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid dev configuration: {e}") from e


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check if a port is available for binding.

    A successful connect means something is already listening; otherwise a
    bind attempt (without SO_REUSEADDR) decides.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.2)
            if sock.connect_ex(("127.0.0.1", port)) == 0:
                return False
    except OSError:
        pass

    for bind_host in {host, "127.0.0.1"}:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 0)
                sock.bind((bind_host, port))
        except socket.gaierror:
            continue
        except OSError:
            return False
    return True
