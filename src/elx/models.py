"""Centralized Pydantic models, enums, and type aliases for elx."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated, Any, ClassVar, Literal, TypeAlias, Union

from pydantic import BaseModel, ConfigDict, Field

from elx.constants import (
    BUNDLER_PORT,
    DEFAULT_HOST,
    DEFAULT_HTML_ENTRY_POINT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RELOAD_PATH,
    MANIFEST_FILE_NAME,
    PROXY_PORT,
    RENDERER_METAFILE_NAME,
    RENDERER_URL_ENV,
    STATE_DIR_NAME,
)


# === Type Aliases ===

Metafile: TypeAlias = dict[str, Any]

FILE_LOADER_EXTENSIONS: tuple[str, ...] = (
    ".png",
    ".jpg",
    ".jpeg",
    ".jfif",
    ".pjpeg",
    ".pjp",
    ".gif",
    ".svg",
    ".ico",
    ".webp",
    ".avif",
    ".mp4",
    ".webm",
    ".ogg",
    ".mp3",
    ".wav",
    ".flac",
    ".aac",
    ".woff",
    ".woff2",
    ".eot",
    ".ttf",
    ".otf",
    ".webmanifest",
    ".pdf",
    ".txt",
)


# === Enums ===


class PipelineName(str, Enum):
    """The three watch pipelines run by `elx dev`."""

    RENDERER = "renderer"
    PRELOAD = "preload"
    MAIN = "main"


# === Build Manifest ===


class OutputMetadata(BaseModel):
    """Metadata for one emitted bundle file."""

    entry_point: str | None = Field(default=None, alias="entryPoint")
    css_bundle: str | None = Field(default=None, alias="cssBundle")

    model_config: ClassVar[ConfigDict] = ConfigDict(
        populate_by_name=True, extra="ignore", frozen=True
    )


class BuildManifest(BaseModel):
    """Mapping of emitted bundle path -> source entry point and stylesheet.

    The mapping is ordered: the HTML rewriter picks the first matching entry,
    so insertion order decides ties. `outputs is None` means the document had
    no output metadata at all, which is not the same as a build with zero
    outputs.
    """

    outputs: dict[str, OutputMetadata] | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="ignore")

    @classmethod
    def from_metafile(cls, metafile: Metafile) -> BuildManifest:
        """Keep only the output metadata of an esbuild metafile."""
        return cls.model_validate({"outputs": metafile.get("outputs")})

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


class RewriteRule(BaseModel):
    """A single script tag rewrite derived from the manifest."""

    original_src: str
    rewritten_src: str
    stylesheet_href: str | None = None


# === Reload Events ===


class FullReload(BaseModel):
    """Tell every client to reload the whole page."""

    kind: Literal["reload"] = "reload"

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class AssetUpdated(BaseModel):
    """Tell every client a single asset (URL path) changed."""

    kind: Literal["change"] = "change"
    path: str

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


ReloadEvent: TypeAlias = Annotated[
    Union[FullReload, AssetUpdated], Field(discriminator="kind")
]


# === Build Results ===


class BuildResult(BaseModel):
    """Completion event emitted by a watch pipeline after every rebuild."""

    pipeline: PipelineName
    success: bool
    errors: list[str] = Field(default_factory=list)
    metafile: Metafile | None = None


# === Host Process ===


class SpawnSpec(BaseModel):
    """How to launch the desktop host process."""

    command: list[str]
    cwd: Path | None = None
    env: dict[str, str] = Field(default_factory=dict)


class TrackedProcess(BaseModel):
    """A process we started and are allowed to manage.

    create_time protects against PID reuse. pgid enables POSIX process-group
    shutdown even if the original PID has already exited.
    """

    pid: int | None = None
    create_time: float | None = None
    pgid: int | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


# === Configuration ===


class DevConfig(BaseModel):
    """Complete configuration for `elx dev`.

    This is the single source of truth for all dev configuration.
    All default values are defined here and should not be repeated elsewhere.
    """

    project_dir: Path = Field(default_factory=Path.cwd)
    host: str = DEFAULT_HOST
    proxy_port: int = PROXY_PORT
    bundler_port: int = BUNDLER_PORT

    # Renderer
    out_dir: str = "www"
    renderer_entry_points: list[str] = Field(default_factory=lambda: ["renderer.js"])
    html_entry_points: list[str] = Field(
        default_factory=lambda: [DEFAULT_HTML_ENTRY_POINT]
    )
    reload_path: str = DEFAULT_RELOAD_PATH
    loaders: dict[str, str] = Field(
        default_factory=lambda: {ext: "file" for ext in FILE_LOADER_EXTENSIONS}
    )

    # Desktop host
    preload_entry_point: str | None = "preload.js"
    main_entry_point: str = "main.js"
    host_out_dir: str = "dist"
    host_command: list[str] = Field(default_factory=lambda: ["electron", "."])
    renderer_url_env: str = RENDERER_URL_ENV

    esbuild_command: list[str] = Field(default_factory=lambda: ["esbuild"])
    max_retries: int = DEFAULT_MAX_RETRIES
    verbose: bool = False

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    @property
    def state_dir(self) -> Path:
        return self.project_dir / STATE_DIR_NAME

    @property
    def manifest_path(self) -> Path:
        return self.state_dir / MANIFEST_FILE_NAME

    @property
    def renderer_metafile_path(self) -> Path:
        return self.state_dir / RENDERER_METAFILE_NAME

    @property
    def proxy_url(self) -> str:
        """Externally reachable base URL of the renderer proxy."""
        return f"http://{self.host}:{self.proxy_port}"

    @property
    def bundler_url(self) -> str:
        return f"http://127.0.0.1:{self.bundler_port}"
