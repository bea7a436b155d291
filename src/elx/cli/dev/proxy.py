"""HTTP reverse proxy in front of esbuild's dev server.

This module implements the renderer-facing server that routes requests:
- `/` and `*.html` -> HTML entry points read from disk, with the live-reload
  client injected and script tags rewritten to the emitted bundles
- `/*` -> esbuild's own dev server (`--servedir`), with a one-level `/`
  fallback when esbuild answers 404 (single-page-app routes)

The live-reload stream (`GET /<reload_path>` with `Accept: text/event-stream`)
is forwarded as well, and additionally carries the frames published on the
`ReloadChannel` by the main/preload/renderer pipelines.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import (
    HTMLResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)
from starlette.routing import Route

from elx.cli.dev.logging import DevLogComponent, get_logger
from elx.cli.dev.reload import ClientSubscription, ReloadChannel
from elx.cli.dev.rewriter import inject_live_reload, rewrite_html
from elx.constants import DEFAULT_HTML_ENTRY_POINT, EVENT_STREAM_CONTENT_TYPE
from elx.errors import (
    EntryPointAmbiguous,
    HtmlNotFound,
    ManifestUnavailable,
    TransformFailure,
    UpstreamForwardingFailure,
)
from elx.models import BuildManifest

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from elx.cli.dev.manifest import ManifestStore
    from elx.models import DevConfig

logger = get_logger(DevLogComponent.PROXY)

HOP_BY_HOP: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class RendererProxy:
    """Serves renderer HTML and forwards everything else to esbuild.

    Attributes:
        bundler_url: Base URL of esbuild's dev server (e.g., "http://127.0.0.1:8001")
        project_dir: Directory HTML entry points and manifest paths are relative to
        out_dir: esbuild output directory, relative to project_dir
        html_entry_points: Configured HTML entry points (relative to project_dir)
        reload_path: Path of the live-reload event stream, without leading slash
        accepting_connections: Flag to control whether new requests are accepted
    """

    def __init__(
        self,
        *,
        bundler_url: str,
        manifest_store: ManifestStore,
        reload_channel: ReloadChannel,
        project_dir: Path,
        out_dir: str,
        html_entry_points: list[str],
        reload_path: str,
    ) -> None:
        self.bundler_url: str = bundler_url.rstrip("/")
        self.manifest_store: ManifestStore = manifest_store
        self.reload_channel: ReloadChannel = reload_channel
        self.project_dir: Path = project_dir
        self.out_dir: str = out_dir
        self.html_entry_points: list[str] = list(html_entry_points)
        self.reload_path: str = reload_path.strip("/")
        self.accepting_connections: bool = True

        self._active_streams: set[ClientSubscription] = set()
        self._http_client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls,
        config: DevConfig,
        manifest_store: ManifestStore,
        reload_channel: ReloadChannel,
    ) -> RendererProxy:
        return cls(
            bundler_url=config.bundler_url,
            manifest_store=manifest_store,
            reload_channel=reload_channel,
            project_dir=config.project_dir,
            out_dir=config.out_dir,
            html_entry_points=config.html_entry_points,
            reload_path=config.reload_path,
        )

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            # No read timeout: the live-reload stream stays open indefinitely.
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(None, connect=10.0),
                follow_redirects=False,
            )
        return self._http_client

    # === Routing ===

    def _is_html_route(self, path: str) -> bool:
        return path == "/" or path.endswith(".html")

    def _is_reload_stream(self, request: Request, path: str) -> bool:
        return (
            request.method == "GET"
            and path == f"/{self.reload_path}"
            and EVENT_STREAM_CONTENT_TYPE in request.headers.get("accept", "")
        )

    @property
    def _spa_fallback_enabled(self) -> bool:
        return len(self.html_entry_points) <= 1

    async def handle(self, request: Request) -> Response:
        """Handle one inbound request.

        Args:
            request: The incoming Starlette request

        Returns:
            The HTML page, the proxied esbuild response or an error response
        """
        if not self.accepting_connections:
            return PlainTextResponse("Server is shutting down", status_code=503)

        try:
            manifest = await asyncio.to_thread(self.manifest_store.read)
        except ManifestUnavailable as e:
            logger.warning(str(e))
            return PlainTextResponse(str(e), status_code=500)

        return await self._dispatch(request, request.url.path, manifest, fallback=False)

    async def _dispatch(
        self,
        request: Request,
        path: str,
        manifest: BuildManifest,
        *,
        fallback: bool,
    ) -> Response:
        if self._is_html_route(path):
            return self.serve_html(path, manifest)
        return await self._forward(request, path, manifest, fallback=fallback)

    # === HTML ===

    def resolve_html_file(self, path: str) -> Path:
        """Map a request path to an HTML file on disk.

        Raises:
            EntryPointAmbiguous: If `/` is requested with several entry points
            HtmlNotFound: If the file does not exist
        """
        if path == "/":
            if len(self.html_entry_points) > 1:
                raise EntryPointAmbiguous(
                    "Multiple html entry points defined, unable to pick single root"
                )
            relative = (
                self.html_entry_points[0]
                if self.html_entry_points
                else DEFAULT_HTML_ENTRY_POINT
            )
        else:
            relative = path
        html_file = (self.project_dir / relative.lstrip("/")).resolve()
        inside_project = html_file.is_relative_to(self.project_dir.resolve())
        if not inside_project or not html_file.is_file():
            raise HtmlNotFound(f"HTML file [{html_file}] not found")
        return html_file

    def serve_html(self, path: str, manifest: BuildManifest) -> Response:
        try:
            html_file = self.resolve_html_file(path)
        except EntryPointAmbiguous as e:
            logger.error(str(e))
            return PlainTextResponse(str(e), status_code=500)
        except HtmlNotFound as e:
            return PlainTextResponse(str(e), status_code=404)

        try:
            html = html_file.read_text(encoding="utf-8")
            body = rewrite_html(
                inject_live_reload(html, self.reload_path),
                self.out_dir,
                manifest,
                working_dir=self.project_dir,
            )
        except Exception as e:
            error = e if isinstance(e, TransformFailure) else TransformFailure(str(e))
            logger.error(f"Failed to transform {html_file.name}: {error}")
            return PlainTextResponse(
                f"Failed to transform html [{error}]", status_code=500
            )
        return HTMLResponse(body)

    # === Forwarding ===

    def _target_url(self, request: Request, path: str, *, fallback: bool) -> str:
        """Upstream URL, keeping the client's percent-encoding on the first attempt."""
        raw_path: bytes | None = request.scope.get("raw_path")
        if fallback or not raw_path:
            return f"{self.bundler_url}{path}"
        target_url = f"{self.bundler_url}{raw_path.decode('latin-1')}"
        query: bytes = request.scope.get("query_string", b"")
        if query:
            target_url = f"{target_url}?{query.decode('latin-1')}"
        return target_url

    def _forward_headers(self, request: Request) -> list[tuple[str, str]]:
        return [
            (k, v)
            for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP and k.lower() != "host"
        ]

    def _request_body(self, request: Request) -> AsyncIterator[bytes] | None:
        if "content-length" in request.headers or "transfer-encoding" in request.headers:
            return request.stream()
        return None

    async def _forward(
        self,
        request: Request,
        path: str,
        manifest: BuildManifest,
        *,
        fallback: bool,
    ) -> Response:
        target_url = self._target_url(request, path, fallback=fallback)

        try:
            client = await self._get_http_client()
            upstream_request = client.build_request(
                method=request.method,
                url=target_url,
                headers=self._forward_headers(request),
                content=self._request_body(request),
            )
            upstream = await client.send(upstream_request, stream=True)
        except httpx.ConnectError as e:
            error = UpstreamForwardingFailure(
                f"Failed to connect to esbuild server [{self.bundler_url}]"
            )
            logger.warning(f"{error}: {e}")
            return PlainTextResponse(str(error), status_code=502)
        except httpx.HTTPError as e:
            error = UpstreamForwardingFailure(f"Proxy error: {e}")
            logger.error(str(error))
            return PlainTextResponse(str(error), status_code=502)

        if upstream.status_code == 404 and not fallback and self._spa_fallback_enabled:
            # esbuild doesn't know the path; assume it's a route handled by
            # the JS bundle and serve the root page instead.
            await upstream.aclose()
            logger.debug(f"{path} not found upstream, falling back to /")
            return await self._dispatch(request, "/", manifest, fallback=True)

        if self._is_reload_stream(request, path):
            response = StreamingResponse(
                self._reload_stream(upstream), status_code=upstream.status_code
            )
        else:
            response = StreamingResponse(
                self._upstream_body(upstream), status_code=upstream.status_code
            )
        response.raw_headers = [
            (key, value)
            for key, value in upstream.headers.raw
            if key.decode("latin-1").lower() not in HOP_BY_HOP
        ]
        return response

    async def _upstream_body(self, upstream: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        finally:
            await upstream.aclose()

    async def _reload_stream(self, upstream: httpx.Response) -> AsyncIterator[bytes]:
        """Merge esbuild's event stream with frames from the reload channel."""
        subscription = ClientSubscription(self.reload_channel)
        self._active_streams.add(subscription)

        async def pump() -> None:
            try:
                async for chunk in upstream.aiter_raw():
                    subscription.feed(chunk)
            except httpx.HTTPError as e:
                logger.debug(f"Upstream reload stream ended: {e}")
            finally:
                subscription.finish()
                await upstream.aclose()

        pump_task = asyncio.create_task(pump())
        try:
            async for frame in subscription:
                yield frame
        finally:
            # Runs on client disconnect too; keep it synchronous so a
            # cancelled response task can't skip the unsubscribe.
            subscription.close()
            self._active_streams.discard(subscription)
            pump_task.cancel()

    async def shutdown(self) -> None:
        """Stop accepting requests, end open reload streams, close the client."""
        logger.debug("Shutting down proxy...")
        self.accepting_connections = False

        for subscription in list(self._active_streams):
            subscription.close()
            subscription.finish()

        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def active_stream_count(self) -> int:
        """Return the number of open live-reload streams."""
        return len(self._active_streams)


def create_proxy_app(proxy: RendererProxy) -> Starlette:
    """Create the ASGI app serving every path through `proxy`."""

    async def endpoint(request: Request) -> Response:
        return await proxy.handle(request)

    @contextlib.asynccontextmanager
    async def lifespan(_: Starlette) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await proxy.shutdown()

    return Starlette(
        routes=[Route("/{path:path}", endpoint, methods=PROXY_METHODS)],
        lifespan=lifespan,
    )
