"""Tests for the renderer proxy."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import httpx
import pytest

from elx.cli.dev.manifest import ManifestStore
from elx.cli.dev.proxy import RendererProxy, create_proxy_app
from elx.cli.dev.reload import ReloadChannel
from elx.models import BuildManifest, FullReload

INDEX_HTML = """<!doctype html>
<html>
  <head><title>app</title></head>
  <body><script src="/app.js"></script></body>
</html>
"""

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    (tmp_path / "index.html").write_text(INDEX_HTML)
    state_dir = tmp_path / ".elx"
    state_dir.mkdir()
    (state_dir / "manifest.json").write_text(
        json.dumps(
            {
                "outputs": {
                    "www/assets/app.js": {
                        "entryPoint": "app.js",
                        "cssBundle": "www/assets/app.css",
                    }
                }
            }
        )
    )
    return tmp_path


@pytest.fixture
def proxy(project_dir: Path) -> RendererProxy:
    return RendererProxy(
        bundler_url="http://127.0.0.1:8001/",
        manifest_store=ManifestStore(project_dir / ".elx" / "manifest.json"),
        reload_channel=ReloadChannel(),
        project_dir=project_dir,
        out_dir="www",
        html_entry_points=["index.html"],
        reload_path="esbuild",
    )


def _client(proxy: RendererProxy, handler: Handler) -> httpx.AsyncClient:
    """A client talking to the proxy app, whose upstream is `handler`."""
    proxy._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=create_proxy_app(proxy)),
        base_url="http://testserver",
    )


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"upstream must not be contacted: {request.url}")


async def _streamed(body: bytes) -> AsyncIterator[bytes]:
    """Upstream body delivered as a stream, the way esbuild responses arrive."""
    yield body


class TestRendererProxyInit:
    def test_init(self, proxy: RendererProxy) -> None:
        assert proxy.bundler_url == "http://127.0.0.1:8001"
        assert proxy.reload_path == "esbuild"
        assert proxy.accepting_connections is True
        assert proxy.active_stream_count == 0

    @pytest.mark.asyncio
    async def test_http_client_lifecycle(self, proxy: RendererProxy) -> None:
        client1 = await proxy._get_http_client()
        assert client1 is await proxy._get_http_client()
        await client1.aclose()
        assert client1 is not await proxy._get_http_client()
        await proxy.shutdown()


class TestHtmlServe:
    @pytest.mark.asyncio
    async def test_root_serves_rewritten_html(self, proxy: RendererProxy) -> None:
        async with _client(proxy, _unreachable) as client:
            resp = await client.get("/")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert '<script src="/assets/app.js"></script>' in resp.text
        assert 'href="/assets/app.css"' in resp.text
        assert "new EventSource('/esbuild')" in resp.text

    @pytest.mark.asyncio
    async def test_named_html_file(
        self, proxy: RendererProxy, project_dir: Path
    ) -> None:
        (project_dir / "about.html").write_text("<head></head><body>about</body>")
        async with _client(proxy, _unreachable) as client:
            resp = await client.get("/about.html")
        assert resp.status_code == 200
        assert "about" in resp.text

    @pytest.mark.asyncio
    async def test_missing_html_is_404(self, proxy: RendererProxy) -> None:
        async with _client(proxy, _unreachable) as client:
            resp = await client.get("/nope.html")
        assert resp.status_code == 404
        assert "not found" in resp.text

    @pytest.mark.asyncio
    async def test_ambiguous_root_is_500_without_upstream(
        self, proxy: RendererProxy, project_dir: Path
    ) -> None:
        (project_dir / "settings.html").write_text("<head></head>")
        proxy.html_entry_points = ["index.html", "settings.html"]
        async with _client(proxy, _unreachable) as client:
            resp = await client.get("/")
        assert resp.status_code == 500
        assert "Multiple html entry points" in resp.text

    @pytest.mark.asyncio
    async def test_corrupt_manifest_is_500(
        self, proxy: RendererProxy, project_dir: Path
    ) -> None:
        (project_dir / ".elx" / "manifest.json").write_text("{broken")
        async with _client(proxy, _unreachable) as client:
            resp = await client.get("/")
        assert resp.status_code == 500
        assert "META file" in resp.text

    @pytest.mark.asyncio
    async def test_manifest_without_outputs_is_transform_failure(
        self, proxy: RendererProxy, project_dir: Path
    ) -> None:
        (project_dir / ".elx" / "manifest.json").write_text("{}")
        async with _client(proxy, _unreachable) as client:
            resp = await client.get("/")
        assert resp.status_code == 500
        assert resp.text.startswith("Failed to transform html [")

    def test_path_outside_project_is_404(
        self, proxy: RendererProxy, project_dir: Path
    ) -> None:
        (project_dir.parent / "secret.html").write_text("<head></head>")
        resp = proxy.serve_html("/../secret.html", BuildManifest(outputs={}))
        assert resp.status_code == 404


class TestForwarding:
    @pytest.mark.asyncio
    async def test_passthrough(self, proxy: RendererProxy) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                201,
                headers={"x-upstream": "yes", "content-type": "text/javascript"},
                content=_streamed(b"console.log(1)"),
            )

        async with _client(proxy, handler) as client:
            resp = await client.get(
                "/assets/app.js?v=1",
                headers={"x-custom": "val", "connection": "keep-alive"},
            )

        assert resp.status_code == 201
        assert resp.content == b"console.log(1)"
        assert resp.headers["x-upstream"] == "yes"
        assert str(seen[0].url) == "http://127.0.0.1:8001/assets/app.js?v=1"
        assert seen[0].headers["x-custom"] == "val"
        assert seen[0].headers["host"] == "127.0.0.1:8001"

    @pytest.mark.asyncio
    async def test_percent_encoded_path_forwarded_as_sent(
        self, proxy: RendererProxy
    ) -> None:
        raw_paths: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            raw_paths.append(request.url.raw_path)
            return httpx.Response(200, content=_streamed(b"png"))

        async with _client(proxy, handler) as client:
            for url in (
                "/assets/a%3Fb.png",
                "/assets/a%23b.png",
                "/assets/a%20b.png?x=1",
            ):
                resp = await client.get(url)
                assert resp.status_code == 200

        assert raw_paths == [
            b"/assets/a%3Fb.png",
            b"/assets/a%23b.png",
            b"/assets/a%20b.png?x=1",
        ]

    @pytest.mark.asyncio
    async def test_request_body_forwarded(self, proxy: RendererProxy) -> None:
        bodies: list[bytes] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(await request.aread())
            return httpx.Response(200, content=_streamed(b""))

        async with _client(proxy, handler) as client:
            resp = await client.post("/api/echo", content=b"payload")

        assert resp.status_code == 200
        assert bodies == [b"payload"]

    @pytest.mark.asyncio
    async def test_spa_fallback_serves_root(self, proxy: RendererProxy) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(404, content=_streamed(b"404 - Not Found"))

        async with _client(proxy, handler) as client:
            resp = await client.get("/missing-route")

        assert resp.status_code == 200
        assert "/assets/app.js" in resp.text
        assert calls == ["/missing-route"]

    @pytest.mark.asyncio
    async def test_no_fallback_with_several_entry_points(
        self, proxy: RendererProxy
    ) -> None:
        proxy.html_entry_points = ["index.html", "settings.html"]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, content=_streamed(b"404 - Not Found"))

        async with _client(proxy, handler) as client:
            resp = await client.get("/missing-route")

        assert resp.status_code == 404
        assert resp.content == b"404 - Not Found"

    @pytest.mark.asyncio
    async def test_upstream_unreachable_is_502(self, proxy: RendererProxy) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(proxy, handler) as client:
            resp = await client.get("/assets/app.js")

        assert resp.status_code == 502
        assert "Failed to connect to esbuild server" in resp.text

    @pytest.mark.asyncio
    async def test_shutting_down_is_503(self, proxy: RendererProxy) -> None:
        proxy.accepting_connections = False
        async with _client(proxy, _unreachable) as client:
            resp = await client.get("/")
        assert resp.status_code == 503


class TestReloadStream:
    @pytest.mark.asyncio
    async def test_broadcast_merged_into_upstream_stream(
        self, proxy: RendererProxy
    ) -> None:
        subscribers_during_stream: list[int] = []

        async def upstream_events() -> AsyncIterator[bytes]:
            subscribers_during_stream.append(proxy.reload_channel.subscriber_count)
            proxy.reload_channel.publish(FullReload())
            yield b'event: change\ndata: {"added":[],"removed":[],"updated":[]}\n\n'

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/esbuild"
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=upstream_events(),
            )

        async with _client(proxy, handler) as client:
            resp = await client.get(
                "/esbuild", headers={"accept": "text/event-stream"}
            )

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "text/event-stream"
        assert resp.content.startswith(b"event: reload\ndata: reload\n\n")
        assert b"event: change\n" in resp.content
        assert subscribers_during_stream == [1]
        assert proxy.reload_channel.subscriber_count == 0
        assert proxy.active_stream_count == 0

    @pytest.mark.asyncio
    async def test_plain_get_of_reload_path_is_not_merged(
        self, proxy: RendererProxy
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert proxy.reload_channel.subscriber_count == 0
            return httpx.Response(200, content=_streamed(b"plain"))

        async with _client(proxy, handler) as client:
            resp = await client.get("/esbuild")

        assert resp.content == b"plain"

    @pytest.mark.asyncio
    async def test_client_disconnect_unsubscribes_while_upstream_idle(
        self, proxy: RendererProxy
    ) -> None:
        upstream_closed = asyncio.Event()

        async def idle_upstream() -> AsyncIterator[bytes]:
            try:
                yield b": connected\n\n"
                await asyncio.Event().wait()
            finally:
                upstream_closed.set()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=idle_upstream(),
            )

        proxy._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/esbuild",
            "raw_path": b"/esbuild",
            "query_string": b"",
            "root_path": "",
            "headers": [(b"host", b"testserver"), (b"accept", b"text/event-stream")],
            "client": ("127.0.0.1", 1234),
            "server": ("testserver", 80),
        }
        disconnected = asyncio.Event()
        request_sent = False
        sent: list[dict] = []

        async def receive() -> dict:
            nonlocal request_sent
            if not request_sent:
                request_sent = True
                return {"type": "http.request", "body": b"", "more_body": False}
            await disconnected.wait()
            return {"type": "http.disconnect"}

        async def send(message: dict) -> None:
            sent.append(message)

        async def wait_for(condition: Callable[[], bool]) -> None:
            while not condition():
                await asyncio.sleep(0.01)

        task = asyncio.create_task(create_proxy_app(proxy)(scope, receive, send))
        await asyncio.wait_for(
            wait_for(lambda: proxy.reload_channel.subscriber_count == 1), 5
        )

        assert proxy.reload_channel.publish(FullReload()) == 1
        await asyncio.wait_for(
            wait_for(
                lambda: any(b"event: reload" in m.get("body", b"") for m in sent)
            ),
            5,
        )

        disconnected.set()
        await asyncio.wait_for(task, 5)
        await asyncio.wait_for(upstream_closed.wait(), 5)

        assert proxy.reload_channel.subscriber_count == 0
        assert proxy.active_stream_count == 0
        assert proxy.reload_channel.publish(FullReload()) == 0
