"""Tests for the HTML rewriter and the live-reload client injector."""

from __future__ import annotations

from pathlib import Path

import pytest
from bs4 import BeautifulSoup

from elx.cli.dev.rewriter import find_rewrite_rule, inject_live_reload, rewrite_html
from elx.errors import TransformFailure
from elx.models import BuildManifest, OutputMetadata


def _manifest(outputs: dict[str, dict[str, str]]) -> BuildManifest:
    return BuildManifest.model_validate({"outputs": outputs})


@pytest.fixture
def manifest() -> BuildManifest:
    return _manifest(
        {
            "www/assets/app-XYZ.js": {
                "entryPoint": "app.js",
                "cssBundle": "www/assets/app-XYZ.css",
            }
        }
    )


class TestRewriteHtml:
    """Tests for script tag rewriting."""

    def test_root_relative_script_gets_bundle_and_stylesheet(
        self, tmp_path: Path, manifest: BuildManifest
    ) -> None:
        html = '<html><head><script src="/app.js"></script></head><body></body></html>'

        result = rewrite_html(html, "www", manifest, working_dir=tmp_path)

        soup = BeautifulSoup(result, "html.parser")
        script = soup.find("script")
        assert script["src"] == "/assets/app-XYZ.js"
        link = script.find_next_sibling()
        assert link.name == "link"
        assert link["rel"] == ["stylesheet"]
        assert link["href"] == "/assets/app-XYZ.css"

    def test_out_dir_equal_to_working_dir(self, tmp_path: Path) -> None:
        manifest = _manifest(
            {"assets/app-XYZ.js": {"entryPoint": "app.js", "cssBundle": "assets/app-XYZ.css"}}
        )
        result = rewrite_html('<script src="/app.js"></script>', ".", manifest, tmp_path)
        assert '<script src="/assets/app-XYZ.js"></script>' in result
        assert 'href="/assets/app-XYZ.css"' in result

    def test_relative_src_stays_relative(
        self, tmp_path: Path, manifest: BuildManifest
    ) -> None:
        result = rewrite_html('<script src="app.js"></script>', "www", manifest, tmp_path)

        soup = BeautifulSoup(result, "html.parser")
        assert soup.find("script")["src"] == "assets/app-XYZ.js"
        assert soup.find("link")["href"] == "assets/app-XYZ.css"

    def test_no_stylesheet_without_css_bundle(self, tmp_path: Path) -> None:
        manifest = _manifest({"www/assets/main.js": {"entryPoint": "src/main.ts"}})
        result = rewrite_html(
            '<script src="/src/main.ts"></script>', "www", manifest, tmp_path
        )
        soup = BeautifulSoup(result, "html.parser")
        assert soup.find("script")["src"] == "/assets/main.js"
        assert soup.find("link") is None

    def test_unmatched_script_is_untouched(
        self, tmp_path: Path, manifest: BuildManifest
    ) -> None:
        html = '<script src="/vendor/lib.js"></script><script>inline()</script>'
        result = rewrite_html(html, "www", manifest, tmp_path)
        soup = BeautifulSoup(result, "html.parser")
        scripts = soup.find_all("script")
        assert scripts[0]["src"] == "/vendor/lib.js"
        assert not scripts[1].has_attr("src")
        assert soup.find("link") is None

    def test_second_pass_does_not_rewrite_again(
        self, tmp_path: Path, manifest: BuildManifest
    ) -> None:
        html = '<head><script src="/app.js"></script></head>'
        once = rewrite_html(html, "www", manifest, tmp_path)
        twice = rewrite_html(once, "www", manifest, tmp_path)

        soup = BeautifulSoup(twice, "html.parser")
        assert soup.find("script")["src"] == "/assets/app-XYZ.js"
        assert len(soup.find_all("link")) == 1

    def test_first_matching_entry_wins(self, tmp_path: Path) -> None:
        manifest = _manifest(
            {
                "www/first.js": {"entryPoint": "app.js"},
                "www/second.js": {"entryPoint": "app.js"},
            }
        )
        rule = find_rewrite_rule("/app.js", "www", manifest, tmp_path)
        assert rule is not None
        assert rule.rewritten_src == "/first.js"
        assert rule.original_src == "/app.js"

    def test_empty_outputs_leave_document_unchanged(self, tmp_path: Path) -> None:
        html = '<script src="/app.js"></script>'
        result = rewrite_html(html, "www", BuildManifest(outputs={}), tmp_path)
        assert BeautifulSoup(result, "html.parser").find("script")["src"] == "/app.js"

    def test_missing_output_metadata_raises(self, tmp_path: Path) -> None:
        with pytest.raises(TransformFailure):
            rewrite_html("<script src='/app.js'></script>", "www", BuildManifest(), tmp_path)

    def test_entries_without_entry_point_never_match(self, tmp_path: Path) -> None:
        manifest = BuildManifest(outputs={"www/chunk.js": OutputMetadata()})
        assert find_rewrite_rule("/chunk.js", "www", manifest, tmp_path) is None


class TestInjectLiveReload:
    """Tests for the live-reload client injector."""

    def test_injects_before_head_close(self) -> None:
        html = "<html><head><title>x</title></head><body></body></html>"
        result = inject_live_reload(html, "esbuild")

        assert "new EventSource('/esbuild')" in result
        assert result.index("EventSource") < result.index("</head>")
        assert result.count("</head>") == 1

    def test_custom_reload_path(self) -> None:
        result = inject_live_reload("<head></head>", "/__reload/")
        assert "new EventSource('/__reload')" in result

    def test_without_head_returns_input(self) -> None:
        html = "<body>no head</body>"
        assert inject_live_reload(html) == html
