"""HTML transforms applied to renderer pages served by the dev proxy.

- `inject_live_reload` adds the EventSource client that reacts to rebuilds.
- `rewrite_html` points `<script>` tags at the bundles esbuild emitted and
  adds the matching stylesheet links.
"""

from __future__ import annotations

import os
from pathlib import Path

from bs4 import BeautifulSoup

from elx.constants import DEFAULT_RELOAD_PATH
from elx.errors import TransformFailure
from elx.models import BuildManifest, RewriteRule

LIVE_RELOAD_CLIENT = """
    <script type="text/javascript">
      // Based on https://esbuild.github.io/api/#live-reload
      const eventSource = new EventSource('/__RELOAD_PATH__');
      eventSource.addEventListener('change', e => {
        const { added, removed, updated } = JSON.parse(e.data);

        if (!added.length && !removed.length && updated.length === 1) {
          for (const link of document.getElementsByTagName('link')) {
            const url = new URL(link.href);

            if (url.host === location.host && url.pathname === updated[0]) {
              const next = link.cloneNode();
              next.href = updated[0] + '?' + Math.random().toString(36).slice(2);
              next.onload = () => link.remove();
              link.parentNode.insertBefore(next, link.nextSibling);
              return;
            }
          }
        }

        location.reload();
      });
      eventSource.addEventListener('reload', () => location.reload());
    </script>
"""


def inject_live_reload(html: str, reload_path: str = DEFAULT_RELOAD_PATH) -> str:
    """Insert the live-reload client right before the closing head tag."""
    client = LIVE_RELOAD_CLIENT.replace("__RELOAD_PATH__", reload_path.strip("/"))
    return html.replace("</head>", f"{client}  </head>", 1)


def _html_path(path: str) -> str:
    """Paths embedded in HTML always use forward slashes."""
    return path.replace(os.sep, "/")


def _relative_to_out_dir(bundle_path: str, out_dir: Path, working_dir: Path) -> str:
    return _html_path(os.path.relpath(working_dir / bundle_path, working_dir / out_dir))


def find_rewrite_rule(
    src: str,
    out_dir: str | Path,
    manifest: BuildManifest,
    working_dir: Path,
) -> RewriteRule | None:
    """Find the rewrite for a script `src`; the first matching output wins."""
    if manifest.outputs is None:
        raise TransformFailure("Meta file missing output metadata")

    out_dir = Path(out_dir)
    for bundle_path, output in manifest.outputs.items():
        entry_point = output.entry_point
        if not entry_point or not src.endswith(entry_point):
            continue

        rewritten = src[: len(src) - len(entry_point)] + _relative_to_out_dir(
            bundle_path, out_dir, working_dir
        )
        stylesheet_href: str | None = None
        if output.css_bundle:
            prefix = "/" if src.startswith("/") else ""
            stylesheet_href = prefix + _relative_to_out_dir(
                output.css_bundle, out_dir, working_dir
            )
        return RewriteRule(
            original_src=src,
            rewritten_src=_html_path(rewritten),
            stylesheet_href=stylesheet_href,
        )
    return None


def rewrite_html(
    html: str,
    out_dir: str | Path,
    manifest: BuildManifest,
    working_dir: Path | None = None,
) -> str:
    """Rewrite script tags to the emitted bundles described by `manifest`.

    Args:
        html: The source HTML document
        out_dir: The bundler output directory (what the dev server serves)
        manifest: The current build manifest
        working_dir: Directory manifest paths are relative to (default: cwd)

    Returns:
        The serialized, rewritten document

    Raises:
        TransformFailure: If the manifest has no output metadata
    """
    if manifest.outputs is None:
        raise TransformFailure("Meta file missing output metadata")
    if working_dir is None:
        working_dir = Path.cwd()

    soup = BeautifulSoup(html, "html.parser")
    # Snapshot first so inserted elements are never visited.
    scripts = list(soup.find_all("script", src=True))
    for script in scripts:
        rule = find_rewrite_rule(str(script["src"]), out_dir, manifest, working_dir)
        if rule is None:
            continue
        script["src"] = rule.rewritten_src
        if rule.stylesheet_href is not None:
            link = soup.new_tag("link", attrs={"rel": "stylesheet"})
            link["href"] = rule.stylesheet_href
            script.insert_after(link)
    return str(soup)
