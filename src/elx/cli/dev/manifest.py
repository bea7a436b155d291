"""Build manifest persistence shared by the renderer pipeline and the proxy.

The renderer pipeline is the only writer; every HTML request is a reader.
Writes go to a temporary file in the same directory and are moved into place
with `os.replace`, so a reader sees either the previous or the new document.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from elx.cli.dev.logging import DevLogComponent, get_logger
from elx.errors import ManifestUnavailable
from elx.models import BuildManifest, Metafile
from elx.utils import ensure_dir

logger = get_logger(DevLogComponent.PIPELINE)


class ManifestStore:
    """Reads and atomically writes the renderer build manifest."""

    def __init__(self, path: Path) -> None:
        self.path: Path = path

    def read(self) -> BuildManifest:
        """Return the last written manifest.

        Raises:
            ManifestUnavailable: If the file is missing, unreadable or not JSON
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise ManifestUnavailable(f"META file [{self.path}] not found") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ManifestUnavailable(
                f"META file [{self.path}] is not valid JSON: {e}"
            ) from e

        # Parseable but shape-invalid documents become a manifest without
        # output metadata; the rewriter rejects those per request.
        if not isinstance(data, dict) or not isinstance(data.get("outputs"), dict):
            return BuildManifest(outputs=None)
        try:
            return BuildManifest.model_validate(data)
        except ValidationError:
            return BuildManifest(outputs=None)

    def write(self, manifest: BuildManifest) -> None:
        """Persist a manifest, replacing the previous one atomically."""
        ensure_dir(self.path.parent)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(manifest.to_json())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def write_from_metafile(self, metafile: Metafile | None) -> bool:
        """Store the output metadata of an esbuild metafile.

        Returns False, leaving the last good manifest in place, when the
        metafile is missing or carries no outputs object.
        """
        if metafile is None:
            logger.warning("Metafile missing in build result, keeping last manifest")
            return False
        if not isinstance(metafile.get("outputs"), dict):
            logger.warning("Metafile has no output metadata, keeping last manifest")
            return False
        try:
            manifest = BuildManifest.from_metafile(metafile)
        except ValidationError as e:
            logger.warning(f"Metafile outputs are malformed, keeping last manifest: {e}")
            return False
        self.write(manifest)
        logger.debug(f"Wrote manifest with {len(manifest.outputs or {})} output(s)")
        return True
