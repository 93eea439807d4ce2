"""Artifact export to durable storage.

Writes one directory per job under ``EXPORT_DIR``::

    <export_dir>/<job_id>/design.md
    <export_dir>/<job_id>/diagram.json
    <export_dir>/<job_id>/context.json
    <export_dir>/<job_id>/ownership.json

Only artifacts that exist are written. Files are written to a temporary
name and renamed so a reader never sees a half-written artifact.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from ..exceptions import ExportError

logger = logging.getLogger(__name__)


class ArtifactExporter:
    """Persists a job's artifacts as files and returns their paths."""

    def __init__(self, export_dir: str):
        self.root = Path(export_dir)

    def _write(self, path: Path, content: str) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)

    def export_sync(
        self,
        job_id: str,
        markdown: Optional[str],
        react_flow_data: Optional[Dict[str, Any]] = None,
        analysis_context: Optional[Dict[str, Any]] = None,
        ownership_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        if not markdown:
            raise ExportError("Nothing to export: analysis markdown is missing")

        target = self.root / job_id
        artifacts = {"design.md": markdown}
        if react_flow_data:
            artifacts["diagram.json"] = json.dumps(react_flow_data, indent=2)
        if analysis_context:
            artifacts["context.json"] = json.dumps(analysis_context, indent=2, default=str)
        if ownership_data:
            artifacts["ownership.json"] = json.dumps(ownership_data, indent=2)

        try:
            target.mkdir(parents=True, exist_ok=True)
            paths = {}
            for name, content in artifacts.items():
                path = target / name
                self._write(path, content)
                paths[name] = str(path)
        except OSError as e:
            raise ExportError(f"Failed to write artifacts for job {job_id}: {e}") from e

        logger.info("Exported %d artifacts for job %s to %s", len(paths), job_id, target)
        return paths

    async def export(self, job_id: str, **artifacts: Any) -> Dict[str, str]:
        return await asyncio.to_thread(self.export_sync, job_id, **artifacts)
