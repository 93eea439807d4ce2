"""Tests for artifact export."""

import json

import pytest

from repolens.exceptions import ExportError
from repolens.services.export_service import ArtifactExporter

from fakes import REACT_FLOW_DATA


class TestArtifactExporter:

    def test_writes_available_artifacts(self, tmp_path):
        exporter = ArtifactExporter(str(tmp_path))

        paths = exporter.export_sync(
            "job-1",
            markdown="# Widgets",
            react_flow_data=REACT_FLOW_DATA,
            ownership_data={"global_owners": []},
        )

        assert set(paths) == {"design.md", "diagram.json", "ownership.json"}
        assert (tmp_path / "job-1" / "design.md").read_text() == "# Widgets"
        assert json.loads((tmp_path / "job-1" / "diagram.json").read_text()) == REACT_FLOW_DATA
        assert not list((tmp_path / "job-1").glob("*.tmp"))

    def test_missing_markdown_fails(self, tmp_path):
        with pytest.raises(ExportError):
            ArtifactExporter(str(tmp_path)).export_sync("job-1", markdown=None)

    def test_unwritable_target_fails(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("not a directory")
        with pytest.raises(ExportError, match="job-1"):
            ArtifactExporter(str(blocker)).export_sync("job-1", markdown="# Widgets")

    @pytest.mark.asyncio
    async def test_async_export(self, tmp_path):
        paths = await ArtifactExporter(str(tmp_path)).export("job-2", markdown="# Widgets")
        assert paths == {"design.md": str(tmp_path / "job-2" / "design.md")}
