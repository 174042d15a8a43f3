"""Tests for workspace creation, lookup and config files."""

import json

import pytest

from mlstudio.exceptions import WorkspaceError, WorkspaceNotFoundError
from mlstudio.workspace.workspace import Workspace


class TestWorkspace:
    """Test workspace lifecycle."""

    def test_create_writes_info_and_local_compute(self, tmp_path):
        ws = Workspace.create("ml-ws", path=str(tmp_path), description="demo", tags={"team": "ml"})

        details = ws.get_details()
        assert details["name"] == "ml-ws"
        assert details["description"] == "demo"
        assert details["tags"] == {"team": "ml"}
        assert "local" in ws.compute_targets

    def test_create_existing_returns_same_workspace(self, tmp_path):
        first = Workspace.create("ml-ws", path=str(tmp_path))
        second = Workspace.create("ml-ws", path=str(tmp_path))

        assert first == second

    def test_create_existing_without_exist_ok_fails(self, tmp_path):
        Workspace.create("ml-ws", path=str(tmp_path))

        with pytest.raises(WorkspaceError):
            Workspace.create("ml-ws", path=str(tmp_path), exist_ok=False)

    @pytest.mark.parametrize("name", ["", "a/b", ".hidden"])
    def test_invalid_names_rejected(self, tmp_path, name):
        with pytest.raises(WorkspaceError):
            Workspace.create(name, path=str(tmp_path))

    def test_get_missing_workspace(self, tmp_path):
        with pytest.raises(WorkspaceNotFoundError):
            Workspace.get("nope", path=str(tmp_path))

    def test_write_config_and_from_config(self, tmp_path):
        ws = Workspace.create("ml-ws", path=str(tmp_path / "root"))
        project = tmp_path / "project"
        nested = project / "notebooks" / "deep"
        nested.mkdir(parents=True)

        config_path = ws.write_config(str(project))

        with open(config_path) as f:
            assert json.load(f)["workspace_name"] == "ml-ws"
        assert Workspace.from_config(str(nested)) == ws

    def test_from_config_accepts_plain_config_json(self, tmp_path):
        ws = Workspace.create("ml-ws", path=str(tmp_path / "root"))
        (tmp_path / "config.json").write_text(
            json.dumps({"workspace_name": "ml-ws", "path": str(tmp_path / "root")})
        )

        assert Workspace.from_config(str(tmp_path)) == ws

    def test_from_config_without_file(self, tmp_path):
        with pytest.raises(WorkspaceNotFoundError):
            Workspace.from_config(str(tmp_path / "missing.json"))

    def test_empty_collections(self, workspace):
        assert workspace.datasets == {}
        assert workspace.experiments == {}
        assert workspace.models == {}
