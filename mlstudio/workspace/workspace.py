"""Workspace: the top-level container for every ML asset."""

import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any

from mlstudio.config import settings
from mlstudio.exceptions import WorkspaceError, WorkspaceNotFoundError
from mlstudio.workspace.models import WorkspaceInfo
from mlstudio.workspace.storage import FileSystemStorage
from mlstudio.workspace.store import MetadataStore

logger = logging.getLogger(__name__)

WORKSPACE_FILE = "workspace.json"


class Workspace:
    """
    A named directory holding datasets, compute targets, experiments, runs,
    models and published pipelines.

    Use :meth:`create`, :meth:`get` or :meth:`from_config` rather than the
    constructor.
    """

    def __init__(self, name: str, root_path: Optional[str] = None):
        self.name = name
        self.root_path = Path(root_path or settings.workspace.root_path).absolute()
        self.path = self.root_path / name
        self.metadata = MetadataStore(str(self.path / "metadata"))
        self.storage = FileSystemStorage(str(self.path / "artifacts"))

    def __repr__(self) -> str:
        return f"Workspace(name={self.name!r}, path={str(self.path)!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Workspace) and other.path == self.path

    def __hash__(self) -> int:
        return hash(self.path)

    @classmethod
    def create(
        cls,
        name: str,
        path: Optional[str] = None,
        exist_ok: bool = True,
        description: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None
    ) -> "Workspace":
        """
        Create a workspace, or return it if it already exists.

        Args:
            name: Workspace name
            path: Directory that holds workspaces (defaults to config)
            exist_ok: Return an existing workspace instead of failing
            description: Optional description
            tags: Optional tags

        Returns:
            Workspace instance

        Raises:
            WorkspaceError: If the workspace exists and exist_ok is False
        """
        if not name or "/" in name or name.startswith("."):
            raise WorkspaceError(f"Invalid workspace name '{name}'")

        root = Path(path or settings.workspace.root_path)
        workspace_file = root / name / "metadata" / WORKSPACE_FILE

        if workspace_file.exists():
            if not exist_ok:
                raise WorkspaceError(f"Workspace '{name}' already exists at {root / name}")
            logger.info(f"Using existing workspace '{name}'")
            return cls(name, str(root))

        workspace = cls(name, str(root))
        info = WorkspaceInfo(name=name, description=description, tags=tags or {})
        workspace.metadata.write(WORKSPACE_FILE, info.model_dump(mode="json"))

        # Every workspace carries the in-process "local" compute target
        from mlstudio.compute.target import ComputeTarget
        ComputeTarget.create_local(workspace)

        logger.info(f"Created workspace '{name}' at {workspace.path}")

        return workspace

    @classmethod
    def get(cls, name: str, path: Optional[str] = None) -> "Workspace":
        """
        Load an existing workspace.

        Raises:
            WorkspaceNotFoundError: If the workspace does not exist
        """
        root = Path(path or settings.workspace.root_path)
        if not (root / name / "metadata" / WORKSPACE_FILE).exists():
            raise WorkspaceNotFoundError(
                f"Workspace '{name}' not found under {root}",
                details={"name": name, "path": str(root)}
            )
        return cls(name, str(root))

    @classmethod
    def from_config(cls, path: Optional[str] = None) -> "Workspace":
        """
        Load the workspace named in the nearest config file.

        Searches ``<dir>/.mlstudio/config.json`` and ``<dir>/config.json``
        starting at ``path`` (or the working directory) and walking up.

        Raises:
            WorkspaceNotFoundError: If no config file is found
        """
        start = Path(path or ".").absolute()
        if start.is_file():
            candidates = [start]
        else:
            candidates = []
            for directory in [start, *start.parents]:
                candidates.append(directory / settings.workspace.config_dir / settings.workspace.config_file)
                candidates.append(directory / settings.workspace.config_file)

        for candidate in candidates:
            if candidate.is_file():
                with open(candidate, 'r') as f:
                    config = json.load(f)
                if "workspace_name" not in config:
                    continue
                logger.info(f"Found workspace config at {candidate}")
                return cls.get(config["workspace_name"], config.get("path"))

        raise WorkspaceNotFoundError(f"No workspace config file found from {start}")

    def write_config(self, path: Optional[str] = None, file_name: Optional[str] = None) -> str:
        """
        Write a config file that :meth:`from_config` can find.

        Returns:
            Path of the written file
        """
        directory = Path(path or ".") / settings.workspace.config_dir
        directory.mkdir(parents=True, exist_ok=True)
        config_path = directory / (file_name or settings.workspace.config_file)

        with open(config_path, 'w') as f:
            json.dump({"workspace_name": self.name, "path": str(self.root_path)}, f, indent=2)

        return str(config_path)

    def get_details(self) -> Dict[str, Any]:
        info = WorkspaceInfo(**self.metadata.read(WORKSPACE_FILE))
        details = info.model_dump(mode="json")
        details["path"] = str(self.path)
        return details

    @property
    def datasets(self) -> Dict[str, Any]:
        """Latest version of every registered dataset, keyed by name."""
        from mlstudio.data.dataset import Dataset
        return {name: Dataset.get_by_name(self, name) for name in Dataset.list_names(self)}

    @property
    def compute_targets(self) -> Dict[str, Any]:
        from mlstudio.compute.target import ComputeTarget
        return {target.name: target for target in ComputeTarget.list(self)}

    @property
    def experiments(self) -> Dict[str, Any]:
        from mlstudio.training.experiment import Experiment
        return {experiment.name: experiment for experiment in Experiment.list(self)}

    @property
    def models(self) -> Dict[str, Any]:
        """Latest version of every registered model, keyed by name."""
        from mlstudio.registry.model import Model
        return {model.name: model for model in Model.list(self, latest=True)}

    def get_run(self, run_id: str):
        """Fetch a run handle by id."""
        from mlstudio.training.run import Run
        return Run.get(self, run_id)
