"""Experiments: named groupings of runs."""

import logging
import re
from typing import Optional, Dict, Iterator, List

from mlstudio.exceptions import ValidationError
from mlstudio.workspace.models import ExperimentRecord

logger = logging.getLogger(__name__)

EXPERIMENT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][\w-]{0,254}$")


class Experiment:
    """
    Named grouping of runs in a workspace.

    The experiment is persisted lazily, the first time a run is submitted
    or started under it.
    """

    def __init__(self, workspace, name: str, tags: Optional[Dict[str, str]] = None):
        if not EXPERIMENT_NAME_PATTERN.match(name or ""):
            raise ValidationError(
                f"Invalid experiment name '{name}': use letters, digits, '-' and '_' "
                "and start with a letter or digit"
            )
        self.workspace = workspace
        self.name = name
        self._tags = tags or {}

    def __repr__(self) -> str:
        return f"Experiment(name={self.name!r}, workspace={self.workspace.name!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Experiment) and other.name == self.name and other.workspace == self.workspace

    def __hash__(self) -> int:
        return hash((self.workspace.path, self.name))

    @property
    def _key(self) -> str:
        return f"experiments/{self.name}/experiment.json"

    def _ensure_created(self) -> None:
        with self.workspace.metadata.lock:
            if not self.workspace.metadata.exists(self._key):
                record = ExperimentRecord(name=self.name, tags=self._tags)
                self.workspace.metadata.write(self._key, record.model_dump(mode="json"))
                logger.info(f"Created experiment '{self.name}'")

    @property
    def exists(self) -> bool:
        return self.workspace.metadata.exists(self._key)

    @property
    def tags(self) -> Dict[str, str]:
        document = self.workspace.metadata.read(self._key)
        return dict(document["tags"]) if document else dict(self._tags)

    @classmethod
    def list(cls, workspace) -> List["Experiment"]:
        return [
            cls(workspace, name)
            for name in workspace.metadata.list_dirs("experiments")
            if workspace.metadata.exists(f"experiments/{name}/experiment.json")
        ]

    def submit(self, config, tags: Optional[Dict[str, str]] = None, **kwargs):
        """
        Submit a run configuration.

        Args:
            config: ScriptRunConfig, HyperDriveConfig, AutoMLConfig or Pipeline
            tags: Tags for the new run

        Returns:
            Run handle of the matching type
        """
        submit = getattr(config, "_submit", None)
        if submit is None:
            raise ValidationError(f"Cannot submit an object of type {type(config).__name__}")

        run = submit(self, tags=tags, **kwargs)
        logger.info(f"Submitted {type(config).__name__} as run {run.id}")
        return run

    def start_logging(
        self,
        display_name: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
        snapshot_directory: Optional[str] = None
    ):
        """
        Start an interactive run, e.g. from a notebook.

        The run stays Running until ``complete()`` is called (or the ``with``
        block exits).
        """
        from mlstudio.training.run import Run

        run = Run._create(self, "interactive", display_name=display_name, tags=tags)
        if snapshot_directory:
            run.workspace.storage.save_artifact_from_file(snapshot_directory, f"runs/{run.id}/snapshot")
        run.start()
        return run

    def get_runs(
        self,
        type: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
        include_children: bool = False
    ) -> Iterator:
        """
        Iterate over the experiment's runs, newest first.

        Args:
            type: Only runs of this run type
            tags: Only runs carrying these tag values
            include_children: Include child runs (sweep trials, pipeline steps, ...)
        """
        from mlstudio.training.run import Run

        entries = self.workspace.metadata.read_lines(f"experiments/{self.name}/runs.jsonl")
        for entry in reversed(entries):
            if entry.get("parent_run_id") and not include_children:
                continue
            run = Run.get(self.workspace, entry["run_id"])
            if type is not None and run.type != type:
                continue
            if tags and any(run.get_tags().get(k) != v for k, v in tags.items()):
                continue
            yield run
