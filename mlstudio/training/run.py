"""Run handles: status, metrics, artifacts and lifecycle of one tracked execution."""

import io
import logging
import os
import sys
import tempfile
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

from mlstudio.config import settings
from mlstudio.exceptions import (
    RunFailedError,
    RunNotFoundError,
    RunStateError,
    RunTimeoutError,
    ValidationError,
)
from mlstudio.workspace.models import MetricRecord, RunRecord, RunStatus, is_valid_transition

logger = logging.getLogger(__name__)

ENV_RUN_ID = "MLSTUDIO_RUN_ID"
ENV_WORKSPACE_NAME = "MLSTUDIO_WORKSPACE_NAME"
ENV_WORKSPACE_PATH = "MLSTUDIO_WORKSPACE_PATH"


def generate_run_id(experiment_name: str) -> str:
    return f"{experiment_name}_{int(time.time())}_{uuid.uuid4().hex[:8]}"


class Run:
    """
    Handle to a run stored in a workspace.

    The handle holds no state beyond its id: every property reads the
    persisted record, so handles in different threads or processes agree.
    """

    def __init__(self, experiment, run_id: str):
        self.experiment = experiment
        self.workspace = experiment.workspace
        self.id = run_id
        self._key = f"runs/{run_id}/run.json"

    def __repr__(self) -> str:
        return f"Run(id={self.id!r}, experiment={self.experiment.name!r}, status={self.status!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Run) and other.id == self.id and other.workspace == self.workspace

    def __hash__(self) -> int:
        return hash(self.id)

    # ------------------------------------------------------------------
    # Construction and lookup
    # ------------------------------------------------------------------

    @classmethod
    def get(cls, workspace, run_id: str) -> "Run":
        """
        Fetch a run by id.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        from mlstudio.training.experiment import Experiment

        document = workspace.metadata.read(f"runs/{run_id}/run.json")
        if document is None:
            raise RunNotFoundError(f"Run '{run_id}' not found", details={"run_id": run_id})
        return cls._from_record(Experiment(workspace, document["experiment_name"]), RunRecord(**document))

    @classmethod
    def _from_record(cls, experiment, record: RunRecord) -> "Run":
        """Return the handle class matching the run type."""
        if record.run_type == "hyperdrive":
            from mlstudio.tuning.sweep import HyperDriveRun
            return HyperDriveRun(experiment, record.run_id)
        if record.run_type == "automl":
            from mlstudio.automl.search import AutoMLRun
            return AutoMLRun(experiment, record.run_id)
        if record.run_type == "pipeline":
            from mlstudio.pipelines.run import PipelineRun
            return PipelineRun(experiment, record.run_id)
        if record.run_type == "step":
            from mlstudio.pipelines.run import StepRun
            return StepRun(experiment, record.run_id)
        return cls(experiment, record.run_id)

    @classmethod
    def _create(
        cls,
        experiment,
        run_type: str,
        display_name: Optional[str] = None,
        parent: Optional["Run"] = None,
        tags: Optional[Dict[str, str]] = None,
        run_id: Optional[str] = None,
        **fields
    ) -> "Run":
        """Persist a new run record in NotStarted and index it."""
        experiment._ensure_created()

        record = RunRecord(
            run_id=run_id or generate_run_id(experiment.name),
            experiment_name=experiment.name,
            run_type=run_type,
            display_name=display_name,
            parent_run_id=parent.id if parent is not None else None,
            tags=tags or {},
            **fields
        )
        metadata = experiment.workspace.metadata
        if metadata.exists(f"runs/{record.run_id}/run.json"):
            raise RunStateError(f"Run '{record.run_id}' already exists")

        metadata.write(f"runs/{record.run_id}/run.json", record.model_dump(mode="json"))
        metadata.append(
            f"experiments/{experiment.name}/runs.jsonl",
            {"run_id": record.run_id, "parent_run_id": record.parent_run_id}
        )
        if parent is not None:
            metadata.append(f"runs/{parent.id}/children.jsonl", {"run_id": record.run_id})

        logger.info(f"Created {run_type} run {record.run_id} in experiment '{experiment.name}'")

        return cls(experiment, record.run_id)

    @classmethod
    def get_context(cls, allow_offline: bool = True) -> Union["Run", "OfflineRun"]:
        """
        Return the run the current script was submitted as.

        Outside a submitted script this returns an :class:`OfflineRun`
        that writes metrics to the log, unless ``allow_offline`` is False.

        Raises:
            RunStateError: If not inside a submitted run and offline runs are not allowed
        """
        from mlstudio.workspace.workspace import Workspace

        run_id = os.environ.get(ENV_RUN_ID)
        if run_id:
            workspace = Workspace(os.environ[ENV_WORKSPACE_NAME], os.environ[ENV_WORKSPACE_PATH])
            return cls.get(workspace, run_id)
        if not allow_offline:
            raise RunStateError("Not running inside a submitted run")
        return OfflineRun()

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    def _record(self) -> RunRecord:
        document = self.workspace.metadata.read(self._key)
        if document is None:
            raise RunNotFoundError(f"Run '{self.id}' not found", details={"run_id": self.id})
        return RunRecord(**document)

    def _update(self, **fields) -> RunRecord:
        def mutate(document: Dict[str, Any]) -> Dict[str, Any]:
            record = RunRecord(**document)
            updated = record.model_copy(update=fields)
            return updated.model_dump(mode="json")

        return RunRecord(**self.workspace.metadata.update(self._key, mutate))

    def _set_status(self, status: RunStatus, error: Optional[Dict[str, Any]] = None) -> bool:
        """
        Move the run to a new status.

        Returns:
            False if the run is already terminal (the transition is ignored)

        Raises:
            RunStateError: On a backwards transition of a non-terminal run
        """
        with self.workspace.metadata.lock:
            record = self._record()
            if record.status.is_terminal:
                logger.debug(f"Run {self.id} already {record.status.value}, ignoring {status.value}")
                return False
            if not is_valid_transition(record.status, status):
                raise RunStateError(
                    f"Run {self.id} cannot move from {record.status.value} to {status.value}"
                )

            fields: Dict[str, Any] = {"status": status}
            now = datetime.utcnow()
            if status == RunStatus.RUNNING and record.start_time is None:
                fields["start_time"] = now
            if status.is_terminal:
                fields["end_time"] = now
                if record.start_time is None:
                    fields["start_time"] = now
            if error is not None:
                fields["error"] = error
            self._update(**fields)

        logger.info(f"Run {self.id} -> {status.value}")
        return True

    @property
    def status(self) -> str:
        return self._record().status.value

    def get_status(self) -> str:
        return self.status

    @property
    def display_name(self) -> Optional[str]:
        return self._record().display_name

    @property
    def type(self) -> str:
        return self._record().run_type

    @property
    def parent(self) -> Optional["Run"]:
        parent_id = self._record().parent_run_id
        return Run.get(self.workspace, parent_id) if parent_id else None

    def get_details(self) -> Dict[str, Any]:
        record = self._record()
        details = record.model_dump(mode="json")
        details["tags"] = self.get_tags()
        details["properties"] = self.get_properties()
        return details

    # ------------------------------------------------------------------
    # Tags and properties
    # ------------------------------------------------------------------

    def _annotations(self, kind: str) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for entry in self.workspace.metadata.read_lines(f"runs/{self.id}/annotations.jsonl"):
            if entry["kind"] == kind:
                values[entry["key"]] = entry["value"]
        return values

    def tag(self, key: str, value: Optional[str] = None) -> None:
        self.workspace.metadata.append(
            f"runs/{self.id}/annotations.jsonl",
            {"kind": "tag", "key": key, "value": "" if value is None else str(value)}
        )

    def set_tags(self, tags: Dict[str, str]) -> None:
        for key, value in tags.items():
            self.tag(key, value)

    def get_tags(self) -> Dict[str, str]:
        tags = dict(self._record().tags)
        tags.update(self._annotations("tag"))
        return tags

    def add_properties(self, properties: Dict[str, Any]) -> None:
        """
        Add immutable properties.

        Raises:
            RunStateError: If a property already exists with a different value
        """
        current = self.get_properties()
        for key, value in properties.items():
            if key in current and current[key] != value:
                raise RunStateError(
                    f"Property '{key}' of run {self.id} is already set to {current[key]!r}"
                )
        for key, value in properties.items():
            if key not in current:
                self.workspace.metadata.append(
                    f"runs/{self.id}/annotations.jsonl",
                    {"kind": "property", "key": key, "value": value}
                )

    def get_properties(self) -> Dict[str, Any]:
        properties = dict(self._record().properties)
        properties.update(self._annotations("property"))
        return properties

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _log_metric(self, record: MetricRecord) -> None:
        self.workspace.metadata.append(f"runs/{self.id}/metrics.jsonl", record.model_dump(mode="json"))

    def log(self, name: str, value: Any, description: str = "", step: Optional[int] = None) -> None:
        """Log a scalar; logging the same name again builds a series."""
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            if hasattr(value, "item"):
                value = value.item()
            elif not isinstance(value, str):
                raise ValidationError(f"Metric '{name}' must be a number or string, got {type(value).__name__}")
        self._log_metric(MetricRecord(name=name, value=value, step=step))

    def log_list(self, name: str, value: List[Any], description: str = "") -> None:
        self._log_metric(MetricRecord(name=name, value=[_plain(v) for v in value], kind="list"))

    def log_row(self, name: str, description: str = "", **kwargs) -> None:
        self._log_metric(MetricRecord(name=name, value={k: _plain(v) for k, v in kwargs.items()}, kind="row"))

    def log_table(self, name: str, value: Dict[str, List[Any]], description: str = "") -> None:
        lengths = {len(column) for column in value.values()}
        if len(lengths) > 1:
            raise ValidationError(f"Columns of table '{name}' have different lengths")
        table = {k: [_plain(v) for v in column] for k, column in value.items()}
        self._log_metric(MetricRecord(name=name, value=table, kind="table"))

    def log_image(self, name: str, path: Optional[str] = None, plot=None, description: str = "") -> None:
        """
        Log an image from a file or a matplotlib figure/pyplot module.

        The image is stored as an artifact and the metric holds its name.
        """
        if (path is None) == (plot is None):
            raise ValidationError("Exactly one of path or plot must be given")

        artifact_name = f"images/{name}.png"
        if path is not None:
            suffix = Path(path).suffix or ".png"
            artifact_name = f"images/{name}{suffix}"
            self.upload_file(artifact_name, path)
        else:
            buffer = io.BytesIO()
            plot.savefig(buffer, format="png", bbox_inches="tight")
            self.workspace.storage.save_artifact(buffer.getvalue(), f"runs/{self.id}/{artifact_name}")

        self._log_metric(MetricRecord(name=name, value=artifact_name, kind="image"))

    def get_metric_records(self) -> List[MetricRecord]:
        return [
            MetricRecord(**entry)
            for entry in self.workspace.metadata.read_lines(f"runs/{self.id}/metrics.jsonl")
        ]

    def get_metric_series(self, name: str) -> List[float]:
        """Scalar values of a metric in the order they were logged."""
        return [
            m.value for m in self.get_metric_records()
            if m.name == name and m.kind == "scalar" and isinstance(m.value, (int, float))
        ]

    def get_metrics(self, name: Optional[str] = None, recursive: bool = False) -> Dict[str, Any]:
        """
        Metrics of the run.

        A scalar logged once is returned as a value; logged repeatedly it is
        returned as a list. Rows are collected into a column dictionary.

        Args:
            name: Only return this metric
            recursive: Return ``{run_id: metrics}`` for this run and all descendants
        """
        if recursive:
            result = {self.id: self.get_metrics(name)}
            for child in self.get_children(recursive=True):
                result[child.id] = child.get_metrics(name)
            return result

        grouped: Dict[str, List[MetricRecord]] = {}
        for metric in self.get_metric_records():
            if name is None or metric.name == name:
                grouped.setdefault(metric.name, []).append(metric)

        metrics: Dict[str, Any] = {}
        for metric_name, records in grouped.items():
            kind = records[-1].kind
            if kind == "row":
                keys: List[str] = []
                for record in records:
                    keys.extend(k for k in record.value if k not in keys)
                metrics[metric_name] = {
                    key: [record.value.get(key) for record in records] for key in keys
                }
            elif kind == "scalar" and len(records) > 1:
                metrics[metric_name] = [r.value for r in records]
            else:
                metrics[metric_name] = records[-1].value

        return metrics

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def _artifact_path(self, name: str) -> str:
        clean = Path(name).as_posix().lstrip("/")
        if ".." in Path(clean).parts:
            raise ValidationError(f"Invalid artifact name '{name}'")
        return f"runs/{self.id}/{clean}"

    def upload_file(self, name: str, path_or_stream) -> str:
        """Store a local file (or readable binary stream) under ``name``."""
        destination = self._artifact_path(name)
        if hasattr(path_or_stream, "read"):
            return self.workspace.storage.save_artifact(path_or_stream.read(), destination)
        if not Path(path_or_stream).is_file():
            raise FileNotFoundError(f"Artifact not found: {path_or_stream}")
        return self.workspace.storage.save_artifact_from_file(str(path_or_stream), destination)

    def upload_folder(self, name: str, path: str) -> List[str]:
        if not Path(path).is_dir():
            raise FileNotFoundError(f"Folder not found: {path}")
        self.workspace.storage.save_artifact_from_file(path, self._artifact_path(name))
        return [f"{name}/{f}" for f in self.workspace.storage.list_artifacts(self._artifact_path(name))]

    def get_file_names(self) -> List[str]:
        names = self.workspace.storage.list_artifacts(f"runs/{self.id}")
        return [n for n in names if not n.startswith("snapshot/")]

    def download_file(self, name: str, output_file_path: Optional[str] = None) -> str:
        """
        Copy an artifact to a local path.

        Raises:
            FileNotFoundError: If the run has no artifact with that name
        """
        uri = self.workspace.storage.uri_for(self._artifact_path(name))
        if not self.workspace.storage.artifact_exists(uri):
            raise FileNotFoundError(f"Run {self.id} has no artifact '{name}'")
        target = Path(output_file_path or Path(name).name)
        if target.is_dir():
            target = target / Path(name).name
        self.workspace.storage.load_artifact_to_file(uri, str(target))
        return str(target)

    def download_files(self, prefix: str = "", output_directory: str = ".") -> List[str]:
        downloaded = []
        for name in self.get_file_names():
            if name.startswith(prefix):
                target = Path(output_directory) / name
                target.parent.mkdir(parents=True, exist_ok=True)
                downloaded.append(self.download_file(name, str(target)))
        return downloaded

    def artifact_local_path(self, name: str) -> Path:
        """Path on disk of a stored artifact."""
        return self.workspace.storage.local_path(
            self.workspace.storage.uri_for(self._artifact_path(name))
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Mark an interactive run as running."""
        self._set_status(RunStatus.RUNNING)

    def complete(self) -> None:
        self._set_status(RunStatus.COMPLETED)

    def fail(self, error_details: Optional[Union[str, BaseException]] = None, error_code: str = "UserError") -> None:
        message = str(error_details) if error_details is not None else "Run failed"
        self._set_status(RunStatus.FAILED, error={"code": error_code, "message": message})

    def cancel(self) -> None:
        """
        Request cancellation.

        Runs driven by a controller (scripts, sweeps, searches, pipelines)
        are stopped by that controller; other runs are canceled at once.
        """
        record = self._record()
        if record.status.is_terminal:
            logger.info(f"Run {self.id} already {record.status.value}, nothing to cancel")
            return
        self._update(cancel_requested=True)
        if record.run_type in ("interactive", "automl_iteration") or record.status == RunStatus.NOT_STARTED:
            self._set_status(RunStatus.CANCELED)
        logger.info(f"Cancellation requested for run {self.id}")

    @property
    def cancel_requested(self) -> bool:
        return self._record().cancel_requested

    def wait_for_completion(
        self,
        show_output: bool = False,
        wait_post_processing: bool = False,
        raise_on_error: bool = True,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Block until the run reaches a terminal status.

        Args:
            show_output: Stream the driver log to stdout while waiting
            wait_post_processing: Accepted for compatibility; finalization is part of the run
            raise_on_error: Raise RunFailedError if the run failed
            timeout: Seconds to wait before raising RunTimeoutError

        Returns:
            Run details
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        log_offset = 0

        while True:
            record = self._record()
            if show_output:
                log_offset = self._stream_log(log_offset)
            if record.status.is_terminal:
                break
            if deadline is not None and time.monotonic() >= deadline:
                raise RunTimeoutError(
                    f"Run {self.id} did not finish within {timeout} seconds",
                    details={"status": record.status.value}
                )
            time.sleep(settings.run.poll_interval_seconds)

        if show_output:
            print(f"\nRun {self.id}: {record.status.value}")

        if record.status == RunStatus.FAILED and raise_on_error:
            error = record.error or {}
            raise RunFailedError(
                f"Run {self.id} failed: {error.get('message', 'unknown error')}",
                details=error
            )

        return self.get_details()

    def _stream_log(self, offset: int) -> int:
        log_path = self.artifact_local_path(f"{settings.run.logs_dir}/driver_log.txt")
        if not log_path.exists():
            return offset
        with open(log_path, 'r', errors="replace") as f:
            f.seek(offset)
            chunk = f.read()
            sys.stdout.write(chunk)
            return f.tell()

    def get_children(
        self,
        recursive: bool = False,
        tags: Optional[Dict[str, str]] = None,
        properties: Optional[Dict[str, Any]] = None
    ) -> List["Run"]:
        """Child runs in creation order."""
        children = []
        for entry in self.workspace.metadata.read_lines(f"runs/{self.id}/children.jsonl"):
            child = Run.get(self.workspace, entry["run_id"])
            tags_match = not tags or all(child.get_tags().get(k) == v for k, v in tags.items())
            properties_match = not properties or all(
                child.get_properties().get(k) == v for k, v in properties.items()
            )
            if tags_match and properties_match:
                children.append(child)
            if recursive:
                children.extend(child.get_children(recursive=True, tags=tags, properties=properties))
        return children

    def child_run(self, name: Optional[str] = None, run_id: Optional[str] = None) -> "Run":
        """Start an interactive child run."""
        child = Run._create(self.experiment, "interactive", display_name=name, parent=self, run_id=run_id)
        child.start()
        return child

    @property
    def input_datasets(self) -> Dict[str, Any]:
        """Datasets the run was submitted with, keyed by input name."""
        from mlstudio.data.dataset import Dataset
        return {
            name: Dataset.get_by_id(self.workspace, dataset_id)
            for name, dataset_id in self._record().input_datasets.items()
        }

    def register_model(
        self,
        model_name: str,
        model_path: str,
        tags: Optional[Dict[str, str]] = None,
        properties: Optional[Dict[str, str]] = None,
        description: Optional[str] = None,
        datasets: Optional[List[str]] = None
    ):
        """
        Register an artifact of this run as a model version.

        Args:
            model_name: Registry name
            model_path: Artifact name (file or folder), e.g. ``outputs/model.pkl``

        Returns:
            Registered Model
        """
        from mlstudio.registry.model import Model

        if not self.artifact_local_path(model_path).exists():
            raise FileNotFoundError(f"Run {self.id} has no artifact '{model_path}'")

        return Model.register(
            self.workspace,
            model_path=str(self.artifact_local_path(model_path)),
            model_name=model_name,
            tags=tags,
            properties=properties,
            description=description,
            run_id=self.id,
            experiment_name=self.experiment.name,
            datasets=datasets,
        )

    def __enter__(self) -> "Run":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            self.fail(exc, error_code=exc_type.__name__)
        else:
            self.complete()
        return False


def _plain(value: Any) -> Any:
    """Convert numpy scalars to Python values for JSON storage."""
    return value.item() if hasattr(value, "item") else value


class OfflineRun:
    """
    Stand-in run used when a script is executed outside the platform.

    Metrics are kept in memory and written to the log; outputs stay on disk.
    """

    def __init__(self):
        self.id = f"OfflineRun_{uuid.uuid4()}"
        self.experiment = None
        self._metrics: Dict[str, List[Any]] = {}
        self._tags: Dict[str, str] = {}

    def __repr__(self) -> str:
        return f"OfflineRun(id={self.id!r})"

    def log(self, name: str, value: Any, description: str = "", step: Optional[int] = None) -> None:
        logger.info(f"[offline] {name}={value}")
        self._metrics.setdefault(name, []).append(_plain(value))

    def log_list(self, name: str, value: List[Any], description: str = "") -> None:
        logger.info(f"[offline] {name}={list(value)}")
        self._metrics[name] = [list(value)]

    def log_row(self, name: str, description: str = "", **kwargs) -> None:
        logger.info(f"[offline] {name}: {kwargs}")
        self._metrics.setdefault(name, []).append(kwargs)

    def log_table(self, name: str, value: Dict[str, List[Any]], description: str = "") -> None:
        logger.info(f"[offline] {name}: table with columns {list(value)}")
        self._metrics[name] = [value]

    def log_image(self, name: str, path: Optional[str] = None, plot=None, description: str = "") -> None:
        if plot is not None:
            path = os.path.join(tempfile.gettempdir(), f"{name}.png")
            plot.savefig(path)
        logger.info(f"[offline] image {name} at {path}")

    def upload_file(self, name: str, path_or_stream) -> None:
        logger.info(f"[offline] skipping upload of {name}")

    def tag(self, key: str, value: Optional[str] = None) -> None:
        self._tags[key] = "" if value is None else str(value)

    def get_tags(self) -> Dict[str, str]:
        return dict(self._tags)

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, Any]:
        return {
            key: values[0] if len(values) == 1 else list(values)
            for key, values in self._metrics.items()
            if name is None or key == name
        }

    @property
    def input_datasets(self) -> Dict[str, Any]:
        return {}

    def complete(self) -> None:
        pass

    def fail(self, error_details=None, error_code: str = "UserError") -> None:
        logger.error(f"[offline] run failed: {error_details}")
