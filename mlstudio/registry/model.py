"""
Model registry for version management of trained models.

Registered models are stored as artifacts under ``models/<name>/<version>/``
with one metadata document per version. Version numbers come from a
per-name counter that only ever grows, so a deleted version number is never
handed out again.
"""

import logging
import shutil
from pathlib import Path
from typing import Dict, Any, Optional, List

import joblib

from mlstudio.exceptions import ModelNotFoundError, ModelRegistrationError, ValidationError
from mlstudio.workspace.models import ModelRecord

logger = logging.getLogger(__name__)

MODEL_NAME_MAX_LENGTH = 255


def _version_key(name: str, version: int) -> str:
    return f"models/{name}/{version}.json"


def _counter_key(name: str) -> str:
    return f"model_versions/{name}.json"


def _validate_name(name: str) -> None:
    if not name or len(name) > MODEL_NAME_MAX_LENGTH:
        raise ValidationError(f"Invalid model name '{name}'")
    if not all(c.isalnum() or c in "-_." for c in name):
        raise ValidationError(
            f"Model name '{name}' may only contain letters, digits, '-', '_' and '.'"
        )


class Model:
    """
    One version of a registered model.

    ``Model(ws, name)`` returns the latest version; pass ``version`` for a
    specific one.

    Raises:
        ModelNotFoundError: If the name or version is not registered
    """

    def __init__(self, workspace, name: str, version: Optional[int] = None):
        self.workspace = workspace
        record = self._load_record(workspace, name, version)
        self.name = record.name
        self.version = record.version

    def __repr__(self) -> str:
        return f"Model(name={self.name!r}, version={self.version})"

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, Model)
            and (other.name, other.version) == (self.name, self.version)
            and other.workspace == self.workspace
        )

    def __hash__(self) -> int:
        return hash((self.name, self.version))

    @staticmethod
    def _load_record(workspace, name: str, version: Optional[int]) -> ModelRecord:
        if version is None:
            versions = Model._versions(workspace, name)
            if not versions:
                raise ModelNotFoundError(f"Model '{name}' not found", details={"name": name})
            return versions[-1]

        document = workspace.metadata.read(_version_key(name, int(version)))
        if document is None:
            raise ModelNotFoundError(
                f"Model '{name}' version {version} not found",
                details={"name": name, "version": version}
            )
        return ModelRecord(**document)

    @staticmethod
    def _versions(workspace, name: str) -> List[ModelRecord]:
        records = [
            ModelRecord(**workspace.metadata.read(key))
            for key in workspace.metadata.list(f"models/{name}")
        ]
        return sorted(records, key=lambda r: r.version)

    @property
    def _record(self) -> ModelRecord:
        return self._load_record(self.workspace, self.name, self.version)

    @property
    def id(self) -> str:
        return f"{self.name}:{self.version}"

    @property
    def description(self) -> Optional[str]:
        return self._record.description

    @property
    def tags(self) -> Dict[str, str]:
        return dict(self._record.tags)

    @property
    def properties(self) -> Dict[str, str]:
        return dict(self._record.properties)

    @property
    def run_id(self) -> Optional[str]:
        return self._record.run_id

    @property
    def experiment_name(self) -> Optional[str]:
        return self._record.experiment_name

    @property
    def datasets(self) -> List[str]:
        return list(self._record.datasets)

    @property
    def created_time(self):
        return self._record.created_at

    @property
    def url(self) -> str:
        return self._record.storage_uri

    @classmethod
    def register(
        cls,
        workspace,
        model_path: str,
        model_name: str,
        tags: Optional[Dict[str, str]] = None,
        properties: Optional[Dict[str, str]] = None,
        description: Optional[str] = None,
        run_id: Optional[str] = None,
        experiment_name: Optional[str] = None,
        datasets: Optional[List[str]] = None
    ) -> "Model":
        """
        Register a local file or folder as a new version of a model.

        Args:
            workspace: Workspace holding the registry
            model_path: File or folder to copy into the registry
            model_name: Registry name; the version is assigned automatically
            tags: Mutable key/value tags
            properties: Immutable key/value properties
            description: Free text description
            run_id: Run that produced the model
            experiment_name: Experiment of that run
            datasets: Ids of datasets the model was trained on

        Returns:
            The registered Model version

        Raises:
            ModelRegistrationError: If the path does not exist or copying fails
        """
        _validate_name(model_name)
        source = Path(model_path)
        if not source.exists():
            raise ModelRegistrationError(
                f"Model path '{model_path}' does not exist",
                details={"model_path": str(model_path)}
            )

        metadata = workspace.metadata
        with metadata.lock:
            counter = metadata.update(
                _counter_key(model_name),
                lambda doc: {"last_version": doc["last_version"] + 1},
                default={"last_version": 0}
            )
            version = counter["last_version"]

            logger.info(f"Registering model {model_name} version {version}")

            try:
                uri = workspace.storage.save_artifact_from_file(
                    str(source), f"models/{model_name}/{version}/{source.name}"
                )
            except OSError as e:
                logger.error(f"Failed to copy model {model_name}: {e}")
                raise ModelRegistrationError(f"Model registration failed: {e}")

            record = ModelRecord(
                name=model_name,
                version=version,
                description=description,
                tags={k: str(v) for k, v in (tags or {}).items()},
                properties={k: str(v) for k, v in (properties or {}).items()},
                storage_uri=uri,
                file_name=source.name,
                run_id=run_id,
                experiment_name=experiment_name,
                datasets=list(datasets or []),
            )
            metadata.write(_version_key(model_name, version), record.model_dump(mode="json"))

        logger.info(f"Successfully registered model {record.id}")
        return cls(workspace, model_name, version)

    @staticmethod
    def list(
        workspace,
        name: Optional[str] = None,
        tags: Optional[List[Any]] = None,
        properties: Optional[List[Any]] = None,
        latest: bool = False
    ) -> List["Model"]:
        """
        List registered model versions.

        Args:
            name: Only versions of this model
            tags: Filters; each entry is a key (tag present) or a ``[key, value]`` pair
            properties: Same filter form as ``tags``, applied to properties
            latest: Only the newest version of each name

        Returns:
            Models sorted by name, then version
        """
        names = [name] if name else workspace.metadata.list_dirs("models")
        models = []
        for model_name in names:
            records = Model._versions(workspace, model_name)
            if latest:
                records = records[-1:]
            for record in records:
                if _matches(record.tags, tags) and _matches(record.properties, properties):
                    models.append(Model(workspace, record.name, record.version))
        return models

    def _mutate(self, mutate) -> ModelRecord:
        def apply(document: Dict[str, Any]) -> Dict[str, Any]:
            return mutate(ModelRecord(**document)).model_dump(mode="json")

        return ModelRecord(**self.workspace.metadata.update(_version_key(self.name, self.version), apply))

    def add_tags(self, tags: Dict[str, str]) -> None:
        def mutate(record: ModelRecord) -> ModelRecord:
            updated = dict(record.tags)
            updated.update({k: str(v) for k, v in tags.items()})
            return record.model_copy(update={"tags": updated})

        self._mutate(mutate)

    def remove_tags(self, tags: List[str]) -> None:
        def mutate(record: ModelRecord) -> ModelRecord:
            return record.model_copy(update={"tags": {k: v for k, v in record.tags.items() if k not in tags}})

        self._mutate(mutate)

    def add_properties(self, properties: Dict[str, str]) -> None:
        """
        Add properties to this version.

        Raises:
            ValidationError: If a property already exists (properties cannot be changed)
        """
        def mutate(record: ModelRecord) -> ModelRecord:
            existing = sorted(set(properties) & set(record.properties))
            if existing:
                raise ValidationError(
                    f"Properties {existing} of model {record.id} already exist and cannot be overwritten"
                )
            updated = dict(record.properties)
            updated.update({k: str(v) for k, v in properties.items()})
            return record.model_copy(update={"properties": updated})

        self._mutate(mutate)

    def download(self, target_dir: str = ".", exist_ok: bool = False) -> str:
        """
        Copy the model file or folder into ``target_dir``.

        Returns:
            Path of the downloaded file or folder

        Raises:
            FileExistsError: If the target exists and ``exist_ok`` is False
        """
        record = self._record
        target = Path(target_dir) / record.file_name
        if target.exists():
            if not exist_ok:
                raise FileExistsError(f"{target} already exists")
            if target.is_dir():
                shutil.rmtree(target)

        Path(target_dir).mkdir(parents=True, exist_ok=True)
        self.workspace.storage.load_artifact_to_file(record.storage_uri, str(target))
        logger.info(f"Downloaded model {record.id} to {target}")
        return str(target)

    def get_model_path(self) -> Path:
        """Path of the registered file or folder inside the workspace."""
        return self.workspace.storage.local_path(self._record.storage_uri)

    def load(self) -> Any:
        """Deserialize a model stored with joblib (``.pkl`` or ``.joblib``)."""
        path = self.get_model_path()
        if path.is_dir():
            candidates = sorted(path.glob("*.pkl")) + sorted(path.glob("*.joblib"))
            if not candidates:
                raise ModelNotFoundError(f"No serialized model file in {self.id}")
            path = candidates[0]
        return joblib.load(path)

    def delete(self) -> None:
        """Remove this version; its number is not reused."""
        record = self._record
        self.workspace.storage.delete_artifact(record.storage_uri)
        self.workspace.metadata.delete(_version_key(self.name, self.version))
        logger.info(f"Deleted model {record.id}")

    def serialize(self) -> Dict[str, Any]:
        data = self._record.model_dump(mode="json")
        data["id"] = self.id
        return data


def _matches(values: Dict[str, str], filters: Optional[List[Any]]) -> bool:
    for item in filters or []:
        if isinstance(item, (list, tuple)):
            key, expected = item
            if values.get(key) != str(expected):
                return False
        elif item not in values:
            return False
    return True
