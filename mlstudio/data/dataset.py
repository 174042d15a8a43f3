"""Tabular datasets with immutable, versioned registration."""

import glob
import gzip
import hashlib
import logging
import pickle
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

import pandas as pd

from mlstudio.exceptions import DatasetNotFoundError, DatasetRegistrationError, ValidationError
from mlstudio.workspace.models import DatasetRecord

logger = logging.getLogger(__name__)

DATASET_NAME_MAX_LENGTH = 250


def _validate_name(name: str) -> None:
    if not name or len(name) > DATASET_NAME_MAX_LENGTH:
        raise DatasetRegistrationError(f"Invalid dataset name '{name}'")
    if name.startswith(".") or not all(c.isalnum() or c in "-_." for c in name):
        raise DatasetRegistrationError(
            f"Dataset name '{name}' may only contain letters, digits, '-', '_' and '.'"
            " and must not start with '.'"
        )


def compute_dataset_hash(data: pd.DataFrame) -> str:
    """
    Compute content hash of a dataframe for deduplication.

    Args:
        data: DataFrame to hash

    Returns:
        SHA256 hash of schema and content
    """
    hash_obj = hashlib.sha256()

    schema_str = str([(col, str(dtype)) for col, dtype in data.dtypes.items()])
    hash_obj.update(schema_str.encode())

    hashed = pd.util.hash_pandas_object(data, index=False).values
    hash_obj.update(hashed.tobytes())

    return hash_obj.hexdigest()


def compute_statistics(data: pd.DataFrame) -> Dict[str, Any]:
    """
    Compute summary statistics for a dataframe.

    Args:
        data: DataFrame to analyze

    Returns:
        Dictionary with numeric, categorical and missing-value summaries
    """
    stats: Dict[str, Any] = {
        "numeric_features": {},
        "categorical_features": {},
        "missing_values": {},
    }

    for col in data.columns:
        series = data[col]
        missing_count = int(series.isna().sum())
        if missing_count > 0:
            stats["missing_values"][col] = missing_count

        if series.isna().all():
            continue

        if pd.api.types.is_bool_dtype(series):
            stats["categorical_features"][col] = {
                "unique_count": int(series.nunique()),
                "top_values": {str(k): int(v) for k, v in series.value_counts().head(5).items()},
            }
        elif pd.api.types.is_numeric_dtype(series):
            stats["numeric_features"][col] = {
                "mean": float(series.mean()),
                "std": float(series.std()) if series.count() > 1 else 0.0,
                "min": float(series.min()),
                "max": float(series.max()),
                "median": float(series.median()),
            }
        else:
            stats["categorical_features"][col] = {
                "unique_count": int(series.nunique()),
                "top_values": {str(k): int(v) for k, v in series.value_counts().head(5).items()},
            }

    return stats


class DatasetConsumptionConfig:
    """A dataset bound to the name a run sees it under."""

    def __init__(self, name: str, dataset: "TabularDataset"):
        if dataset.record is None:
            raise ValidationError("Only registered datasets can be used as run inputs")
        self.name = name
        self.dataset = dataset

    @property
    def dataset_id(self) -> str:
        return self.dataset.id

    def __repr__(self) -> str:
        return f"DatasetConsumptionConfig(name={self.name!r}, dataset={self.dataset_id!r})"


class TabularDataset:
    """A table of data, either in memory or registered in a workspace."""

    def __init__(
        self,
        data: pd.DataFrame,
        source: Optional[str] = None,
        record: Optional[DatasetRecord] = None,
        workspace=None
    ):
        self._data = data
        self.source = source
        self.record = record
        self.workspace = workspace

    def __repr__(self) -> str:
        if self.record is not None:
            return f"TabularDataset(id={self.id!r}, rows={self.record.num_rows})"
        return f"TabularDataset(source={self.source!r}, rows={len(self._data)})"

    @property
    def name(self) -> Optional[str]:
        return self.record.name if self.record else None

    @property
    def version(self) -> Optional[int]:
        return self.record.version if self.record else None

    @property
    def id(self) -> Optional[str]:
        return self.record.id if self.record else None

    @property
    def description(self) -> Optional[str]:
        return self.record.description if self.record else None

    @property
    def tags(self) -> Dict[str, str]:
        return dict(self.record.tags) if self.record else {}

    def to_pandas_dataframe(self) -> pd.DataFrame:
        """Return a copy of the data; registered snapshots are never mutated."""
        return self._data.copy()

    def take(self, count: int) -> "TabularDataset":
        return TabularDataset(self._data.head(count).reset_index(drop=True), source=self.source)

    def drop_columns(self, columns: Union[str, List[str]]) -> "TabularDataset":
        columns = [columns] if isinstance(columns, str) else list(columns)
        return TabularDataset(self._data.drop(columns=columns), source=self.source)

    def keep_columns(self, columns: Union[str, List[str]]) -> "TabularDataset":
        columns = [columns] if isinstance(columns, str) else list(columns)
        return TabularDataset(self._data[columns].copy(), source=self.source)

    def as_named_input(self, name: str) -> DatasetConsumptionConfig:
        return DatasetConsumptionConfig(name, self)

    def register(
        self,
        workspace,
        name: str,
        description: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
        create_new_version: bool = False
    ) -> "TabularDataset":
        """
        Register the data as an immutable dataset version.

        Args:
            workspace: Target workspace
            name: Dataset name
            description: Optional description
            tags: Optional tags
            create_new_version: Allow a new version when the name already
                holds different content

        Returns:
            Registered TabularDataset

        Raises:
            DatasetRegistrationError: If the name exists with different content
                and create_new_version is False
        """
        _validate_name(name)

        content_hash = compute_dataset_hash(self._data)

        with workspace.metadata.lock:
            versions = Dataset.list_versions(workspace, name)

            for existing in versions:
                if existing.content_hash == content_hash:
                    logger.info(
                        f"Dataset {name} with same content already registered as version {existing.version}"
                    )
                    return Dataset._load(workspace, existing)

            if versions and not create_new_version:
                raise DatasetRegistrationError(
                    f"Dataset '{name}' already exists with different content. "
                    "Pass create_new_version=True to add a version.",
                    details={"name": name, "latest_version": versions[-1].version}
                )

            version = versions[-1].version + 1 if versions else 1

            data_bytes = gzip.compress(pickle.dumps(self._data))
            storage_uri = workspace.storage.save_artifact(
                data_bytes, f"datasets/{name}/{version}/data.pkl.gz"
            )

            record = DatasetRecord(
                name=name,
                version=version,
                description=description,
                tags=tags or {},
                source=self.source,
                content_hash=content_hash,
                storage_uri=storage_uri,
                num_rows=len(self._data),
                num_columns=len(self._data.columns),
                data_schema={col: str(dtype) for col, dtype in self._data.dtypes.items()},
                statistics=compute_statistics(self._data),
            )
            workspace.metadata.write(f"datasets/{name}/{version}.json", record.model_dump(mode="json"))

        logger.info(f"Registered dataset {name} version {version} with {record.num_rows} rows")

        return TabularDataset(self._data.copy(), source=self.source, record=record, workspace=workspace)


class _TabularDatasetFactory:
    """Constructors for unregistered tabular datasets."""

    @staticmethod
    def from_delimited_files(
        path: Union[str, List[str]],
        separator: str = ",",
        header: bool = True
    ) -> TabularDataset:
        """
        Read one or more delimited files (glob patterns allowed).

        Raises:
            DatasetNotFoundError: If no file matches
        """
        patterns = [path] if isinstance(path, (str, Path)) else list(path)
        files: List[str] = []
        for pattern in patterns:
            matches = sorted(glob.glob(str(pattern)))
            files.extend(matches)

        if not files:
            raise DatasetNotFoundError(f"No delimited files match {path}")

        frames = [
            pd.read_csv(f, sep=separator, header=0 if header else None)
            for f in files
        ]
        data = pd.concat(frames, ignore_index=True) if len(frames) > 1 else frames[0]

        return TabularDataset(data, source=",".join(files))

    @staticmethod
    def from_pandas_dataframe(dataframe: pd.DataFrame) -> TabularDataset:
        return TabularDataset(dataframe.copy(), source="pandas")


class Dataset:
    """Lookup of registered datasets."""

    Tabular = _TabularDatasetFactory

    @staticmethod
    def _load(workspace, record: DatasetRecord) -> TabularDataset:
        data_bytes = workspace.storage.load_artifact(record.storage_uri)
        data = pickle.loads(gzip.decompress(data_bytes))
        return TabularDataset(data, source=record.source, record=record, workspace=workspace)

    @staticmethod
    def list_versions(workspace, name: str) -> List[DatasetRecord]:
        """All versions of a dataset, oldest first."""
        records = [
            DatasetRecord(**workspace.metadata.read(key))
            for key in workspace.metadata.list(f"datasets/{name}")
        ]
        return sorted(records, key=lambda r: r.version)

    @staticmethod
    def list_names(workspace) -> List[str]:
        return [
            name for name in workspace.metadata.list_dirs("datasets")
            if workspace.metadata.list(f"datasets/{name}")
        ]

    @staticmethod
    def list(workspace) -> List[DatasetRecord]:
        """Latest version record of every dataset."""
        return [Dataset.list_versions(workspace, name)[-1] for name in Dataset.list_names(workspace)]

    @staticmethod
    def get_by_name(workspace, name: str, version: Union[int, str] = "latest") -> TabularDataset:
        """
        Load a registered dataset version.

        Raises:
            DatasetNotFoundError: If the name or version is not registered
        """
        versions = Dataset.list_versions(workspace, name)
        if not versions:
            raise DatasetNotFoundError(f"Dataset '{name}' not found", details={"name": name})

        if version == "latest" or version is None:
            record = versions[-1]
        else:
            matching = [r for r in versions if r.version == int(version)]
            if not matching:
                raise DatasetNotFoundError(
                    f"Dataset '{name}' version {version} not found",
                    details={"name": name, "version": version}
                )
            record = matching[0]

        return Dataset._load(workspace, record)

    @staticmethod
    def get_by_id(workspace, dataset_id: str) -> TabularDataset:
        """Load a dataset from its ``name:version`` id."""
        name, _, version = dataset_id.rpartition(":")
        if not name:
            raise DatasetNotFoundError(f"Invalid dataset id '{dataset_id}'")
        return Dataset.get_by_name(workspace, name, version)
