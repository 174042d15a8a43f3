"""Tests for tabular datasets and their registration."""

import pandas as pd
import pytest

from mlstudio.data.dataset import Dataset, compute_dataset_hash, compute_statistics
from mlstudio.exceptions import DatasetNotFoundError, DatasetRegistrationError, ValidationError


@pytest.fixture
def csv_path(tmp_path):
    path = tmp_path / "diabetes.csv"
    pd.DataFrame({
        "Pregnancies": [0, 1, 2, 3],
        "Glucose": [120.0, 85.0, 183.0, None],
        "Diabetic": [0, 0, 1, 1],
    }).to_csv(path, index=False)
    return path


class TestTabularDataset:
    """Test in-memory dataset operations."""

    def test_from_delimited_files(self, csv_path):
        data = Dataset.Tabular.from_delimited_files(str(csv_path))

        frame = data.to_pandas_dataframe()
        assert list(frame.columns) == ["Pregnancies", "Glucose", "Diabetic"]
        assert len(frame) == 4

    def test_from_delimited_files_glob(self, tmp_path):
        for i in range(2):
            pd.DataFrame({"a": [i]}).to_csv(tmp_path / f"part{i}.csv", index=False)

        data = Dataset.Tabular.from_delimited_files(str(tmp_path / "part*.csv"))

        assert data.to_pandas_dataframe()["a"].tolist() == [0, 1]

    def test_no_matching_files(self, tmp_path):
        with pytest.raises(DatasetNotFoundError):
            Dataset.Tabular.from_delimited_files(str(tmp_path / "*.csv"))

    def test_take_and_columns(self, csv_path):
        data = Dataset.Tabular.from_delimited_files(str(csv_path))

        assert len(data.take(2).to_pandas_dataframe()) == 2
        assert list(data.drop_columns("Glucose").to_pandas_dataframe().columns) == ["Pregnancies", "Diabetic"]
        assert list(data.keep_columns(["Glucose"]).to_pandas_dataframe().columns) == ["Glucose"]

    def test_hash_ignores_index_but_not_content(self):
        frame = pd.DataFrame({"a": [1, 2]})

        assert compute_dataset_hash(frame) == compute_dataset_hash(frame.set_axis([5, 6]))
        assert compute_dataset_hash(frame) != compute_dataset_hash(pd.DataFrame({"a": [1, 3]}))

    def test_statistics(self, csv_path):
        stats = compute_statistics(pd.read_csv(csv_path))

        assert stats["missing_values"] == {"Glucose": 1}
        assert stats["numeric_features"]["Pregnancies"]["max"] == 3.0

    def test_unregistered_dataset_cannot_be_run_input(self, csv_path):
        data = Dataset.Tabular.from_delimited_files(str(csv_path))

        with pytest.raises(ValidationError):
            data.as_named_input("training_data")


class TestDatasetRegistration:
    """Test registration and versioning."""

    def test_register_creates_version_one(self, workspace, csv_path):
        registered = Dataset.Tabular.from_delimited_files(str(csv_path)).register(
            workspace, "diabetes", description="Diabetes data", tags={"format": "CSV"}
        )

        assert registered.id == "diabetes:1"
        assert registered.record.num_rows == 4
        assert registered.tags == {"format": "CSV"}
        assert "diabetes" in workspace.datasets

    def test_same_content_returns_existing_version(self, workspace, csv_path):
        first = Dataset.Tabular.from_delimited_files(str(csv_path)).register(workspace, "diabetes")
        second = Dataset.Tabular.from_delimited_files(str(csv_path)).register(workspace, "diabetes")

        assert first.version == second.version == 1

    def test_changed_content_requires_new_version_flag(self, workspace, csv_path):
        Dataset.Tabular.from_delimited_files(str(csv_path)).register(workspace, "diabetes")
        changed = Dataset.Tabular.from_pandas_dataframe(pd.DataFrame({"a": [1]}))

        with pytest.raises(DatasetRegistrationError):
            changed.register(workspace, "diabetes")

        registered = changed.register(workspace, "diabetes", create_new_version=True)
        assert registered.version == 2

    @pytest.mark.parametrize("name", ["", "a/b", "../escape", ".hidden", "has space", "x" * 300])
    def test_invalid_names_are_rejected(self, workspace, csv_path, name):
        dataset = Dataset.Tabular.from_delimited_files(str(csv_path))

        with pytest.raises(DatasetRegistrationError):
            dataset.register(workspace, name)

        assert Dataset.list(workspace) == []

    def test_get_by_name_and_version(self, workspace, csv_path):
        Dataset.Tabular.from_delimited_files(str(csv_path)).register(workspace, "diabetes")
        Dataset.Tabular.from_pandas_dataframe(pd.DataFrame({"a": [1]})).register(
            workspace, "diabetes", create_new_version=True
        )

        assert Dataset.get_by_name(workspace, "diabetes").version == 2
        assert Dataset.get_by_name(workspace, "diabetes", version=1).version == 1
        assert Dataset.get_by_id(workspace, "diabetes:1").record.num_rows == 4

    def test_registered_snapshot_is_immutable(self, workspace, csv_path):
        registered = Dataset.Tabular.from_delimited_files(str(csv_path)).register(workspace, "diabetes")
        frame = registered.to_pandas_dataframe()
        frame["Glucose"] = 0

        reloaded = Dataset.get_by_name(workspace, "diabetes").to_pandas_dataframe()
        assert reloaded["Glucose"].iloc[0] == 120.0

    def test_unknown_dataset(self, workspace):
        with pytest.raises(DatasetNotFoundError):
            Dataset.get_by_name(workspace, "missing")

    def test_unknown_version(self, workspace, csv_path):
        Dataset.Tabular.from_delimited_files(str(csv_path)).register(workspace, "diabetes")

        with pytest.raises(DatasetNotFoundError):
            Dataset.get_by_name(workspace, "diabetes", version=7)

    def test_named_input(self, workspace, csv_path):
        registered = Dataset.Tabular.from_delimited_files(str(csv_path)).register(workspace, "diabetes")

        config = registered.as_named_input("training_data")

        assert config.name == "training_data"
        assert config.dataset_id == "diabetes:1"
