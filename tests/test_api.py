"""Tests for the studio API."""

import pandas as pd
import pytest
from fastapi.testclient import TestClient

from mlstudio.api.app import app, status_code_for
from mlstudio.api.endpoints import set_workspace
from mlstudio.data.dataset import Dataset
from mlstudio.exceptions import (
    MLStudioException,
    PipelineRunError,
    RunNotFoundError,
    SweepConfigurationError,
)
from mlstudio.pipelines import Pipeline, PipelineParameter, PythonScriptStep
from mlstudio.registry.model import Model
from mlstudio.training.experiment import Experiment
from mlstudio.training.run import Run


@pytest.fixture
def client(workspace):
    """Test client serving the temporary workspace."""
    set_workspace(workspace)
    yield TestClient(app)
    set_workspace(None)


@pytest.fixture
def finished_run(workspace):
    """Completed interactive run with a child, metrics and a file."""
    run = Experiment(workspace, "api-experiment").start_logging(display_name="notebook", tags={"team": "ml"})
    run.log("accuracy", 0.9)
    run.upload_file("outputs/notes.txt", __file__)
    run.child_run("fold-1").complete()
    run.complete()
    return run


@pytest.fixture
def published(workspace, tmp_path, write_script):
    """Published single-step pipeline with one parameter."""
    source = tmp_path / "score"
    write_script(source, "score.py", """
        import argparse

        from mlstudio.training.run import Run

        parser = argparse.ArgumentParser()
        parser.add_argument("--threshold", type=float)
        args = parser.parse_args()
        Run.get_context().log("threshold", args.threshold)
    """)
    step = PythonScriptStep(
        "score.py",
        name="score",
        source_directory=str(source),
        arguments=["--threshold", PipelineParameter("threshold", default_value=0.5)],
    )
    return Pipeline(workspace, [step]).publish("batch-scoring", description="Nightly scoring")


class TestHealthAndMetrics:
    """Test service endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_metrics_count_requests(self, client):
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "mlstudio_http_requests_total" in response.text

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert client.get("/health").headers["X-Request-ID"]

    def test_status_code_mapping(self):
        assert status_code_for(RunNotFoundError("x")) == 404
        assert status_code_for(SweepConfigurationError("x")) == 400
        assert status_code_for(PipelineRunError("x")) == 409
        assert status_code_for(MLStudioException("x")) == 500


class TestWorkspaceAssets:
    """Test workspace, dataset, compute and model endpoints."""

    def test_workspace(self, client, workspace):
        data = client.get("/api/v1/workspace").json()

        assert data["name"] == "test-ws"
        assert data["path"] == str(workspace.path)

    def test_datasets(self, client, workspace):
        frame = pd.DataFrame({"age": [21, 35], "outcome": [0, 1]})
        Dataset.Tabular.from_pandas_dataframe(frame).register(workspace, "diabetes")

        listed = client.get("/api/v1/datasets").json()
        single = client.get("/api/v1/datasets/diabetes", params={"version": 1}).json()

        assert [d["id"] for d in listed] == ["diabetes:1"]
        assert single["num_rows"] == 2
        assert single["num_columns"] == 2

    def test_missing_dataset_is_404(self, client):
        response = client.get("/api/v1/datasets/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "DatasetNotFoundError"

    def test_computes(self, client):
        listed = client.get("/api/v1/computes").json()

        assert [c["name"] for c in listed] == ["local"]
        assert client.get("/api/v1/computes/local").json()["compute_type"] == "Local"
        assert client.get("/api/v1/computes/missing").status_code == 404

    def test_models(self, client, workspace, tmp_path):
        model_file = tmp_path / "model.pkl"
        model_file.write_bytes(b"weights")
        Model.register(workspace, str(model_file), "diabetes_model", tags={"stage": "dev"})
        Model.register(workspace, str(model_file), "diabetes_model")

        listed = client.get("/api/v1/models").json()
        latest = client.get("/api/v1/models", params={"latest": True}).json()
        first = client.get("/api/v1/models/diabetes_model", params={"version": 1}).json()

        assert [m["id"] for m in listed] == ["diabetes_model:1", "diabetes_model:2"]
        assert [m["id"] for m in latest] == ["diabetes_model:2"]
        assert first["tags"] == {"stage": "dev"}
        assert client.get("/api/v1/models/diabetes_model", params={"version": 9}).status_code == 404


class TestRuns:
    """Test experiment and run endpoints."""

    def test_experiments_count_top_level_runs(self, client, finished_run):
        experiments = client.get("/api/v1/experiments").json()

        assert experiments == [{"name": "api-experiment", "tags": {}, "run_count": 1}]

    def test_experiment_runs(self, client, finished_run):
        runs = client.get("/api/v1/experiments/api-experiment/runs").json()
        everything = client.get(
            "/api/v1/experiments/api-experiment/runs", params={"include_children": True}
        ).json()

        assert [r["run_id"] for r in runs] == [finished_run.id]
        assert len(everything) == 2

    def test_missing_experiment(self, client):
        response = client.get("/api/v1/experiments/nothing-here/runs")

        assert response.status_code == 404

    def test_run_details(self, client, finished_run):
        run_id = finished_run.id

        details = client.get(f"/api/v1/runs/{run_id}").json()
        metrics = client.get(f"/api/v1/runs/{run_id}/metrics").json()
        children = client.get(f"/api/v1/runs/{run_id}/children").json()
        files = client.get(f"/api/v1/runs/{run_id}/files").json()

        assert details["status"] == "Completed"
        assert details["display_name"] == "notebook"
        assert details["tags"] == {"team": "ml"}
        assert metrics == {"accuracy": 0.9}
        assert [c["display_name"] for c in children] == ["fold-1"]
        assert "outputs/notes.txt" in files

    def test_missing_run(self, client):
        response = client.get("/api/v1/runs/unknown")

        assert response.status_code == 404
        assert response.json()["details"] == {"run_id": "unknown"}

    def test_cancel_run(self, client, workspace):
        run = Experiment(workspace, "api-experiment").start_logging()

        response = client.post(f"/api/v1/runs/{run.id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "Canceled"


class TestPublishedPipelines:
    """Test published pipeline endpoints."""

    def test_list_and_get(self, client, published):
        listed = client.get("/api/v1/pipelines").json()
        single = client.get(f"/api/v1/pipelines/{published.id}").json()

        assert [p["pipeline_id"] for p in listed] == [published.id]
        assert single["name"] == "batch-scoring"
        assert single["parameters"] == {"threshold": 0.5}
        assert single["steps"] == ["score"]

    def test_disabled_pipelines_are_hidden(self, client, published):
        published.disable()

        assert client.get("/api/v1/pipelines").json() == []
        assert len(client.get("/api/v1/pipelines", params={"active_only": False}).json()) == 1

    def test_submit(self, client, workspace, published):
        response = client.post(
            f"/api/v1/pipelines/{published.id}/submit",
            json={"experiment_name": "scoring", "pipeline_parameters": {"threshold": 0.7}},
        )

        assert response.status_code == 201
        run = Run.get(workspace, response.json()["run_id"])
        run.wait_for_completion(timeout=180)
        step, = run.get_children()
        assert step.get_metrics()["threshold"] == 0.7

    def test_submit_disabled_is_409(self, client, published):
        published.disable()

        response = client.post(f"/api/v1/pipelines/{published.id}/submit", json={"experiment_name": "scoring"})

        assert response.status_code == 409
        assert response.json()["error"] == "PipelineRunError"

    def test_submit_unknown_parameter_is_400(self, client, published):
        response = client.post(
            f"/api/v1/pipelines/{published.id}/submit",
            json={"experiment_name": "scoring", "pipeline_parameters": {"nope": 1}},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "PipelineValidationError"

    def test_invalid_body_is_400(self, client, published):
        response = client.post(f"/api/v1/pipelines/{published.id}/submit", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_unknown_pipeline_is_404(self, client):
        assert client.get("/api/v1/pipelines/missing").status_code == 404
