"""Shared fixtures: temporary workspaces, training scripts and a tabular frame."""

import textwrap

import numpy as np
import pandas as pd
import pytest

from mlstudio.config import settings
from mlstudio.workspace.workspace import Workspace


@pytest.fixture(autouse=True)
def fast_polling(monkeypatch):
    """Poll run state quickly so background controllers finish fast."""
    monkeypatch.setattr(settings.run, "poll_interval_seconds", 0.05)
    monkeypatch.setattr(settings.sweep, "policy_check_interval_seconds", 0.05)


@pytest.fixture
def workspace(tmp_path):
    """Fresh workspace under a temporary root."""
    return Workspace.create("test-ws", path=str(tmp_path / "workspaces"))


def _write_script(directory, name, body):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(textwrap.dedent(body))
    return path


@pytest.fixture
def write_script():
    """Write a dedented script into a directory, creating it if needed."""
    return _write_script


@pytest.fixture
def train_dir(tmp_path):
    """Source directory with a training script that logs metrics and writes outputs."""
    source = tmp_path / "src"
    _write_script(source, "train.py", """
        import argparse
        import os

        from mlstudio.training.run import Run

        parser = argparse.ArgumentParser()
        parser.add_argument("--reg", type=float, default=0.5)
        parser.add_argument("--fail", action="store_true")
        args = parser.parse_args()

        run = Run.get_context()
        run.log("regularization", args.reg)
        run.log("accuracy", 1.0 - args.reg / 10)
        print("training with reg", args.reg)

        os.makedirs("outputs", exist_ok=True)
        with open(os.path.join("outputs", "model.txt"), "w") as f:
            f.write(str(args.reg))

        if args.fail:
            raise SystemExit(3)
    """)
    return source


@pytest.fixture
def classification_frame():
    """Small, learnable binary classification frame with a categorical column."""
    rng = np.random.RandomState(0)
    n = 120
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    color = rng.choice(["red", "green", "blue"], size=n)
    label = (x1 + 0.5 * x2 + (color == "red") > 0.3).astype(int)
    return pd.DataFrame({"x1": x1, "x2": x2, "color": color, "label": label})


@pytest.fixture
def regression_frame():
    rng = np.random.RandomState(1)
    n = 100
    x1 = rng.uniform(0, 10, size=n)
    x2 = rng.normal(size=n)
    target = 3 * x1 - 2 * x2 + rng.normal(scale=0.5, size=n)
    return pd.DataFrame({"x1": x1, "x2": x2, "target": target})
