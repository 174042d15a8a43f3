"""
Algorithms tried by the automated model search and the featurization
that runs in front of them.

Each algorithm has a factory for its estimator and a search space, written
with the sweep parameter expressions, used after the first pass over
default settings.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import lightgbm as lgb
import numpy as np
import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.ensemble import (
    ExtraTreesClassifier,
    ExtraTreesRegressor,
    GradientBoostingClassifier,
    GradientBoostingRegressor,
    RandomForestClassifier,
    RandomForestRegressor,
)
from sklearn.impute import SimpleImputer
from sklearn.linear_model import ElasticNet, LogisticRegression
from sklearn.neighbors import KNeighborsClassifier, KNeighborsRegressor
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor

from mlstudio.tuning.parameter_expressions import ParameterExpression, choice, loguniform, quniform, uniform

logger = logging.getLogger(__name__)


class Algorithm:
    """An estimator family with its default construction and search space."""

    def __init__(
        self,
        name: str,
        factory: Callable[..., Any],
        space: Dict[str, ParameterExpression],
        defaults: Optional[Dict[str, Any]] = None
    ):
        self.name = name
        self.factory = factory
        self.space = space
        self.defaults = defaults or {}

    def __repr__(self) -> str:
        return f"Algorithm({self.name!r})"

    def sample_params(self, rng: np.random.Generator) -> Dict[str, Any]:
        params = {}
        for key, expression in self.space.items():
            value = expression.sample(rng)
            # quantized integers come back as floats
            if expression.kind == "quniform" and float(value).is_integer():
                value = int(value)
            params[key] = value
        return params

    def build(self, params: Dict[str, Any], random_state: Optional[int] = None) -> Any:
        kwargs = dict(self.defaults)
        kwargs.update(params)
        estimator = self.factory(**kwargs)
        if random_state is not None and "random_state" in estimator.get_params():
            estimator.set_params(random_state=random_state)
        return estimator


_TREE_SPACE = {
    "max_depth": choice(None, 3, 5, 10, 20),
    "min_samples_leaf": quniform(1, 10, 1),
    "max_features": choice("sqrt", "log2", None),
}

_FOREST_SPACE = {
    "n_estimators": quniform(50, 300, 10),
    "max_depth": choice(None, 5, 10, 20),
    "min_samples_leaf": quniform(1, 5, 1),
    "max_features": choice("sqrt", "log2", None),
}

_LIGHTGBM_SPACE = {
    "n_estimators": quniform(50, 400, 10),
    "learning_rate": loguniform(np.log(0.01), np.log(0.3)),
    "num_leaves": quniform(8, 64, 1),
    "subsample": uniform(0.6, 1.0),
    "colsample_bytree": uniform(0.6, 1.0),
}

_BOOSTING_SPACE = {
    "n_estimators": quniform(50, 300, 10),
    "learning_rate": loguniform(np.log(0.01), np.log(0.3)),
    "max_depth": quniform(2, 6, 1),
    "subsample": uniform(0.6, 1.0),
}

_KNN_SPACE = {
    "n_neighbors": quniform(3, 25, 1),
    "weights": choice("uniform", "distance"),
}

CLASSIFICATION_ALGORITHMS: List[Algorithm] = [
    Algorithm(
        "LogisticRegression", LogisticRegression,
        {"C": loguniform(np.log(1e-3), np.log(100.0)), "class_weight": choice(None, "balanced")},
        defaults={"max_iter": 1000},
    ),
    Algorithm("LightGBM", lgb.LGBMClassifier, _LIGHTGBM_SPACE, defaults={"verbose": -1, "n_jobs": 1}),
    Algorithm("RandomForest", RandomForestClassifier, _FOREST_SPACE),
    Algorithm("ExtremeRandomTrees", ExtraTreesClassifier, _FOREST_SPACE),
    Algorithm("GradientBoosting", GradientBoostingClassifier, _BOOSTING_SPACE),
    Algorithm("DecisionTree", DecisionTreeClassifier, _TREE_SPACE),
    Algorithm("KNN", KNeighborsClassifier, _KNN_SPACE),
]

REGRESSION_ALGORITHMS: List[Algorithm] = [
    Algorithm(
        "ElasticNet", ElasticNet,
        {"alpha": loguniform(np.log(1e-4), np.log(10.0)), "l1_ratio": uniform(0.0, 1.0)},
        defaults={"max_iter": 5000},
    ),
    Algorithm("LightGBM", lgb.LGBMRegressor, _LIGHTGBM_SPACE, defaults={"verbose": -1, "n_jobs": 1}),
    Algorithm("RandomForest", RandomForestRegressor, _FOREST_SPACE),
    Algorithm("ExtremeRandomTrees", ExtraTreesRegressor, _FOREST_SPACE),
    Algorithm("GradientBoosting", GradientBoostingRegressor, _BOOSTING_SPACE),
    Algorithm("DecisionTree", DecisionTreeRegressor, _TREE_SPACE),
    Algorithm("KNN", KNeighborsRegressor, _KNN_SPACE),
]

CATALOG: Dict[str, List[Algorithm]] = {
    "classification": CLASSIFICATION_ALGORITHMS,
    "regression": REGRESSION_ALGORITHMS,
}

ENSEMBLE_NAME = "VotingEnsemble"


def algorithm_names(task: str) -> List[str]:
    return [a.name for a in CATALOG[task]]


def get_algorithm(task: str, name: str) -> Algorithm:
    for algorithm in CATALOG[task]:
        if algorithm.name == name:
            return algorithm
    raise KeyError(name)


def build_featurizer(X: pd.DataFrame) -> ColumnTransformer:
    """
    Impute and scale numeric columns; impute and one-hot encode the rest.
    """
    numeric = [c for c in X.columns if pd.api.types.is_numeric_dtype(X[c])]
    categorical = [c for c in X.columns if c not in numeric]

    transformers = []
    if numeric:
        transformers.append((
            "numeric",
            Pipeline([
                ("impute", SimpleImputer(strategy="median")),
                ("scale", StandardScaler()),
            ]),
            numeric,
        ))
    if categorical:
        transformers.append((
            "categorical",
            Pipeline([
                ("impute", SimpleImputer(strategy="most_frequent")),
                ("encode", OneHotEncoder(handle_unknown="ignore")),
            ]),
            categorical,
        ))

    logger.debug(f"Featurizer: {len(numeric)} numeric, {len(categorical)} categorical columns")
    return ColumnTransformer(transformers, remainder="drop")


def build_pipeline(estimator: Any, X: pd.DataFrame, featurization: str) -> Pipeline:
    """Estimator behind the featurizer (or alone when featurization is off)."""
    if featurization == "off":
        return Pipeline([("model", estimator)])
    return Pipeline([("featurizer", build_featurizer(X)), ("model", estimator)])
