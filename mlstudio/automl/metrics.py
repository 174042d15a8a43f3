"""Primary metrics computed for every automated model search candidate."""

import logging
from typing import Dict, Optional

import numpy as np
from scipy.stats import spearmanr
from sklearn.metrics import (
    accuracy_score,
    average_precision_score,
    f1_score,
    mean_absolute_error,
    mean_squared_error,
    precision_score,
    r2_score,
    recall_score,
    roc_auc_score,
)
from sklearn.preprocessing import label_binarize

logger = logging.getLogger(__name__)

CLASSIFICATION_METRICS = [
    "accuracy",
    "AUC_weighted",
    "precision_score_weighted",
    "recall_score_weighted",
    "f1_score_weighted",
    "norm_macro_recall",
    "average_precision_score_weighted",
]

REGRESSION_METRICS = [
    "r2_score",
    "spearman_correlation",
    "normalized_root_mean_squared_error",
    "normalized_mean_absolute_error",
]

MINIMIZED_METRICS = frozenset({
    "normalized_root_mean_squared_error",
    "normalized_mean_absolute_error",
})

TASK_METRICS = {
    "classification": CLASSIFICATION_METRICS,
    "regression": REGRESSION_METRICS,
}

DEFAULT_PRIMARY_METRIC = {
    "classification": "AUC_weighted",
    "regression": "spearman_correlation",
}


def is_maximized(metric: str) -> bool:
    return metric not in MINIMIZED_METRICS


def is_better(candidate: float, incumbent: Optional[float], metric: str) -> bool:
    if incumbent is None:
        return True
    return candidate > incumbent if is_maximized(metric) else candidate < incumbent


def classification_scores(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    y_proba: np.ndarray,
    classes: np.ndarray
) -> Dict[str, float]:
    """
    Compute classification metrics for one validation fold.

    Args:
        y_true: True labels
        y_pred: Predicted labels
        y_proba: Class probabilities, columns ordered as ``classes``
        classes: Labels known to the fitted model

    Returns:
        Dictionary of metric name to value
    """
    n_classes = len(classes)
    macro_recall = recall_score(y_true, y_pred, average="macro", zero_division=0)

    if n_classes == 2:
        positive = y_proba[:, 1]
        auc = roc_auc_score(y_true == classes[1], positive)
        average_precision = average_precision_score(y_true == classes[1], positive)
    else:
        indicator = label_binarize(y_true, classes=classes)
        auc = roc_auc_score(indicator, y_proba, average="weighted", multi_class="ovr")
        average_precision = average_precision_score(indicator, y_proba, average="weighted")

    return {
        "accuracy": accuracy_score(y_true, y_pred),
        "AUC_weighted": auc,
        "precision_score_weighted": precision_score(y_true, y_pred, average="weighted", zero_division=0),
        "recall_score_weighted": recall_score(y_true, y_pred, average="weighted", zero_division=0),
        "f1_score_weighted": f1_score(y_true, y_pred, average="weighted", zero_division=0),
        "norm_macro_recall": max(0.0, (macro_recall - 1 / n_classes) / (1 - 1 / n_classes)),
        "average_precision_score_weighted": average_precision,
    }


def regression_scores(y_true: np.ndarray, y_pred: np.ndarray, y_range: float) -> Dict[str, float]:
    """
    Compute regression metrics for one validation fold.

    Errors are normalized by ``y_range``, the spread of the training target.
    """
    y_range = y_range or 1.0
    correlation = spearmanr(y_true, y_pred).correlation

    return {
        "r2_score": r2_score(y_true, y_pred),
        "spearman_correlation": float(np.nan_to_num(correlation, nan=0.0)),
        "normalized_root_mean_squared_error": float(np.sqrt(mean_squared_error(y_true, y_pred))) / y_range,
        "normalized_mean_absolute_error": mean_absolute_error(y_true, y_pred) / y_range,
    }


def average_scores(folds) -> Dict[str, float]:
    """Mean of each metric over folds."""
    names = folds[0].keys()
    return {name: float(np.mean([fold[name] for fold in folds])) for name in names}
