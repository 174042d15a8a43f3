"""Feature importance for the model chosen by a search."""

import logging
from typing import Any, Dict, List, Optional

import pandas as pd
from sklearn.inspection import permutation_importance

logger = logging.getLogger(__name__)

# sklearn scorers for search metrics; others use the estimator's own score
SCORERS = {
    "accuracy": "accuracy",
    "AUC_weighted": "roc_auc_ovr_weighted",
    "precision_score_weighted": "precision_weighted",
    "recall_score_weighted": "recall_weighted",
    "f1_score_weighted": "f1_weighted",
    "norm_macro_recall": "balanced_accuracy",
    "r2_score": "r2",
    "normalized_root_mean_squared_error": "neg_root_mean_squared_error",
    "normalized_mean_absolute_error": "neg_mean_absolute_error",
}


def explain_model(
    model: Any,
    X: pd.DataFrame,
    y: pd.Series,
    primary_metric: str,
    n_repeats: int = 5,
    random_state: Optional[int] = None
) -> Dict[str, Any]:
    """
    Permutation importance of each raw input column.

    The fitted pipeline is scored with each column shuffled in turn, so the
    importances refer to the original columns rather than encoded features.

    Args:
        model: Fitted pipeline
        X: Features
        y: Target
        primary_metric: Search metric; mapped to the closest sklearn scorer
        n_repeats: Shuffles per column
        random_state: Seed for the shuffles

    Returns:
        Dictionary with the scorer used and importances sorted high to low
    """
    scoring = SCORERS.get(primary_metric)
    if scoring == "roc_auc_ovr_weighted" and y.nunique() == 2:
        scoring = "roc_auc"

    logger.info(f"Computing permutation importance over {X.shape[1]} columns (scoring={scoring})")

    result = permutation_importance(
        model, X, y, scoring=scoring, n_repeats=n_repeats, random_state=random_state
    )

    features: List[Dict[str, Any]] = [
        {
            "feature": str(column),
            "importance": float(result.importances_mean[i]),
            "std": float(result.importances_std[i]),
        }
        for i, column in enumerate(X.columns)
    ]
    features.sort(key=lambda f: f["importance"], reverse=True)

    return {
        "method": "permutation",
        "scoring": scoring,
        "primary_metric": primary_metric,
        "features": features,
        "importances": {f["feature"]: f["importance"] for f in features},
        "n_repeats": n_repeats,
        "n_samples": int(len(X)),
        "top_feature": features[0]["feature"] if features else None,
    }
