"""Random Forest on HOG + PCA features.

``max_features`` plays the role of the number of candidate features tried at
each split; together with the ensemble size it is chosen by stratified k-fold
cross-validation on the training block.
"""
from __future__ import annotations

import logging

import numpy as np
from sklearn.ensemble import RandomForestClassifier

from .common import ExperimentConfig, TrainedModel, run_grid_search

LOGGER = logging.getLogger(__name__)


def train_random_forest(
    features: np.ndarray,
    labels: np.ndarray,
    config: ExperimentConfig,
) -> TrainedModel:
    forest = RandomForestClassifier(random_state=config.seed)
    param_grid = {
        "n_estimators": [int(n) for n in config.rf_n_estimators],
        "max_features": list(config.rf_max_features),
    }
    trained = run_grid_search(
        "Random Forest",
        forest,
        param_grid,
        features,
        labels,
        config,
        feature_space="HOG + PCA",
    )
    importances = trained.estimator.feature_importances_
    top = np.argsort(importances)[::-1][:5]
    LOGGER.info(
        "Random Forest top principal components by importance: %s",
        ", ".join(f"PC{idx + 1}={importances[idx]:.3f}" for idx in top),
    )
    trained.extras["feature_importances"] = importances
    return trained
