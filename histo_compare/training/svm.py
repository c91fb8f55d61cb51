"""Kernel SVM on HOG + PCA features, tuned over ``C`` and ``gamma``."""
from __future__ import annotations

import logging

import numpy as np
from sklearn.svm import SVC

from .common import ExperimentConfig, TrainedModel, run_grid_search

LOGGER = logging.getLogger(__name__)


def train_svm(
    features: np.ndarray,
    labels: np.ndarray,
    config: ExperimentConfig,
) -> TrainedModel:
    # Scores come from decision_function; no Platt scaling.
    svm = SVC(kernel=config.svm_kernel, random_state=config.seed)
    param_grid = {
        "C": [float(c) for c in config.svm_c],
        "gamma": list(config.svm_gamma),
    }
    trained = run_grid_search(
        "SVM",
        svm,
        param_grid,
        features,
        labels,
        config,
        feature_space="HOG + PCA",
    )
    n_support = trained.estimator.n_support_
    LOGGER.info(
        "SVM uses %d support vectors (%s per class)",
        int(np.sum(n_support)),
        n_support.tolist(),
    )
    trained.extras["n_support"] = n_support.tolist()
    return trained
