"""Common training utilities shared by the three model trainers.

This module centralizes the experiment configuration, reproducibility,
cross-validation splitting, the grid-search wrapper used by the Random
Forest and SVM trainers, and the :class:`TrainedModel` container that every
trainer returns so evaluation can treat the models uniformly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import logging
import random
import time

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import torch
from sklearn.base import BaseEstimator
from sklearn.model_selection import GridSearchCV, StratifiedKFold

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ExperimentConfig:
    immune_dir: Path
    tumour_dir: Path
    class_names: Tuple[str, str] = ("immune", "tumour")
    positive_class: str = "tumour"
    image_size: int = 50
    n_train: int = 80
    n_test: int = 20
    seed: int = 42
    # HOG + PCA
    hog_grayscale: bool = True
    hog_orientations: int = 9
    hog_pixels_per_cell: int = 8
    hog_cells_per_block: int = 2
    pca_variance: float = 0.95
    pca_standardize: bool = False
    # Cross-validated grid searches
    cv_folds: int = 5
    rf_n_estimators: Tuple[int, ...] = (200, 500)
    rf_max_features: Tuple[Union[str, float], ...] = ("sqrt", 0.5, 1.0)
    svm_kernel: str = "rbf"
    svm_c: Tuple[float, ...] = (0.1, 1.0, 10.0, 100.0)
    svm_gamma: Tuple[Union[str, float], ...] = ("scale", 0.01, 0.001)
    # CNN with held-out validation
    cnn_epochs: int = 30
    cnn_batch_size: int = 16
    cnn_learning_rates: Tuple[float, ...] = (1e-3, 3e-4)
    cnn_weight_decay: float = 0.0
    cnn_dropout: float = 0.5
    cnn_val_split: float = 0.2
    cnn_patience: int = 5
    cnn_augment: bool = False
    device: str = "auto"  # "auto" | "cpu" | "cuda"
    num_workers: int = 0
    output_dir: Path = Path("outputs")
    build_slides: bool = True

    @property
    def class_dirs(self) -> List[Path]:
        by_name = {"immune": self.immune_dir, "tumour": self.tumour_dir}
        return [Path(by_name[name]) for name in self.class_names]

    @property
    def positive_index(self) -> int:
        if self.positive_class not in self.class_names:
            raise ValueError(
                f"Positive class '{self.positive_class}' not found in classes: {self.class_names}"
            )
        return int(self.class_names.index(self.positive_class))

    @property
    def figures_dir(self) -> Path:
        return self.output_dir / "figures"

    @property
    def tables_dir(self) -> Path:
        return self.output_dir / "tables"

    @property
    def notes_dir(self) -> Path:
        return self.output_dir / "notes"

    @property
    def logs_dir(self) -> Path:
        return self.output_dir / "logs"

    @property
    def reports_dir(self) -> Path:
        return self.output_dir / "reports"

    def validate(self) -> None:
        if set(self.class_names) != {"immune", "tumour"}:
            raise ValueError(f"class_names must be 'immune' and 'tumour', got {self.class_names}")
        _ = self.positive_index
        if self.image_size < self.hog_pixels_per_cell * self.hog_cells_per_block:
            raise ValueError(
                f"image_size {self.image_size} is smaller than one HOG block "
                f"({self.hog_pixels_per_cell * self.hog_cells_per_block} px)"
            )
        if not 0.0 < self.cnn_val_split < 1.0:
            raise ValueError(f"cnn_val_split must be in (0, 1), got {self.cnn_val_split}")
        if not self.cnn_learning_rates:
            raise ValueError("At least one CNN learning rate is required")


# ---------------------------------------------------------------------------
# Reproducibility and devices
# ---------------------------------------------------------------------------

def set_seed(seed: int) -> None:
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    torch.cuda.manual_seed_all(seed)
    torch.backends.cudnn.deterministic = True
    torch.backends.cudnn.benchmark = False


def resolve_device(device: str) -> torch.device:
    if device == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(device)


# ---------------------------------------------------------------------------
# Trained model container
# ---------------------------------------------------------------------------

@dataclass
class TrainedModel:
    """A fitted classifier plus what was learned while selecting it.

    ``estimator`` follows the scikit-learn prediction API (``predict``,
    ``classes_`` and either ``predict_proba`` or ``decision_function``).
    """

    name: str
    estimator: Any
    feature_space: str
    positive_index: int
    best_params: Dict[str, Any]
    selection_results: pd.DataFrame
    fit_seconds: float
    history: Optional[Dict[str, List[float]]] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def predict(self, features: Any) -> np.ndarray:
        return np.asarray(self.estimator.predict(features)).astype(np.int64)

    def score(self, features: Any) -> np.ndarray:
        """Positive-class score: a probability where available, else a margin."""
        classes = list(self.estimator.classes_)
        if hasattr(self.estimator, "predict_proba"):
            probabilities = np.asarray(self.estimator.predict_proba(features))
            return probabilities[:, classes.index(self.positive_index)]
        decision = np.asarray(self.estimator.decision_function(features), dtype=float)
        return decision if classes[1] == self.positive_index else -decision


# ---------------------------------------------------------------------------
# Cross-validated grid search
# ---------------------------------------------------------------------------

def make_cv_splitter(labels: Sequence[int], folds: int, seed: int) -> StratifiedKFold:
    counts = np.bincount(np.asarray(labels, dtype=np.int64))
    smallest = int(counts[counts > 0].min()) if counts.size else 0
    n_splits = min(int(folds), smallest)
    if n_splits < 2:
        raise ValueError(
            f"Cross-validation needs at least 2 samples per class; smallest class has {smallest}"
        )
    if n_splits < folds:
        LOGGER.warning(
            "Reducing CV folds from %d to %d (smallest class has %d samples)",
            folds,
            n_splits,
            smallest,
        )
    return StratifiedKFold(n_splits=n_splits, shuffle=True, random_state=seed)


def grid_results_frame(cv_results: Mapping[str, Any]) -> pd.DataFrame:
    frame = pd.DataFrame(
        {
            "params": [str(params) for params in cv_results["params"]],
            "mean_cv_accuracy": cv_results["mean_test_score"],
            "std_cv_accuracy": cv_results["std_test_score"],
            "rank": cv_results["rank_test_score"],
        }
    )
    return frame.sort_values(["rank", "params"]).reset_index(drop=True)


def run_grid_search(
    name: str,
    estimator: BaseEstimator,
    param_grid: Mapping[str, Sequence[Any]],
    features: np.ndarray,
    labels: np.ndarray,
    config: ExperimentConfig,
    feature_space: str,
) -> TrainedModel:
    """Select hyperparameters by stratified k-fold CV and refit on all of train."""
    cv = make_cv_splitter(labels, config.cv_folds, config.seed)
    search = GridSearchCV(
        estimator,
        param_grid={key: list(values) for key, values in param_grid.items()},
        cv=cv,
        scoring="accuracy",
        refit=True,
    )
    LOGGER.info(
        "Grid search for %s over %s with %d-fold CV on %s features",
        name,
        dict(param_grid),
        cv.get_n_splits(),
        features.shape,
    )
    start = time.perf_counter()
    search.fit(features, labels)
    duration = time.perf_counter() - start
    LOGGER.info(
        "%s best params %s (CV accuracy %.3f) in %.2fs",
        name,
        search.best_params_,
        search.best_score_,
        duration,
    )
    return TrainedModel(
        name=name,
        estimator=search.best_estimator_,
        feature_space=feature_space,
        positive_index=config.positive_index,
        best_params=dict(search.best_params_),
        selection_results=grid_results_frame(search.cv_results_),
        fit_seconds=float(duration),
        extras={"cv_accuracy": float(search.best_score_), "cv_folds": cv.get_n_splits()},
    )


# ---------------------------------------------------------------------------
# Plots
# ---------------------------------------------------------------------------

def plot_training_curves(history: Dict[str, List[float]], output_path: Path, title: str) -> None:
    epochs = range(1, len(history["train_loss"]) + 1)
    plt.figure(figsize=(10, 4))
    plt.subplot(1, 2, 1)
    plt.plot(epochs, history["train_loss"], label="Train")
    plt.plot(epochs, history["val_loss"], label="Validation")
    plt.title(f"Loss - {title}")
    plt.xlabel("Epoch")
    plt.ylabel("Loss")
    plt.legend()

    plt.subplot(1, 2, 2)
    plt.plot(epochs, history["train_acc"], label="Train")
    plt.plot(epochs, history["val_acc"], label="Validation")
    plt.title(f"Accuracy - {title}")
    plt.xlabel("Epoch")
    plt.ylabel("Accuracy")
    plt.ylim(0, 1.05)
    plt.legend()
    plt.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=200)
    plt.close()
