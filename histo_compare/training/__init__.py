"""Model trainers: Random Forest and SVM on HOG + PCA, and a small CNN."""

from .cnn import train_cnn
from .common import ExperimentConfig, TrainedModel
from .random_forest import train_random_forest
from .svm import train_svm

__all__ = [
    "ExperimentConfig",
    "TrainedModel",
    "train_cnn",
    "train_random_forest",
    "train_svm",
]
