"""Held-out evaluation: confusion matrices and screening metrics.

Every model is evaluated on the same test block. The confusion matrix is
taken with respect to the positive (screened-for) class, tumour by default:

* sensitivity = TP / (TP + FN), the share of tumour patches that are caught;
* specificity = TN / (TN + FP), the share of immune patches correctly cleared;
* PPV = TP / (TP + FP) and NPV = TN / (TN + FN), the predictive values.

Ratios whose denominator is zero are reported as 0.0.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
from scipy.stats import binomtest
from sklearn.metrics import auc, cohen_kappa_score, confusion_matrix, roc_auc_score, roc_curve

from .training.common import TrainedModel

LOGGER = logging.getLogger(__name__)

CI_LEVEL = 0.95


@dataclass(frozen=True)
class MetricsRecord:
    model: str
    TP: int
    FP: int
    TN: int
    FN: int
    accuracy: float
    accuracy_ci_low: float
    accuracy_ci_high: float
    sensitivity: float
    specificity: float
    ppv: float
    npv: float
    balanced_accuracy: float
    kappa: float
    auc: float

    @property
    def total(self) -> int:
        return self.TP + self.FP + self.TN + self.FN

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def _ratio(numerator: float, denominator: float) -> float:
    return float(numerator / denominator) if denominator > 0 else 0.0


def accuracy_interval(correct: int, total: int, level: float = CI_LEVEL) -> Tuple[float, float]:
    """Exact (Clopper-Pearson) interval for the accuracy."""
    if total == 0:
        return 0.0, 0.0
    interval = binomtest(int(correct), int(total)).proportion_ci(
        confidence_level=level, method="exact"
    )
    return float(interval.low), float(interval.high)


def evaluate_predictions(
    name: str,
    y_true: Sequence[int],
    y_pred: Sequence[int],
    y_score: Optional[Sequence[float]] = None,
    positive_index: int = 1,
) -> MetricsRecord:
    y_true_arr = np.asarray(y_true)
    y_pred_arr = np.asarray(y_pred)
    if y_true_arr.shape != y_pred_arr.shape:
        raise ValueError(
            f"y_true and y_pred differ in shape: {y_true_arr.shape} vs {y_pred_arr.shape}"
        )

    y_true_bin = (y_true_arr == positive_index).astype(int)
    y_pred_bin = (y_pred_arr == positive_index).astype(int)
    tn, fp, fn, tp = (int(v) for v in confusion_matrix(y_true_bin, y_pred_bin, labels=[0, 1]).ravel())
    if tn + fp + fn + tp != len(y_true_arr):
        raise ValueError(
            f"Confusion counts sum to {tn + fp + fn + tp}, expected {len(y_true_arr)}"
        )

    sensitivity = _ratio(tp, tp + fn)
    specificity = _ratio(tn, tn + fp)
    ci_low, ci_high = accuracy_interval(tp + tn, len(y_true_arr))

    kappa = float(cohen_kappa_score(y_true_bin, y_pred_bin)) if len(y_true_arr) else 0.0
    if np.isnan(kappa):
        kappa = 0.0

    auc_value = float("nan")
    if y_score is not None and len(np.unique(y_true_bin)) == 2:
        auc_value = float(roc_auc_score(y_true_bin, np.asarray(y_score, dtype=float)))

    record = MetricsRecord(
        model=name,
        TP=tp,
        FP=fp,
        TN=tn,
        FN=fn,
        accuracy=_ratio(tp + tn, len(y_true_arr)),
        accuracy_ci_low=ci_low,
        accuracy_ci_high=ci_high,
        sensitivity=sensitivity,
        specificity=specificity,
        ppv=_ratio(tp, tp + fp),
        npv=_ratio(tn, tn + fn),
        balanced_accuracy=(sensitivity + specificity) / 2.0,
        kappa=kappa,
        auc=auc_value,
    )
    LOGGER.info(
        "%s test metrics - acc %.3f [%.3f, %.3f] sens %.3f spec %.3f ppv %.3f npv %.3f",
        name,
        record.accuracy,
        record.accuracy_ci_low,
        record.accuracy_ci_high,
        record.sensitivity,
        record.specificity,
        record.ppv,
        record.npv,
    )
    return record


def evaluate_model(
    trained: TrainedModel,
    features: np.ndarray,
    y_true: np.ndarray,
) -> Tuple[MetricsRecord, np.ndarray, np.ndarray]:
    """Predict on the held-out block and summarise the outcome."""
    y_pred = trained.predict(features)
    y_score = trained.score(features)
    record = evaluate_predictions(
        trained.name, y_true, y_pred, y_score, positive_index=trained.positive_index
    )
    return record, y_pred, y_score


# ---------------------------------------------------------------------------
# Plots
# ---------------------------------------------------------------------------

def plot_confusion_matrix(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    class_names: Sequence[str],
    output_path: Path,
    title: str = "Confusion Matrix",
) -> None:
    matrix = confusion_matrix(y_true, y_pred, labels=list(range(len(class_names))))
    plt.figure(figsize=(4, 4))
    plt.imshow(matrix, interpolation="nearest", cmap="Blues")
    plt.title(title)
    plt.colorbar()
    tick_marks = np.arange(len(class_names))
    plt.xticks(tick_marks, class_names, rotation=45)
    plt.yticks(tick_marks, class_names)

    thresh = matrix.max() / 2.0 if matrix.size else 0.5
    for i, j in np.ndindex(matrix.shape):
        plt.text(
            j,
            i,
            format(matrix[i, j], "d"),
            horizontalalignment="center",
            color="white" if matrix[i, j] > thresh else "black",
        )

    plt.ylabel("True label")
    plt.xlabel("Predicted label")
    plt.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=200)
    plt.close()


def plot_roc_curves(curves: Dict[str, Tuple[np.ndarray, np.ndarray]], output_path: Path) -> None:
    plt.figure(figsize=(6, 6))
    for label, (y_true_bin, y_score) in curves.items():
        fpr, tpr, _ = roc_curve(y_true_bin, y_score)
        plt.plot(fpr, tpr, label=f"{label} (AUC={auc(fpr, tpr):.3f})")

    plt.plot([0, 1], [0, 1], "k--", label="Chance")
    plt.xlabel("False Positive Rate")
    plt.ylabel("True Positive Rate")
    plt.title("ROC Curves (test block)")
    plt.legend(loc="lower right")
    plt.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=200)
    plt.close()
