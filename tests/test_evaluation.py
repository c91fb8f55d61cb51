"""
Tests for histo_compare.evaluation — confusion-derived screening metrics.

Confusion counts are chosen by hand so the expected ratios are easy to verify.
"""

from __future__ import annotations

import math
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from sklearn.linear_model import LogisticRegression

from histo_compare.evaluation import (
    accuracy_interval,
    evaluate_model,
    evaluate_predictions,
    plot_confusion_matrix,
    plot_roc_curves,
)
from histo_compare.training.common import TrainedModel


class TestEvaluatePredictions:
    def test_known_confusion(self) -> None:
        # TP=3 FN=1 on tumour, TN=3 FP=1 on immune
        y_true = [1, 1, 1, 1, 0, 0, 0, 0]
        y_pred = [1, 1, 1, 0, 0, 0, 1, 0]
        record = evaluate_predictions("m", y_true, y_pred)
        assert (record.TP, record.FN, record.TN, record.FP) == (3, 1, 3, 1)
        assert record.total == len(y_true)
        for value in (record.accuracy, record.sensitivity, record.specificity, record.ppv, record.npv):
            assert value == pytest.approx(0.75)
        assert record.balanced_accuracy == pytest.approx(0.75)
        assert record.kappa == pytest.approx(0.5)

    def test_asymmetric_confusion(self) -> None:
        # TP=4 FN=0, TN=2 FP=2
        y_true = [1, 1, 1, 1, 0, 0, 0, 0]
        y_pred = [1, 1, 1, 1, 1, 1, 0, 0]
        record = evaluate_predictions("m", y_true, y_pred)
        assert record.sensitivity == pytest.approx(1.0)
        assert record.specificity == pytest.approx(0.5)
        assert record.ppv == pytest.approx(4 / 6)
        assert record.npv == pytest.approx(1.0)

    def test_zero_denominators_report_zero(self) -> None:
        record = evaluate_predictions("m", [1, 1, 0, 0], [0, 0, 0, 0])
        assert record.ppv == 0.0
        assert record.sensitivity == 0.0
        assert record.specificity == 1.0

    def test_positive_index_zero_swaps_roles(self) -> None:
        y_true = [1, 1, 1, 1, 0, 0, 0, 0]
        y_pred = [1, 1, 1, 1, 1, 1, 0, 0]
        record = evaluate_predictions("m", y_true, y_pred, positive_index=0)
        assert record.sensitivity == pytest.approx(0.5)
        assert record.specificity == pytest.approx(1.0)

    def test_auc_uses_scores(self) -> None:
        y_true = [0, 0, 1, 1]
        record = evaluate_predictions("m", y_true, [0, 0, 1, 1], y_score=[0.1, 0.2, 0.8, 0.9])
        assert record.auc == pytest.approx(1.0)

    def test_auc_is_nan_without_scores(self) -> None:
        record = evaluate_predictions("m", [0, 1], [0, 1])
        assert math.isnan(record.auc)

    def test_shape_mismatch_raises(self) -> None:
        with pytest.raises(ValueError):
            evaluate_predictions("m", [0, 1, 1], [0, 1])

    def test_to_dict_contains_metrics(self) -> None:
        record = evaluate_predictions("svm", [0, 1], [0, 1])
        data = record.to_dict()
        assert data["model"] == "svm"
        assert {"accuracy", "sensitivity", "specificity", "ppv", "npv"} <= set(data)


class TestEvaluateModel:
    @staticmethod
    def _trained(positive_index: int) -> TrainedModel:
        features = np.array([[-2.0], [-1.5], [-1.0], [1.0], [1.5], [2.0]])
        labels = np.array([0, 0, 0, 1, 1, 1])
        return TrainedModel(
            name="logreg",
            estimator=LogisticRegression().fit(features, labels),
            feature_space="toy",
            positive_index=positive_index,
            best_params={},
            selection_results=pd.DataFrame(),
            fit_seconds=0.0,
        )

    def test_positive_class_comes_from_trained_model(self) -> None:
        # three class-1 points predicted right, one class-0 point predicted 1
        features = np.array([[-2.0], [-1.8], [0.8], [1.2], [1.6], [2.0]])
        y_true = np.array([0, 0, 0, 1, 1, 1])

        tumour_positive, _, _ = evaluate_model(self._trained(1), features, y_true)
        assert (tumour_positive.TP, tumour_positive.FP) == (3, 1)
        assert tumour_positive.sensitivity == pytest.approx(1.0)

        immune_positive, y_pred, y_score = evaluate_model(self._trained(0), features, y_true)
        assert (immune_positive.TP, immune_positive.FN) == (2, 1)
        assert immune_positive.sensitivity == pytest.approx(2 / 3)
        assert immune_positive.specificity == pytest.approx(1.0)
        # scores rank class 0 first when it is the positive class
        assert y_score[0] > y_score[-1]
        assert y_pred.tolist() == [0, 0, 1, 1, 1, 1]


class TestAccuracyInterval:
    def test_interval_contains_point_estimate(self) -> None:
        low, high = accuracy_interval(30, 40)
        assert 0.0 <= low < 0.75 < high <= 1.0

    def test_perfect_accuracy_reaches_one(self) -> None:
        low, high = accuracy_interval(40, 40)
        assert high == pytest.approx(1.0)
        # exact lower bound for 40/40 at 95%: (0.025) ** (1 / 40)
        assert low == pytest.approx(0.025 ** (1 / 40), rel=1e-6)

    def test_empty_total(self) -> None:
        assert accuracy_interval(0, 0) == (0.0, 0.0)


class TestPlots:
    def test_confusion_matrix_figure(self, tmp_path: Path) -> None:
        output = tmp_path / "cm.png"
        plot_confusion_matrix(np.array([0, 1, 1]), np.array([0, 1, 0]), ["immune", "tumour"], output)
        assert output.exists()

    def test_roc_figure(self, tmp_path: Path) -> None:
        output = tmp_path / "roc.png"
        curves = {"A": (np.array([0, 0, 1, 1]), np.array([0.1, 0.4, 0.35, 0.8]))}
        plot_roc_curves(curves, output)
        assert output.exists()
