"""
Tests for histo_compare.reporting — comparison table, recommendation,
bibliography and the PDF slide deck.
"""

from __future__ import annotations

from importlib.metadata import version
from pathlib import Path

import pandas as pd
import pytest

from histo_compare.evaluation import evaluate_predictions
from histo_compare.reporting import (
    SlideDeckContent,
    _latex_escape,
    build_comparison_table,
    build_slide_deck,
    create_pipeline_diagram,
    plot_metric_comparison,
    recommend_model,
    write_bibliography,
    write_comparison_outputs,
)


@pytest.fixture()
def records():
    y_true = [1, 1, 1, 1, 0, 0, 0, 0]
    return [
        # sensitivity 0.75, specificity 1.0
        evaluate_predictions("Random Forest", y_true, [1, 1, 1, 0, 0, 0, 0, 0]),
        # sensitivity 1.0, specificity 0.5
        evaluate_predictions("CNN", y_true, [1, 1, 1, 1, 1, 1, 0, 0]),
        # sensitivity 0.5, specificity 1.0
        evaluate_predictions("SVM", y_true, [1, 1, 0, 0, 0, 0, 0, 0]),
    ]


@pytest.fixture()
def table(records) -> pd.DataFrame:
    return build_comparison_table(records)


class TestComparisonTable:
    def test_indexed_by_model(self, table: pd.DataFrame) -> None:
        assert list(table.index) == ["Random Forest", "CNN", "SVM"]
        assert {"accuracy", "sensitivity", "specificity", "ppv", "npv"} <= set(table.columns)

    def test_counts_sum_to_test_size(self, table: pd.DataFrame) -> None:
        totals = table[["TP", "FP", "TN", "FN"]].sum(axis=1)
        assert (totals == 8).all()

    def test_duplicate_names_raise(self, records) -> None:
        with pytest.raises(ValueError):
            build_comparison_table(records + records[:1])

    def test_empty_records_raise(self) -> None:
        with pytest.raises(ValueError):
            build_comparison_table([])


class TestRecommendation:
    def test_highest_sensitivity_wins(self, table: pd.DataFrame) -> None:
        recommendation = recommend_model(table)
        assert recommendation.model == "CNN"
        assert recommendation.sensitivity == pytest.approx(1.0)
        assert "CNN" in recommendation.rationale

    def test_ties_broken_by_npv(self) -> None:
        y_true = [1, 1, 1, 1, 0, 0, 0, 0]
        tied = build_comparison_table(
            [
                # sensitivity 0.75, NPV 2/3 (TN=2, FN=1)
                evaluate_predictions("A", y_true, [1, 1, 1, 0, 1, 1, 0, 0]),
                # sensitivity 0.75, NPV 0.8 (TN=4, FN=1)
                evaluate_predictions("B", y_true, [1, 1, 1, 0, 0, 0, 0, 0]),
            ]
        )
        assert tied.loc["A", "sensitivity"] == pytest.approx(tied.loc["B", "sensitivity"])
        assert tied.loc["A", "npv"] < tied.loc["B", "npv"]
        recommendation = recommend_model(tied)
        assert recommendation.npv == pytest.approx(0.8)
        assert recommendation.model == "B"
        assert "ties on sensitivity with A" in recommendation.rationale

    def test_empty_table_raises(self) -> None:
        with pytest.raises(ValueError):
            recommend_model(pd.DataFrame())


class TestOutputs:
    def test_table_and_note_written(self, table: pd.DataFrame, tmp_path: Path) -> None:
        csv_path = tmp_path / "tables" / "comparison.csv"
        note_path = tmp_path / "notes" / "summary.md"
        write_comparison_outputs(
            table,
            recommend_model(table),
            csv_path,
            note_path,
            {"image_size": 50, "train_counts": {"immune": 80}, "test_counts": {"immune": 20}},
        )
        reloaded = pd.read_csv(csv_path, index_col="model")
        assert list(reloaded.index) == list(table.index)
        note = note_path.read_text(encoding="utf-8")
        assert "| Model | Accuracy | Sensitivity" in note
        assert "## Recommendation" in note

    def test_comparison_chart(self, table: pd.DataFrame, tmp_path: Path) -> None:
        output = tmp_path / "comparison.png"
        plot_metric_comparison(table, output)
        assert output.exists()

    def test_pipeline_diagram(self, tmp_path: Path) -> None:
        output = tmp_path / "pipeline.png"
        create_pipeline_diagram(output)
        assert output.exists()


class TestBibliography:
    def test_entries_for_installed_packages_only(self, tmp_path: Path) -> None:
        output = tmp_path / "references.bib"
        keys = write_bibliography(["numpy", "surely-not-an-installed-package"], output)
        assert keys == ["py-numpy"]
        text = output.read_text(encoding="utf-8")
        assert text.startswith("@Manual{py-numpy,")
        assert f"Python package version {version('numpy')}" in text
        assert "surely-not" not in text

    def test_latex_specials_are_escaped(self) -> None:
        assert _latex_escape("R&D 100% #1 a_b $") == r"R\&D 100\% \#1 a\_b \$"


def test_slide_deck_is_a_pdf(table: pd.DataFrame, tmp_path: Path) -> None:
    pipeline_png = tmp_path / "pipeline.png"
    create_pipeline_diagram(pipeline_png)
    chart_png = tmp_path / "comparison.png"
    plot_metric_comparison(table, chart_png)

    output = tmp_path / "reports" / "slides.pdf"
    build_slide_deck(
        SlideDeckContent(
            title="Test deck",
            split_summary={
                "image_size": 50,
                "train_counts": {"immune": 80, "tumour": 80},
                "test_counts": {"immune": 20, "tumour": 20},
            },
            table=table,
            recommendation=recommend_model(table),
            figures={"pipeline": pipeline_png, "comparison": chart_png, "hog": tmp_path / "missing.png"},
            model_notes={"CNN": "learning rate 0.001", "pca": "12 components"},
            references=["numpy: array computing"],
        ),
        output,
    )
    assert output.read_bytes()[:4] == b"%PDF"
