"""End-to-end experiment: load → split → features → PCA → train → evaluate → report.

Every stage runs exactly once, in order, on the output of the previous one.
Nothing is persisted between runs except the human-readable artifacts under
``config.output_dir``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List
import json
import logging
import re

import numpy as np
import pandas as pd

from .data import describe_split, save_sample_grid, split_dataset
from .evaluation import MetricsRecord, evaluate_model, plot_confusion_matrix, plot_roc_curves
from .features import extract_hog, hog_visualization
from .reduction import fit_pca, plot_cumulative_variance
from .reporting import (
    BIBLIOGRAPHY_PACKAGES,
    Recommendation,
    SlideDeckContent,
    build_comparison_table,
    build_slide_deck,
    create_pipeline_diagram,
    plot_hog_examples,
    plot_metric_comparison,
    recommend_model,
    reference_lines,
    write_bibliography,
    write_comparison_outputs,
)
from .training.cnn import train_cnn
from .training.common import ExperimentConfig, TrainedModel, plot_training_curves, set_seed
from .training.random_forest import train_random_forest
from .training.svm import train_svm

LOGGER = logging.getLogger(__name__)


@dataclass
class ExperimentResults:
    split_summary: Dict[str, object]
    pca_components: int
    pca_retained_variance: float
    records: Dict[str, MetricsRecord]
    table: pd.DataFrame
    recommendation: Recommendation
    artifacts: Dict[str, Path] = field(default_factory=dict)


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def _selection_note(model: TrainedModel) -> str:
    if "cv_accuracy" in model.extras:
        return (
            f"best {model.best_params}, CV accuracy {model.extras['cv_accuracy']:.3f} "
            f"({model.extras['cv_folds']}-fold)"
        )
    return (
        f"learning rate {model.best_params['learning_rate']:g}, best epoch "
        f"{model.best_params['epochs']}, validation accuracy {model.extras['val_accuracy']:.3f}"
    )


def run_experiment(config: ExperimentConfig) -> ExperimentResults:
    """Execute the comparison once and write artifacts under ``config.output_dir``."""
    config.validate()
    set_seed(config.seed)
    artifacts: Dict[str, Path] = {}
    figures: Dict[str, Path] = {}

    # 1-2) Load and split
    split = split_dataset(
        config.class_dirs,
        n_train=config.n_train,
        n_test=config.n_test,
        image_size=config.image_size,
        seed=config.seed,
        class_names=config.class_names,
    )
    split_summary = describe_split(split)
    LOGGER.info("Split summary: %s", split_summary)
    figures["samples"] = config.figures_dir / "sample_patches.png"
    save_sample_grid(split.train_images, split.train_labels, split.class_names, figures["samples"])

    # 3) HOG features for the classical models
    hog_kwargs = dict(
        grayscale=config.hog_grayscale,
        orientations=config.hog_orientations,
        pixels_per_cell=(config.hog_pixels_per_cell, config.hog_pixels_per_cell),
        cells_per_block=(config.hog_cells_per_block, config.hog_cells_per_block),
    )
    train_hog = extract_hog(split.train_images, **hog_kwargs)
    test_hog = extract_hog(split.test_images, **hog_kwargs)

    hog_examples = []
    for label, name in enumerate(split.class_names):
        first = int(np.flatnonzero(split.train_labels == label)[0])
        patch = split.train_images[first]
        hog_examples.append((name, patch, hog_visualization(patch, **hog_kwargs)))
    figures["hog"] = config.figures_dir / "hog_examples.png"
    plot_hog_examples(hog_examples, figures["hog"])

    # 4) PCA fitted on train only
    projection = fit_pca(
        train_hog,
        variance_target=config.pca_variance,
        standardize=config.pca_standardize,
        seed=config.seed,
    )
    train_pca = projection.transform(train_hog)
    test_pca = projection.transform(test_hog)
    figures["pca"] = config.figures_dir / "pca_cumulative_variance.png"
    plot_cumulative_variance(projection, figures["pca"])

    # 5) Trainers
    models: List[tuple] = [
        (train_random_forest(train_pca, split.train_labels, config), test_pca),
        (train_cnn(np.asarray(split.train_images), split.train_labels, config), np.asarray(split.test_images)),
        (train_svm(train_pca, split.train_labels, config), test_pca),
    ]
    trained = {model.name: model for model, _ in models}

    cnn = trained["CNN"]
    if cnn.history is not None:
        figures["cnn_curves"] = config.figures_dir / "cnn_training_curves.png"
        plot_training_curves(cnn.history, figures["cnn_curves"], "CNN")

    # 6) Evaluation on the held-out block
    records: Dict[str, MetricsRecord] = {}
    confusion_figures: Dict[str, Path] = {}
    roc_inputs = {}
    y_true_bin = (split.test_labels == config.positive_index).astype(int)
    for model, test_features in models:
        record, y_pred, y_score = evaluate_model(model, test_features, split.test_labels)
        records[model.name] = record
        slug = _slug(model.name)
        confusion_figures[model.name] = config.figures_dir / f"confusion_matrix_{slug}.png"
        plot_confusion_matrix(
            split.test_labels,
            y_pred,
            split.class_names,
            confusion_figures[model.name],
            title=model.name,
        )
        roc_inputs[model.name] = (y_true_bin, y_score)
        selection_path = config.tables_dir / f"selection_{slug}.csv"
        selection_path.parent.mkdir(parents=True, exist_ok=True)
        model.selection_results.to_csv(selection_path, index=False)
        artifacts[f"selection_{slug}"] = selection_path

    figures["roc"] = config.figures_dir / "roc_curves.png"
    plot_roc_curves(roc_inputs, figures["roc"])

    # 7) Reporting
    table = build_comparison_table(list(records.values()), trained)
    recommendation = recommend_model(table)
    artifacts["comparison_table"] = config.tables_dir / "model_comparison.csv"
    artifacts["summary_note"] = config.notes_dir / "summary.md"
    write_comparison_outputs(
        table,
        recommendation,
        artifacts["comparison_table"],
        artifacts["summary_note"],
        split_summary,
    )
    figures["comparison"] = config.figures_dir / "model_comparison.png"
    plot_metric_comparison(table, figures["comparison"])
    figures["pipeline"] = config.figures_dir / "pipeline_architecture.png"
    create_pipeline_diagram(figures["pipeline"])

    artifacts["bibliography"] = config.reports_dir / "references.bib"
    write_bibliography(BIBLIOGRAPHY_PACKAGES, artifacts["bibliography"])

    run_info = {
        "split": split_summary,
        "pca": {
            "components": projection.n_components,
            "retained_variance": projection.retained_variance,
            "hog_dimension": int(train_hog.shape[1]),
        },
        "best_params": {name: model.best_params for name, model in trained.items()},
        "recommendation": recommendation.model,
    }
    artifacts["run_info"] = config.notes_dir / "run_info.json"
    artifacts["run_info"].parent.mkdir(parents=True, exist_ok=True)
    with artifacts["run_info"].open("w", encoding="utf-8") as f:
        json.dump(run_info, f, indent=2, default=str)

    if config.build_slides:
        model_notes = {name: _selection_note(model) for name, model in trained.items()}
        model_notes["pca"] = (
            f"{projection.n_components} components retain {projection.retained_variance:.1%} "
            f"of the training variance (target {projection.variance_target:.0%}); "
            f"HOG dimension {train_hog.shape[1]}."
        )
        artifacts["slides"] = config.reports_dir / "slides.pdf"
        build_slide_deck(
            SlideDeckContent(
                title="Tumour vs. immune patch classification",
                split_summary=split_summary,
                table=table,
                recommendation=recommendation,
                figures=figures,
                confusion_figures=confusion_figures,
                model_notes=model_notes,
                references=reference_lines(BIBLIOGRAPHY_PACKAGES),
            ),
            artifacts["slides"],
        )

    artifacts.update({f"figure_{key}": path for key, path in figures.items()})
    return ExperimentResults(
        split_summary=split_summary,
        pca_components=projection.n_components,
        pca_retained_variance=projection.retained_variance,
        records=records,
        table=table,
        recommendation=recommendation,
        artifacts=artifacts,
    )
