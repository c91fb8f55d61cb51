"""Comparison table, recommendation, bibliography and slide deck.

The reporter is the last stage of the run. It aggregates the per-model
:class:`~histo_compare.evaluation.MetricsRecord` objects into one table,
recommends a model for the screening task and renders the static outputs:

* ``tables/model_comparison.csv`` and ``notes/summary.md``;
* ``figures/model_comparison.png`` and ``figures/pipeline_architecture.png``;
* ``reports/references.bib`` generated from the installed libraries;
* ``reports/slides.pdf``, a compact slide deck embedding the figures.

Screening policy: a missed tumour patch is worse than a false alarm, so the
recommended model is the one with the highest sensitivity. Ties are broken by
NPV, then accuracy, then model name.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from importlib.metadata import PackageNotFoundError, metadata, version
from pathlib import Path
from textwrap import fill
from typing import Dict, List, Mapping, Optional, Sequence

import matplotlib.image as mpimg
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib import patches
from matplotlib.backends.backend_pdf import PdfPages

from .evaluation import MetricsRecord
from .training.common import TrainedModel

LOGGER = logging.getLogger(__name__)

METRIC_COLUMNS: List[str] = ["accuracy", "sensitivity", "specificity", "ppv", "npv"]
METRIC_LABELS: Dict[str, str] = {
    "accuracy": "Accuracy",
    "sensitivity": "Sensitivity",
    "specificity": "Specificity",
    "ppv": "PPV",
    "npv": "NPV",
}

# Distribution names of the libraries the analysis relies on.
BIBLIOGRAPHY_PACKAGES: List[str] = [
    "numpy",
    "pandas",
    "matplotlib",
    "Pillow",
    "scikit-image",
    "scikit-learn",
    "scipy",
    "torch",
    "torchvision",
]

PIPELINE_STEPS = [
    ("Data Loader", "Enumerate class folders\nDecode + resize 50x50"),
    ("Splitter", "Seeded shuffle\n80 + 20 per class"),
    ("Features", "Raw pixels (CNN)\nHOG (RF, SVM)"),
    ("PCA", "Fit on train\n95% variance"),
    ("Trainers", "RF + SVM: grid CV\nCNN: held-out"),
    ("Evaluator", "Confusion matrix\nSens / Spec / PPV / NPV"),
    ("Reporter", "Table + chart\nSlides + references"),
]


# ---------------------------------------------------------------------------
# Comparison table and recommendation
# ---------------------------------------------------------------------------

def build_comparison_table(
    records: Sequence[MetricsRecord],
    trained: Optional[Mapping[str, TrainedModel]] = None,
) -> pd.DataFrame:
    if not records:
        raise ValueError("No metrics records to compare")
    names = [record.model for record in records]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate model names in metrics records: {names}")

    rows = []
    for record in records:
        row = record.to_dict()
        if trained is not None and record.model in trained:
            model = trained[record.model]
            row["feature_space"] = model.feature_space
            row["best_params"] = str(model.best_params)
            row["fit_seconds"] = round(model.fit_seconds, 3)
        rows.append(row)
    return pd.DataFrame(rows).set_index("model")


def _markdown_table(table: pd.DataFrame, columns: Sequence[str]) -> List[str]:
    lines = [
        "| Model | " + " | ".join(METRIC_LABELS.get(c, c) for c in columns) + " |",
        "| --- | " + " | ".join("---" for _ in columns) + " |",
    ]
    for name, row in table.iterrows():
        cells = []
        for column in columns:
            value = row[column]
            cells.append(f"{value:.3f}" if isinstance(value, (float, np.floating)) else str(value))
        lines.append(f"| {name} | " + " | ".join(cells) + " |")
    return lines


@dataclass(frozen=True)
class Recommendation:
    model: str
    sensitivity: float
    specificity: float
    npv: float
    accuracy: float
    rationale: str


def recommend_model(table: pd.DataFrame) -> Recommendation:
    """Pick the screening model: sensitivity first, then NPV, accuracy, name."""
    if table.empty:
        raise ValueError("Cannot recommend a model from an empty comparison table")

    ranked = sorted(
        table.index,
        key=lambda name: (
            -float(table.loc[name, "sensitivity"]),
            -float(table.loc[name, "npv"]),
            -float(table.loc[name, "accuracy"]),
            str(name),
        ),
    )
    best = ranked[0]
    row = table.loc[best]
    tied = [
        str(name)
        for name in ranked[1:]
        if np.isclose(float(table.loc[name, "sensitivity"]), float(row["sensitivity"]))
    ]

    rationale = (
        f"{best} reaches the highest sensitivity ({row['sensitivity']:.2f}) on the held-out "
        f"test block, so it misses the fewest tumour patches "
        f"(specificity {row['specificity']:.2f}, accuracy {row['accuracy']:.2f})."
    )
    if tied:
        rationale += (
            f" It ties on sensitivity with {', '.join(tied)} and wins on NPV/accuracy."
        )
    LOGGER.info("Recommendation: %s", rationale)
    return Recommendation(
        model=str(best),
        sensitivity=float(row["sensitivity"]),
        specificity=float(row["specificity"]),
        npv=float(row["npv"]),
        accuracy=float(row["accuracy"]),
        rationale=rationale,
    )


def write_comparison_outputs(
    table: pd.DataFrame,
    recommendation: Recommendation,
    csv_path: Path,
    note_path: Path,
    split_summary: Optional[Mapping[str, object]] = None,
) -> None:
    csv_path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(csv_path)

    split_lines = []
    if split_summary:
        split_lines = [
            "## Data",
            "",
            f"- Patch size: {split_summary['image_size']} px",
            f"- Train counts: {split_summary['train_counts']}",
            f"- Test counts: {split_summary['test_counts']}",
            "",
        ]

    extra_columns = ["balanced_accuracy", "kappa", "auc"]
    summary = "\n".join(
        ["# Model Comparison", ""]
        + split_lines
        + ["## Held-out metrics", ""]
        + _markdown_table(table, METRIC_COLUMNS)
        + ["", "## Additional metrics", ""]
        + _markdown_table(table, [c for c in extra_columns if c in table.columns])
        + ["", "## Recommendation", "", recommendation.rationale, ""]
    )
    note_path.parent.mkdir(parents=True, exist_ok=True)
    note_path.write_text(summary, encoding="utf-8")
    LOGGER.info("Wrote comparison table %s and note %s", csv_path, note_path)


# ---------------------------------------------------------------------------
# Figures
# ---------------------------------------------------------------------------

def plot_metric_comparison(table: pd.DataFrame, output_path: Path) -> None:
    labels = list(table.index)
    x = np.arange(len(labels))
    width = 0.8 / len(METRIC_COLUMNS)

    fig, ax = plt.subplots(figsize=(max(7, len(labels) * 2.4), 4.2))
    for idx, key in enumerate(METRIC_COLUMNS):
        values = [float(table.loc[lbl, key]) for lbl in labels]
        bars = ax.bar(x + idx * width, values, width=width, label=METRIC_LABELS[key])
        for bar in bars:
            height = bar.get_height()
            ax.text(
                bar.get_x() + bar.get_width() / 2,
                height + 0.01,
                f"{height:.2f}",
                ha="center",
                va="bottom",
                fontsize=7,
            )
    ax.set_xticks(x + (len(METRIC_COLUMNS) - 1) * width / 2)
    ax.set_xticklabels(labels)
    ax.set_ylabel("Score")
    ax.set_title("Held-out metrics by model")
    ax.set_ylim(0, 1.1)
    ax.grid(axis="y", linestyle="--", alpha=0.3)
    ax.legend(loc="lower right", fontsize=8)
    fig.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=200)
    plt.close(fig)


def plot_hog_examples(
    examples: Sequence[tuple],
    output_path: Path,
) -> None:
    """Plot ``(title, patch, hog_rendering)`` triples side by side."""
    fig, axes = plt.subplots(len(examples), 2, figsize=(4.5, 2.3 * len(examples)), squeeze=False)
    for row, (title, patch, rendering) in enumerate(examples):
        axes[row, 0].imshow(patch)
        axes[row, 0].set_title(f"{title} patch", fontsize=9)
        axes[row, 1].imshow(rendering, cmap="gray")
        axes[row, 1].set_title(f"{title} HOG", fontsize=9)
        for ax in axes[row]:
            ax.axis("off")
    fig.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150)
    plt.close(fig)


def create_pipeline_diagram(output_path: Path) -> None:
    fig, ax = plt.subplots(figsize=(14, 3.6))
    ax.set_axis_off()

    x_offset = 0.4
    width = 1.5
    height = 0.8
    spacing = 0.5

    for idx, (title, body) in enumerate(PIPELINE_STEPS):
        left = x_offset + idx * (width + spacing)
        box = patches.FancyBboxPatch(
            (left, 0.6),
            width,
            height,
            boxstyle="round,pad=0.15",
            linewidth=1.5,
            edgecolor="#1f77b4",
            facecolor="#e8f1fb",
        )
        ax.add_patch(box)
        ax.text(left + width / 2, 1.22, title, ha="center", va="center", fontsize=11, fontweight="bold")
        ax.text(left + width / 2, 0.9, fill(body, 30), ha="center", va="center", fontsize=8.5)

        if idx < len(PIPELINE_STEPS) - 1:
            ax.annotate(
                "",
                xy=(left + width + spacing - 0.05, 1.0),
                xytext=(left + width + 0.2, 1.0),
                arrowprops=dict(arrowstyle="->", linewidth=1.2, color="#4c4c4c"),
            )

    ax.set_xlim(0, x_offset * 2 + len(PIPELINE_STEPS) * (width + spacing))
    ax.set_ylim(0.3, 1.8)
    ax.set_title("Patch classification pipeline", fontsize=14, fontweight="bold", pad=12)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=200, bbox_inches="tight")
    plt.close(fig)


# ---------------------------------------------------------------------------
# Bibliography
# ---------------------------------------------------------------------------

_LATEX_SPECIALS = re.compile(r"([&%$#_])")


def _latex_escape(text: str) -> str:
    return _LATEX_SPECIALS.sub(r"\\\1", text)


def _package_author(meta) -> str:
    author = meta.get("Author")
    if author:
        return author
    # "Jane Doe <jane@example.org>, John Roe <john@example.org>" -> names only
    author_email = meta.get("Author-email") or ""
    names = [re.sub(r"\s*<[^>]*>", "", part).strip().strip('"') for part in author_email.split(",")]
    names = [name for name in names if name and "@" not in name]
    return " and ".join(names) if names else "The developers"


def _package_url(meta) -> Optional[str]:
    home = meta.get("Home-page")
    if home:
        return home
    for entry in meta.get_all("Project-URL") or []:
        _, _, url = entry.partition(",")
        if url.strip():
            return url.strip()
    return None


def bibtex_key(package: str) -> str:
    return "py-" + re.sub(r"[^A-Za-z0-9]", "", package)


def bibtex_entry(package: str, year: Optional[int] = None) -> str:
    """Build an ``@Manual`` entry for an installed distribution."""
    meta = metadata(package)
    pkg_version = version(package)
    summary = meta.get("Summary") or package
    lines = [
        f"@Manual{{{bibtex_key(package)},",
        f"  title = {{{_latex_escape(meta.get('Name') or package)}: {_latex_escape(summary)}}},",
        f"  author = {{{_latex_escape(_package_author(meta))}}},",
        f"  year = {{{year or datetime.now().year}}},",
        f"  note = {{Python package version {pkg_version}}},",
    ]
    url = _package_url(meta)
    if url:
        lines.append(f"  url = {{{url}}},")
    lines.append("}")
    return "\n".join(lines)


def write_bibliography(
    packages: Sequence[str] = tuple(BIBLIOGRAPHY_PACKAGES),
    output_path: Path = Path("outputs/reports/references.bib"),
) -> List[str]:
    """Write a BibTeX file for ``packages``; returns the keys written."""
    entries: List[str] = []
    keys: List[str] = []
    for package in packages:
        try:
            entries.append(bibtex_entry(package))
        except PackageNotFoundError:
            LOGGER.warning("Package '%s' is not installed; leaving it out of the bibliography", package)
            continue
        keys.append(bibtex_key(package))

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text("\n\n".join(entries) + "\n", encoding="utf-8")
    LOGGER.info("Wrote %d bibliography entries to %s", len(entries), output_path)
    return keys


def reference_lines(packages: Sequence[str] = tuple(BIBLIOGRAPHY_PACKAGES)) -> List[str]:
    lines: List[str] = []
    for package in packages:
        try:
            pkg_version = version(package)
            summary = metadata(package).get("Summary") or ""
        except PackageNotFoundError:
            continue
        lines.append(f"{package} {pkg_version}: {summary}".strip())
    return lines


# ---------------------------------------------------------------------------
# Slide deck
# ---------------------------------------------------------------------------

@dataclass
class SlideDeckContent:
    title: str
    split_summary: Mapping[str, object]
    table: pd.DataFrame
    recommendation: Recommendation
    figures: Dict[str, Path] = field(default_factory=dict)
    confusion_figures: Dict[str, Path] = field(default_factory=dict)
    model_notes: Dict[str, str] = field(default_factory=dict)
    references: List[str] = field(default_factory=list)


SLIDE_SIZE = (11, 8.5)


def _text_slide(pdf: PdfPages, title: str, bullets: Sequence[str], footer: Optional[str] = None) -> None:
    fig = plt.figure(figsize=SLIDE_SIZE)
    fig.text(0.05, 0.92, title, fontsize=20, weight="bold")
    y = 0.8
    for bullet in bullets:
        wrapped = fill(bullet, 95)
        fig.text(0.07, y, f"• {wrapped}", fontsize=13, va="top")
        y -= 0.07 * (wrapped.count("\n") + 1)
    if footer:
        fig.text(0.05, 0.08, fill(footer, 120), fontsize=11, color="#444444")
    pdf.savefig(fig)
    plt.close(fig)


def _image_slide(pdf: PdfPages, title: str, image_paths: Sequence[Path], caption: Optional[str] = None) -> None:
    available = [path for path in image_paths if path is not None and Path(path).exists()]
    if not available:
        LOGGER.warning("Skipping slide '%s': no figure available", title)
        return
    fig = plt.figure(figsize=SLIDE_SIZE)
    fig.text(0.05, 0.92, title, fontsize=20, weight="bold")
    n = len(available)
    for idx, path in enumerate(available):
        ax = fig.add_axes([0.04 + idx * (0.92 / n), 0.14, 0.92 / n - 0.02, 0.72])
        ax.imshow(mpimg.imread(str(path)))
        ax.set_axis_off()
    if caption:
        fig.text(0.05, 0.06, fill(caption, 120), fontsize=11, color="#444444")
    pdf.savefig(fig)
    plt.close(fig)


def _table_slide(pdf: PdfPages, title: str, table: pd.DataFrame, recommendation: Recommendation) -> None:
    fig = plt.figure(figsize=SLIDE_SIZE)
    fig.text(0.05, 0.92, title, fontsize=20, weight="bold")
    ax = fig.add_axes([0.05, 0.4, 0.9, 0.4])
    ax.set_axis_off()
    columns = METRIC_COLUMNS + ["auc"]
    cell_text = [
        [f"{float(table.loc[name, c]):.3f}" for c in columns] for name in table.index
    ]
    rendered = ax.table(
        cellText=cell_text,
        rowLabels=list(table.index),
        colLabels=[METRIC_LABELS.get(c, c.upper()) for c in columns],
        loc="center",
    )
    rendered.scale(1, 2)
    rendered.set_fontsize(12)
    fig.text(0.05, 0.25, "Recommendation", fontsize=16, weight="bold")
    fig.text(0.05, 0.2, fill(recommendation.rationale, 110), fontsize=13, va="top")
    pdf.savefig(fig)
    plt.close(fig)


def build_slide_deck(content: SlideDeckContent, output_path: Path) -> None:
    """Render the static PDF slide deck."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    split = content.split_summary
    figures = content.figures

    with PdfPages(output_path) as pdf:
        _text_slide(
            pdf,
            content.title,
            [
                "Task: flag tumour patches for review in a screening workflow.",
                "Data: pre-cropped histology patches of tumour and immune cells, "
                f"resized to {split['image_size']}x{split['image_size']} RGB.",
                f"Split: {split['train_counts']} train, {split['test_counts']} test (seeded, class balanced).",
                "Models: Random Forest and SVM on HOG + PCA features; a small CNN on raw pixels.",
                f"Recommended model: {content.recommendation.model}.",
            ],
        )
        _image_slide(pdf, "Example patches", [figures.get("samples")])
        _image_slide(
            pdf,
            "Pipeline",
            [figures.get("pipeline")],
            "Data flows strictly forward; every model is scored on the same held-out block.",
        )
        _image_slide(
            pdf,
            "HOG features",
            [figures.get("hog")],
            "Histograms of oriented gradients summarise edge directions per cell.",
        )
        _image_slide(
            pdf,
            "PCA on HOG features",
            [figures.get("pca")],
            content.model_notes.get("pca"),
        )
        _image_slide(
            pdf,
            "CNN training",
            [figures.get("cnn_curves")],
            content.model_notes.get("CNN"),
        )
        _text_slide(
            pdf,
            "Hyperparameter selection",
            [f"{name}: {note}" for name, note in content.model_notes.items() if name != "pca"],
        )
        _image_slide(
            pdf,
            "Confusion matrices (test block)",
            list(content.confusion_figures.values()),
            "Positive class: tumour.",
        )
        _image_slide(
            pdf,
            "Model comparison",
            [figures.get("comparison"), figures.get("roc")],
        )
        _table_slide(pdf, "Held-out metrics", content.table, content.recommendation)
        if content.references:
            _text_slide(pdf, "References", content.references)

    LOGGER.info("Wrote slide deck to %s", output_path)
