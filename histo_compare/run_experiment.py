"""CLI wrapper for the tumour vs. immune classifier comparison.

Delegates to pipeline.run_experiment using the shared ExperimentConfig
schema from training.common.

Usage:
    python -m histo_compare.run_experiment --immune-dir <path> --tumour-dir <path>
"""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .pipeline import run_experiment
from .training.common import ExperimentConfig

LOGGER = logging.getLogger(__name__)


def _number_or_str(value: str) -> Union[int, float, str]:
    """Parse integers first so ``2`` stays a feature count rather than ``2.0``."""
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def parse_args(args: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--immune-dir", type=Path, required=True, help="Folder of immune cell patches.")
    parser.add_argument("--tumour-dir", type=Path, required=True, help="Folder of tumour cell patches.")
    parser.add_argument("--image-size", type=int, default=50)
    parser.add_argument("--n-train", type=int, default=80, help="Training patches per class.")
    parser.add_argument("--n-test", type=int, default=20, help="Test patches per class.")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument(
        "--hog-color",
        action="store_true",
        help="Compute HOG over the colour channels instead of a grayscale conversion.",
    )
    parser.add_argument("--hog-orientations", type=int, default=9)
    parser.add_argument("--hog-pixels-per-cell", type=int, default=8)
    parser.add_argument("--hog-cells-per-block", type=int, default=2)
    parser.add_argument("--pca-variance", type=float, default=0.95)
    parser.add_argument(
        "--pca-standardize",
        action="store_true",
        help="Scale HOG features to unit variance before PCA.",
    )
    parser.add_argument("--cv-folds", type=int, default=5)
    parser.add_argument("--rf-n-estimators", type=int, nargs="+", default=[200, 500])
    parser.add_argument("--rf-max-features", type=_number_or_str, nargs="+", default=["sqrt", 0.5, 1.0])
    parser.add_argument("--svm-kernel", type=str, default="rbf", choices=["rbf", "linear", "poly", "sigmoid"])
    parser.add_argument("--svm-c", type=float, nargs="+", default=[0.1, 1.0, 10.0, 100.0])
    parser.add_argument("--svm-gamma", type=_number_or_str, nargs="+", default=["scale", 0.01, 0.001])
    parser.add_argument("--cnn-epochs", type=int, default=30)
    parser.add_argument("--cnn-batch-size", type=int, default=16)
    parser.add_argument("--cnn-learning-rates", type=float, nargs="+", default=[1e-3, 3e-4])
    parser.add_argument("--cnn-weight-decay", type=float, default=0.0)
    parser.add_argument("--cnn-dropout", type=float, default=0.5)
    parser.add_argument("--cnn-val-split", type=float, default=0.2)
    parser.add_argument("--cnn-patience", type=int, default=5)
    parser.add_argument("--cnn-augment", action="store_true", help="Random flips on training patches.")
    parser.add_argument(
        "--device",
        type=str,
        default="auto",
        choices=["auto", "cpu", "cuda"],
        help="Device to use: auto (default), cpu, or cuda",
    )
    parser.add_argument("--num-workers", type=int, default=0)
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("outputs"),
        help="Base directory for experiment artefacts.",
    )
    parser.add_argument("--no-slides", action="store_true", help="Skip rendering the PDF slide deck.")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    return parser.parse_args(args=args)


def build_config(parsed: argparse.Namespace) -> ExperimentConfig:
    return ExperimentConfig(
        immune_dir=parsed.immune_dir,
        tumour_dir=parsed.tumour_dir,
        image_size=parsed.image_size,
        n_train=parsed.n_train,
        n_test=parsed.n_test,
        seed=parsed.seed,
        hog_grayscale=not parsed.hog_color,
        hog_orientations=parsed.hog_orientations,
        hog_pixels_per_cell=parsed.hog_pixels_per_cell,
        hog_cells_per_block=parsed.hog_cells_per_block,
        pca_variance=parsed.pca_variance,
        pca_standardize=parsed.pca_standardize,
        cv_folds=parsed.cv_folds,
        rf_n_estimators=tuple(parsed.rf_n_estimators),
        rf_max_features=tuple(parsed.rf_max_features),
        svm_kernel=parsed.svm_kernel,
        svm_c=tuple(parsed.svm_c),
        svm_gamma=tuple(parsed.svm_gamma),
        cnn_epochs=parsed.cnn_epochs,
        cnn_batch_size=parsed.cnn_batch_size,
        cnn_learning_rates=tuple(parsed.cnn_learning_rates),
        cnn_weight_decay=parsed.cnn_weight_decay,
        cnn_dropout=parsed.cnn_dropout,
        cnn_val_split=parsed.cnn_val_split,
        cnn_patience=parsed.cnn_patience,
        cnn_augment=parsed.cnn_augment,
        device=parsed.device,
        num_workers=parsed.num_workers,
        output_dir=parsed.output_dir,
        build_slides=not parsed.no_slides,
    )


def configure_logging(level: str, log_path: Optional[Path] = None) -> None:
    """Log to stdout and, when ``log_path`` is given, to that file as well."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="w", encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def main(args: Optional[Sequence[str]] = None) -> None:
    parsed = parse_args(args)
    config = build_config(parsed)
    configure_logging(parsed.log_level, config.logs_dir / "run_experiment.log")

    for class_dir in (config.immune_dir, config.tumour_dir):
        if not Path(class_dir).is_dir():
            raise SystemExit(f"Class directory not found: {class_dir}")

    results = run_experiment(config)
    LOGGER.info(
        "Comparison complete. Metrics:\n%s",
        json.dumps({name: record.to_dict() for name, record in results.records.items()}, indent=2),
    )
    LOGGER.info("Recommended model: %s", results.recommendation.model)


if __name__ == "__main__":  # pragma: no cover
    main()
