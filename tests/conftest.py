"""
Shared pytest fixtures for the histo_compare test suite.

All fixtures are synthetic — no real histology files required. Immune patches
are a pink background with one dark round nucleus; tumour patches carry a
dense diagonal stripe texture, so the two classes differ clearly in their
gradient structure.
"""

from __future__ import annotations

from pathlib import Path
from typing import Tuple

import matplotlib

matplotlib.use("Agg")

import numpy as np  # noqa: E402
import pytest  # noqa: E402
from PIL import Image  # noqa: E402

from histo_compare.training.common import ExperimentConfig  # noqa: E402

PATCHES_PER_CLASS = 12


def make_patch(kind: str, rng: np.random.Generator, size: int = 48) -> np.ndarray:
    yy, xx = np.mgrid[0:size, 0:size]
    patch = np.empty((size, size, 3), dtype=float)
    patch[...] = (230.0, 180.0, 205.0)
    patch += rng.normal(0.0, 6.0, size=patch.shape)
    if kind == "tumour":
        offset = int(rng.integers(0, 6))
        stripes = ((xx + yy + offset) // 3) % 2 == 0
        patch[stripes] -= (110.0, 120.0, 60.0)
    else:
        cy, cx = rng.integers(size // 3, 2 * size // 3, size=2)
        radius = size / 6
        disk = (yy - cy) ** 2 + (xx - cx) ** 2 <= radius ** 2
        patch[disk] = (90.0, 40.0, 120.0)
    return np.clip(patch, 0, 255).astype(np.uint8)


@pytest.fixture()
def rng() -> np.random.Generator:
    return np.random.default_rng(0)


@pytest.fixture()
def patch_dirs(tmp_path: Path) -> Tuple[Path, Path]:
    """Two class folders with PATCHES_PER_CLASS 48x48 PNG patches each."""
    rng = np.random.default_rng(7)
    dirs = []
    for kind in ("immune", "tumour"):
        class_dir = tmp_path / "data" / kind
        class_dir.mkdir(parents=True)
        for idx in range(PATCHES_PER_CLASS):
            Image.fromarray(make_patch(kind, rng)).save(class_dir / f"{kind}_{idx:02d}.png")
        dirs.append(class_dir)
    return dirs[0], dirs[1]


@pytest.fixture()
def patch_arrays() -> Tuple[np.ndarray, np.ndarray]:
    """In-memory 32x32 patches: 10 immune (label 0) then 10 tumour (label 1)."""
    rng = np.random.default_rng(3)
    images = [make_patch("immune", rng, 32) for _ in range(10)]
    images += [make_patch("tumour", rng, 32) for _ in range(10)]
    labels = np.array([0] * 10 + [1] * 10, dtype=np.int64)
    return np.stack(images), labels


@pytest.fixture()
def small_config(patch_dirs: Tuple[Path, Path], tmp_path: Path) -> ExperimentConfig:
    """A configuration small enough to run the whole pipeline in seconds."""
    immune_dir, tumour_dir = patch_dirs
    return ExperimentConfig(
        immune_dir=immune_dir,
        tumour_dir=tumour_dir,
        image_size=32,
        n_train=8,
        n_test=4,
        seed=0,
        cv_folds=3,
        rf_n_estimators=(10,),
        rf_max_features=("sqrt", 1.0),
        svm_c=(1.0, 10.0),
        svm_gamma=("scale",),
        cnn_epochs=3,
        cnn_batch_size=4,
        cnn_learning_rates=(1e-3,),
        cnn_patience=2,
        device="cpu",
        output_dir=tmp_path / "outputs",
    )
