"""Image loading and train/test splitting for the histology patches.

Each class lives in its own directory of pre-cropped patches. We enumerate
the files, shuffle the listing with a fixed seed, slice off fixed-size train
and test blocks per class and decode every selected file to a square RGB
array. The resulting :class:`DatasetSplit` is the only hand-off to the
feature extractors.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
from PIL import Image, UnidentifiedImageError

LOGGER = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp"}
DEFAULT_IMAGE_SIZE = 50
DEFAULT_CLASS_NAMES: Tuple[str, str] = ("immune", "tumour")


@dataclass(frozen=True)
class DatasetSplit:
    """Class-balanced train and test blocks of decoded patches."""

    train_images: np.ndarray
    train_labels: np.ndarray
    train_paths: List[Path]
    test_images: np.ndarray
    test_labels: np.ndarray
    test_paths: List[Path]
    class_names: Tuple[str, ...]

    @property
    def image_size(self) -> int:
        return int(self.train_images.shape[1])

    def class_counts(self, subset: str = "train") -> Dict[str, int]:
        labels = self.train_labels if subset == "train" else self.test_labels
        counts = np.bincount(labels, minlength=len(self.class_names))
        return {name: int(counts[idx]) for idx, name in enumerate(self.class_names)}


def discover_class_files(class_dir: Path) -> List[Path]:
    """Return the image files directly inside ``class_dir``, sorted by name."""
    class_dir = Path(class_dir)
    if not class_dir.exists():
        raise FileNotFoundError(f"Class directory not found: {class_dir}")
    files = sorted(
        path
        for path in class_dir.iterdir()
        if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES
    )
    if not files:
        raise RuntimeError(f"No image files discovered under {class_dir}")
    LOGGER.info("Discovered %d images in %s", len(files), class_dir)
    return files


def load_image(path: Path, image_size: int = DEFAULT_IMAGE_SIZE) -> np.ndarray:
    """Decode one patch as RGB and resize it to ``image_size`` x ``image_size``."""
    try:
        with Image.open(path) as img:
            resized = img.convert("RGB").resize(
                (image_size, image_size), Image.BILINEAR
            )
            array = np.asarray(resized, dtype=np.uint8)
    except (UnidentifiedImageError, OSError) as exc:
        LOGGER.error("Failed to decode %s: %s", path, exc)
        raise
    return array


def load_class_images(paths: Sequence[Path], image_size: int = DEFAULT_IMAGE_SIZE) -> np.ndarray:
    """Decode ``paths`` into an ``(N, S, S, 3)`` uint8 array."""
    if not paths:
        return np.empty((0, image_size, image_size, 3), dtype=np.uint8)
    return np.stack([load_image(path, image_size) for path in paths])


def _freeze(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


def split_dataset(
    class_dirs: Sequence[Path],
    n_train: int = 80,
    n_test: int = 20,
    image_size: int = DEFAULT_IMAGE_SIZE,
    seed: int = 42,
    class_names: Sequence[str] = DEFAULT_CLASS_NAMES,
) -> DatasetSplit:
    """Build the train/test blocks for every class.

    ``class_dirs`` and ``class_names`` are aligned; the position of a class in
    them is its label index. Each class listing is shuffled with its own
    ``random.Random(seed)`` so the selection does not depend on the order the
    classes are given in.
    """
    if len(class_dirs) != len(class_names):
        raise ValueError(
            f"Got {len(class_dirs)} class directories for {len(class_names)} class names"
        )
    if n_train < 1 or n_test < 1:
        raise ValueError("n_train and n_test must both be positive")

    train_paths: List[Path] = []
    test_paths: List[Path] = []
    train_labels: List[int] = []
    test_labels: List[int] = []

    for label, (class_dir, name) in enumerate(zip(class_dirs, class_names)):
        files = discover_class_files(Path(class_dir))
        needed = n_train + n_test
        if len(files) < needed:
            raise ValueError(
                f"Class '{name}' has {len(files)} images in {class_dir}; need {needed} "
                f"({n_train} train + {n_test} test)"
            )
        shuffled = list(files)
        random.Random(seed).shuffle(shuffled)
        train_paths.extend(shuffled[:n_train])
        test_paths.extend(shuffled[n_train:needed])
        train_labels.extend([label] * n_train)
        test_labels.extend([label] * n_test)
        LOGGER.info(
            "Class '%s' (label %d): %d train / %d test of %d files",
            name,
            label,
            n_train,
            n_test,
            len(files),
        )

    train_images = load_class_images(train_paths, image_size)
    test_images = load_class_images(test_paths, image_size)
    LOGGER.info(
        "Loaded train images %s and test images %s",
        train_images.shape,
        test_images.shape,
    )

    return DatasetSplit(
        train_images=_freeze(train_images),
        train_labels=_freeze(np.asarray(train_labels, dtype=np.int64)),
        train_paths=train_paths,
        test_images=_freeze(test_images),
        test_labels=_freeze(np.asarray(test_labels, dtype=np.int64)),
        test_paths=test_paths,
        class_names=tuple(class_names),
    )


def save_sample_grid(
    images: np.ndarray,
    labels: np.ndarray,
    class_names: Sequence[str],
    output_path: Path,
    per_class: int = 6,
) -> None:
    """Save a grid with the first ``per_class`` patches of every class."""
    rows = len(class_names)
    cols = max(1, min(per_class, int(np.bincount(labels).max()) if len(labels) else 1))
    fig, axes = plt.subplots(rows, cols, figsize=(cols * 1.6, rows * 1.8), squeeze=False)
    for row, name in enumerate(class_names):
        indices = np.flatnonzero(labels == row)[:cols]
        for col in range(cols):
            ax = axes[row, col]
            ax.axis("off")
            if col < len(indices):
                ax.imshow(images[indices[col]])
        axes[row, 0].set_title(name, fontsize=10, loc="left")
    fig.suptitle("Example patches", fontsize=12)
    fig.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150)
    plt.close(fig)


def describe_split(split: DatasetSplit) -> Dict[str, object]:
    """Summary used in logs, notes and the slide deck."""
    return {
        "image_size": split.image_size,
        "class_names": list(split.class_names),
        "train_counts": split.class_counts("train"),
        "test_counts": split.class_counts("test"),
        "n_train": int(len(split.train_labels)),
        "n_test": int(len(split.test_labels)),
    }
