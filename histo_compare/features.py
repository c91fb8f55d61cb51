"""Feature extraction for the two model families.

Two independent representations are produced from the same decoded patches:

* Raw pixel tensors for the CNN. :class:`PatchDataset` wraps the uint8 arrays
  and applies torchvision transforms on access, so the network sees
  ``(3, S, S)`` float tensors scaled to ``[0, 1]``.
* Histogram of Oriented Gradients (HOG) descriptors for the Random Forest and
  the SVM. HOG summarises local edge directions in small cells and
  normalises them over overlapping blocks, which makes it robust to the
  staining intensity differences common between histology slides.

Notes:
- Grayscale conversion before HOG is the default. Cell outlines and nuclear
  boundaries carry most of the gradient signal, and dropping colour keeps the
  descriptor a third of the size.
- With 50 px patches, 8 px cells and 2x2 blocks the descriptor has
  5 * 5 * 2 * 2 * 9 = 900 dimensions before PCA.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import torch
from skimage.color import rgb2gray
from skimage.feature import hog
from torch.utils.data import Dataset
from torchvision import transforms

LOGGER = logging.getLogger(__name__)

HOG_ORIENTATIONS = 9
HOG_PIXELS_PER_CELL: Tuple[int, int] = (8, 8)
HOG_CELLS_PER_BLOCK: Tuple[int, int] = (2, 2)
HOG_BLOCK_NORM = "L2-Hys"


# ---------------------------------------------------------------------------
# Raw pixel tensors (CNN)
# ---------------------------------------------------------------------------


def build_transforms(augment: bool = False) -> Dict[str, transforms.Compose]:
    eval_transform = transforms.Compose([transforms.ToTensor()])
    if not augment:
        return {"train": eval_transform, "eval": eval_transform}

    # Patches have no canonical orientation, so flips are label preserving.
    train_transform = transforms.Compose(
        [
            transforms.ToTensor(),
            transforms.RandomHorizontalFlip(),
            transforms.RandomVerticalFlip(),
        ]
    )
    return {"train": train_transform, "eval": eval_transform}


class PatchDataset(Dataset):
    def __init__(
        self,
        images: np.ndarray,
        labels: Optional[Sequence[int]] = None,
        transform: Optional[transforms.Compose] = None,
    ) -> None:
        if images.ndim != 4 or images.shape[-1] != 3:
            raise ValueError(f"Expected images of shape (N, H, W, 3), got {images.shape}")
        if labels is not None and len(labels) != len(images):
            raise ValueError(
                f"Got {len(labels)} labels for {len(images)} images"
            )
        self.images = images
        self.labels = None if labels is None else np.asarray(labels, dtype=np.int64)
        self.transform = transform or transforms.ToTensor()

    def __len__(self) -> int:
        return int(self.images.shape[0])

    def __getitem__(self, idx: int):
        # Copy so the transform never sees a read-only buffer.
        image = self.transform(np.array(self.images[idx]))
        if self.labels is None:
            return image
        return image, int(self.labels[idx])


def to_pixel_tensor(images: np.ndarray) -> torch.Tensor:
    """Stack patches into a single ``(N, 3, S, S)`` float tensor in ``[0, 1]``."""
    dataset = PatchDataset(images)
    return torch.stack([dataset[idx] for idx in range(len(dataset))])


# ---------------------------------------------------------------------------
# HOG descriptors (Random Forest, SVM)
# ---------------------------------------------------------------------------


def _hog_single(
    image: np.ndarray,
    grayscale: bool,
    orientations: int,
    pixels_per_cell: Tuple[int, int],
    cells_per_block: Tuple[int, int],
    block_norm: str,
    visualize: bool = False,
):
    if grayscale:
        return hog(
            rgb2gray(image),
            orientations=orientations,
            pixels_per_cell=pixels_per_cell,
            cells_per_block=cells_per_block,
            block_norm=block_norm,
            visualize=visualize,
            feature_vector=True,
        )
    return hog(
        image,
        orientations=orientations,
        pixels_per_cell=pixels_per_cell,
        cells_per_block=cells_per_block,
        block_norm=block_norm,
        visualize=visualize,
        feature_vector=True,
        channel_axis=-1,
    )


def extract_hog(
    images: np.ndarray,
    grayscale: bool = True,
    orientations: int = HOG_ORIENTATIONS,
    pixels_per_cell: Tuple[int, int] = HOG_PIXELS_PER_CELL,
    cells_per_block: Tuple[int, int] = HOG_CELLS_PER_BLOCK,
    block_norm: str = HOG_BLOCK_NORM,
) -> np.ndarray:
    """Return an ``(N, D)`` float32 HOG matrix for ``(N, H, W, 3)`` images."""
    if images.ndim != 4:
        raise ValueError(f"Expected images of shape (N, H, W, 3), got {images.shape}")
    height, width = images.shape[1:3]
    min_side = pixels_per_cell[0] * cells_per_block[0]
    if min(height, width) < min_side:
        raise ValueError(
            f"Images of {height}x{width} px are too small for HOG blocks of {min_side} px"
        )

    descriptors = [
        _hog_single(
            image,
            grayscale,
            orientations,
            tuple(pixels_per_cell),
            tuple(cells_per_block),
            block_norm,
        )
        for image in images
    ]
    matrix = np.asarray(descriptors, dtype=np.float32)
    LOGGER.info(
        "Extracted HOG features %s (grayscale=%s, cell=%s, block=%s)",
        matrix.shape,
        grayscale,
        pixels_per_cell,
        cells_per_block,
    )
    return matrix


def hog_visualization(
    image: np.ndarray,
    grayscale: bool = True,
    orientations: int = HOG_ORIENTATIONS,
    pixels_per_cell: Tuple[int, int] = HOG_PIXELS_PER_CELL,
    cells_per_block: Tuple[int, int] = HOG_CELLS_PER_BLOCK,
    block_norm: str = HOG_BLOCK_NORM,
) -> np.ndarray:
    """Return the HOG rendering of a single patch, scaled to ``[0, 1]``."""
    _, rendering = _hog_single(
        image,
        grayscale,
        orientations,
        tuple(pixels_per_cell),
        tuple(cells_per_block),
        block_norm,
        visualize=True,
    )
    peak = float(rendering.max())
    return rendering / peak if peak > 0 else rendering
