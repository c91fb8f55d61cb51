"""
Tests for histo_compare.features — pixel tensors for the CNN and HOG descriptors.
"""

from __future__ import annotations

import numpy as np
import pytest
import torch

from histo_compare.features import (
    PatchDataset,
    build_transforms,
    extract_hog,
    hog_visualization,
    to_pixel_tensor,
)


class TestPixelTensors:
    def test_dataset_yields_scaled_chw_tensor(self, patch_arrays) -> None:
        images, labels = patch_arrays
        dataset = PatchDataset(images, labels)
        image, label = dataset[0]
        assert isinstance(image, torch.Tensor)
        assert image.shape == (3, 32, 32)
        assert image.dtype == torch.float32
        assert float(image.min()) >= 0.0 and float(image.max()) <= 1.0
        assert label == 0

    def test_dataset_without_labels_yields_images_only(self, patch_arrays) -> None:
        images, _ = patch_arrays
        dataset = PatchDataset(images)
        assert len(dataset) == 20
        assert dataset[3].shape == (3, 32, 32)

    def test_read_only_images_are_accepted(self, patch_arrays) -> None:
        images, labels = patch_arrays
        images = images.copy()
        images.setflags(write=False)
        image, _ = PatchDataset(images, labels)[0]
        assert image.shape == (3, 32, 32)

    def test_augmented_transform_keeps_shape(self, patch_arrays) -> None:
        images, labels = patch_arrays
        transforms_map = build_transforms(augment=True)
        image, _ = PatchDataset(images, labels, transforms_map["train"])[5]
        assert image.shape == (3, 32, 32)

    def test_label_count_must_match(self, patch_arrays) -> None:
        images, labels = patch_arrays
        with pytest.raises(ValueError):
            PatchDataset(images, labels[:-1])

    def test_to_pixel_tensor_stacks(self, patch_arrays) -> None:
        images, _ = patch_arrays
        batch = to_pixel_tensor(images[:4])
        assert batch.shape == (4, 3, 32, 32)
        np.testing.assert_allclose(
            batch[0].permute(1, 2, 0).numpy(), images[0] / 255.0, atol=1e-6
        )


class TestHog:
    def test_descriptor_size_for_default_patch(self) -> None:
        images = np.zeros((2, 50, 50, 3), dtype=np.uint8)
        features = extract_hog(images)
        # 6 cells -> 5 blocks per side, 2x2 cells per block, 9 orientations
        assert features.shape == (2, 5 * 5 * 2 * 2 * 9)
        assert features.dtype == np.float32

    def test_colour_and_grayscale_have_same_dimension(self, patch_arrays) -> None:
        images, _ = patch_arrays
        gray = extract_hog(images[:3], grayscale=True)
        colour = extract_hog(images[:3], grayscale=False)
        assert gray.shape == colour.shape == (3, 3 * 3 * 2 * 2 * 9)
        assert np.isfinite(colour).all()

    def test_classes_have_different_descriptors(self, patch_arrays) -> None:
        images, labels = patch_arrays
        features = extract_hog(images)
        immune_mean = features[labels == 0].mean(axis=0)
        tumour_mean = features[labels == 1].mean(axis=0)
        assert np.linalg.norm(immune_mean - tumour_mean) > 0.1

    def test_too_small_images_raise(self) -> None:
        with pytest.raises(ValueError):
            extract_hog(np.zeros((1, 10, 10, 3), dtype=np.uint8))

    def test_wrong_rank_raises(self) -> None:
        with pytest.raises(ValueError):
            extract_hog(np.zeros((10, 10, 3), dtype=np.uint8))

    def test_visualization_matches_patch_size(self, patch_arrays) -> None:
        images, _ = patch_arrays
        rendering = hog_visualization(images[15])
        assert rendering.shape == (32, 32)
        assert rendering.max() <= 1.0 + 1e-9
