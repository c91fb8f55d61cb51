"""PCA projection of HOG descriptors.

The projection is fitted on the training block only. The number of kept
components is the smallest one whose cumulative explained variance reaches
the target (95% by default); test descriptors are then projected with the
same centring (and optional scaling) and the same components.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PCAProjection:
    pca: PCA
    scaler: Optional[StandardScaler]
    n_components: int
    variance_target: float

    @property
    def explained_variance_ratio(self) -> np.ndarray:
        return np.asarray(self.pca.explained_variance_ratio_)

    @property
    def cumulative_variance(self) -> np.ndarray:
        return np.cumsum(self.explained_variance_ratio)

    @property
    def retained_variance(self) -> float:
        return float(self.cumulative_variance[self.n_components - 1])

    def transform(self, features: np.ndarray) -> np.ndarray:
        if features.ndim != 2 or features.shape[1] != self.pca.n_features_in_:
            raise ValueError(
                f"Expected features of shape (N, {self.pca.n_features_in_}), got {features.shape}"
            )
        data = self.scaler.transform(features) if self.scaler is not None else features
        return self.pca.transform(data)[:, : self.n_components].astype(np.float32)


def fit_pca(
    train_features: np.ndarray,
    variance_target: float = 0.95,
    standardize: bool = False,
    seed: int = 42,
) -> PCAProjection:
    if not 0.0 < variance_target <= 1.0:
        raise ValueError(f"variance_target must be in (0, 1], got {variance_target}")
    if train_features.ndim != 2:
        raise ValueError(f"Features must be 2D [N, D], got shape {train_features.shape}")

    n_samples, n_features = train_features.shape
    max_components = min(n_samples, n_features)
    LOGGER.info(
        "Fitting PCA with up to %s components (samples=%s, features=%s)",
        max_components,
        n_samples,
        n_features,
    )

    scaler = StandardScaler() if standardize else None
    data = scaler.fit_transform(train_features) if scaler is not None else train_features

    full_pca = PCA(n_components=max_components, random_state=seed, svd_solver="full")
    full_pca.fit(data)
    cumulative = np.cumsum(full_pca.explained_variance_ratio_)
    # Guard against float round-off leaving the last cumulative value a hair below 1.0.
    n_components = int(np.searchsorted(cumulative, variance_target - 1e-9) + 1)
    n_components = max(1, min(n_components, max_components))
    LOGGER.info(
        "Selected %s PCA components to reach %.2f%% explained variance",
        n_components,
        cumulative[n_components - 1] * 100,
    )

    return PCAProjection(
        pca=full_pca,
        scaler=scaler,
        n_components=n_components,
        variance_target=float(variance_target),
    )


def plot_cumulative_variance(projection: PCAProjection, output_path: Path) -> None:
    cumulative = projection.cumulative_variance
    components = np.arange(1, len(cumulative) + 1)
    plt.figure(figsize=(6, 4))
    plt.plot(components, cumulative, marker=".", linewidth=1)
    plt.axhline(projection.variance_target, color="grey", linestyle="--", label="Target")
    plt.axvline(
        projection.n_components,
        color="tab:red",
        linestyle=":",
        label=f"{projection.n_components} components",
    )
    plt.xlabel("Number of components")
    plt.ylabel("Cumulative explained variance")
    plt.title("PCA on HOG features")
    plt.ylim(0, 1.02)
    plt.legend(loc="lower right")
    plt.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=200)
    plt.close()
