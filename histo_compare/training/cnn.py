"""Small convolutional network trained on raw pixel tensors.

Hyperparameters are selected on a held-out validation block carved out of
the training images (stratified, ``cnn_val_split`` of the block). Each
candidate learning rate is trained with Adam and early stopping on the
validation loss; the candidate with the lowest validation loss is kept. The
test block is never touched here.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple
import copy
import logging
import math
import time

import numpy as np
import pandas as pd
import torch
import torch.nn as nn
import torch.optim as optim
from sklearn.metrics import accuracy_score
from sklearn.model_selection import train_test_split
from torch.utils.data import DataLoader

from ..features import PatchDataset, build_transforms, to_pixel_tensor
from .common import ExperimentConfig, TrainedModel, resolve_device, set_seed

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

def flattened_side(image_size: int) -> int:
    """Spatial side length after two (3x3 valid conv, 2x2 max-pool) blocks."""
    return ((image_size - 2) // 2 - 2) // 2


class PatchCNN(nn.Module):
    def __init__(self, image_size: int = 50, num_classes: int = 2, dropout: float = 0.5) -> None:
        super().__init__()
        side = flattened_side(image_size)
        if side < 1:
            raise ValueError(f"image_size {image_size} is too small for the CNN (minimum 10)")
        self.features = nn.Sequential(
            nn.Conv2d(3, 32, kernel_size=3),
            nn.ReLU(inplace=True),
            nn.MaxPool2d(2),
            nn.Conv2d(32, 64, kernel_size=3),
            nn.ReLU(inplace=True),
            nn.MaxPool2d(2),
        )
        self.classifier = nn.Sequential(
            nn.Flatten(),
            nn.Dropout(dropout),
            nn.Linear(64 * side * side, 128),
            nn.ReLU(inplace=True),
            nn.Linear(128, num_classes),
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.classifier(self.features(x))


class CNNClassifier:
    """Prediction wrapper giving the network a scikit-learn style interface."""

    def __init__(self, model: nn.Module, device: torch.device, batch_size: int = 64) -> None:
        self.model = model
        self.device = device
        self.batch_size = batch_size
        self.classes_ = np.arange(model.classifier[-1].out_features)

    def predict_proba(self, images: np.ndarray) -> np.ndarray:
        if len(images) == 0:
            return np.empty((0, len(self.classes_)), dtype=np.float32)
        pixels = to_pixel_tensor(images)
        self.model.eval()
        probabilities: List[np.ndarray] = []
        with torch.no_grad():
            for inputs in torch.split(pixels, self.batch_size):
                outputs = self.model(inputs.to(self.device))
                probabilities.append(torch.softmax(outputs, dim=1).cpu().numpy())
        return np.concatenate(probabilities, axis=0)

    def predict(self, images: np.ndarray) -> np.ndarray:
        return self.classes_[self.predict_proba(images).argmax(axis=1)]


# ---------------------------------------------------------------------------
# Training loop
# ---------------------------------------------------------------------------

def evaluate_on_loader(
    model: nn.Module,
    data_loader: DataLoader,
    criterion: nn.Module,
    device: torch.device,
) -> Tuple[float, float]:
    model.eval()
    losses: List[float] = []
    y_true: List[int] = []
    y_pred: List[int] = []

    with torch.no_grad():
        for inputs, labels in data_loader:
            inputs = inputs.to(device)
            labels = labels.to(device)
            outputs = model(inputs)
            losses.append(criterion(outputs, labels).item())
            y_true.extend(labels.cpu().numpy().tolist())
            y_pred.extend(outputs.argmax(dim=1).cpu().numpy().tolist())

    avg_loss = float(np.mean(losses)) if losses else 0.0
    acc = float(accuracy_score(y_true, y_pred)) if y_true else 0.0
    return avg_loss, acc


def train_model(
    model: nn.Module,
    train_loader: DataLoader,
    val_loader: DataLoader,
    criterion: nn.Module,
    optimizer: optim.Optimizer,
    device: torch.device,
    num_epochs: int = 30,
    early_stopping_patience: int = 5,
) -> Tuple[nn.Module, Dict[str, List[float]]]:
    history: Dict[str, List[float]] = {
        "train_loss": [],
        "val_loss": [],
        "train_acc": [],
        "val_acc": [],
    }

    best_state = copy.deepcopy(model.state_dict())
    best_val_loss = math.inf
    patience_counter = 0

    for epoch in range(num_epochs):
        model.train()
        train_losses: List[float] = []
        y_true_train: List[int] = []
        y_pred_train: List[int] = []

        for inputs, labels in train_loader:
            inputs = inputs.to(device)
            labels = labels.to(device)
            optimizer.zero_grad()
            outputs = model(inputs)
            loss = criterion(outputs, labels)
            loss.backward()
            optimizer.step()
            train_losses.append(loss.item())
            y_true_train.extend(labels.cpu().numpy().tolist())
            y_pred_train.extend(outputs.argmax(dim=1).cpu().numpy().tolist())

        train_loss = float(np.mean(train_losses)) if train_losses else 0.0
        train_acc = float(accuracy_score(y_true_train, y_pred_train)) if y_true_train else 0.0
        val_loss, val_acc = evaluate_on_loader(model, val_loader, criterion, device)

        history["train_loss"].append(train_loss)
        history["val_loss"].append(val_loss)
        history["train_acc"].append(train_acc)
        history["val_acc"].append(val_acc)

        LOGGER.info(
            "Epoch %d/%d - train loss %.4f acc %.3f | val loss %.4f acc %.3f",
            epoch + 1,
            num_epochs,
            train_loss,
            train_acc,
            val_loss,
            val_acc,
        )

        if val_loss < best_val_loss:
            best_val_loss = val_loss
            best_state = copy.deepcopy(model.state_dict())
            patience_counter = 0
        else:
            patience_counter += 1
            if patience_counter >= early_stopping_patience:
                LOGGER.info("Early stopping triggered at epoch %d", epoch + 1)
                break

    model.load_state_dict(best_state)
    return model, history


# ---------------------------------------------------------------------------
# Held-out selection
# ---------------------------------------------------------------------------

def split_validation(
    labels: np.ndarray, val_split: float, seed: int
) -> Tuple[np.ndarray, np.ndarray]:
    indices = np.arange(len(labels))
    train_idx, val_idx = train_test_split(
        indices,
        test_size=val_split,
        random_state=seed,
        stratify=labels,
    )
    return np.sort(train_idx), np.sort(val_idx)


def train_cnn(
    images: np.ndarray,
    labels: np.ndarray,
    config: ExperimentConfig,
) -> TrainedModel:
    """Train the CNN, choosing the learning rate on a held-out validation block."""
    if not config.cnn_learning_rates:
        raise ValueError("cnn_learning_rates must list at least one learning rate")
    device = resolve_device(config.device)
    LOGGER.info("Using device: %s", device)

    labels = np.asarray(labels, dtype=np.int64)
    train_idx, val_idx = split_validation(labels, config.cnn_val_split, config.seed)
    LOGGER.info(
        "CNN held-out split: %d train / %d validation images", len(train_idx), len(val_idx)
    )

    transforms_map = build_transforms(config.cnn_augment)
    train_dataset = PatchDataset(images[train_idx], labels[train_idx], transforms_map["train"])
    val_dataset = PatchDataset(images[val_idx], labels[val_idx], transforms_map["eval"])
    num_classes = len(config.class_names)

    rows: List[Dict[str, float]] = []
    best: Optional[Tuple[float, float, nn.Module, Dict[str, List[float]]]] = None
    start = time.perf_counter()

    for learning_rate in config.cnn_learning_rates:
        set_seed(config.seed)
        train_loader = DataLoader(
            train_dataset,
            batch_size=config.cnn_batch_size,
            shuffle=True,
            num_workers=config.num_workers,
            generator=torch.Generator().manual_seed(config.seed),
        )
        val_loader = DataLoader(
            val_dataset,
            batch_size=config.cnn_batch_size,
            shuffle=False,
            num_workers=config.num_workers,
        )
        model = PatchCNN(config.image_size, num_classes, config.cnn_dropout).to(device)
        optimizer = optim.Adam(
            model.parameters(), lr=float(learning_rate), weight_decay=config.cnn_weight_decay
        )
        LOGGER.info("Training CNN with learning rate %g", learning_rate)
        model, history = train_model(
            model,
            train_loader,
            val_loader,
            nn.CrossEntropyLoss(),
            optimizer,
            device,
            num_epochs=config.cnn_epochs,
            early_stopping_patience=config.cnn_patience,
        )

        best_epoch = int(np.argmin(history["val_loss"]))
        val_loss = float(history["val_loss"][best_epoch])
        rows.append(
            {
                "learning_rate": float(learning_rate),
                "best_epoch": best_epoch + 1,
                "epochs_run": len(history["val_loss"]),
                "val_loss": val_loss,
                "val_accuracy": float(history["val_acc"][best_epoch]),
            }
        )
        if best is None or val_loss < best[1]:
            best = (float(learning_rate), val_loss, model, history)

    duration = time.perf_counter() - start
    learning_rate, val_loss, model, history = best
    selection = pd.DataFrame(rows).sort_values(["val_loss", "learning_rate"]).reset_index(drop=True)
    best_row = selection[selection["learning_rate"] == learning_rate].iloc[0]
    LOGGER.info(
        "CNN best learning rate %g (val loss %.4f, epoch %d) in %.2fs",
        learning_rate,
        val_loss,
        int(best_row["best_epoch"]),
        duration,
    )

    return TrainedModel(
        name="CNN",
        estimator=CNNClassifier(model, device, batch_size=max(config.cnn_batch_size, 64)),
        feature_space="Raw pixels",
        positive_index=config.positive_index,
        best_params={"learning_rate": learning_rate, "epochs": int(best_row["best_epoch"])},
        selection_results=selection,
        fit_seconds=float(duration),
        history=history,
        extras={
            "val_accuracy": float(best_row["val_accuracy"]),
            "n_parameters": int(sum(p.numel() for p in model.parameters())),
        },
    )
