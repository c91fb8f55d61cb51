"""Histology Patch Classifier Comparison — Overview

This package walks through a small, end-to-end comparison of three
classifiers on pre-cropped histology patches (tumour vs. immune cells):

1) Data loading and splitting (``histo_compare.data``)
	- Why: fixed-size patches and a class-balanced, deterministic split make
	  every model see exactly the same train and test blocks.
	- What you learn: reproducible shuffling and leakage-free hold-out sets.

2) Feature extraction (``histo_compare.features``)
	- Why: the CNN learns its own features from raw pixels, while the
	  classical models need a hand-engineered descriptor (HOG).
	- What you learn: gradient-orientation histograms and tensor transforms.

3) Dimensionality reduction (``histo_compare.reduction``)
	- Why: HOG vectors are long and redundant; PCA keeps the components that
	  explain 95% of the training variance.
	- What you learn: fitting on train only and projecting test features.

4) Model training (``histo_compare.training``)
	- Random Forest and SVM on HOG+PCA with cross-validated grid search, and
	  a small CNN with held-out early stopping.

5) Evaluation and reporting (``histo_compare.evaluation``,
   ``histo_compare.reporting``)
	- Why: a screening task cares most about sensitivity; the confusion
	  matrix gives accuracy, sensitivity, specificity, PPV and NPV.
	- What you learn: comparing models with the metrics the application
	  needs and presenting the evidence as a slide deck.

Run everything with ``python -m histo_compare.run_experiment``; artifacts are
written under ``outputs/``.
"""

__version__ = "0.1.0"
