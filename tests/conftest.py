"""Shared test fixtures for triplet_embedding tests."""

import numpy as np
import pytest
from sklearn.datasets import make_blobs

# Small network so training tests stay fast
SMALL_MODEL = (16, 16)


@pytest.fixture
def blobs():
    """90 points in 5 dimensions around three well separated centers."""
    X, labels = make_blobs(n_samples=90, n_features=5, centers=3, cluster_std=0.5,
                           center_box=(-20.0, 20.0), random_state=0)
    return X.astype(np.float32), labels


@pytest.fixture
def two_pairs():
    """Four points forming two tight, far apart pairs in 2-D."""
    return np.array([
        [0.0, 0.0],
        [0.0, 0.1],
        [10.0, 10.0],
        [10.0, 10.1],
    ], dtype=np.float32)


@pytest.fixture
def identical_points():
    """Ten copies of the same point."""
    return np.tile(np.array([[1.0, 2.0, 3.0]], dtype=np.float32), (10, 1))


@pytest.fixture
def small_model_params():
    """Estimator keyword arguments for quick, deterministic fits."""
    return dict(embedding_dims=2,
                k=5,
                model=SMALL_MODEL,
                batch_size=32,
                epochs=5,
                n_epochs_without_progress=5,
                n_jobs=1,
                random_state=0)
