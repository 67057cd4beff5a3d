import json
from pathlib import Path

import numpy as np


def get_embedding_path(path) -> Path:
    """Normalize an embedding path to its .npy file."""
    path = Path(path)
    return path if path.suffix == '.npy' else path.with_suffix('.npy')


def save_embedding(path, embedding: np.ndarray, metadata: dict = None) -> Path:
    """Save an embedding to disk, with an optional JSON metadata sidecar."""
    embedding_path = get_embedding_path(path)
    embedding_path.parent.mkdir(parents=True, exist_ok=True)
    np.save(embedding_path, np.asarray(embedding))

    if metadata:
        metadata_path = embedding_path.with_suffix('.json')
        with open(metadata_path, 'w') as f:
            json.dump(metadata, f)
    return embedding_path


def embedding_exists(path) -> bool:
    return get_embedding_path(path).exists()


def load_matrix(path) -> np.ndarray:
    """Load an input matrix from a .npy, .csv or .tsv file."""
    path = Path(path)
    if path.suffix == '.npy':
        return np.load(path, allow_pickle=False)
    elif path.suffix in ('.csv', '.tsv'):
        delimiter = ',' if path.suffix == '.csv' else '\t'
        return np.loadtxt(path, delimiter=delimiter, dtype=np.float32, ndmin=2)
    else:
        raise ValueError(f'Unsupported input format {path.suffix}, use .npy, .csv or .tsv.')
