import numpy as np

from triplet_embedding import settings
from triplet_embedding.errors import NotTrained
from triplet_embedding.validation import check_points


def embed(network, points, batch_size=settings.INFERENCE_BATCH_SIZE):
    """Embed points with a frozen network.

    Works for training points and out-of-sample points alike; the result
    depends only on the frozen parameters and the input.

    Returns:
      float32 numpy array of shape (n_points, embedding_dims).
    """
    if network is None or not network.is_frozen:
        raise NotTrained('The model must be fitted before points can be embedded.')
    data = check_points(points, expected_dims=network.input_dims)
    apply_fn = network.compiled_embed_fn
    outputs = [np.asarray(apply_fn(network.params, data[start:start + batch_size]))
               for start in range(0, data.shape[0], batch_size)]
    return np.concatenate(outputs, axis=0).astype(np.float32, copy=False)
