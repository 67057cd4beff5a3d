import numpy as np

from triplet_embedding.errors import InsufficientData, InvalidDimension


def _row_lengths(points):
    lengths = set()
    for row in points:
        try:
            lengths.add(len(row))
        except TypeError:
            raise InvalidDimension('Each point must be a sequence of numbers.') from None
    return lengths


def check_points(points, expected_dims=None):
    """Validate input points and return them as a 2-D float32 array.

    Args:
      points: Array-like of shape (n_points, n_dims), or a sequence of rows.
      expected_dims: If given, the dimension every point must have.

    Returns:
      A float32 numpy array of shape (n_points, n_dims).

    Raises:
      InvalidDimension: rows of different lengths, wrong rank or dimension, or
        non-finite values.
      InsufficientData: no points at all.
    """
    if not isinstance(points, np.ndarray) and not hasattr(points, '__array__'):
        lengths = _row_lengths(points)
        if len(lengths) > 1:
            raise InvalidDimension(
                f'All points must share one dimension, got lengths {sorted(lengths)}.')

    try:
        data = np.asarray(points, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise InvalidDimension(f'Points could not be read as a numeric matrix: {exc}') from exc

    if data.ndim != 2:
        raise InvalidDimension(f'Expected a 2-D matrix of points, got an array with {data.ndim} dimensions.')
    if data.shape[0] == 0:
        raise InsufficientData('At least one point is required.')
    if expected_dims is not None and data.shape[1] != expected_dims:
        raise InvalidDimension(f'Expected points of dimension {expected_dims}, got {data.shape[1]}.')
    if not np.all(np.isfinite(data)):
        bad_rows = np.flatnonzero(~np.all(np.isfinite(data), axis=1))
        raise InvalidDimension(
            f'Points contain non-finite values (first offending row: {int(bad_rows[0])}).')
    return data
