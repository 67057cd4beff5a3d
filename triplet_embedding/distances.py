"""Distances between matching rows of two embedded batches.

Every function maps two (n, d) arrays to an (n,) array and stays
differentiable everywhere, including at coincident rows and zero rows, since
the losses are built from them.
"""

import jax
import jax.numpy as jnp

_EPS = 1e-12


def _safe_norm(x):
    # clamping under the root keeps d/dx finite at x == 0
    return jnp.sqrt(jnp.maximum(jnp.sum(x * x, axis=-1), _EPS))


@jax.jit
def squared_euclidean_dist(a, b):
    diff = a - b
    return jnp.sum(diff * diff, axis=-1)


@jax.jit
def euclidean_dist(a, b):
    """Length of a - b per row, never below sqrt(_EPS)."""
    return _safe_norm(a - b)


@jax.jit
def manhattan_dist(a, b):
    return jnp.sum(jnp.abs(a - b), axis=-1)


@jax.jit
def chebyshev_dist(a, b):
    return jnp.max(jnp.abs(a - b), axis=-1)


@jax.jit
def cosine_dist(a, b):
    """One minus the cosine of the angle between a and b per row.

    A zero row has no direction; it is treated as orthogonal to everything,
    so its distance is 1 and its gradient is finite.
    """
    similarity = jnp.sum(a * b, axis=-1) / (_safe_norm(a) * _safe_norm(b))
    return 1. - similarity


named_distances = {
    'euclidean': euclidean_dist,
    'squared_euclidean': squared_euclidean_dist,
    'manhattan': manhattan_dist,
    'chebyshev': chebyshev_dist,
    'cosine': cosine_dist,
}


def get_distance_fn(distance):
    """Look up a distance by name; callables are returned unchanged."""
    if callable(distance):
        return distance
    try:
        return named_distances[distance]
    except KeyError:
        raise ValueError(f'Unknown distance {distance!r}, use one of {sorted(named_distances)}.') from None
