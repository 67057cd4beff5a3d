"""Triplet-ranking losses on embedded (anchor, positive, negative) rows.

Every loss takes the three embedded batches and returns a scalar mean, smaller
when positives sit closer to their anchors than negatives do.
"""

import functools

import jax
import jax.numpy as jnp

from triplet_embedding.distances import get_distance_fn, squared_euclidean_dist


def margin_loss(anchor, positive, negative, margin=1.0, distance='euclidean'):
    """Standard triplet margin loss: max(d(a, p) - d(a, n) + margin, 0)."""
    distance_fn = get_distance_fn(distance)
    d_pos = distance_fn(anchor, positive)
    d_neg = distance_fn(anchor, negative)
    return jnp.mean(jax.nn.relu(d_pos - d_neg + margin))


def pn_loss(anchor, positive, negative, margin=1.0):
    """Margin loss against the harder of the two negative distances.

    The negative is compared with both the anchor and the positive, and the
    shorter of the two distances is used.
    """
    d_pos = get_distance_fn('euclidean')(anchor, positive)
    d_an = get_distance_fn('euclidean')(anchor, negative)
    d_pn = get_distance_fn('euclidean')(positive, negative)
    return jnp.mean(jax.nn.relu(d_pos - jnp.minimum(d_an, d_pn) + margin))


def softmax_ratio_loss(anchor, positive, negative, margin=None):
    """Softmax over (d(a, p), d(a, n)); drives the positive share to zero."""
    del margin
    d_pos = get_distance_fn('euclidean')(anchor, positive)
    d_neg = get_distance_fn('euclidean')(anchor, negative)
    softmax = jax.nn.softmax(jnp.stack([d_pos, d_neg], axis=-1), axis=-1)
    return jnp.mean(softmax[..., 0] ** 2 + (1. - softmax[..., 1]) ** 2)


def softmax_ratio_pn_loss(anchor, positive, negative, margin=None):
    """softmax_ratio_loss using the harder of the two negative distances."""
    del margin
    euclidean = get_distance_fn('euclidean')
    d_pos = euclidean(anchor, positive)
    d_neg = jnp.minimum(euclidean(anchor, negative), euclidean(positive, negative))
    softmax = jax.nn.softmax(jnp.stack([d_pos, d_neg], axis=-1), axis=-1)
    return jnp.mean(softmax[..., 0] ** 2 + (1. - softmax[..., 1]) ** 2)


def ratio_loss(anchor, positive, negative, margin=None):
    """TriMap ratio loss: 1 / (1 + (1 + d(a, n)) / (1 + d(a, p)))."""
    del margin
    sim_distance = 1. + squared_euclidean_dist(anchor, positive)
    out_distance = 1. + squared_euclidean_dist(anchor, negative)
    return jnp.mean(1. / (1. + out_distance / sim_distance))


_LOSSES = {
    'pn': pn_loss,
    'softmax_ratio': softmax_ratio_loss,
    'softmax_ratio_pn': softmax_ratio_pn_loss,
    'ratio': ratio_loss,
}

_MARGIN_DISTANCES = ('euclidean', 'manhattan', 'chebyshev', 'cosine')

LOSS_NAMES = tuple(_LOSSES) + _MARGIN_DISTANCES


def get_loss_fn(name, margin=1.0):
    """Get a loss function loss(anchor, positive, negative) -> scalar."""
    if callable(name):
        return name
    if name in _LOSSES:
        return functools.partial(_LOSSES[name], margin=margin)
    if name in _MARGIN_DISTANCES:
        return functools.partial(margin_loss, margin=margin, distance=name)
    raise ValueError(f'Loss {name} not supported, use one of {LOSS_NAMES}.')


def count_violations(anchor, positive, negative, distance='euclidean'):
    """Number of triplets whose positive is not closer than the negative."""
    distance_fn = get_distance_fn(distance)
    return jnp.sum(distance_fn(anchor, positive) >= distance_fn(anchor, negative))
