"""Tests for the embedding network and its state machine."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from triplet_embedding.errors import NotTrained
from triplet_embedding.networks import ARCHITECTURES, EmbeddingNetwork, NetworkStatus, get_architecture


@pytest.mark.parametrize("model", sorted(ARCHITECTURES))
def test_named_architectures_output_embedding_dims(model):
    network = EmbeddingNetwork(3, model=model)
    params = network.initialize(jax.random.PRNGKey(0), 10)

    out = network.embed_fn(params, jnp.ones((4, 10)))

    assert out.shape == (4, 3)


def test_custom_hidden_layers():
    assert get_architecture([8, 4]) == ((8, 4), 'selu')
    with pytest.raises(ValueError):
        get_architecture('resnet')
    with pytest.raises(ValueError):
        get_architecture([8, 0])


def test_state_machine():
    network = EmbeddingNetwork(2, model=(8,))
    assert network.status is NetworkStatus.UNINITIALIZED

    params = network.initialize(jax.random.PRNGKey(0), 3)
    assert network.status is NetworkStatus.INITIALIZED
    with pytest.raises(RuntimeError):
        network.update(params)
    with pytest.raises(NotTrained):
        network.apply(jnp.ones((1, 3)))

    network.begin_training()
    network.update(params)
    network.freeze()
    assert network.is_frozen
    assert network.apply(jnp.ones((1, 3))).shape == (1, 2)

    with pytest.raises(RuntimeError):
        network.update(params)
    with pytest.raises(RuntimeError):
        network.begin_training()


def test_embed_fn_is_differentiable():
    network = EmbeddingNetwork(2, model=(8, 8))
    params = network.initialize(jax.random.PRNGKey(1), 4)
    x = jnp.ones((5, 4))

    grads = jax.grad(lambda p: jnp.sum(network.embed_fn(p, x) ** 2))(params)

    leaves = jax.tree_util.tree_leaves(grads)
    assert leaves
    assert all(np.all(np.isfinite(np.asarray(leaf))) for leaf in leaves)


def test_same_key_gives_same_parameters():
    a = EmbeddingNetwork(2, model=(8,)).initialize(jax.random.PRNGKey(7), 4)
    b = EmbeddingNetwork(2, model=(8,)).initialize(jax.random.PRNGKey(7), 4)

    for leaf_a, leaf_b in zip(jax.tree_util.tree_leaves(a), jax.tree_util.tree_leaves(b)):
        np.testing.assert_array_equal(leaf_a, leaf_b)


def test_embedding_dims_must_be_positive():
    with pytest.raises(ValueError):
        EmbeddingNetwork(0)
