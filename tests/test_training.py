"""Tests for the training loop: early stopping, divergence, cancellation."""

import math

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from triplet_embedding.errors import DivergedTraining
from triplet_embedding.inference import embed
from triplet_embedding.networks import EmbeddingNetwork
from triplet_embedding.neighbors import NeighborIndex
from triplet_embedding.training import (STOP_CANCELLED, STOP_CONVERGED, STOP_DIVERGED, STOP_MAX_EPOCHS, Trainer,
                                        TrainingState, all_finite, make_optimizer, snapshot)
from triplet_embedding.triplets import TripletSampler

from conftest import SMALL_MODEL


def constant_loss(anchor, positive, negative):
    return jnp.mean(anchor) * 0.0 + 1.0


def diverging_loss(anchor, positive, negative):
    # finite while the mean first coordinate stays below 5, NaN once it overshoots
    return jnp.log(5.0 - jnp.mean(anchor[:, 0]))


def nan_gradient_loss(anchor, positive, negative):
    # value is exactly 1.0 but d sqrt(x) at x == 0 times a zero factor is NaN
    return jnp.sqrt(jnp.sum(anchor * 0.0)) + 1.0


@pytest.fixture
def setup(blobs):
    X, _ = blobs
    index = NeighborIndex.build(X, k=5, method='exact')

    def make(**trainer_kwargs):
        network = EmbeddingNetwork(2, model=SMALL_MODEL)
        network.initialize(jax.random.PRNGKey(0), X.shape[1])
        sampler = TripletSampler(index, seed=0)
        kwargs = dict(batch_size=32, epochs=20, n_epochs_without_progress=5)
        kwargs.update(trainer_kwargs)
        return network, Trainer(network, sampler, **kwargs)

    return X, make


def test_training_reduces_loss_and_freezes(setup):
    X, make = setup
    network, trainer = make(epochs=30, learning_rate=1e-2, n_epochs_without_progress=30)

    state = trainer.fit(X)

    assert network.is_frozen
    assert state.stop_reason in (STOP_MAX_EPOCHS, STOP_CONVERGED)
    assert state.best_loss < state.history[0]
    assert embed(network, X).shape == (90, 2)


def test_best_history_is_non_increasing(setup):
    X, make = setup
    _, trainer = make(epochs=15, learning_rate=5e-2, n_epochs_without_progress=15)

    state = trainer.fit(X)

    assert len(state.best_history) == state.epoch
    assert all(later <= earlier for earlier, later in zip(state.best_history, state.best_history[1:]))
    assert state.best_loss == min(state.history)


def test_final_parameters_are_the_best_snapshot(setup):
    X, make = setup
    network, trainer = make(epochs=10, learning_rate=5e-2, n_epochs_without_progress=10)

    state = trainer.fit(X)

    for final, best in zip(jax.tree_util.tree_leaves(network.params), jax.tree_util.tree_leaves(state.best_params)):
        np.testing.assert_array_equal(np.asarray(final), best)


def test_plateau_stops_after_patience(setup):
    X, make = setup
    network, trainer = make(loss=constant_loss, epochs=50, n_epochs_without_progress=3)

    state = trainer.fit(X)

    assert state.stop_reason == STOP_CONVERGED
    assert state.epoch == 4
    assert state.best_epoch == 0
    assert network.is_frozen


def test_min_delta_counts_small_improvements_as_no_progress():
    state = TrainingState()
    params = {'w': np.zeros(2)}

    assert state.record(1.0, params, min_delta=0.1)
    assert not state.record(0.95, params, min_delta=0.1)
    assert state.epochs_without_progress == 1
    assert state.record(0.8, params, min_delta=0.1)
    assert state.best_history == [1.0, 1.0, 0.8]


def test_snapshot_is_a_copy():
    params = {'w': np.zeros(3, dtype=np.float32)}
    copy = snapshot(params)
    params['w'][0] = 5.0

    assert copy['w'][0] == 0.0


def test_divergence_restores_last_finite_checkpoint(setup):
    X, make = setup
    network, trainer = make(loss=diverging_loss, learning_rate=0.1, epochs=500, n_epochs_without_progress=500)

    with pytest.raises(DivergedTraining) as excinfo:
        trainer.fit(X)

    error = excinfo.value
    assert error.checkpoint is not None
    assert all(math.isfinite(loss) for loss in error.history)
    assert trainer.state.stop_reason == STOP_DIVERGED
    assert network.is_frozen
    assert np.all(np.isfinite(embed(network, X)))



def test_nan_gradient_with_finite_loss_never_reaches_the_network(setup):
    X, make = setup
    network, trainer = make(loss=nan_gradient_loss, epochs=1)
    initial = snapshot(network.params)

    with pytest.raises(DivergedTraining) as excinfo:
        trainer.fit(X)

    error = excinfo.value
    assert error.epoch == 0
    assert error.history == []
    for leaf in jax.tree_util.tree_leaves(error.checkpoint):
        assert np.all(np.isfinite(leaf))
    for leaf in jax.tree_util.tree_leaves(trainer.state.best_params):
        assert np.all(np.isfinite(leaf))
    for final, start in zip(jax.tree_util.tree_leaves(network.params), jax.tree_util.tree_leaves(initial)):
        np.testing.assert_array_equal(np.asarray(final), start)
    assert network.is_frozen
    assert np.all(np.isfinite(embed(network, X)))


def test_all_finite():
    assert bool(all_finite({'w': jnp.ones(3), 'b': jnp.zeros(1)}))
    assert not bool(all_finite({'w': jnp.array([1.0, jnp.nan]), 'b': jnp.zeros(1)}))
    assert not bool(all_finite({'w': jnp.ones(3), 'b': jnp.array([jnp.inf])}))


def test_violated_fraction_is_tracked_per_epoch(setup):
    X, make = setup
    _, trainer = make(epochs=4, n_epochs_without_progress=10)

    state = trainer.fit(X)

    assert len(state.violation_history) == state.epoch == 4
    assert all(0.0 <= violated <= 1.0 for violated in state.violation_history)


def test_cancel_stops_at_epoch_boundary(setup):
    X, make = setup
    network, trainer = make(epochs=50, n_epochs_without_progress=50)

    def cancel_at_third_epoch(epoch, loss, state):
        if epoch == 2:
            trainer.cancel()

    trainer.callbacks.append(cancel_at_third_epoch)
    state = trainer.fit(X)

    assert state.stop_reason == STOP_CANCELLED
    assert state.epoch == 3
    assert state.best_params is not None
    assert network.is_frozen


def test_callbacks_receive_every_epoch(setup):
    X, make = setup
    seen = []
    _, trainer = make(epochs=4, n_epochs_without_progress=10,
                      callbacks=[lambda epoch, loss, state: seen.append((epoch, loss))])

    state = trainer.fit(X)

    assert [epoch for epoch, _ in seen] == [0, 1, 2, 3]
    assert [loss for _, loss in seen] == state.history


def test_max_epochs_is_a_hard_ceiling(setup):
    X, make = setup
    _, trainer = make(epochs=3, n_epochs_without_progress=100)

    state = trainer.fit(X)

    assert state.epoch == 3
    assert state.stop_reason == STOP_MAX_EPOCHS


@pytest.mark.parametrize("kwargs", [{'batch_size': 0}, {'epochs': 0}, {'n_epochs_without_progress': 0}])
def test_invalid_trainer_arguments(setup, kwargs):
    _, make = setup
    with pytest.raises(ValueError):
        make(**kwargs)


def test_unknown_optimizer():
    with pytest.raises(ValueError):
        make_optimizer('lbfgs', 1e-3)
