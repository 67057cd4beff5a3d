"""Training loop for the embedding network.

Each step samples a batch of triplets, embeds the anchor, positive and negative
rows with the same parameters, and applies an optax update against a triplet
loss. Epoch losses drive early stopping; the best parameters seen so far are
kept as a value snapshot and restored when training ends.
"""

import dataclasses
import datetime
import math
import threading
import time
from typing import Any, Callable, List, Optional, Sequence

import jax
import jax.numpy as jnp
import numpy as np
import optax
from absl import logging
from flax.training import train_state

from triplet_embedding import settings
from triplet_embedding.errors import DivergedTraining
from triplet_embedding.losses import count_violations, get_loss_fn

_DISPLAY_EPOCHS = 10

STOP_CONVERGED = 'converged'
STOP_MAX_EPOCHS = 'max_epochs'
STOP_CANCELLED = 'cancelled'
STOP_DIVERGED = 'diverged'


def snapshot(params):
    """Deep copy of a parameter tree as host numpy arrays."""
    return jax.tree_util.tree_map(lambda x: np.array(x, copy=True), params)


def restore(params_snapshot):
    return jax.tree_util.tree_map(jnp.asarray, params_snapshot)


def make_optimizer(name, learning_rate):
    if name == 'adam':
        return optax.adam(learning_rate)
    elif name == 'sgd':
        return optax.sgd(learning_rate, momentum=0.9)
    elif name == 'rmsprop':
        return optax.rmsprop(learning_rate)
    else:
        raise ValueError(f'Optimizer {name} not supported.')


@dataclasses.dataclass
class TrainingState:
    """Progress of one training run."""
    epoch: int = 0
    history: List[float] = dataclasses.field(default_factory=list)
    best_history: List[float] = dataclasses.field(default_factory=list)
    best_loss: float = math.inf
    best_epoch: int = -1
    best_params: Any = None
    epochs_without_progress: int = 0
    stop_reason: Optional[str] = None
    violation_history: List[float] = dataclasses.field(default_factory=list)

    def record(self, loss, params, min_delta=0.0, violated=None):
        """Record an epoch loss and refresh the best snapshot on improvement.

        ``params`` must be finite; the trainer diverges before recording
        anything else.

        Returns:
          Whether the epoch improved on the best loss by more than min_delta.
        """
        self.history.append(loss)
        if violated is not None:
            self.violation_history.append(violated)
        improved = loss < self.best_loss - min_delta
        if improved:
            self.best_loss = loss
            self.best_epoch = self.epoch
            self.best_params = snapshot(params)
            self.epochs_without_progress = 0
        else:
            self.epochs_without_progress += 1
        self.best_history.append(self.best_loss)
        self.epoch += 1
        return improved


def all_finite(params):
    """Whether every leaf of a parameter tree is free of NaN and infinity."""
    leaves = jax.tree_util.tree_leaves(params)
    return jnp.all(jnp.stack([jnp.all(jnp.isfinite(leaf)) for leaf in leaves]))


def make_train_step(embed_fn, loss_fn):
    """Build a jitted step applying embed_fn to all three triplet roles.

    The step returns the updated state, the batch loss, the number of
    violated triplets and whether the loss and updated parameters are finite.
    """

    def triplet_loss(params, inputs, triplets):
        anchor = embed_fn(params, inputs[triplets[:, 0]])
        positive = embed_fn(params, inputs[triplets[:, 1]])
        negative = embed_fn(params, inputs[triplets[:, 2]])
        return loss_fn(anchor, positive, negative), count_violations(anchor, positive, negative)

    @jax.jit
    def train_step(state, inputs, triplets):
        (loss, n_violated), grads = jax.value_and_grad(triplet_loss, has_aux=True)(
            state.params, inputs, triplets)
        state = state.apply_gradients(grads=grads)
        finite = jnp.logical_and(jnp.isfinite(loss), all_finite(state.params))
        return state, loss, n_violated, finite

    return train_step


class Trainer:
    """Optimizes an EmbeddingNetwork on triplets drawn by a TripletSampler."""

    def __init__(self,
                 network,
                 sampler,
                 loss=settings.DISTANCE,
                 margin=settings.MARGIN,
                 learning_rate=settings.LEARNING_RATE,
                 optimizer=settings.OPTIMIZER,
                 batch_size=settings.BATCH_SIZE,
                 epochs=settings.EPOCHS,
                 n_epochs_without_progress=settings.N_EPOCHS_WITHOUT_PROGRESS,
                 min_delta=settings.MIN_DELTA,
                 callbacks: Sequence[Callable] = (),
                 cancel_event: Optional[threading.Event] = None,
                 verbose=False):
        if batch_size < 1:
            raise ValueError(f'batch_size must be positive, got {batch_size}.')
        if epochs < 1:
            raise ValueError(f'epochs must be positive, got {epochs}.')
        if n_epochs_without_progress < 1:
            raise ValueError(f'n_epochs_without_progress must be positive, got {n_epochs_without_progress}.')
        self.network = network
        self.sampler = sampler
        self.loss_fn = get_loss_fn(loss, margin)
        self.tx = make_optimizer(optimizer, learning_rate)
        self.batch_size = batch_size
        self.epochs = epochs
        self.n_epochs_without_progress = n_epochs_without_progress
        self.min_delta = min_delta
        self.callbacks = list(callbacks)
        self.verbose = verbose
        self.state = None
        self._cancel = cancel_event if cancel_event is not None else threading.Event()
        self._train_step = make_train_step(network.embed_fn, self.loss_fn)

    def cancel(self):
        """Ask training to stop at the next epoch boundary."""
        self._cancel.set()

    def _diverge(self, state, epoch):
        # best_params only ever holds finite parameters
        state.stop_reason = STOP_DIVERGED
        self.network.freeze(restore(state.best_params))
        raise DivergedTraining(
            f'Loss or parameters became non-finite at epoch {epoch}; '
            f'keeping parameters from epoch {state.best_epoch}.',
            epoch=epoch, checkpoint=state.best_params, history=state.history)

    def fit(self, inputs):
        """Train the network on inputs and freeze it on the best parameters.

        Args:
          inputs: Validated float32 points, row i matching neighbor index entry i.

        Returns:
          The final TrainingState.

        Raises:
          DivergedTraining: a batch loss or the updated parameters became non-finite.
        """
        if self.verbose:
            t = time.time()
        inputs = jnp.asarray(inputs)
        self.network.begin_training()
        opt_state = train_state.TrainState.create(apply_fn=self.network.embed_fn,
                                                  params=self.network.params,
                                                  tx=self.tx)
        state = TrainingState(best_params=snapshot(opt_state.params))
        self.state = state

        for epoch in range(self.epochs):
            batch_losses = []
            n_violated = 0
            n_triplets = 0
            for triplets in self.sampler.epoch_batches(epoch, self.batch_size):
                opt_state, loss, batch_violated, finite = self._train_step(
                    opt_state, inputs, jnp.asarray(triplets))
                if not bool(finite):
                    self._diverge(state, epoch)
                batch_losses.append(loss)
                n_violated += int(batch_violated)
                n_triplets += triplets.shape[0]
            epoch_loss = float(jnp.mean(jnp.stack(batch_losses)))
            violated = n_violated / n_triplets

            self.network.update(opt_state.params)
            state.record(epoch_loss, opt_state.params, self.min_delta, violated=violated)
            for callback in self.callbacks:
                callback(epoch, epoch_loss, state)
            if self.verbose and (epoch + 1) % _DISPLAY_EPOCHS == 0:
                logging.info('Epoch: %4d / %4d, Loss: %3.5f, Best: %3.5f, Violated triplets: %0.4f',
                             epoch + 1, self.epochs, epoch_loss, state.best_loss, violated * 100.0)

            # best snapshot is already up to date when stopping here
            if state.epochs_without_progress >= self.n_epochs_without_progress:
                state.stop_reason = STOP_CONVERGED
                break
            if self._cancel.is_set():
                state.stop_reason = STOP_CANCELLED
                break
        else:
            state.stop_reason = STOP_MAX_EPOCHS

        self.network.freeze(restore(state.best_params))
        if self.verbose:
            elapsed = str(datetime.timedelta(seconds=time.time() - t))
            logging.info('Training stopped (%s) after %d epochs, best loss %3.5f at epoch %d. Elapsed time: %s',
                         state.stop_reason, state.epoch, state.best_loss, state.best_epoch + 1, elapsed)
        return state
