"""Estimator front end: fit on a matrix, transform new matrices, save and load."""

import json
import threading
from pathlib import Path

import jax.numpy as jnp
import jax.random as random
import numpy as np
from absl import logging
from flax import serialization
from sklearn.base import BaseEstimator, TransformerMixin

from triplet_embedding import settings
from triplet_embedding.errors import DivergedTraining, InvalidDimension, NotTrained
from triplet_embedding.inference import embed
from triplet_embedding.networks import EmbeddingNetwork
from triplet_embedding.neighbors import NeighborIndex, resolve_n_jobs
from triplet_embedding.training import Trainer
from triplet_embedding.triplets import TripletSampler
from triplet_embedding.validation import check_points

_FORMAT_VERSION = 1


class TripletEmbedding(BaseEstimator, TransformerMixin):
    """Neighbor-driven triplet embedding with a parametric network.

    Builds a k-nearest-neighbor index over the input, trains a network so that
    each point lands closer to its neighbors than to random other points, and
    embeds any matrix of the same dimension with the trained network.

    Args:
      embedding_dims: Number of output dimensions.
      k: Neighbors per point used as positives.
      distance: Triplet loss name, see losses.LOSS_NAMES.
      margin: Margin of the margin-based losses.
      model: Architecture name ('szubert', 'hinton', 'maaten') or a sequence
        of hidden layer sizes.
      batch_size: Anchors per optimization step.
      epochs: Hard ceiling on training epochs.
      n_epochs_without_progress: Early stopping patience in epochs.
      min_delta: Smallest loss decrease counted as progress.
      learning_rate: Optimizer learning rate.
      optimizer: 'adam', 'sgd' or 'rmsprop'.
      metric: Input space metric for the neighbor search.
      neighbor_method: 'auto', 'exact' or 'nndescent'.
      max_negative_retries: Redraws of a negative that hit a neighbor.
      n_jobs: Workers for neighbor search and triplet sampling, -1 for all cores.
      random_state: Seed; the same seed gives the same embedding.
      verbose: Whether to log progress.
    """

    def __init__(self,
                 embedding_dims=settings.EMBEDDING_DIMS,
                 k=settings.N_NEIGHBORS,
                 distance=settings.DISTANCE,
                 margin=settings.MARGIN,
                 model=settings.MODEL,
                 batch_size=settings.BATCH_SIZE,
                 epochs=settings.EPOCHS,
                 n_epochs_without_progress=settings.N_EPOCHS_WITHOUT_PROGRESS,
                 min_delta=settings.MIN_DELTA,
                 learning_rate=settings.LEARNING_RATE,
                 optimizer=settings.OPTIMIZER,
                 metric=settings.METRIC,
                 neighbor_method=settings.NEIGHBOR_METHOD,
                 max_negative_retries=settings.MAX_NEGATIVE_RETRIES,
                 n_jobs=-1,
                 random_state=None,
                 verbose=False):
        self.embedding_dims = embedding_dims
        self.k = k
        self.distance = distance
        self.margin = margin
        self.model = model
        self.batch_size = batch_size
        self.epochs = epochs
        self.n_epochs_without_progress = n_epochs_without_progress
        self.min_delta = min_delta
        self.learning_rate = learning_rate
        self.optimizer = optimizer
        self.metric = metric
        self.neighbor_method = neighbor_method
        self.max_negative_retries = max_negative_retries
        self.n_jobs = n_jobs
        self.random_state = random_state
        self.verbose = verbose

    def _seed(self):
        if self.random_state is None:
            return int(np.random.SeedSequence().entropy % (2 ** 31))
        return int(self.random_state)

    def fit(self, X, y=None, neighbor_index=None, callbacks=()):
        """Fit the embedding network on X.

        Args:
          X: Input matrix of shape (n_points, n_dims).
          y: Ignored.
          neighbor_index: A NeighborIndex already built on X, reused instead of
            building a new one.
          callbacks: Callables ``callback(epoch, loss, training_state)`` run
            after every epoch.

        Returns:
          self
        """
        data = check_points(X)
        n_points, n_dims = data.shape
        self.seed_ = self._seed()
        n_jobs = resolve_n_jobs(self.n_jobs)
        if self.verbose:
            logging.info('fitting triplet embedding on %d points with dimension %d', n_points, n_dims)

        if neighbor_index is None:
            neighbor_index = NeighborIndex.build(data, self.k,
                                                 metric=self.metric,
                                                 method=self.neighbor_method,
                                                 n_jobs=n_jobs,
                                                 random_state=self.seed_,
                                                 verbose=self.verbose)
        elif neighbor_index.n_points != n_points or neighbor_index.n_dims != n_dims:
            raise InvalidDimension(
                f'Neighbor index covers {neighbor_index.n_points} points of dimension {neighbor_index.n_dims}, '
                f'input has {n_points} points of dimension {n_dims}.')
        self.neighbor_index_ = neighbor_index

        sampler = TripletSampler(neighbor_index, seed=self.seed_,
                                 max_retries=self.max_negative_retries, n_jobs=n_jobs)
        network = EmbeddingNetwork(self.embedding_dims, model=self.model)
        network.initialize(random.PRNGKey(self.seed_), n_dims)
        self.network_ = network
        self.n_features_in_ = n_dims

        self._cancel_event = threading.Event()
        trainer = Trainer(network, sampler,
                          loss=self.distance,
                          margin=self.margin,
                          learning_rate=self.learning_rate,
                          optimizer=self.optimizer,
                          batch_size=self.batch_size,
                          epochs=self.epochs,
                          n_epochs_without_progress=self.n_epochs_without_progress,
                          min_delta=self.min_delta,
                          callbacks=callbacks,
                          cancel_event=self._cancel_event,
                          verbose=self.verbose)
        try:
            self.training_state_ = trainer.fit(data)
        except DivergedTraining:
            # the network is frozen on the last finite checkpoint and stays usable
            self.training_state_ = trainer.state
            self.loss_history_ = list(trainer.state.history)
            raise
        self.loss_history_ = list(self.training_state_.history)
        return self

    def fit_transform(self, X, y=None, **fit_params):
        self.fit(X, y, **fit_params)
        return self.transform(X)

    def transform(self, X):
        """Embed X with the trained network; X may contain unseen points."""
        return embed(getattr(self, 'network_', None), X)

    def cancel(self):
        """Stop a running fit at the next epoch boundary, keeping the best parameters."""
        event = getattr(self, '_cancel_event', None)
        if event is not None:
            event.set()

    def save_model(self, folder_path, overwrite=False):
        """Save hyper-parameters and trained parameters to folder_path."""
        network = getattr(self, 'network_', None)
        if network is None or not network.is_frozen:
            raise NotTrained('Only a fitted model can be saved.')
        folder = Path(folder_path)
        if folder.exists() and any(folder.iterdir()) and not overwrite:
            raise FileExistsError(f'{folder} is not empty, pass overwrite=True to replace it.')
        folder.mkdir(parents=True, exist_ok=True)

        params = self.get_params()
        if not isinstance(params['model'], str):
            params['model'] = list(params['model'])
        config = {
            'format_version': _FORMAT_VERSION,
            'params': params,
            'input_dims': network.input_dims,
            'seed': self.seed_,
        }
        with open(folder / settings.CONFIG_FILENAME, 'w') as f:
            json.dump(config, f, indent=2)
        with open(folder / settings.PARAMS_FILENAME, 'wb') as f:
            f.write(serialization.to_bytes(network.params))

    @classmethod
    def load_model(cls, folder_path):
        """Restore a model written by save_model, ready for transform."""
        folder = Path(folder_path)
        with open(folder / settings.CONFIG_FILENAME, 'r') as f:
            config = json.load(f)
        if config.get('format_version') != _FORMAT_VERSION:
            raise ValueError(f'Unsupported model format version {config.get("format_version")}.')

        params = dict(config['params'])
        if not isinstance(params['model'], str):
            params['model'] = tuple(params['model'])
        estimator = cls(**params)
        input_dims = config['input_dims']

        network = EmbeddingNetwork(estimator.embedding_dims, model=estimator.model)
        template = network.module.init(random.PRNGKey(0), jnp.ones((1, input_dims), dtype=jnp.float32))['params']
        with open(folder / settings.PARAMS_FILENAME, 'rb') as f:
            trained = serialization.from_bytes(template, f.read())
        network.load(trained, input_dims)

        estimator.network_ = network
        estimator.n_features_in_ = input_dims
        estimator.seed_ = config['seed']
        return estimator
