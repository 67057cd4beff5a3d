import enum
from typing import Callable, Sequence

import jax
import jax.numpy as jnp
from flax import linen as nn

from triplet_embedding.errors import NotTrained

# Named architectures: hidden layer sizes and activation
ARCHITECTURES = {
    'szubert': ((128, 128, 128), 'selu'),
    'hinton': ((2000, 1000, 500), 'relu'),
    'maaten': ((500, 500, 2000), 'relu'),
}

ACTIVATIONS = {
    'relu': nn.relu,
    'selu': nn.selu,
    'elu': nn.elu,
    'tanh': nn.tanh,
    'gelu': nn.gelu,
}


class MLP(nn.Module):
    out_dims: int
    hidden_dims: Sequence[int] = (128, 128, 128)
    activation_fn: Callable = nn.selu
    kernel_init: Callable = nn.initializers.lecun_normal()
    bias_init: Callable = nn.initializers.zeros
    use_residual_connections: bool = False

    @nn.compact
    def __call__(self, x):
        for idx, width in enumerate(self.hidden_dims):
            skip = x
            x = nn.Dense(width, kernel_init=self.kernel_init, bias_init=self.bias_init)(x)

            if self.use_residual_connections and idx > 0 and skip.shape[-1] == width:
                x = x + skip

            x = self.activation_fn(x)
        return nn.Dense(self.out_dims, kernel_init=self.kernel_init, bias_init=self.bias_init)(x)


def get_architecture(model):
    """Resolve a model selector to (hidden_dims, activation name).

    ``model`` is a name from ARCHITECTURES or a sequence of hidden layer sizes,
    which then uses selu activations.
    """
    if isinstance(model, str):
        if model not in ARCHITECTURES:
            raise ValueError(f'Model {model} not supported, use one of {sorted(ARCHITECTURES)}.')
        return ARCHITECTURES[model]
    hidden_dims = tuple(int(width) for width in model)
    if any(width < 1 for width in hidden_dims):
        raise ValueError(f'Hidden layer sizes must be positive, got {hidden_dims}.')
    return hidden_dims, 'selu'


def build_module(model, embedding_dims, activation=None):
    hidden_dims, default_activation = get_architecture(model)
    activation = activation or default_activation
    if activation not in ACTIVATIONS:
        raise ValueError(f'Activation {activation} not supported.')
    kernel_init = (nn.initializers.lecun_normal() if activation == 'selu'
                   else nn.initializers.kaiming_normal())
    return MLP(out_dims=embedding_dims,
               hidden_dims=hidden_dims,
               activation_fn=ACTIVATIONS[activation],
               kernel_init=kernel_init)


class NetworkStatus(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    INITIALIZED = 'initialized'
    TRAINING = 'training'
    FROZEN = 'frozen'


class EmbeddingNetwork:
    """A parametric map from input space to embedding space.

    Parameters live outside the Flax module and move through the states
    uninitialized -> initialized -> training -> frozen. Only a training
    network accepts new parameters, and only a frozen one embeds points.
    """

    def __init__(self, embedding_dims, model='szubert', activation=None):
        if embedding_dims < 1:
            raise ValueError(f'embedding_dims must be positive, got {embedding_dims}.')
        self.embedding_dims = embedding_dims
        self.model = model
        self.activation = activation
        self.module = build_module(model, embedding_dims, activation)
        self.input_dims = None
        self.status = NetworkStatus.UNINITIALIZED
        self._params = None
        self._compiled_embed_fn = None

    @property
    def params(self):
        return self._params

    @property
    def compiled_embed_fn(self):
        if self._compiled_embed_fn is None:
            self._compiled_embed_fn = jax.jit(self.embed_fn)
        return self._compiled_embed_fn

    def embed_fn(self, params, x):
        """Pure embedding function f(params, x); shared by anchor, positive and negative."""
        return self.module.apply({'params': params}, x)

    def initialize(self, key, input_dims):
        self._require(NetworkStatus.UNINITIALIZED)
        variables = self.module.init(key, jnp.ones((1, input_dims), dtype=jnp.float32))
        self.input_dims = input_dims
        self._params = variables['params']
        self.status = NetworkStatus.INITIALIZED
        return self._params

    def load(self, params, input_dims):
        """Install known parameters and freeze, used when restoring a saved model."""
        self._require(NetworkStatus.UNINITIALIZED)
        self.input_dims = input_dims
        self._params = params
        self.status = NetworkStatus.FROZEN

    def begin_training(self):
        self._require(NetworkStatus.INITIALIZED)
        self.status = NetworkStatus.TRAINING

    def update(self, params):
        if self.status is not NetworkStatus.TRAINING:
            raise RuntimeError(f'Parameters can only change while training, network is {self.status.value}.')
        self._params = params

    def freeze(self, params=None):
        if self.status not in (NetworkStatus.INITIALIZED, NetworkStatus.TRAINING):
            raise RuntimeError(f'Cannot freeze a network that is {self.status.value}.')
        if params is not None:
            self._params = params
        self._params = jax.tree_util.tree_map(jnp.asarray, self._params)
        self.status = NetworkStatus.FROZEN

    @property
    def is_frozen(self):
        return self.status is NetworkStatus.FROZEN

    def apply(self, x):
        if not self.is_frozen:
            raise NotTrained('The embedding network has not finished training.')
        return self.embed_fn(self._params, x)

    def _require(self, status):
        if self.status is not status:
            raise RuntimeError(f'Expected a {status.value} network, network is {self.status.value}.')

    def __repr__(self):
        return (f'EmbeddingNetwork(model={self.model!r}, embedding_dims={self.embedding_dims}, '
                f'status={self.status.value})')
