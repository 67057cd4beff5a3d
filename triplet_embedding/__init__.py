"""Neighbor-driven, triplet-loss-trained parametric embeddings."""

from triplet_embedding.errors import (DivergedTraining, EmbeddingError, InsufficientData, InvalidDimension,
                                      NotTrained)
from triplet_embedding.inference import embed
from triplet_embedding.neighbors import NeighborIndex
from triplet_embedding.networks import EmbeddingNetwork, NetworkStatus
from triplet_embedding.training import Trainer, TrainingState
from triplet_embedding.triplets import TripletSampler
from triplet_embedding.wrapper import TripletEmbedding

__version__ = '0.1.0'

__all__ = [
    'DivergedTraining',
    'EmbeddingError',
    'EmbeddingNetwork',
    'InsufficientData',
    'InvalidDimension',
    'NeighborIndex',
    'NetworkStatus',
    'NotTrained',
    'Trainer',
    'TrainingState',
    'TripletEmbedding',
    'TripletSampler',
    'embed',
]
