"""Exceptions raised by the embedding engine."""


class EmbeddingError(Exception):
    """Base class for all embedding engine errors."""


class InvalidDimension(EmbeddingError, ValueError):
    """Input points are not a finite matrix of a consistent dimension."""


class InsufficientData(EmbeddingError, ValueError):
    """Too few points to build neighborhoods or train on."""


class DivergedTraining(EmbeddingError, RuntimeError):
    """The training loss or parameters became non-finite.

    The network has already been frozen on ``checkpoint``, the best parameters
    observed before training diverged.
    """

    def __init__(self, message, epoch=None, checkpoint=None, history=None):
        super().__init__(message)
        self.epoch = epoch
        self.checkpoint = checkpoint
        self.history = list(history) if history is not None else []


class NotTrained(EmbeddingError, RuntimeError):
    """Inference was requested before a frozen network exists."""
