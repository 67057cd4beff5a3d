"""Triplet sampling from a neighbor index.

Each triplet is (anchor, positive, negative): the positive comes from the
anchor's neighbor list, the negative from outside it.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
from absl import logging

from triplet_embedding import settings


def positive_permutations(seed, cycle, n_points, k):
    """Per-anchor permutations of the neighbor slots for one sampling cycle.

    Every row is an independent shuffle of 0..k-1, so epoch ``e`` of the cycle
    picks slot ``perm[:, e % k]`` and each anchor visits every neighbor exactly
    once per cycle.
    """
    rng = np.random.default_rng([seed, cycle])
    slots = np.tile(np.arange(k, dtype=np.int32), (n_points, 1))
    return rng.permuted(slots, axis=1)


def rejection_sample(rng, anchors, neighbors, n_points, max_retries):
    """Uniformly sample one negative per anchor outside its neighbor list.

    Draws that hit the anchor or one of its neighbors are redrawn at most
    ``max_retries`` times; whatever remains after that is kept, only making
    sure it differs from the anchor.

    Returns:
      (negatives, n_unchecked) where n_unchecked counts rows that exhausted
      their retries.
    """
    negatives = rng.integers(0, n_points, size=anchors.shape[0])
    rejects = neighbors[anchors]

    def is_rejected(candidates, rows):
        return np.logical_or(candidates == anchors[rows],
                             np.any(rejects[rows] == candidates.reshape([-1, 1]), axis=1))

    pending = np.flatnonzero(is_rejected(negatives, np.arange(anchors.shape[0])))
    for _ in range(max_retries):
        if pending.size == 0:
            break
        negatives[pending] = rng.integers(0, n_points, size=pending.size)
        pending = pending[is_rejected(negatives[pending], pending)]

    if pending.size and n_points > 1:
        # unchecked draw from every point except the anchor itself
        offsets = rng.integers(1, n_points, size=pending.size)
        negatives[pending] = (anchors[pending] + offsets) % n_points
    return negatives, pending.size


class TripletSampler:
    """Draws (anchor, positive, negative) triplets for a training epoch.

    Sampling is a pure function of (seed, epoch, batch): each batch uses its own
    random stream, so results do not depend on the number of workers or on the
    order in which batches are produced.
    """

    def __init__(self, neighbor_index, seed=0, max_retries=settings.MAX_NEGATIVE_RETRIES, n_jobs=1):
        if max_retries < 0:
            raise ValueError(f'max_retries must be non-negative, got {max_retries}.')
        self.neighbor_index = neighbor_index
        self.seed = 0 if seed is None else int(seed)
        self.max_retries = max_retries
        self.n_jobs = max(1, n_jobs)
        self._cycle = None
        self._permutations = None

    @property
    def n_points(self):
        return self.neighbor_index.n_points

    def _positive_slots(self, epoch):
        k = self.neighbor_index.k
        cycle = epoch // k
        if cycle != self._cycle:
            self._permutations = positive_permutations(self.seed, cycle, self.n_points, k)
            self._cycle = cycle
        return self._permutations[:, epoch % k]

    def sample(self, anchors, epoch, batch=0):
        """Sample one triplet per anchor.

        Args:
          anchors: Anchor identifiers.
          epoch: Epoch number, selects the positive slot of every anchor.
          batch: Batch number, selects the random stream for negatives.

        Returns:
          int32 array of shape (len(anchors), 3).
        """
        anchors = np.asarray(anchors, dtype=np.int64)
        neighbors = self.neighbor_index.neighbors
        slots = self._positive_slots(epoch)[anchors]
        positives = neighbors[anchors, slots]
        rng = np.random.default_rng(np.random.SeedSequence([self.seed, epoch, batch]))
        negatives, n_unchecked = rejection_sample(rng, anchors, neighbors, self.n_points, self.max_retries)
        if n_unchecked:
            logging.log_every_n(logging.WARNING,
                                'accepted %d negatives without neighbor check after %d retries',
                                100, n_unchecked, self.max_retries)
        return np.stack([anchors, positives, negatives], axis=1).astype(np.int32)

    def epoch_order(self, epoch, shuffle=True):
        if not shuffle:
            return np.arange(self.n_points)
        rng = np.random.default_rng(np.random.SeedSequence([self.seed, epoch]))
        return rng.permutation(self.n_points)

    def epoch_batches(self, epoch, batch_size, shuffle=True):
        """Yield triplet batches covering every anchor once for an epoch."""
        order = self.epoch_order(epoch, shuffle)
        # prime the permutation cache before workers read it
        self._positive_slots(epoch)
        chunks = [order[start:start + batch_size] for start in range(0, order.shape[0], batch_size)]
        if self.n_jobs == 1 or len(chunks) == 1:
            for batch, anchors in enumerate(chunks):
                yield self.sample(anchors, epoch, batch)
            return
        with ThreadPoolExecutor(max_workers=self.n_jobs) as pool:
            yield from pool.map(lambda args: self.sample(args[1], epoch, args[0]), enumerate(chunks))
