"""k-nearest-neighbor index over the training points.

Small datasets use an exact brute force search from scikit-learn, issued in row
chunks on a thread pool. Large datasets use the approximate NN-descent graph
from pynndescent, which scales sub-quadratically with the number of points.
"""

import os
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pynndescent
from absl import logging
from sklearn.neighbors import NearestNeighbors

from triplet_embedding import settings
from triplet_embedding.errors import InsufficientData
from triplet_embedding.validation import check_points

_METHODS = ('auto', 'exact', 'nndescent')


def resolve_n_jobs(n_jobs):
    if n_jobs is None or n_jobs == 0:
        return 1
    if n_jobs < 0:
        return max(1, (os.cpu_count() or 1) + 1 + n_jobs)
    return n_jobs


def exclude_self(indices, distances):
    """Remove each row's own identifier from its candidate list.

    Candidates hold one more column than wanted. When a row's own identifier
    is missing (several points tie at distance zero), the farthest candidate
    is dropped instead so every row keeps the same length.
    """
    n_rows, n_candidates = indices.shape
    row_ids = np.arange(n_rows).reshape([-1, 1])
    drop = indices == row_ids
    missing_self = ~np.any(drop, axis=1)
    drop[missing_self, -1] = True
    keep = ~drop
    indices = indices[keep].reshape([n_rows, n_candidates - 1])
    distances = distances[keep].reshape([n_rows, n_candidates - 1])
    return indices, distances


class NeighborIndex:
    """Immutable k-nearest-neighbor lists for every point of a dataset."""

    def __init__(self, neighbors, distances, n_dims, method, metric, backend=None):
        neighbors = np.ascontiguousarray(neighbors, dtype=np.int32)
        distances = np.ascontiguousarray(distances, dtype=np.float32)
        neighbors.setflags(write=False)
        distances.setflags(write=False)
        self._neighbors = neighbors
        self._distances = distances
        self._n_dims = n_dims
        self._backend = backend
        self.method = method
        self.metric = metric

    @classmethod
    def build(cls,
              points,
              k,
              metric=settings.METRIC,
              method=settings.NEIGHBOR_METHOD,
              n_jobs=-1,
              random_state=None,
              exact_threshold=settings.EXACT_THRESHOLD,
              verbose=False):
        """Build the neighbor lists of every point.

        Args:
          points: Input points, shape (n_points, n_dims).
          k: Number of neighbors per point. Clamped to n_points - 1.
          metric: Input space metric understood by scikit-learn and pynndescent.
          method: 'exact', 'nndescent', or 'auto' to pick by dataset size.
          n_jobs: Worker count, -1 for all cores.
          random_state: Seed for the approximate search.
          exact_threshold: Largest dataset searched exactly in 'auto' mode.
          verbose: Whether to log progress.

        Returns:
          A NeighborIndex.
        """
        if k < 1:
            raise ValueError(f'k must be a positive integer, got {k}.')
        if method not in _METHODS:
            raise ValueError(f'Neighbor method {method} not supported, use one of {_METHODS}.')
        data = check_points(points)
        n_points, n_dims = data.shape
        if n_points < 2:
            raise InsufficientData(f'At least two points are needed to find neighbors, got {n_points}.')

        k_eff = min(k, n_points - 1)
        if k_eff < k:
            logging.warning('k=%d is not smaller than the number of points (%d), '
                            'using all %d other points as neighbors.', k, n_points, k_eff)
        if method == 'auto':
            method = 'exact' if n_points <= exact_threshold else 'nndescent'

        if verbose:
            t = time.time()
            logging.info('building %s neighbor index: %d points, dimension %d, k=%d',
                         method, n_points, n_dims, k_eff)
        n_jobs = resolve_n_jobs(n_jobs)
        if method == 'exact':
            backend, candidates, candidate_distances = cls._search_exact(data, k_eff + 1, metric, n_jobs)
        else:
            backend, candidates, candidate_distances = cls._search_nndescent(
                data, k_eff + 1, metric, n_jobs, random_state)
        neighbors, distances = exclude_self(candidates, candidate_distances)
        if verbose:
            logging.info('found nearest neighbors in %.2fs', time.time() - t)
        return cls(neighbors, distances, n_dims, method, metric, backend=backend)

    @staticmethod
    def _search_exact(data, n_candidates, metric, n_jobs):
        nn = NearestNeighbors(n_neighbors=n_candidates, metric=metric, algorithm='brute')
        nn.fit(data)
        n_points = data.shape[0]
        indices = np.empty((n_points, n_candidates), dtype=np.int64)
        distances = np.empty((n_points, n_candidates), dtype=np.float32)

        def search_chunk(start):
            end = min(start + settings.QUERY_CHUNK_SIZE, n_points)
            dist, ind = nn.kneighbors(data[start:end])
            # each worker owns a disjoint slice of the output
            indices[start:end] = ind
            distances[start:end] = dist

        starts = range(0, n_points, settings.QUERY_CHUNK_SIZE)
        with ThreadPoolExecutor(max_workers=n_jobs) as pool:
            list(pool.map(search_chunk, starts))
        return nn, indices, distances

    @staticmethod
    def _search_nndescent(data, n_candidates, metric, n_jobs, random_state):
        index = pynndescent.NNDescent(data,
                                      metric=metric,
                                      n_neighbors=n_candidates,
                                      random_state=random_state,
                                      n_jobs=n_jobs)
        indices, distances = index.neighbor_graph
        indices = np.array(indices[:, :n_candidates], dtype=np.int64)
        distances = np.array(distances[:, :n_candidates], dtype=np.float32)
        unfinished = np.flatnonzero(np.any(indices < 0, axis=1))
        if unfinished.size:
            index.prepare()
            ind, dist = index.query(data[unfinished], k=n_candidates)
            indices[unfinished] = ind
            distances[unfinished] = dist
        return index, indices, distances

    @property
    def neighbors(self):
        return self._neighbors

    @property
    def distances(self):
        return self._distances

    @property
    def n_points(self):
        return self._neighbors.shape[0]

    @property
    def n_dims(self):
        return self._n_dims

    @property
    def k(self):
        return self._neighbors.shape[1]

    def neighbors_of(self, i):
        return self._neighbors[i]

    def distances_of(self, i):
        return self._distances[i]

    def query(self, points, k=None):
        """Find training-set neighbors of arbitrary (out-of-sample) points.

        Returns:
          (neighbors, distances), each of shape (n_queries, k).
        """
        if self._backend is None:
            raise RuntimeError('This index was restored without its search structure and cannot be queried.')
        k = self.k if k is None else min(k, self.n_points)
        data = check_points(points, expected_dims=self._n_dims)
        if self.method == 'exact':
            distances, neighbors = self._backend.kneighbors(data, n_neighbors=k)
        else:
            self._backend.prepare()
            neighbors, distances = self._backend.query(data, k=k)
        return np.asarray(neighbors, dtype=np.int32), np.asarray(distances, dtype=np.float32)

    def __len__(self):
        return self.n_points

    def __repr__(self):
        return (f'NeighborIndex(n_points={self.n_points}, n_dims={self.n_dims}, k={self.k}, '
                f'method={self.method!r}, metric={self.metric!r})')
