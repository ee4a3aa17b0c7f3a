"""
Tie-aware k-Nearest Neighbors classifiers

UniformVoteKNN     majority vote among the k nearest points; optionally every
                   point tied with the k-th distance votes as well, and a tied
                   vote is settled by a random draw
KernelWeightedKNN  votes weighted by a kernel of the neighbor distances, scaled
                   by the distance of the (k+1)-th neighbor
"""

from dataclasses import dataclass

import numpy as np
from scipy.stats import norm, rankdata
from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.metrics import pairwise_distances
from sklearn.neighbors import NearestNeighbors
from sklearn.utils import check_random_state
from sklearn.utils.validation import check_array, check_is_fitted, check_X_y

# Relative slack for deciding that a distance equals the k-th distance
TIE_TOLERANCE = 1e-4
# Scaled distances are kept strictly inside (0, 1)
SCALE_EPS = 1e-6

KERNELS = {
    'rectangular': lambda d: np.full_like(d, 0.5),
    'triangular': lambda d: 1 - np.abs(d),
    'epanechnikov': lambda d: 0.75 * (1 - d ** 2),
    'biweight': lambda d: 15 / 16 * (1 - d ** 2) ** 2,
    'triweight': lambda d: 35 / 32 * (1 - d ** 2) ** 3,
    'cos': lambda d: np.pi / 4 * np.cos(np.pi / 2 * d),
    'inv': lambda d: 1 / np.abs(d),
}


def _check_n_neighbors(n_neighbors):
    if isinstance(n_neighbors, (bool, np.bool_)) or not isinstance(n_neighbors, (int, np.integer)):
        raise ValueError(f"n_neighbors must be a positive integer, got {n_neighbors!r}")
    if n_neighbors < 1:
        raise ValueError(f"n_neighbors must be a positive integer, got {n_neighbors!r}")


def optimal_weights(k, d):
    """Rank-based weights of the asymptotically optimal kernel for k neighbors in d dimensions."""
    i = np.arange(1, k + 1)
    return (1 + d / 2 - d / (2 * k ** (2 / d)) * (i ** (1 + 2 / d) - (i - 1) ** (1 + 2 / d))) / k


@dataclass(frozen=True)
class NeighborVote:
    labels: np.ndarray
    vote_share: np.ndarray
    proba: np.ndarray
    tied: np.ndarray
    neighbors: list


class UniformVoteKNN(ClassifierMixin, BaseEstimator):
    """
    Unweighted k-NN with "use all ties" semantics.

    With use_all=True every training point whose distance is within
    TIE_TOLERANCE (relative) of the k-th smallest distance joins the vote, so a
    query may have more than k voters. When several labels share the top vote
    count, one of them is drawn uniformly at random.
    """

    def __init__(self, n_neighbors=2, use_all=True, random_state=None):
        self.n_neighbors = n_neighbors
        self.use_all = use_all
        self.random_state = random_state

    def fit(self, X, y):
        _check_n_neighbors(self.n_neighbors)
        X, y = check_X_y(X, y, dtype=float)
        if self.n_neighbors > X.shape[0]:
            raise ValueError(
                f"n_neighbors={self.n_neighbors} exceeds the {X.shape[0]} training samples"
            )
        self.classes_, self._y_index = np.unique(y, return_inverse=True)
        self._fit_X = X
        self.n_features_in_ = X.shape[1]
        self._rng = check_random_state(self.random_state)
        return self

    def _neighborhoods(self, X):
        distances = pairwise_distances(X, self._fit_X)
        order = np.argsort(distances, axis=1, kind='stable')
        k = self.n_neighbors
        neighborhoods = []
        for row, idx in zip(distances, order):
            if self.use_all:
                kth = row[idx[k - 1]]
                neighborhoods.append(idx[row[idx] <= kth * (1 + TIE_TOLERANCE)])
            else:
                neighborhoods.append(idx[:k])
        return neighborhoods

    def vote(self, X):
        """Return labels, vote shares, tie flags and voter indices for each query row."""
        check_is_fitted(self, 'classes_')
        X = check_array(X, dtype=float)
        neighborhoods = self._neighborhoods(X)
        n_classes = len(self.classes_)

        counts = np.array([
            np.bincount(self._y_index[members], minlength=n_classes)
            for members in neighborhoods
        ], dtype=float)
        proba = counts / counts.sum(axis=1, keepdims=True)

        winners = np.empty(len(counts), dtype=int)
        tied = np.zeros(len(counts), dtype=bool)
        for i, row in enumerate(counts):
            best = np.flatnonzero(row == row.max())
            if best.size > 1:
                tied[i] = True
                winners[i] = self._rng.choice(best)
            else:
                winners[i] = best[0]

        return NeighborVote(
            labels=self.classes_[winners],
            vote_share=proba[np.arange(len(winners)), winners],
            proba=proba,
            tied=tied,
            neighbors=neighborhoods,
        )

    def predict(self, X):
        return self.vote(X).labels

    def predict_proba(self, X):
        return self.vote(X).proba


class KernelWeightedKNN(ClassifierMixin, BaseEstimator):
    """
    Weighted k-NN: the k nearest distances are divided by the (k+1)-th
    distance and turned into weights by a kernel.

    The 'optimal' kernel ignores the distances themselves and weights by
    rank, so two equidistant neighbors of different classes still produce a
    unique winner. Remaining exact ties in probability go to the first class
    in sorted order.
    """

    def __init__(self, n_neighbors=2, kernel='optimal', p=2):
        self.n_neighbors = n_neighbors
        self.kernel = kernel
        self.p = p

    def fit(self, X, y):
        _check_n_neighbors(self.n_neighbors)
        if self.kernel not in KERNELS and self.kernel not in ('gaussian', 'rank', 'optimal'):
            raise ValueError(f"Unknown kernel: {self.kernel!r}")
        X, y = check_X_y(X, y, dtype=float)
        if self.n_neighbors + 1 > X.shape[0]:
            raise ValueError(
                f"n_neighbors={self.n_neighbors} needs at least {self.n_neighbors + 1} training samples"
            )
        self.classes_, self._y_index = np.unique(y, return_inverse=True)
        self.n_features_in_ = X.shape[1]
        self._tree = NearestNeighbors(n_neighbors=self.n_neighbors + 1, p=self.p).fit(X)
        return self

    def _kernel_weights(self, distances):
        k = self.n_neighbors
        n_rows = distances.shape[0]

        if self.kernel == 'optimal':
            return np.tile(optimal_weights(k, self.n_features_in_), (n_rows, 1))
        if self.kernel == 'rank':
            return (k + 1) - rankdata(distances[:, :k], axis=1)

        max_dist = np.maximum(distances[:, k], SCALE_EPS)
        scaled = np.clip(distances[:, :k] / max_dist[:, None], SCALE_EPS, 1 - SCALE_EPS)

        if self.kernel == 'gaussian':
            spread = abs(norm.ppf(1 / (2 * (k + 1))))
            return norm.pdf(scaled * spread)
        return KERNELS[self.kernel](scaled)

    def kneighbors(self, X):
        """Distances and training indices of the k voting neighbors."""
        check_is_fitted(self, 'classes_')
        X = check_array(X, dtype=float)
        distances, indices = self._tree.kneighbors(X)
        return distances[:, :self.n_neighbors], indices[:, :self.n_neighbors]

    def predict_proba(self, X):
        check_is_fitted(self, 'classes_')
        X = check_array(X, dtype=float)
        distances, indices = self._tree.kneighbors(X)
        weights = self._kernel_weights(distances)
        voter_classes = self._y_index[indices[:, :self.n_neighbors]]

        proba = np.column_stack([
            (weights * (voter_classes == c)).sum(axis=1)
            for c in range(len(self.classes_))
        ])
        return proba / proba.sum(axis=1, keepdims=True)

    def predict(self, X):
        proba = self.predict_proba(X)
        return self.classes_[np.argmax(proba, axis=1)]
