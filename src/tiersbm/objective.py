"""
Block-count objective for the tiered stochastic block model.

This module computes the negative multinomial block log-likelihood of a tier
assignment over a (destination x source) placement count matrix, with
column-wise early abort against a known best value.
"""

import numpy as np
from scipy.special import xlogy
from typing import Tuple


def _as_counts(counts) -> np.ndarray:
    A = np.asarray(counts)
    if A.ndim != 2:
        raise ValueError(f"Count matrix must be 2-D, got shape {A.shape}")
    if A.size and A.min() < 0:
        raise ValueError("Count matrix must be non-negative")
    return A


def _tier_indices(assignment, n_dest: int, n_src: int, K: int) -> Tuple[np.ndarray, np.ndarray]:
    """Zero-based destination and source tier indices for the matrix axes."""
    z = np.asarray(assignment)
    if z.ndim != 1 or z.shape[0] < max(n_dest, n_src):
        raise ValueError(f"Assignment of length {z.shape[0] if z.ndim == 1 else z.shape} "
                         f"does not cover a {n_dest} x {n_src} count matrix")
    dest = z[:n_dest].astype(np.intp) - 1
    src = z[:n_src].astype(np.intp) - 1
    if dest.size and (dest.min() < 0 or dest.max() > K):
        raise ValueError(f"Destination labels must lie in 1..{K + 1}")
    if src.size and (src.min() < 0 or src.max() >= K):
        raise ValueError(f"Source labels must lie in 1..{K}")
    return dest, src


class BlockObjective:
    """
    Reusable evaluator of the block-count objective.

    The objective of an assignment z is

        -sum_{a,b} T[a, b] * log(T[a, b] / C[a, b])

    where T[a, b] is the total weight of cells whose destination has tier a
    and whose source has tier b, and C[a, b] is the number of such cells.
    Each instance owns its scratch buffers, so one instance must not be
    shared between threads.

    Parameters
    ----------
    counts : ndarray, shape (N, M)
        Non-negative placement counts indexed (destination, source). The
        first M nodes of the ordering are the assignable ones.
    K : int
        Number of tiers. Destination tier K+1 holds the fixed sinks.
    early_abort : bool, default=True
        Whether to stop accumulating once the value is provably worse than
        the best value passed to ``evaluate``.
    """

    def __init__(self, counts, K: int, early_abort: bool = True):
        if K < 1:
            raise ValueError("K must be at least 1")
        self.counts = _as_counts(counts)
        self.K = K
        self.early_abort = early_abort
        self.n_dest, self.n_src = self.counts.shape

        self._weights = self.counts.astype(np.float64).ravel()
        a_max = float(self.counts.max()) if self.counts.size else 0.0
        # T/C never exceeds the largest single cell
        self._log_max = float(np.log(max(a_max, 1.0)))

        self.T_ = np.zeros((K + 1, K))
        self.C_ = np.zeros((K + 1, K))

    def statistics(self, assignment) -> Tuple[np.ndarray, np.ndarray]:
        """
        Accumulate the block sufficient statistics into the scratch buffers.

        Returns
        -------
        T : ndarray, shape (K+1, K)
            Summed weight per (destination tier, source tier)
        C : ndarray, shape (K+1, K)
            Number of (destination, source) cells per tier pair
        """
        K = self.K
        dest, src = _tier_indices(assignment, self.n_dest, self.n_src, K)

        cell = (dest[:, None] * K + src[None, :]).ravel()
        self.T_[...] = np.bincount(cell, weights=self._weights,
                                   minlength=(K + 1) * K).reshape(K + 1, K)
        # every cell counts once, observed or not
        self.C_[...] = np.outer(np.bincount(dest, minlength=K + 1),
                                np.bincount(src, minlength=K))
        return self.T_, self.C_

    def evaluate(self, assignment, current_best: float = np.inf) -> float:
        """
        Negative block log-likelihood of ``assignment``.

        Parameters
        ----------
        assignment : array-like, shape (N,)
            Tier labels, 1..K for assignable nodes and K+1 for sinks
        current_best : float, default=inf
            Best objective known to the caller. With early abort enabled,
            ``inf`` is returned as soon as the result is certain to exceed it.

        Returns
        -------
        objective : float
        """
        T, C = self.statistics(assignment)
        remaining = float(T.sum())
        L = 0.0

        for b in range(self.K):
            col = T[:, b]
            nz = col > 0
            if nz.any():
                L += float(np.sum(xlogy(col[nz], col[nz] / C[nz, b])))
                remaining -= float(col.sum())
            if self.early_abort and -L - self._log_max * remaining > current_best:
                return np.inf

        return -L


def block_statistics(assignment, counts, K: int) -> Tuple[np.ndarray, np.ndarray]:
    """Weight and cell-count matrices, shape (K+1, K), for an assignment."""
    T, C = BlockObjective(counts, K, early_abort=False).statistics(assignment)
    return T.copy(), C.copy()


def evaluate(assignment, counts, K: int, current_best: float = np.inf,
             early_abort: bool = True) -> float:
    """One-off evaluation of the block-count objective."""
    return BlockObjective(counts, K, early_abort=early_abort).evaluate(assignment, current_best)


def extract_block_matrix(assignment, counts, K: int) -> np.ndarray:
    """
    Sum placement counts by tier pair.

    Parameters
    ----------
    assignment : array-like, shape (N,)
        Tier labels
    counts : ndarray, shape (N, M)
        Placement counts indexed (destination, source)
    K : int
        Number of tiers

    Returns
    -------
    M : ndarray, shape (K+1, K)
        Integer matrix; row a, column b holds placements from tier b+1 into
        tier a+1, with the last row collecting the sinks.
    """
    A = _as_counts(counts)
    dest, src = _tier_indices(assignment, A.shape[0], A.shape[1], K)
    M = np.zeros((K + 1, K), dtype=np.int64)
    np.add.at(M, (dest[:, None], src[None, :]), A.astype(np.int64))
    return M
