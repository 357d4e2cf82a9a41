"""
Tiered stochastic block model estimator.

Wraps the parallel hill-climbing fit in the fit/predict interface used
across the package.
"""

import numpy as np
from typing import Dict, Optional, Tuple

from .coordinator import FitConfig, FitResult, fit_block_model
from .objective import evaluate, extract_block_matrix
from .reporting import relabel_by_out_degree


class TierSBM:
    """
    Tiered Stochastic Block Model.

    Nodes are split into assignable nodes, each placed in one of K tiers, and
    fixed sinks, which share tier K+1. The fit minimizes the block-count
    objective

    -sum_{a,b} T[a, b] * log(T[a, b] / C[a, b])

    where T is the placement weight and C the number of node pairs between
    destination tier a and source tier b.

    Parameters
    ----------
    K : int
        Number of tiers
    n_workers : int, optional
        Number of search threads (default: CPUs minus one)
    sweep_every : int, default=500
        Failed proposals between exhaustive convergence sweeps
    tol : float, default=0.0
        Minimum objective decrease accepted as an improvement
    seed : int, optional
        Random seed for reproducibility
    early_abort : bool, default=True
        Prune evaluations that are provably worse than the current best
    max_seconds : float, optional
        Wall-clock budget for the search
    max_improvements : int, optional
        Stop after this many accepted improvements
    """

    def __init__(self, K: int, n_workers: Optional[int] = None, sweep_every: int = 500,
                 tol: float = 0.0, seed: Optional[int] = None, early_abort: bool = True,
                 max_seconds: Optional[float] = None, max_improvements: Optional[int] = None):
        if K < 1:
            raise ValueError("K must be at least 1")
        self.K = K
        self.n_workers = n_workers
        self.sweep_every = sweep_every
        self.tol = tol
        self.seed = seed
        self.early_abort = early_abort
        self.max_seconds = max_seconds
        self.max_improvements = max_improvements

        # Set after fitting
        self.labels_ = None
        self.objective_ = None
        self.block_matrix_ = None
        self.n_assignable_ = None
        self.degenerate_ = None
        self.converged_ = False
        self.result_: Optional[FitResult] = None

    def _config(self) -> FitConfig:
        return FitConfig(
            n_workers=self.n_workers,
            sweep_every=self.sweep_every,
            tol=self.tol,
            early_abort=self.early_abort,
            max_seconds=self.max_seconds,
            max_improvements=self.max_improvements,
            seed=self.seed,
        )

    def fit(self, A: np.ndarray, n_assignable: Optional[int] = None) -> "TierSBM":
        """
        Fit the tier assignment.

        Parameters
        ----------
        A : ndarray, shape (N, M)
            Placement counts indexed (destination, source)
        n_assignable : int, optional
            Number of assignable nodes; defaults to the number of columns

        Returns
        -------
        self : TierSBM
            Fitted model
        """
        A = np.asarray(A)
        if A.ndim != 2:
            raise ValueError("Count matrix must be 2-D")
        if n_assignable is None:
            n_assignable = A.shape[1]

        result = fit_block_model(A, n_assignable, A.shape[0], self.K, config=self._config())

        self.result_ = result
        self.labels_ = result.assignment
        self.objective_ = result.objective
        self.n_assignable_ = n_assignable
        self.block_matrix_ = extract_block_matrix(result.assignment, A, self.K)
        self.degenerate_ = result.degenerate
        self.converged_ = result.converged
        return self

    def fit_predict(self, A: np.ndarray, n_assignable: Optional[int] = None) -> np.ndarray:
        """Fit model and return tier labels."""
        return self.fit(A, n_assignable).labels_

    def predict(self) -> np.ndarray:
        """Get fitted tier labels."""
        if self.labels_ is None:
            raise ValueError("Model must be fitted before prediction")
        return self.labels_

    def score(self, A: np.ndarray) -> float:
        """Objective of the fitted labels on ``A`` (lower is better)."""
        if self.labels_ is None:
            raise ValueError("Model must be fitted before scoring")
        return evaluate(self.labels_, A, self.K, early_abort=False)

    def ranked_block_matrix(self) -> Tuple[np.ndarray, Dict[int, int]]:
        """Block matrix with tiers ordered by descending out-degree."""
        if self.block_matrix_ is None:
            raise ValueError("Model must be fitted before ranking tiers")
        return relabel_by_out_degree(self.block_matrix_)

    def get_params(self) -> Dict[str, np.ndarray]:
        """Get fitted parameters."""
        if self.labels_ is None:
            raise ValueError("Model must be fitted before getting parameters")

        return {
            'labels': self.labels_.copy(),
            'block_matrix': self.block_matrix_.copy(),
            'objective': self.objective_,
        }

    def diagnostics(self) -> Dict:
        """Get diagnostic information."""
        if self.result_ is None:
            raise ValueError("Model must be fitted before getting diagnostics")
        r = self.result_
        return {
            'objective_trace': list(r.history),
            'converged': r.converged,
            'degenerate': r.degenerate,
            'n_improvements': len(r.history),
            'n_rejected': r.rejected,
            'failed_workers': [w.index for w in r.failed_workers],
            'elapsed': r.elapsed,
        }
