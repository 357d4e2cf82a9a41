"""
Tiered Stochastic Block Model (TierSBM) implementation.

This package fits a tiered SBM to a directed placement network by parallel
stochastic hill climbing over a shared best assignment.
"""

from .objective import BlockObjective, evaluate, block_statistics, extract_block_matrix
from .worker import (SearchWorker, WorkerState, WorkerReport, WorkerFault, Improvement,
                     Snapshot, partition_nodes)
from .coordinator import (Coordinator, SharedState, FitConfig, FitResult, fit_block_model,
                          default_worker_count, CoordinatorFault, MonotonicityViolation,
                          DegenerateResultWarning)
from .model import TierSBM

__version__ = "0.1.0"
__all__ = [
    "TierSBM", "fit_block_model", "FitConfig", "FitResult",
    "BlockObjective", "evaluate", "block_statistics", "extract_block_matrix",
    "Coordinator", "SharedState", "SearchWorker", "WorkerState", "WorkerReport",
    "Improvement", "Snapshot", "partition_nodes", "default_worker_count",
    "WorkerFault", "CoordinatorFault", "MonotonicityViolation", "DegenerateResultWarning",
]
