"""
Parallel coordinator for the tiered SBM search.

The coordinator owns the single shared best assignment. It launches one
search worker per thread, drains their improvement reports one at a time,
applies them to the shared state and asks every worker to resynchronize. The
run ends when every worker has reached a terminal state.
"""

import logging
import os
import queue
import threading
import time
import warnings
import numpy as np
from dataclasses import dataclass, field, replace
from typing import List, Optional

from .objective import BlockObjective, _as_counts
from .worker import (Improvement, SearchWorker, Snapshot, WorkerReport, WorkerState,
                     partition_nodes)

logger = logging.getLogger(__name__)


class MonotonicityViolation(Exception):
    """An improvement that would not lower the shared objective."""


class CoordinatorFault(RuntimeError):
    """
    Failure of the coordinator itself.

    Carries the last consistent shared state so callers can still inspect it.
    """

    def __init__(self, message: str, objective: float, assignment: np.ndarray):
        super().__init__(message)
        self.objective = objective
        self.assignment = assignment


class DegenerateResultWarning(UserWarning):
    """The fitted assignment uses fewer than K tiers among assignable nodes."""


def default_worker_count() -> int:
    """Available CPUs minus one for the coordinator, at least one."""
    return max(1, (os.cpu_count() or 2) - 1)


@dataclass
class FitConfig:
    """Configuration of a parallel fit."""
    n_workers: Optional[int] = None
    sweep_every: int = 500
    poll_interval: float = 1e-3
    tol: float = 0.0
    early_abort: bool = True
    max_seconds: Optional[float] = None
    max_improvements: Optional[int] = None
    seed: Optional[int] = None

    def __post_init__(self):
        if self.n_workers is not None and self.n_workers < 1:
            raise ValueError("n_workers must be at least 1")
        if self.sweep_every < 1:
            raise ValueError("sweep_every must be at least 1")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.tol < 0:
            raise ValueError("tol must be non-negative")
        if self.max_seconds is not None and self.max_seconds <= 0:
            raise ValueError("max_seconds must be positive")
        if self.max_improvements is not None and self.max_improvements < 0:
            raise ValueError("max_improvements must be non-negative")


class SharedState:
    """
    Shared best assignment and objective.

    Only the coordinator mutates it. Workers read it through ``snapshot``,
    which copies under the same lock used by ``apply``.
    """

    def __init__(self, assignment: np.ndarray, objective: float = np.inf):
        self._lock = threading.Lock()
        self.assignment = assignment
        self.objective = objective
        self.generation = 0
        self.history: List[float] = []

    def snapshot(self) -> Snapshot:
        with self._lock:
            return Snapshot(self.assignment.copy(), self.objective, self.generation)

    def apply(self, improvement: Improvement):
        with self._lock:
            if improvement.generation != self.generation:
                raise MonotonicityViolation(
                    f"improvement from worker {improvement.worker} was computed against "
                    f"generation {improvement.generation}, shared state is at {self.generation}")
            if not improvement.objective < self.objective:
                raise MonotonicityViolation(
                    f"objective {improvement.objective} does not improve on {self.objective}")
            self.assignment[improvement.node] = improvement.tier
            self.objective = improvement.objective
            self.generation += 1
            self.history.append(improvement.objective)


@dataclass
class FitResult:
    """Outcome of ``fit_block_model``; unpacks as ``(objective, assignment)``."""
    objective: float
    assignment: np.ndarray
    n_tiers: int
    n_assignable: int
    degenerate: bool = False
    history: List[float] = field(default_factory=list)
    workers: List[WorkerReport] = field(default_factory=list)
    rejected: int = 0
    elapsed: float = 0.0

    def __iter__(self):
        yield self.objective
        yield self.assignment

    @property
    def failed_workers(self) -> List[WorkerReport]:
        return [w for w in self.workers if w.state is WorkerState.FAILED]

    @property
    def converged(self) -> bool:
        return all(w.state is WorkerState.CONVERGED for w in self.workers)


class Coordinator:
    """
    Drives the parallel hill climb over a shared assignment.

    Parameters
    ----------
    counts : ndarray, shape (N, M)
        Placement counts indexed (destination, source); M assignable nodes
        come first in the node ordering, the N - M sinks after them
    n_assignable : int
        Number of assignable nodes M
    K : int
        Number of tiers
    config : FitConfig, optional
        Search configuration
    """

    def __init__(self, counts, n_assignable: int, K: int, config: Optional[FitConfig] = None):
        self.counts = _as_counts(counts)
        if K < 1:
            raise ValueError("K must be at least 1")
        if self.counts.shape[1] != n_assignable:
            raise ValueError(f"Count matrix has {self.counts.shape[1]} source columns, "
                             f"expected {n_assignable} assignable nodes")
        if self.counts.shape[0] < n_assignable:
            raise ValueError("Count matrix must have a row for every node")

        self.n_assignable = n_assignable
        self.n_total = self.counts.shape[0]
        self.K = K
        self.config = config or FitConfig()

        assignment = np.full(self.n_total, K + 1, dtype=np.int32)
        assignment[:n_assignable] = 1
        self.state = SharedState(assignment)

        n_workers = self.config.n_workers or default_worker_count()
        self.n_workers = max(1, min(n_workers, n_assignable))

        self._stop = threading.Event()
        self._workers: List[SearchWorker] = []
        self._threads: List[threading.Thread] = []
        self._flags: List[threading.Event] = []
        self._channels: List[queue.Queue] = []
        self._rejected = 0

    def run(self) -> FitResult:
        """Search until every worker has converged, failed or been stopped."""
        start = time.perf_counter()

        if self.n_assignable == 0 or self.K == 1:
            # nothing can move
            objective = BlockObjective(self.counts, self.K).evaluate(self.state.assignment)
            self.state.objective = objective
            return self._result(start)

        logger.info("Fitting %d tiers over %d assignable and %d sink nodes with %d workers",
                    self.K, self.n_assignable, self.n_total - self.n_assignable, self.n_workers)
        try:
            self._spawn()
            self._poll(start)
        except Exception as e:
            self._stop.set()
            self._join()
            snap = self.state.snapshot()
            raise CoordinatorFault(f"coordinator failed: {type(e).__name__}: {e}",
                                   snap.objective, snap.assignment) from e

        self._join()
        result = self._result(start)
        logger.info("Search finished: objective %.6f after %d improvements in %.2fs",
                    result.objective, len(result.history), result.elapsed)
        return result

    def _spawn(self):
        cfg = self.config
        seeds = np.random.SeedSequence(cfg.seed).spawn(self.n_workers)
        ranges = partition_nodes(self.n_assignable, self.n_workers)

        for i, node_range in enumerate(ranges):
            channel = queue.Queue(maxsize=1)
            flag = threading.Event()
            worker = SearchWorker(
                index=i,
                objective=BlockObjective(self.counts, self.K, early_abort=cfg.early_abort),
                node_range=node_range,
                snapshot=self.state.snapshot,
                channel=channel,
                resync=flag,
                stop=self._stop,
                n_assignable=self.n_assignable,
                K=self.K,
                sweep_every=cfg.sweep_every,
                poll_interval=cfg.poll_interval,
                tol=cfg.tol,
                rng=np.random.default_rng(seeds[i]),
            )
            self._channels.append(channel)
            self._flags.append(flag)
            self._workers.append(worker)
            self._threads.append(threading.Thread(
                target=worker.run, name=f"tiersbm-worker-{i}", daemon=True))

        for thread in self._threads:
            thread.start()

    def _poll(self, start: float):
        while not self._all_done():
            self._check_budget(start)
            if self._stop.is_set():
                time.sleep(self.config.poll_interval)
                continue
            for channel in self._channels:
                time.sleep(0)
                try:
                    improvement = channel.get_nowait()
                except queue.Empty:
                    continue
                self._accept(improvement, start)
                break
            else:
                time.sleep(self.config.poll_interval)

    def _accept(self, improvement: Improvement, start: float):
        try:
            self.state.apply(improvement)
        except MonotonicityViolation as e:
            self._rejected += 1
            logger.debug("Rejected improvement: %s", e)
            self._resync([improvement.worker], start)
            return

        logger.debug("Worker %d moved node %d to tier %d: objective %.6f",
                     improvement.worker, improvement.node, improvement.tier,
                     improvement.objective)
        self._resync(range(self.n_workers), start)

    def _resync(self, indices, start: float):
        """Raise the flags of live workers and wait until each is cleared."""
        pending = [i for i in indices if self._threads[i].is_alive()]
        for i in pending:
            self._flags[i].set()
        while any(self._flags[i].is_set() and self._threads[i].is_alive() for i in pending):
            self._check_budget(start)
            time.sleep(self.config.poll_interval)

    def _check_budget(self, start: float):
        if self._stop.is_set():
            return
        cfg = self.config
        if cfg.max_seconds is not None and time.perf_counter() - start >= cfg.max_seconds:
            logger.info("Time budget of %.2fs exhausted, stopping workers", cfg.max_seconds)
            self._stop.set()
        elif (cfg.max_improvements is not None
              and len(self.state.history) >= cfg.max_improvements):
            logger.info("Improvement budget of %d reached, stopping workers", cfg.max_improvements)
            self._stop.set()

    def _all_done(self) -> bool:
        return not any(thread.is_alive() for thread in self._threads)

    def _join(self):
        for thread in self._threads:
            thread.join()

    def _result(self, start: float) -> FitResult:
        snap = self.state.snapshot()
        used = np.unique(snap.assignment[:self.n_assignable])
        degenerate = used.size < self.K
        if degenerate:
            warnings.warn(f"Degenerate fit: only {used.size} of {self.K} tiers are used "
                          f"by assignable nodes", DegenerateResultWarning)
        return FitResult(
            objective=snap.objective,
            assignment=snap.assignment,
            n_tiers=self.K,
            n_assignable=self.n_assignable,
            degenerate=degenerate,
            history=list(self.state.history),
            workers=[w.report for w in self._workers],
            rejected=self._rejected,
            elapsed=time.perf_counter() - start,
        )


def fit_block_model(counts, n_assignable: int, n_total: int, n_tiers: int,
                    n_workers: Optional[int] = None,
                    config: Optional[FitConfig] = None) -> FitResult:
    """
    Fit the tiered SBM by parallel stochastic hill climbing.

    Parameters
    ----------
    counts : ndarray, shape (n_total, n_assignable)
        Placement counts indexed (destination, source)
    n_assignable : int
        Number of assignable nodes, first in the node ordering
    n_total : int
        Total number of nodes including fixed sinks
    n_tiers : int
        Number of tiers K; sinks are labeled K+1
    n_workers : int, optional
        Number of search threads; overrides ``config.n_workers``
    config : FitConfig, optional
        Search configuration

    Returns
    -------
    FitResult
        Unpacks as ``(objective, assignment)``
    """
    A = _as_counts(counts)
    if A.shape != (n_total, n_assignable):
        raise ValueError(f"Count matrix shape {A.shape} does not match "
                         f"({n_total}, {n_assignable})")
    config = config or FitConfig()
    if n_workers is not None:
        config = replace(config, n_workers=n_workers)
    return Coordinator(A, n_assignable, n_tiers, config).run()
