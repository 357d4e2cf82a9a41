"""
Hill-climbing search worker for the tiered SBM.

Each worker owns a private copy of the assignment, proposes random
single-node tier moves inside its own node range, and reports strict
improvements to the coordinator over a bounded channel. It reloads the shared
state whenever its resync flag is raised.
"""

import logging
import queue
import threading
import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .objective import BlockObjective

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    """Lifecycle states of a search worker."""
    SEARCHING = "searching"
    AWAITING_ACK = "awaiting_ack"
    CONVERGED = "converged"
    FAILED = "failed"
    STOPPED = "stopped"


class WorkerFault(RuntimeError):
    """Unexpected error raised inside a worker's search loop."""

    def __init__(self, index: int, cause: BaseException):
        super().__init__(f"worker {index} failed: {type(cause).__name__}: {cause}")
        self.index = index
        self.cause = cause


@dataclass(frozen=True)
class Snapshot:
    """Read-only copy of the shared search state."""
    assignment: np.ndarray
    objective: float
    generation: int


@dataclass(frozen=True)
class Improvement:
    """A single-node move that beat the objective of ``generation``."""
    worker: int
    node: int
    tier: int
    objective: float
    generation: int


@dataclass
class WorkerReport:
    """Outcome of one worker, inspected by the coordinator at shutdown."""
    index: int
    state: WorkerState = WorkerState.SEARCHING
    attempts: int = 0
    improvements: int = 0
    sweeps: int = 0
    resyncs: int = 0
    error: Optional[WorkerFault] = None


def partition_nodes(n: int, n_workers: int) -> List[Tuple[int, int]]:
    """
    Split ``range(n)`` into contiguous half-open ranges, one per worker.

    The first ``n % n_workers`` ranges receive one extra node, so sizes
    differ by at most one.
    """
    if n_workers < 1:
        raise ValueError("n_workers must be at least 1")
    base, rem = divmod(n, n_workers)
    ranges = []
    lo = 0
    for i in range(n_workers):
        hi = lo + base + (1 if i < rem else 0)
        ranges.append((lo, hi))
        lo = hi
    return ranges


class SearchWorker:
    """
    Stochastic hill climber over one partition of the assignable nodes.

    Parameters
    ----------
    index : int
        Worker identity, also the index of its channel and flag
    objective : BlockObjective
        Evaluator owned by this worker
    node_range : tuple of int
        Half-open range of node indices this worker proposes moves for
    snapshot : callable
        Returns a ``Snapshot`` of the shared state
    channel : queue.Queue
        Capacity-one channel to the coordinator
    resync : threading.Event
        Raised by the coordinator, cleared by this worker once reloaded
    stop : threading.Event
        Raised by the coordinator to end the run early
    n_assignable : int
        Number of assignable nodes; the convergence sweep covers all of them
    K : int
        Number of tiers
    sweep_every : int, default=500
        Consecutive failed proposals between exhaustive sweeps
    poll_interval : float, default=1e-3
        Timeout of each wait on the resync flag
    tol : float, default=0.0
        Minimum decrease counted as an improvement
    rng : numpy.random.Generator, optional
        Source of move proposals
    """

    def __init__(self, index: int, objective: BlockObjective, node_range: Tuple[int, int],
                 snapshot: Callable[[], Snapshot], channel: queue.Queue,
                 resync: threading.Event, stop: threading.Event,
                 n_assignable: int, K: int, sweep_every: int = 500,
                 poll_interval: float = 1e-3, tol: float = 0.0,
                 rng: Optional[np.random.Generator] = None):
        lo, hi = node_range
        if not (0 <= lo < hi <= n_assignable):
            raise ValueError(f"Invalid node range {node_range} for {n_assignable} assignable nodes")
        if K < 2:
            raise ValueError("At least two tiers are needed to propose moves")

        self.index = index
        self.objective = objective
        self.node_range = (lo, hi)
        self.n_assignable = n_assignable
        self.K = K
        self.sweep_every = sweep_every
        self.poll_interval = poll_interval
        self.tol = tol
        self.rng = rng if rng is not None else np.random.default_rng()

        self._snapshot = snapshot
        self._channel = channel
        self._resync = resync
        self._stop = stop

        self.report = WorkerReport(index=index)
        self.allocation: Optional[np.ndarray] = None
        self.best = np.inf
        self.generation = -1
        self._failures = 0

    @property
    def state(self) -> WorkerState:
        return self.report.state

    def run(self) -> WorkerReport:
        """Thread target. Never raises; faults are recorded on the report."""
        try:
            self._search()
        except Exception as e:
            logger.exception("Search worker %d failed: %s", self.index, e)
            self.report.state = WorkerState.FAILED
            self.report.error = WorkerFault(self.index, e)
        return self.report

    def _search(self):
        self._reload()
        lo, hi = self.node_range

        while True:
            if self._stop.is_set():
                self._finish(WorkerState.STOPPED)
                return
            if self._resync.is_set():
                self._reload()

            k = int(self.rng.integers(lo, hi))
            old_tier = int(self.allocation[k])
            new_tier = self._other_tier(old_tier)
            self.allocation[k] = new_tier
            self.report.attempts += 1

            test = self.objective.evaluate(self.allocation, self.best)
            if test < self.best - self.tol:
                if not self._submit(k, new_tier, test):
                    self._finish(WorkerState.STOPPED)
                    return
                continue

            self.allocation[k] = old_tier
            self._failures += 1
            if self._failures % self.sweep_every:
                continue

            move = self._sweep()
            if self._stop.is_set():
                continue
            if move is None:
                self._finish(WorkerState.CONVERGED)
                return
            if not self._submit(*move):
                self._finish(WorkerState.STOPPED)
                return

    def _submit(self, node: int, tier: int, objective: float) -> bool:
        """Report an improvement and wait for the coordinator's resync."""
        self._failures = 0
        self.report.improvements += 1
        self._channel.put(Improvement(self.index, node, tier, objective, self.generation))
        return self._await_ack()

    def _other_tier(self, tier: int) -> int:
        """Uniform draw from 1..K excluding ``tier``."""
        new = int(self.rng.integers(1, self.K))
        return new + 1 if new >= tier else new

    def _await_ack(self) -> bool:
        self.report.state = WorkerState.AWAITING_ACK
        while not self._resync.wait(self.poll_interval):
            if self._stop.is_set():
                return False
        self._reload()
        return True

    def _reload(self):
        """Replace the private state with the shared one, then acknowledge."""
        # a report still queued was computed against the state being replaced
        try:
            self._channel.get_nowait()
        except queue.Empty:
            pass

        snap = self._snapshot()
        if self.allocation is None:
            self.allocation = snap.assignment.copy()
        else:
            self.allocation[:] = snap.assignment
        self.best = snap.objective
        self.generation = snap.generation
        self._failures = 0
        self.report.resyncs += 1
        self.report.state = WorkerState.SEARCHING
        self._resync.clear()

    def _sweep(self) -> Optional[Tuple[int, int, float]]:
        """
        Exhaustive sweep over every assignable node and every other tier.

        Moves are tentative and always reverted; the first improving one is
        returned, or None when no single move improves. The comparison uses
        the locally cached best, which may be stale if the shared state
        improved during the sweep; the next resync catches up.

        The caller submits a returned move like any other improvement rather
        than keeping it privately, so a move outside this worker's node range
        still reaches the shared state after the other workers have converged.
        """
        self.report.sweeps += 1
        alloc = self.allocation
        for i in range(self.n_assignable):
            if self._stop.is_set():
                return None
            original = int(alloc[i])
            for tier in range(1, self.K + 1):
                if tier == original:
                    continue
                alloc[i] = tier
                test = self.objective.evaluate(alloc, self.best)
                alloc[i] = original
                if test < self.best - self.tol:
                    return i, tier, test
        return None

    def _finish(self, state: WorkerState):
        self.report.state = state
        logger.debug("Search worker %d %s after %d attempts (%d sweeps)",
                     self.index, state.value, self.report.attempts, self.report.sweeps)
