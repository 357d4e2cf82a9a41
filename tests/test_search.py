"""
Test suite for the parallel hill-climbing search.
"""

import logging
import queue
import threading
import time
import numpy as np
import pytest
from sklearn.metrics import adjusted_rand_score
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from tiersbm import (BlockObjective, Coordinator, CoordinatorFault, DegenerateResultWarning,
                     FitConfig, Improvement, MonotonicityViolation, SearchWorker, SharedState,
                     WorkerFault, WorkerState, evaluate, fit_block_model, partition_nodes)


def planted_network():
    """Four assignable nodes in two assortative pairs plus two sinks."""
    A = np.zeros((6, 4), dtype=np.int32)
    for group in ((0, 1), (2, 3)):
        for i in group:
            for j in group:
                A[i, j] = 5
    A[4:, :] = 1
    return A


def random_network(n_assignable=10, n_sinks=3, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 4, size=(n_assignable + n_sinks, n_assignable))


def initial_assignment(n_assignable, n_total, K):
    z = np.full(n_total, K + 1, dtype=np.int32)
    z[:n_assignable] = 1
    return z


def make_worker(A, K, n_assignable, state, objective=None, sweep_every=500, seed=0):
    channel = queue.Queue(maxsize=1)
    resync = threading.Event()
    stop = threading.Event()
    worker = SearchWorker(
        index=0,
        objective=objective or BlockObjective(A, K),
        node_range=(0, n_assignable),
        snapshot=state.snapshot,
        channel=channel,
        resync=resync,
        stop=stop,
        n_assignable=n_assignable,
        K=K,
        sweep_every=sweep_every,
        rng=np.random.default_rng(seed),
    )
    return worker, channel, resync, stop


class ExplodingObjective(BlockObjective):
    def evaluate(self, assignment, current_best=np.inf):
        raise RuntimeError("injected failure")


class TestPartition:
    """Test node range partitioning."""

    def test_even_split(self):
        assert partition_nodes(8, 4) == [(0, 2), (2, 4), (4, 6), (6, 8)]

    def test_uneven_split(self):
        """Test that leftover nodes go to the first ranges."""
        ranges = partition_nodes(10, 3)
        assert ranges == [(0, 4), (4, 7), (7, 10)]

    def test_covers_without_overlap(self):
        for n, w in [(1, 1), (7, 2), (13, 5), (100, 7)]:
            ranges = partition_nodes(n, w)
            covered = [i for lo, hi in ranges for i in range(lo, hi)]
            assert covered == list(range(n))
            sizes = [hi - lo for lo, hi in ranges]
            assert max(sizes) - min(sizes) <= 1

    def test_invalid(self):
        with pytest.raises(ValueError, match="n_workers"):
            partition_nodes(5, 0)


class TestSharedState:
    """Test the coordinator-owned shared state."""

    def test_snapshot_is_copy(self):
        state = SharedState(np.array([1, 1, 3], dtype=np.int32))
        snap = state.snapshot()
        snap.assignment[0] = 2
        assert state.assignment[0] == 1
        assert snap.objective == np.inf
        assert snap.generation == 0

    def test_apply(self):
        state = SharedState(np.array([1, 1, 3], dtype=np.int32))
        state.apply(Improvement(worker=0, node=1, tier=2, objective=-1.5, generation=0))
        assert list(state.assignment) == [1, 2, 3]
        assert state.objective == -1.5
        assert state.generation == 1
        assert state.history == [-1.5]

    def test_rejects_non_improvement(self):
        state = SharedState(np.array([1, 1, 3], dtype=np.int32), objective=-2.0)
        with pytest.raises(MonotonicityViolation, match="does not improve"):
            state.apply(Improvement(0, 1, 2, -2.0, 0))
        assert list(state.assignment) == [1, 1, 3]
        assert state.objective == -2.0

    def test_rejects_stale_generation(self):
        state = SharedState(np.array([1, 1, 3], dtype=np.int32))
        state.apply(Improvement(0, 0, 2, -1.0, 0))
        with pytest.raises(MonotonicityViolation, match="generation"):
            state.apply(Improvement(1, 1, 2, -5.0, 0))
        assert state.objective == -1.0


class TestSearchWorker:
    """Test cases for a single search worker."""

    def test_converges_on_uniform_matrix(self):
        """Test that the sweep ends the search when nothing improves."""
        A = np.ones((5, 3), dtype=np.int32)
        z = initial_assignment(3, 5, 2)
        state = SharedState(z, objective=evaluate(z, A, 2))
        worker, channel, _, _ = make_worker(A, 2, 3, state, sweep_every=10)

        report = worker.run()

        assert report.state is WorkerState.CONVERGED
        assert report.sweeps == 1
        assert report.attempts == 10
        assert report.error is None
        assert channel.empty()

    def test_reports_first_move_and_stops(self):
        """Test that any first move beats an infinite objective."""
        A = planted_network()
        state = SharedState(initial_assignment(4, 6, 2))
        worker, channel, _, stop = make_worker(A, 2, 4, state)
        thread = threading.Thread(target=worker.run, daemon=True)
        thread.start()

        improvement = channel.get(timeout=10)
        assert 0 <= improvement.node < 4
        assert improvement.tier == 2
        assert improvement.generation == 0
        assert np.isfinite(improvement.objective)

        stop.set()
        thread.join(timeout=10)
        assert not thread.is_alive()
        assert worker.state is WorkerState.STOPPED
        assert worker.report.improvements == 1

    def test_resync_reloads_shared_state(self):
        """Test that a raised flag reloads the assignment and objective."""
        A = planted_network()
        state = SharedState(initial_assignment(4, 6, 2))
        worker, channel, resync, stop = make_worker(A, 2, 4, state)
        thread = threading.Thread(target=worker.run, daemon=True)
        thread.start()

        improvement = channel.get(timeout=10)
        state.apply(improvement)
        resync.set()
        for _ in range(1000):
            if not resync.is_set():
                break
            time.sleep(0.01)
        assert not resync.is_set()

        stop.set()
        thread.join(timeout=10)
        assert worker.best <= state.objective
        assert worker.generation >= 1
        assert worker.report.resyncs >= 2

    def test_reload_copies_shared_assignment(self):
        """Test that the private assignment equals the shared one after a resync."""
        A = planted_network()
        state = SharedState(initial_assignment(4, 6, 2))
        worker, _, resync, _ = make_worker(A, 2, 4, state)
        worker._reload()

        state.apply(Improvement(0, 0, 2, -1.0, 0))
        state.apply(Improvement(0, 1, 2, -2.0, 1))
        resync.set()
        worker._reload()

        assert np.array_equal(worker.allocation, state.assignment)
        assert worker.allocation is not state.assignment
        assert list(worker.allocation) == [2, 2, 1, 1, 3, 3]
        assert worker.best == -2.0
        assert worker.generation == 2
        assert worker.state is WorkerState.SEARCHING
        assert not resync.is_set()

        worker.allocation[2] = 2
        assert state.assignment[2] == 1

    def test_reload_discards_pending_report_first(self):
        """Test that a queued report is dropped before the flag is cleared."""
        A = planted_network()
        state = SharedState(initial_assignment(4, 6, 2))
        worker, channel, resync, _ = make_worker(A, 2, 4, state)

        seen = []

        def snapshot():
            seen.append((channel.empty(), resync.is_set()))
            return state.snapshot()

        worker._snapshot = snapshot
        channel.put(Improvement(0, 3, 2, -3.0, 0))
        resync.set()
        worker._reload()

        assert seen == [(True, True)]
        assert channel.empty()
        assert not resync.is_set()

    def test_fault_is_contained(self, caplog):
        """Test that an internal error marks the worker failed."""
        A = planted_network()
        state = SharedState(initial_assignment(4, 6, 2))
        worker, _, _, _ = make_worker(A, 2, 4, state, objective=ExplodingObjective(A, 2))

        with caplog.at_level(logging.ERROR, logger="tiersbm.worker"):
            report = worker.run()

        assert report.state is WorkerState.FAILED
        assert isinstance(report.error, WorkerFault)
        assert isinstance(report.error.cause, RuntimeError)
        assert report.error.index == 0
        assert "Search worker 0 failed" in caplog.text

    def test_never_moves_sinks(self):
        A = planted_network()
        state = SharedState(initial_assignment(4, 6, 2))
        worker, channel, _, stop = make_worker(A, 2, 4, state)
        thread = threading.Thread(target=worker.run, daemon=True)
        thread.start()
        improvement = channel.get(timeout=10)
        stop.set()
        thread.join(timeout=10)
        assert improvement.node < 4

    def test_invalid_construction(self):
        A = planted_network()
        state = SharedState(initial_assignment(4, 6, 2))
        with pytest.raises(ValueError, match="node range"):
            SearchWorker(0, BlockObjective(A, 2), (2, 6), state.snapshot, queue.Queue(1),
                         threading.Event(), threading.Event(), n_assignable=4, K=2)
        with pytest.raises(ValueError, match="two tiers"):
            SearchWorker(0, BlockObjective(A, 1), (0, 4), state.snapshot, queue.Queue(1),
                         threading.Event(), threading.Event(), n_assignable=4, K=1)


class TestFitBlockModel:
    """End-to-end tests of the coordinated search."""

    def test_planted_split(self):
        """Test recovery of two assortative pairs with a single worker."""
        A = planted_network()
        result = fit_block_model(A, n_assignable=4, n_total=6, n_tiers=2, n_workers=1,
                                 config=FitConfig(seed=0))
        objective, assignment = result

        labels = assignment[:4]
        assert labels[0] == labels[1]
        assert labels[2] == labels[3]
        assert labels[0] != labels[2]
        assert adjusted_rand_score([0, 0, 1, 1], labels) == 1.0
        assert objective < evaluate(initial_assignment(4, 6, 2), A, 2)
        assert np.isclose(objective, evaluate(assignment, A, 2, early_abort=False))
        assert list(assignment[4:]) == [3, 3]
        assert result.converged
        assert not result.degenerate

    def test_planted_split_parallel(self):
        A = planted_network()
        result = fit_block_model(A, 4, 6, 2, n_workers=2,
                                 config=FitConfig(seed=3, max_seconds=60))
        labels = result.assignment[:4]
        assert adjusted_rand_score([0, 0, 1, 1], labels) == 1.0

    def test_uniform_matrix_terminates(self):
        """Test that a perfectly symmetric objective converges via the sweep."""
        A = np.ones((8, 6), dtype=np.int32)
        result = fit_block_model(A, 6, 8, 2, n_workers=2, config=FitConfig(seed=1))

        assert result.converged
        assert len(result.history) == 1
        assert result.objective == 0.0
        assert all(w.sweeps >= 1 for w in result.workers)

    def test_monotone_history(self):
        """Test that the shared objective never increases."""
        A = random_network(n_assignable=12, seed=5)
        result = fit_block_model(A, 12, 15, 3, n_workers=3,
                                 config=FitConfig(seed=2, max_seconds=60))

        history = result.history
        assert len(history) >= 1
        assert all(b < a for a, b in zip(history, history[1:]))
        assert history[-1] == result.objective

    def test_deterministic_single_worker(self):
        """Test bit-identical results for a fixed seed and one worker."""
        A = random_network(seed=7)
        runs = [fit_block_model(A, 10, 13, 3, n_workers=1, config=FitConfig(seed=11))
                for _ in range(2)]

        assert np.array_equal(runs[0].assignment, runs[1].assignment)
        assert runs[0].objective == runs[1].objective
        assert runs[0].history == runs[1].history

    def test_sinks_fixed(self):
        """Test that sinks keep label K+1 in every run."""
        for seed in range(3):
            A = random_network(n_assignable=8, n_sinks=4, seed=seed)
            result = fit_block_model(A, 8, 12, 3, n_workers=2,
                                     config=FitConfig(seed=seed, max_seconds=60))
            assert np.all(result.assignment[8:] == 4)
            assert np.all((result.assignment[:8] >= 1) & (result.assignment[:8] <= 3))

    def test_local_optimum(self):
        """Test that no single move improves the final assignment."""
        A = random_network(n_assignable=8, seed=9)
        result = fit_block_model(A, 8, 11, 3, n_workers=2,
                                 config=FitConfig(seed=4, max_seconds=60))
        assert result.converged
        z = result.assignment.copy()
        for i in range(8):
            original = z[i]
            for tier in range(1, 4):
                z[i] = tier
                assert evaluate(z, A, 3, early_abort=False) >= result.objective - 1e-9
            z[i] = original

    def test_degenerate_result_warns(self):
        """Test that a fit using fewer than K tiers is flagged."""
        A = np.array([[3], [1]])
        with pytest.warns(DegenerateResultWarning, match="1 of 2 tiers"):
            result = fit_block_model(A, 1, 2, 2, config=FitConfig(sweep_every=20, seed=0))
        assert result.degenerate
        assert np.isfinite(result.objective)

    def test_single_tier_is_trivial(self):
        A = planted_network()
        result = fit_block_model(A, 4, 6, 1)
        assert result.workers == []
        assert list(result.assignment) == [1, 1, 1, 1, 2, 2]
        assert result.objective == evaluate(result.assignment, A, 1)

    def test_worker_count_clamped(self):
        A = planted_network()
        coordinator = Coordinator(A, 4, 2, FitConfig(n_workers=16))
        assert coordinator.n_workers == 4

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="does not match"):
            fit_block_model(np.ones((6, 6)), 4, 6, 2)


class TestFailures:
    """Test fault handling across the run."""

    def test_all_workers_fail(self, monkeypatch):
        """Test that failed workers end the run with a structured report."""
        def explode(self, assignment, current_best=np.inf):
            raise RuntimeError("injected failure")

        monkeypatch.setattr(BlockObjective, "evaluate", explode)
        A = planted_network()
        with pytest.warns(DegenerateResultWarning):
            result = fit_block_model(A, 4, 6, 2, n_workers=2)

        assert len(result.failed_workers) == 2
        assert result.objective == np.inf
        assert list(result.assignment) == [1, 1, 1, 1, 3, 3]
        assert not result.converged

    def test_partial_failure(self, monkeypatch):
        """Test that the remaining worker still finishes the search."""
        original = BlockObjective.evaluate

        def flaky(self, assignment, current_best=np.inf):
            if threading.current_thread().name == "tiersbm-worker-1":
                raise RuntimeError("injected failure")
            return original(self, assignment, current_best)

        monkeypatch.setattr(BlockObjective, "evaluate", flaky)
        A = planted_network()
        result = fit_block_model(A, 4, 6, 2, n_workers=2,
                                 config=FitConfig(seed=0, max_seconds=60))

        assert [w.index for w in result.failed_workers] == [1]
        assert result.workers[0].state is WorkerState.CONVERGED
        assert adjusted_rand_score([0, 0, 1, 1], result.assignment[:4]) == 1.0

    def test_coordinator_fault(self, monkeypatch):
        """Test that a coordinator error stops workers and propagates."""
        def broken(self, improvement):
            raise RuntimeError("shared state unavailable")

        monkeypatch.setattr(SharedState, "apply", broken)
        A = planted_network()
        coordinator = Coordinator(A, 4, 2, FitConfig(n_workers=2, seed=0))

        with pytest.raises(CoordinatorFault, match="shared state unavailable") as exc:
            coordinator.run()

        assert isinstance(exc.value.__cause__, RuntimeError)
        assert exc.value.objective == np.inf
        assert list(exc.value.assignment[4:]) == [3, 3]
        assert not any(t.is_alive() for t in coordinator._threads)
        assert all(w.report.state is WorkerState.STOPPED for w in coordinator._workers)

    def test_rejected_report_releases_reporter(self, monkeypatch):
        """Test that a rejected improvement is counted and the run continues."""
        original = SharedState.apply
        calls = []

        def reject_second(self, improvement):
            calls.append(improvement)
            if len(calls) == 2:
                raise MonotonicityViolation("injected rejection")
            return original(self, improvement)

        monkeypatch.setattr(SharedState, "apply", reject_second)
        A = planted_network()
        result = fit_block_model(A, 4, 6, 2, n_workers=3,
                                 config=FitConfig(seed=0, max_seconds=60))

        assert result.rejected == 1
        assert result.converged
        assert len(result.history) >= 1
        assert all(b < a for a, b in zip(result.history, result.history[1:]))
        assert result.history[-1] == result.objective

    def test_improvement_budget(self):
        """Test that the run stops after the allowed number of improvements."""
        A = random_network(n_assignable=10, seed=1)
        result = fit_block_model(A, 10, 13, 3, n_workers=2,
                                 config=FitConfig(seed=0, max_improvements=1))
        assert len(result.history) == 1
        assert all(w.state is WorkerState.STOPPED for w in result.workers)


def test_config_validation():
    """Test configuration errors."""
    with pytest.raises(ValueError, match="n_workers"):
        FitConfig(n_workers=0)
    with pytest.raises(ValueError, match="sweep_every"):
        FitConfig(sweep_every=0)
    with pytest.raises(ValueError, match="poll_interval"):
        FitConfig(poll_interval=0)
    with pytest.raises(ValueError, match="tol"):
        FitConfig(tol=-1.0)
    with pytest.raises(ValueError, match="max_seconds"):
        FitConfig(max_seconds=0)
