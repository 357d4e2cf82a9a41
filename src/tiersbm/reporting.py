"""
Reporting helpers for fitted tier assignments.

Tiers found by the search carry arbitrary labels. These helpers order them by
aggregate placements, check the resulting hierarchy and persist block
matrices as JSON.
"""

import json
import numpy as np
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union


def relabel_by_out_degree(M: np.ndarray) -> Tuple[np.ndarray, Dict[int, int]]:
    """
    Reorder tiers by descending aggregate out-degree.

    Parameters
    ----------
    M : ndarray, shape (K+1, K)
        Block matrix from ``extract_block_matrix``

    Returns
    -------
    P : ndarray, shape (K+1, K)
        Block matrix with rows and columns 1..K permuted; the sink row stays last
    mapping : dict
        Old tier label -> new tier label, both 1-based
    """
    M = np.asarray(M)
    K = M.shape[1]
    if M.shape[0] != K + 1:
        raise ValueError(f"Block matrix must have shape (K+1, K), got {M.shape}")

    out_degree = M.sum(axis=0)
    order = np.argsort(-out_degree, kind="stable")
    mapping = {int(old) + 1: new + 1 for new, old in enumerate(order)}

    P = np.empty_like(M)
    P[:K] = M[order][:, order]
    P[K] = M[K, order]
    return P, mapping


def relabel_assignment(assignment, mapping: Dict[int, int], K: int) -> np.ndarray:
    """Apply a tier mapping to a label vector, leaving sinks (K+1) untouched."""
    z = np.asarray(assignment)
    lookup = np.arange(K + 2)
    for old, new in mapping.items():
        lookup[old] = new
    return lookup[z]


def hierarchy_faults(P: np.ndarray) -> List[Tuple[int, int, int, int]]:
    """
    Tier pairs whose downward flow does not exceed the upward flow.

    With tiers ordered from the top, tier j should place more graduates into
    the lower tier i > j than tier i places into tier j.

    Returns
    -------
    faults : list of tuples
        ``(i, j, downward, upward)`` with 1-based ``i > j``, where ``downward``
        is ``P[i, j]`` and ``upward`` is ``P[j, i]``
    """
    P = np.asarray(P)
    K = P.shape[1]
    faults = []
    for i in range(K):
        for j in range(i):
            if P[i, j] <= P[j, i]:
                faults.append((i + 1, j + 1, int(P[i, j]), int(P[j, i])))
    return faults


def tier_members(assignment, names: Sequence[str], K: int) -> Dict[int, List[str]]:
    """Names of the nodes in each tier 1..K."""
    z = np.asarray(assignment)
    if len(names) != z.shape[0]:
        raise ValueError("names and assignment must have the same length")
    return {t: [names[i] for i in np.flatnonzero(z == t)] for t in range(1, K + 1)}


def save_block_matrix(path: Union[str, Path], M: np.ndarray):
    """Write a block matrix as a JSON list of rows."""
    Path(path).write_text(json.dumps(np.asarray(M).tolist()))


def load_block_matrix(path: Union[str, Path]) -> np.ndarray:
    return np.asarray(json.loads(Path(path).read_text()), dtype=np.int64)
