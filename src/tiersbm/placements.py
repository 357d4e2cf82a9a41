"""
Placement records to count matrix.

Raw records describe PhD graduates placed from a graduating institution into
a hiring institution. Assistant professor placements between PhD-granting
institutions form the assignable part of the network; every other outcome is
routed to a fixed sink category.
"""

import json
import numpy as np
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

PRIVATE_RECRUITERS = ("6", "7")
PUBLIC_RECRUITERS = ("5",)
FACULTY_POSITION = "Assistant Professor"


@dataclass
class PlacementNetwork:
    """Count matrix with its node ordering."""
    counts: np.ndarray  # (n_institutions, n_assignable), destination x source
    institutions: List[str]
    n_assignable: int

    @property
    def n_total(self) -> int:
        return len(self.institutions)

    @property
    def sinks(self) -> List[str]:
        return self.institutions[self.n_assignable:]


def load_placements(path: Union[str, Path],
                    years: Optional[Tuple[int, int]] = None) -> List[Dict]:
    """
    Read placements from a ``{year: {id: placement}}`` JSON file.

    Parameters
    ----------
    path : str or Path
        JSON file
    years : tuple of int, optional
        Inclusive (first, last) year window; all years when omitted
    """
    raw = json.loads(Path(path).read_text())
    placements = []
    for year in sorted(raw, key=int):
        if years is not None and not (years[0] <= int(year) <= years[1]):
            continue
        placements.extend(raw[year].values())
    return placements


def sink_label(placement: Dict) -> str:
    """Sink category of a non-faculty placement."""
    recruiter = str(placement.get("recruiter_type", ""))
    if recruiter in PRIVATE_RECRUITERS:
        return f"{placement['to_name']} (private sector)"
    if recruiter in PUBLIC_RECRUITERS:
        return f"{placement['to_name']} (public sector)"
    return f"{placement['to_name']} (academic sink)"


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


def build_placement_network(placements: List[Dict]) -> PlacementNetwork:
    """
    Build the placement count matrix.

    Graduating institutions are assignable and come first in the ordering.
    Sinks follow in the order academic, public, private, then teaching
    institutions (any destination that graduates no PhDs). A teaching
    institution seen only as a non-faculty destination keeps an empty row.

    Returns
    -------
    PlacementNetwork
        ``counts[dest, src]`` is the number of graduates of ``src`` placed
        at ``dest``
    """
    faculty = [p for p in placements if p.get("position_name") == FACULTY_POSITION]
    other = [p for p in placements if p.get("position_name") != FACULTY_POSITION]

    academic = _unique(p["from_institution_name"] for p in placements)
    graduating = set(academic)
    teaching = _unique(p["to_name"] for p in placements if p["to_name"] not in graduating)

    labels = [sink_label(p) for p in other]
    academic_sinks = _unique(s for s in labels if s.endswith("(academic sink)"))
    public_sinks = _unique(s for s in labels if s.endswith("(public sector)"))
    private_sinks = _unique(s for s in labels if s.endswith("(private sector)"))

    institutions = academic + academic_sinks + public_sinks + private_sinks + teaching
    index = {name: i for i, name in enumerate(institutions)}

    counts = np.zeros((len(institutions), len(academic)), dtype=np.int32)
    for p in faculty:
        counts[index[p["to_name"]], index[p["from_institution_name"]]] += 1
    for p, label in zip(other, labels):
        counts[index[label], index[p["from_institution_name"]]] += 1

    return PlacementNetwork(counts=counts, institutions=institutions, n_assignable=len(academic))
