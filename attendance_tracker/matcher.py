import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import MATCH_THRESHOLD, UNKNOWN_LABEL
from .roster import Roster


@dataclass(frozen=True)
class MatchResult:
    name: Optional[str]
    distance: float

    @property
    def is_known(self) -> bool:
        return self.name is not None

    @property
    def label(self) -> str:
        return self.name if self.name is not None else UNKNOWN_LABEL


def match(embedding: np.ndarray, roster: Roster, threshold: float = MATCH_THRESHOLD) -> MatchResult:
    """Return the roster identity whose closest reference is nearest to ``embedding``.

    Every reference embedding of every entry is a candidate; the global
    minimum wins. When that minimum is above ``threshold`` the result is
    unknown but still reports the best distance.
    """
    matrix, labels = roster.reference_matrix()
    if matrix.size == 0:
        return MatchResult(name=None, distance=math.inf)

    query = np.asarray(embedding, dtype=np.float32).reshape(-1)
    if query.shape[0] != matrix.shape[1]:
        raise ValueError(
            f"Embedding length {query.shape[0]} does not match roster length {matrix.shape[1]}."
        )

    distances = np.linalg.norm(matrix - query, axis=1)
    idx = int(np.argmin(distances))
    best = float(distances[idx])

    if best > threshold:
        return MatchResult(name=None, distance=best)
    return MatchResult(name=labels[idx], distance=best)
