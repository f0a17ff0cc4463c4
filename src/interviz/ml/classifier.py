"""Image classifier output decoding."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from interviz.labelmap import UNKNOWN_LABEL

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    display_name: str
    score: float


def build_classifier_results(
    scores: ArrayLike,
    label_map: Sequence[str],
    score_threshold: float,
) -> list[ClassificationResult]:
    """Turn raw per-class scores into labelled results.

    Args:
        scores: Per-class scores; index ``i`` is class id ``i``. A leading
            batch dimension of size 1 is flattened away.
        label_map: Class id to display name. Ids past its end map to
            ``"unknown"``.
        score_threshold: Scores below this are dropped.

    Returns:
        Results sorted by score (descending), ties kept in class id order.
    """
    flat = np.asarray(scores, dtype=np.float64).reshape(-1)
    results = [
        ClassificationResult(
            display_name=label_map[class_id] if class_id < len(label_map) else UNKNOWN_LABEL,
            score=float(score),
        )
        for class_id, score in enumerate(flat)
        if score >= score_threshold
    ]
    # sorted() is stable, so equal scores keep ascending class id order.
    return sorted(results, key=lambda result: -result.score)
