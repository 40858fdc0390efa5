"""
Volume quality scoring for reference selection.

Volumes free of slice-wise distortion are well predicted by the average of
neighbouring slices (slice consistency) and resemble the other good volumes
(volume consistency). The best volumes on both counts are averaged into the
reference.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from macaquemoco.reference.head_mask import round_half_away
from macaquemoco.registration.similarity import normalized_correlation, score_against_slice_proxy

logger = logging.getLogger(__name__)

MIN_RECOMMENDED_VOLUMES = 5


@dataclass
class VolumeScore:
    """Scores of one volume; lower is better."""

    index: int
    slice_score: float
    volume_score: Optional[float] = None
    combined_score: Optional[float] = None


@dataclass
class VolumeSelection:
    """
    Outcome of volume scoring.

    Attributes
    ----------
    scores : list of VolumeScore
        All volumes, ordered best to worst by slice consistency
    liberal : list of int
        Indices of the liberal selection (best slice consistency)
    strict : list of int
        Indices of the strict selection (best combined score), best first
    low_volume_warning : bool
        True if fewer than 5 volumes were available
    """

    scores: List[VolumeScore] = field(default_factory=list)
    liberal: List[int] = field(default_factory=list)
    strict: List[int] = field(default_factory=list)
    low_volume_warning: bool = False


def selection_size(n_items: int, fraction: float) -> int:
    """Round ``fraction * n_items`` to the nearest integer, at least 1."""
    return max(1, round_half_away(fraction * n_items))


def rank_volumes(timeseries: np.ndarray) -> List[Tuple[int, float]]:
    """
    Rank volumes by the similarity to their slice-smoothed version.

    Parameters
    ----------
    timeseries : np.ndarray
        4-D array (x, y, z, t)

    Returns
    -------
    list of (int, float)
        ``(index, score)`` sorted best (most negative) first, ties by index
    """
    scores = [
        (v, score_against_slice_proxy(timeseries[..., v]))
        for v in range(timeseries.shape[-1])
    ]
    return sorted(scores, key=lambda item: (item[1], item[0]))


def score_volumes(
    timeseries: np.ndarray,
    liberal_fraction: float = 0.4,
    strict_fraction: float = 0.5
) -> VolumeSelection:
    """
    Select the volumes that make up the reference.

    Parameters
    ----------
    timeseries : np.ndarray
        4-D array (x, y, z, t)
    liberal_fraction : float
        Fraction of all volumes kept on slice consistency
    strict_fraction : float
        Fraction of the liberal selection kept on the combined score

    Returns
    -------
    VolumeSelection
    """
    n_volumes = timeseries.shape[-1]
    selection = VolumeSelection()
    if n_volumes < MIN_RECOMMENDED_VOLUMES:
        logger.warning(
            "Only %d volumes available; the reference may be of poor quality", n_volumes
        )
        selection.low_volume_warning = True

    ranking = rank_volumes(timeseries)
    selection.scores = [VolumeScore(index=v, slice_score=s) for v, s in ranking]

    n_liberal = selection_size(n_volumes, liberal_fraction)
    n_strict = selection_size(n_liberal, strict_fraction)
    selected = selection.scores[:n_liberal]
    selection.liberal = [s.index for s in selected]

    # inter-volume consistency against the average of the liberal selection
    temporary_reference = timeseries[..., selection.liberal].mean(axis=-1)
    for score in selected:
        score.volume_score = normalized_correlation(
            timeseries[..., score.index], temporary_reference
        )
        score.combined_score = (2.0 * score.slice_score + score.volume_score) / 3.0

    best = sorted(selected, key=lambda s: (s.combined_score, s.index))[:n_strict]
    selection.strict = [s.index for s in best]

    logger.info(
        "Selected %d of %d volumes (liberal %d): %s",
        n_strict, n_volumes, n_liberal, selection.strict
    )
    return selection
