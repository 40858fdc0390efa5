"""
Reference volume construction from the best volumes of a timeseries.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from macaquemoco.reference.scoring import VolumeSelection

logger = logging.getLogger(__name__)


@dataclass
class ReferenceResult:
    """Reference image plus how it was obtained."""

    image: np.ndarray
    selection: Optional[VolumeSelection] = None
    prebuilt: bool = False


def average_volumes(timeseries: np.ndarray, indices: Sequence[int]) -> np.ndarray:
    if len(indices) == 0:
        raise ValueError("Cannot average an empty selection of volumes")
    return np.asarray(timeseries[..., list(indices)], dtype=np.float64).mean(axis=-1)


def build_reference(
    timeseries: np.ndarray,
    selection: VolumeSelection,
    engine,
    spacing=(1.0, 1.0, 1.0)
) -> ReferenceResult:
    """
    Average the strict selection after a coarse group-wise alignment.

    Parameters
    ----------
    timeseries : np.ndarray
        4-D array (x, y, z, t)
    selection : VolumeSelection
        Output of :func:`score_volumes`
    engine : RegistrationEngine
        Provides ``motion_correct``
    spacing : sequence of float
        Voxel size

    Returns
    -------
    ReferenceResult
    """
    volumes = np.asarray(timeseries[..., selection.strict], dtype=np.float64)

    if len(selection.strict) == 1:
        logger.info("  single volume selected, no alignment needed")
        return ReferenceResult(image=volumes[..., 0], selection=selection)

    logger.info("  roughly aligning and averaging %d volumes", len(selection.strict))
    aligned = engine.motion_correct(volumes, spacing)
    return ReferenceResult(image=aligned.mean(axis=-1), selection=selection)
