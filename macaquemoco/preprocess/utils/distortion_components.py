"""
Principal components of the slice-wise distortion over time.

The phase-encode displacement field and its magnitude ("distance") are
reduced to a handful of timecourses inside the brain mask. These can be
entered as nuisance regressors in a GLM, in the same way aCompCor
components are.
"""

import logging
from pathlib import Path
from typing import Any, Dict

import nibabel as nib
import numpy as np
from sklearn.decomposition import PCA

logger = logging.getLogger(__name__)

DEFAULT_N_COMPONENTS = 12


def component_count(n_volumes: int, requested: int = DEFAULT_N_COMPONENTS) -> int:
    """Requested number of components, or ``n_volumes - 1`` for short series."""
    if n_volumes <= requested:
        return max(1, n_volumes - 1)
    return requested


def extract_components(
    field: np.ndarray,
    mask: np.ndarray,
    n_components: int
) -> Dict[str, Any]:
    """
    PCA of the voxel timecourses of a 4-D field within a mask.

    Parameters
    ----------
    field : np.ndarray
        4-D array (x, y, z, t)
    mask : np.ndarray
        3-D mask
    n_components : int
        Number of components

    Returns
    -------
    dict
        'components' (n_timepoints x n_components) and 'explained_variance'
    """
    mask = np.asarray(mask) > 0
    timeseries = field[mask, :]  # (n_voxels, n_timepoints)
    n_voxels, n_timepoints = timeseries.shape
    if n_voxels == 0:
        raise ValueError("Mask contains no voxels")

    n_components = min(n_components, n_voxels, n_timepoints)

    # Demean and standardize
    timeseries = timeseries - np.mean(timeseries, axis=1, keepdims=True)
    std = np.std(timeseries, axis=1, keepdims=True)
    std[std == 0] = 1
    timeseries = timeseries / std

    pca = PCA(n_components=n_components)
    components = pca.fit_transform(timeseries.T)

    return {
        'components': components,
        'explained_variance': pca.explained_variance_ratio_,
        'n_voxels': int(n_voxels),
        'n_components': int(n_components),
    }


def write_components(components: np.ndarray, output_file: Path) -> Path:
    """Write components as a tab-separated table, one row per volume."""
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    np.savetxt(output_file, components, delimiter='\t', fmt='%.6f')
    return output_file


def extract_distortion_components(
    displacement_file: Path,
    mask_file: Path,
    transform_dir: Path,
    n_components: int = DEFAULT_N_COMPONENTS
) -> Dict[str, Any]:
    """
    Extract displacement and distance components of the distortion fields.

    Parameters
    ----------
    displacement_file : Path
        4-D phase-encode displacement field
    mask_file : Path
        Reference brain mask
    transform_dir : Path
        Output directory for ``motionDisplacementComp.txt`` and
        ``motionDistanceComp.txt``
    n_components : int
        Maximum number of components

    Returns
    -------
    dict
        Output paths plus the PCA results of both fields
    """
    logger.info("  extracting principal components of distortions over time")

    displacement = np.asarray(nib.load(displacement_file).get_fdata(), dtype=np.float64)
    if displacement.ndim != 4:
        raise ValueError(f"Expected a 4D displacement field, got shape {displacement.shape}")
    mask = np.asarray(nib.load(mask_file).get_fdata()) > 0

    n_comp = component_count(displacement.shape[3], n_components)
    transform_dir = Path(transform_dir)

    displacement_results = extract_components(displacement, mask, n_comp)
    distance_results = extract_components(np.abs(displacement), mask, n_comp)

    logger.info(
        "    %d components, explained variance: displacement %.1f%%, distance %.1f%%",
        displacement_results['n_components'],
        100 * displacement_results['explained_variance'].sum(),
        100 * distance_results['explained_variance'].sum()
    )

    return {
        'displacement_components': write_components(
            displacement_results['components'], transform_dir / 'motionDisplacementComp.txt'
        ),
        'distance_components': write_components(
            distance_results['components'], transform_dir / 'motionDistanceComp.txt'
        ),
        'displacement': displacement_results,
        'distance': distance_results,
    }
