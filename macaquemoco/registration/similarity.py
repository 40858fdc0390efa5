"""
Image similarity metrics used to drive and validate slice registration.

The score follows the ANTs ``ImageMath NormalizedCorrelation`` convention:
the negated Pearson correlation inside a mask, so that more negative values
indicate a better match. Scores are clipped to [-1, 0]; anti-correlated or
degenerate inputs score 0.
"""

from typing import Optional

import numpy as np
from scipy.ndimage import uniform_filter


def normalized_correlation(
    image_a: np.ndarray,
    image_b: np.ndarray,
    mask: Optional[np.ndarray] = None
) -> float:
    """
    Compute the normalized negative correlation between two images.

    Parameters
    ----------
    image_a, image_b : np.ndarray
        Images of identical shape (any dimensionality)
    mask : np.ndarray, optional
        Binary mask restricting the voxels that contribute. If None, all
        voxels are used.

    Returns
    -------
    float
        Score in [-1, 0]. More negative is better. Empty masks and
        zero-variance inputs return 0.0.
    """
    if image_a.shape != image_b.shape:
        raise ValueError(
            f"Images must have the same shape: {image_a.shape} vs {image_b.shape}"
        )

    if mask is None:
        a_vals = np.asarray(image_a, dtype=np.float64).ravel()
        b_vals = np.asarray(image_b, dtype=np.float64).ravel()
    else:
        mask = np.asarray(mask) > 0
        if mask.shape != image_a.shape:
            raise ValueError(
                f"Mask shape {mask.shape} does not match image shape {image_a.shape}"
            )
        a_vals = np.asarray(image_a, dtype=np.float64)[mask]
        b_vals = np.asarray(image_b, dtype=np.float64)[mask]

    if a_vals.size < 2:
        return 0.0

    a_vals = a_vals - a_vals.mean()
    b_vals = b_vals - b_vals.mean()
    denom = np.sqrt(np.sum(a_vals ** 2) * np.sum(b_vals ** 2))
    if denom <= 0 or not np.isfinite(denom):
        return 0.0

    r = float(np.sum(a_vals * b_vals) / denom)
    return float(np.clip(-r, -1.0, 0.0))


def smooth_across_slices(volume: np.ndarray, radius: int = 1) -> np.ndarray:
    """
    Average each slice with its neighbours along the slice axis (axis 2).

    Acts as an interpolation proxy: a volume free of slice-wise distortion
    is well predicted by the mean of neighbouring slices.
    """
    size = [1] * volume.ndim
    size[2] = 2 * radius + 1
    return uniform_filter(np.asarray(volume, dtype=np.float64), size=size, mode='nearest')


def score_against_slice_proxy(
    volume: np.ndarray,
    mask: Optional[np.ndarray] = None,
    radius: int = 1
) -> float:
    """Similarity between a volume and its slice-smoothed version."""
    return normalized_correlation(volume, smooth_across_slices(volume, radius), mask)
