"""
Tiered head-mask hierarchy for slice-wise registration.

The registration of each slice is restricted to the brain plus the part of
the head that moves with it. Three nested masks trade capture range against
the risk of being distracted by non-brain tissue:

- strict: brain and immediate head, neck and lateral tissue excluded
- regular: strict, dilated 5 voxels posteriorly
- liberal: strict, dilated 10 voxels posteriorly

Axis convention: 0 = lateral (x), 1 = antero-posterior / phase-encode
(y, low index posterior), 2 = slice (z, low index inferior).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np
from scipy import ndimage

logger = logging.getLogger(__name__)

GAUSSIAN_SIGMA = 1.5
EROSION_RADIUS = 3
BACKGROUND_DILATION = 3
ANTERIOR_DILATION = 3
MEDIAL_DILATION = 6
REGULAR_POSTERIOR_REACH = 5
LIBERAL_POSTERIOR_REACH = 10
MIN_CORRIDOR_HALF_WIDTH = 15
LATERAL_SCALE = 1.2


class MaskTier(Enum):
    STRICT = 'strict'
    REGULAR = 'regular'
    LIBERAL = 'liberal'


@dataclass
class SliceExtent:
    """Slice indices derived from the per-slice brain area."""

    inferior: int
    superior: int
    top: int


@dataclass
class MaskHierarchy:
    """
    Reference mask set, read-only once built.

    Attributes
    ----------
    brain : np.ndarray
        Reference brain mask
    strict, regular, liberal : np.ndarray
        Nested head masks
    strict_dilated, regular_dilated, liberal_dilated : np.ndarray
        3-voxel ball dilations, used as background-rejection masks
    registration_reference : np.ndarray
        Reference image multiplied by the strict mask
    extent : SliceExtent
        Inferior/superior/top slice indices; slices above ``extent.top``
        are not registered
    mid_slice : int or None
        Mid slice of the brain (None for a prebuilt head mask)
    """

    brain: np.ndarray
    strict: np.ndarray
    regular: np.ndarray
    liberal: np.ndarray
    strict_dilated: np.ndarray
    regular_dilated: np.ndarray
    liberal_dilated: np.ndarray
    registration_reference: np.ndarray
    extent: SliceExtent
    mid_slice: Optional[int] = None

    @property
    def top_slice(self) -> int:
        return self.extent.top

    def tier(self, tier: MaskTier) -> np.ndarray:
        return getattr(self, tier.value)

    def dilated(self, tier: MaskTier) -> np.ndarray:
        return getattr(self, f'{tier.value}_dilated')

    def is_nested(self) -> bool:
        """Check ``brain ⊆ strict ⊆ regular ⊆ liberal`` voxel-wise."""
        return bool(
            np.all(self.strict[self.brain])
            and np.all(self.regular[self.strict])
            and np.all(self.liberal[self.regular])
        )


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(np.sign(value) * np.floor(abs(value) + 0.5))


def ball(radius: int) -> np.ndarray:
    """Spherical 3-D structuring element."""
    grid = np.mgrid[-radius:radius + 1, -radius:radius + 1, -radius:radius + 1]
    return np.sum(grid ** 2, axis=0) <= radius ** 2


def largest_component(mask: np.ndarray) -> np.ndarray:
    labels, n_labels = ndimage.label(mask)
    if n_labels <= 1:
        return mask.astype(bool)
    sizes = ndimage.sum(mask, labels, index=np.arange(1, n_labels + 1))
    return labels == (int(np.argmax(sizes)) + 1)


def directional_dilation(
    mask: np.ndarray,
    axis: int,
    reach: int,
    towards_negative: bool
) -> np.ndarray:
    """
    Dilate along one axis in one direction only.

    Equivalent to a 1-D structuring element of ``reach + 1`` voxels with the
    origin at one end.
    """
    mask = np.asarray(mask, dtype=bool)
    out = mask.copy()
    for k in range(1, reach + 1):
        src = [slice(None)] * mask.ndim
        dst = [slice(None)] * mask.ndim
        if towards_negative:
            dst[axis] = slice(0, -k)
            src[axis] = slice(k, None)
        else:
            dst[axis] = slice(k, None)
            src[axis] = slice(0, -k)
        out[tuple(dst)] |= mask[tuple(src)]
    return out


def smooth_mask(
    mask: np.ndarray,
    brain: np.ndarray,
    lower: float = 0.2,
    upper: float = 0.6,
    sigma: float = GAUSSIAN_SIGMA
) -> np.ndarray:
    """
    Largest component, hole filling and gaussian open/close.

    The first gaussian/threshold pair grows the mask, the second shrinks it
    back, giving a smooth outline. Brain voxels are always re-included.
    """
    mask = largest_component(mask)
    mask = ndimage.binary_fill_holes(mask)
    mask = ndimage.gaussian_filter(mask.astype(np.float64), sigma) >= lower
    mask = ndimage.gaussian_filter(mask.astype(np.float64), sigma) >= upper
    return mask | brain


def brain_intensity_thresholds(reference: np.ndarray, brain: np.ndarray) -> Tuple[float, float]:
    """
    Liberal and strict whole-head intensity thresholds.

    Returns 1/4 and 1/2 of the mean reference intensity inside the eroded
    brain mask.
    """
    eroded = ndimage.binary_erosion(brain, structure=ball(EROSION_RADIUS))
    if not eroded.any():
        logger.warning("Eroded brain mask is empty; using the full brain mask")
        eroded = brain
    mean_intensity = float(reference[eroded].mean())
    return mean_intensity / 4.0, mean_intensity / 2.0


def whole_head_mask(reference: np.ndarray, threshold: float, brain: np.ndarray) -> np.ndarray:
    return smooth_mask(reference >= threshold, brain, lower=0.2, upper=0.6)


def slice_area(brain: np.ndarray) -> np.ndarray:
    """Brain cross-sectional area per slice, normalised to the maximum."""
    area = brain.sum(axis=(0, 1)).astype(np.float64)
    return area / area.max()


def slice_extent(brain: np.ndarray) -> SliceExtent:
    """
    Inferior, superior and top slices with meaningful brain coverage.

    inferior: first slice with more than 5% of the maximal area
    superior: last slice with more than 10%
    top: last slice with more than 1%
    """
    area = slice_area(brain)
    return SliceExtent(
        inferior=int(np.flatnonzero(area > 0.05)[0]),
        superior=int(np.flatnonzero(area > 0.1)[-1]),
        top=int(np.flatnonzero(area > 0.01)[-1]),
    )


def find_mid_slice(brain: np.ndarray) -> int:
    """
    Mid slice of the brain from three estimates.

    Averages the slice with the longest antero-posterior extent, the slice
    with the largest area and the centre-of-gravity slice.
    """
    length = brain.sum(axis=1)  # (x, z)
    slice_a = np.unravel_index(int(np.argmax(length)), length.shape)[1]
    slice_b = int(np.argmax(brain.sum(axis=(0, 1))))
    slice_c = ndimage.center_of_mass(brain)[2]
    return round_half_away((slice_a + slice_b + slice_c) / 3.0)


def neck_exclusion(brain: np.ndarray, mid_slice: int) -> np.ndarray:
    """
    Region anterior to the back of the brain, leaning forward inferiorly.

    Superior to the mid slice, voxels from 3 rows behind the posterior brain
    boundary are accepted. From the mid slice downwards the boundary moves
    one row anteriorly per slice.
    """
    rows = np.flatnonzero(brain[:, :, mid_slice].any(axis=0))
    y_back = int(rows[0]) if rows.size else 0

    accept = np.zeros(brain.shape, dtype=bool)
    accept[:, max(y_back - 3, 0):, mid_slice + 1:] = True
    for z in range(mid_slice, -1, -1):
        y_start = y_back + (mid_slice - z)
        if y_start < brain.shape[1]:
            accept[:, y_start:, z] = True
    return accept


def brain_mid_column(brain: np.ndarray) -> int:
    return round_half_away(ndimage.center_of_mass(brain)[0])


def lateral_restriction(brain: np.ndarray, mode: int) -> Optional[np.ndarray]:
    """
    Lateral corridor that limits the head mask.

    Parameters
    ----------
    brain : np.ndarray
        Brain mask
    mode : int
        0: no restriction, 1: fixed corridor of 120% of the 95th percentile
        brain width for all slices, 2: per-slice 1.2x lateral scaling of the
        brain with a 31-voxel minimum corridor

    Returns
    -------
    np.ndarray or None
        Boolean corridor mask, or None for mode 0
    """
    if mode == 0:
        return None

    x_mid = brain_mid_column(brain)
    corridor = np.zeros(brain.shape, dtype=bool)

    if mode == 1:
        width = brain.sum(axis=0)
        width = width[width > 0]
        half_width = round_half_away(0.6 * float(np.percentile(width, 95)))
        corridor[max(x_mid - half_width, 0):x_mid + half_width + 1] = True
        return corridor

    if mode == 2:
        scale = np.diag([1.0 / LATERAL_SCALE, 1.0, 1.0])
        offset = [x_mid - x_mid / LATERAL_SCALE, 0.0, 0.0]
        widened = ndimage.affine_transform(
            brain.astype(np.float64), scale, offset=offset, order=0
        ) > 0.5
        widened |= brain
        projection = widened.any(axis=1, keepdims=True)
        corridor = np.broadcast_to(projection, brain.shape).copy()
        half_width = MIN_CORRIDOR_HALF_WIDTH
        corridor[max(x_mid - half_width, 0):x_mid + half_width + 1] = True
        return corridor

    raise ValueError(f"Unknown lateral restriction mode: {mode}")


def dilate_anterior_medial(mask: np.ndarray, x_mid: int) -> np.ndarray:
    """Dilate 3 voxels anteriorly and 6 voxels towards the midline."""
    mask = directional_dilation(mask, axis=1, reach=ANTERIOR_DILATION, towards_negative=False)

    # each hemisphere only grows towards the midline
    towards_right = directional_dilation(mask, axis=0, reach=MEDIAL_DILATION, towards_negative=False)
    towards_left = directional_dilation(mask, axis=0, reach=MEDIAL_DILATION, towards_negative=True)
    medial = mask.copy()
    medial[:x_mid + 1] |= towards_right[:x_mid + 1]
    medial[x_mid:] |= towards_left[x_mid:]
    return medial


def extend_sparse_slices(mask: np.ndarray, extent: SliceExtent) -> np.ndarray:
    """
    Give poorly covered end slices the mask of their well-covered neighbours.

    Slices below ``extent.inferior`` take the union of the masks from
    themselves up to the inferior slice; slices above ``extent.superior``
    take the union down to the superior slice.
    """
    mask = mask.copy()
    for z in range(extent.inferior - 1, -1, -1):
        mask[:, :, z] |= mask[:, :, z + 1]
    for z in range(extent.superior + 1, mask.shape[2]):
        mask[:, :, z] |= mask[:, :, z - 1]
    return mask


def build_mask_hierarchy(
    reference: np.ndarray,
    brain_mask: np.ndarray,
    restrict_mode: int = 1,
    head_mask: Optional[np.ndarray] = None,
    engine=None,
    bias_correct: bool = False,
    spacing=(1.0, 1.0, 1.0)
) -> MaskHierarchy:
    """
    Build the strict/regular/liberal mask hierarchy of a reference volume.

    Parameters
    ----------
    reference : np.ndarray
        3-D reference volume
    brain_mask : np.ndarray
        3-D brain mask of the reference
    restrict_mode : int
        Lateral restriction mode (0, 1 or 2)
    head_mask : np.ndarray, optional
        Prebuilt strict head mask. Skips the whole-head mask construction.
    engine : RegistrationEngine, optional
        Required when ``bias_correct`` is True
    bias_correct : bool
        N4 bias-correct the reference before the strict threshold and for
        the registration reference
    spacing : sequence of float
        Voxel size, passed to the engine

    Returns
    -------
    MaskHierarchy
    """
    reference = np.asarray(reference, dtype=np.float64)
    brain = np.asarray(brain_mask) > 0
    if reference.shape != brain.shape:
        raise ValueError(
            f"Reference {reference.shape} and brain mask {brain.shape} differ in shape"
        )
    if not brain.any():
        raise ValueError("Brain mask is empty")
    if bias_correct and engine is None:
        raise ValueError("bias_correct requires a registration engine")

    extent = slice_extent(brain)
    mid_slice = None

    if head_mask is not None:
        logger.info("Using prebuilt head mask")
        strict = (np.asarray(head_mask) > 0) | brain
    else:
        logger.info("Creating a whole-head mask")
        thr_liberal, thr_strict = brain_intensity_thresholds(reference, brain)
        liberal_head = whole_head_mask(reference, thr_liberal, brain)

        image_for_strict = reference
        if bias_correct:
            logger.info("  bias-correction for the whole head")
            image_for_strict = engine.bias_correct(reference, liberal_head, spacing)
        strict = whole_head_mask(image_for_strict, thr_strict, brain)

        logger.info("  excluding the neck")
        mid_slice = find_mid_slice(brain)
        strict = (strict & neck_exclusion(brain, mid_slice)) | brain

        corridor = lateral_restriction(brain, restrict_mode)
        if corridor is not None:
            strict = (strict & corridor) | brain

        logger.info("  dilating and combining")
        strict = dilate_anterior_medial(strict, brain_mid_column(brain))
        strict = extend_sparse_slices(strict, extent)

        strict = smooth_mask(strict, brain, lower=0.4, upper=0.6)
        if corridor is not None:
            strict &= corridor
        strict |= brain

    regular = directional_dilation(strict, axis=1, reach=REGULAR_POSTERIOR_REACH, towards_negative=True)
    liberal = directional_dilation(strict, axis=1, reach=LIBERAL_POSTERIOR_REACH, towards_negative=True)

    registration_image = reference
    if bias_correct:
        registration_image = engine.bias_correct(reference, strict, spacing)

    structure = ball(BACKGROUND_DILATION)
    hierarchy = MaskHierarchy(
        brain=brain,
        strict=strict,
        regular=regular,
        liberal=liberal,
        strict_dilated=ndimage.binary_dilation(strict, structure=structure),
        regular_dilated=ndimage.binary_dilation(regular, structure=structure),
        liberal_dilated=ndimage.binary_dilation(liberal, structure=structure),
        registration_reference=registration_image * strict,
        extent=extent,
        mid_slice=mid_slice,
    )

    logger.info(
        "  mask voxels: strict %d, regular %d, liberal %d (top slice %d)",
        strict.sum(), regular.sum(), liberal.sum(), extent.top
    )
    return hierarchy
