"""
Input validation for the motion-correction workflow.

All checks run before any processing starts so a bad call fails fast with
a clear message instead of partway through a long registration.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import nibabel as nib
import numpy as np

from macaquemoco.utils.image_io import remove_ext

logger = logging.getLogger(__name__)

MIN_VOLUMES = 2


class ImageValidationError(Exception):
    """Raised when image validation fails."""
    pass


def _require_file(img_file: Path, description: str) -> Path:
    img_file = Path(img_file)
    if not img_file.exists():
        raise ImageValidationError(f"{description} not found: {img_file}")
    if not img_file.name.endswith('.nii.gz'):
        raise ImageValidationError(
            f"{description} must be a compressed NIfTI image (.nii.gz): {img_file}"
        )
    return img_file


def validate_timeseries(epi_file: Path) -> Dict[str, Any]:
    """
    Check that the input is a 4-D NIfTI-GZ timeseries with at least 2 volumes.

    Parameters
    ----------
    epi_file : Path
        EPI timeseries

    Returns
    -------
    dict
        'shape', 'n_volumes' and 'voxel_size'

    Raises
    ------
    ImageValidationError
        If the file is missing, not NIfTI-GZ, not 4-D or too short
    """
    epi_file = _require_file(epi_file, "EPI timeseries")
    img = nib.load(epi_file)
    shape = img.shape

    if len(shape) != 4:
        raise ImageValidationError(
            f"EPI timeseries must be a 4D image, got shape {shape}: {epi_file}"
        )
    if shape[3] < MIN_VOLUMES:
        raise ImageValidationError(
            f"EPI timeseries must have at least {MIN_VOLUMES} volumes, got {shape[3]}"
        )
    if shape[2] < 2:
        logger.warning("EPI timeseries has a single slice")

    zooms = img.header.get_zooms()[:3]
    return {
        'shape': tuple(int(s) for s in shape),
        'n_volumes': int(shape[3]),
        'voxel_size': tuple(float(z) for z in zooms),
    }


def validate_matching_geometry(
    img_file: Path,
    target_shape: tuple,
    target_affine: np.ndarray,
    description: str
) -> None:
    """
    Check that a 3-D image shares the voxel grid of the timeseries.

    Raises
    ------
    ImageValidationError
        If the dimensions differ. A differing affine only logs a warning,
        since the image is rewritten with the timeseries geometry.
    """
    img_file = _require_file(img_file, description)
    img = nib.load(img_file)
    if tuple(img.shape[:3]) != tuple(target_shape[:3]):
        raise ImageValidationError(
            f"{description} dimensions {img.shape[:3]} do not match the "
            f"EPI timeseries {tuple(target_shape[:3])}"
        )
    if not np.allclose(img.affine, target_affine, atol=1e-3):
        logger.warning("%s orientation differs from the EPI timeseries; its geometry will be reset", description)


def validate_inputs(
    epi_file: Path,
    ref_image: Optional[Path] = None,
    ref_brain_mask: Optional[Path] = None,
    ref_head_mask: Optional[Path] = None,
    brain_mask_suffix: str = '_brain_mask'
) -> Dict[str, Any]:
    """
    Validate the timeseries and any prebuilt reference inputs.

    Parameters
    ----------
    epi_file : Path
        EPI timeseries
    ref_image, ref_brain_mask, ref_head_mask : Path, optional
        Prebuilt reference image and masks
    brain_mask_suffix : str
        Suffix of the brain mask that would sit next to a prebuilt
        reference image. If such a file exists but no brain mask was
        given, the call is ambiguous and rejected.

    Returns
    -------
    dict
        Properties of the timeseries
    """
    properties = validate_timeseries(epi_file)
    img = nib.load(epi_file)

    if ref_image is not None:
        validate_matching_geometry(ref_image, img.shape, img.affine, "Reference image")
        if ref_brain_mask is None:
            default_name = Path(remove_ext(ref_image) + brain_mask_suffix + '.nii.gz')
            if default_name.exists():
                raise ImageValidationError(
                    "A reference image was provided, but the brain mask was not specified. "
                    f"However, a file with the default name already exists: {default_name}. "
                    "Please specify the brain mask explicitly or rename this file to avoid conflict."
                )

    if ref_brain_mask is not None:
        validate_matching_geometry(ref_brain_mask, img.shape, img.affine, "Reference brain mask")
    if ref_head_mask is not None:
        validate_matching_geometry(ref_head_mask, img.shape, img.affine, "Reference head mask")

    return properties
