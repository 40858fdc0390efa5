"""
Brain mask creation for the EPI reference.

Two methods:

- ``T1W``: register a T1-weighted image to the EPI reference with ANTs and
  carry its brain mask over (nearest neighbour)
- ``EPI``: FSL BET on the EPI reference itself
"""

import logging
import subprocess
from pathlib import Path
from typing import Optional

import nibabel as nib
import numpy as np

from macaquemoco.config import ConfigurationError
from macaquemoco.utils.image_io import copy_geometry

logger = logging.getLogger(__name__)


def extract_brain_epi(
    reference_file: Path,
    mask_file: Path,
    frac: float = 0.3
) -> Path:
    """
    Brain mask of the EPI reference with FSL BET.

    Parameters
    ----------
    reference_file : Path
        EPI reference volume
    mask_file : Path
        Output brain mask
    frac : float
        Fractional intensity threshold

    Returns
    -------
    Path
        Path to the brain mask
    """
    mask_file = Path(mask_file)
    mask_file.parent.mkdir(parents=True, exist_ok=True)
    brain_file = mask_file.parent / 'bet_brain.nii.gz'

    bet_cmd = [
        'bet',
        str(reference_file),
        str(brain_file),
        '-f', str(frac),
        '-m',
        '-R',
    ]
    result = subprocess.run(bet_cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    if result.returncode != 0:
        logger.error(result.stderr)
        raise RuntimeError("FSL bet failed")

    bet_mask = Path(str(brain_file).replace('.nii.gz', '_mask.nii.gz'))
    if bet_mask != mask_file:
        bet_mask.rename(mask_file)
    brain_file.unlink(missing_ok=True)
    return mask_file


def warp_t1w_brain_mask(
    reference_file: Path,
    t1w_file: Path,
    t1w_mask_file: Path,
    mask_file: Path,
    n_cores: int = 1
) -> Path:
    """
    Carry a T1w brain mask over to the EPI reference.

    The T1w image is affinely registered to the reference with
    ``antsRegistrationSyN.sh`` and the mask resampled with nearest neighbour
    interpolation.
    """
    mask_file = Path(mask_file)
    output_prefix = mask_file.parent / 't1w_to_ref_'
    mask_file.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        'antsRegistrationSyN.sh',
        '-d', '3',
        '-f', str(reference_file),
        '-m', str(t1w_file),
        '-o', str(output_prefix),
        '-n', str(n_cores),
        '-t', 'a',
    ]
    result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
    if result.returncode != 0:
        logger.error(result.stdout[-1000:])
        raise RuntimeError("T1w to EPI registration failed")

    affine = Path(str(output_prefix) + '0GenericAffine.mat')
    if not affine.exists():
        raise FileNotFoundError(f"Expected transform not found: {affine}")

    cmd = [
        'antsApplyTransforms',
        '-d', '3',
        '-i', str(t1w_mask_file),
        '-r', str(reference_file),
        '-o', str(mask_file),
        '-n', 'NearestNeighbor',
        '-t', str(affine),
    ]
    result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    if result.returncode != 0:
        logger.error(result.stderr)
        raise RuntimeError("antsApplyTransforms failed")
    return mask_file


def create_brain_mask(
    method: str,
    reference_file: Path,
    mask_file: Path,
    t1w_image: Optional[Path] = None,
    t1w_mask: Optional[Path] = None,
    bet_frac: float = 0.3,
    n_cores: int = 1
) -> Path:
    """
    Create the reference brain mask with the requested method.

    Parameters
    ----------
    method : str
        'T1W' or 'EPI' (case-insensitive)
    reference_file : Path
        EPI reference volume
    mask_file : Path
        Output brain mask
    t1w_image, t1w_mask : Path, optional
        Required for the T1W method
    bet_frac : float
        BET fractional intensity threshold for the EPI method
    n_cores : int
        Threads for ANTs

    Returns
    -------
    Path
        Binarised brain mask with the reference geometry
    """
    method = method.upper()
    logger.info("  extracting the brain (%s)", method)

    if method == 'T1W':
        if t1w_image is None or t1w_mask is None:
            raise ConfigurationError(
                "Please provide a T1w image and mask for the brain extraction, "
                "or select the EPI method."
            )
        warp_t1w_brain_mask(reference_file, t1w_image, t1w_mask, mask_file, n_cores)
    elif method == 'EPI':
        extract_brain_epi(reference_file, mask_file, bet_frac)
    else:
        raise ConfigurationError(f"Unknown brain extraction method: {method}")

    # binarise and restore the reference geometry
    mask = (np.asarray(nib.load(mask_file).get_fdata()) > 0).astype(np.uint8)
    copy_geometry(mask, nib.load(reference_file), mask_file)
    return mask_file
