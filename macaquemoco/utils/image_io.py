"""
NIfTI helpers shared by the motion-correction workflow.

Every image written by the workflow takes its affine and header from an
image of known-good geometry, so header fields rewritten by external tools
(slice thickness in particular) never propagate.
"""

from pathlib import Path
from typing import Optional, Tuple, Union

import nibabel as nib
import numpy as np


def remove_ext(path: Union[str, Path]) -> str:
    """Strip ``.nii.gz`` / ``.nii`` from a file name."""
    name = str(path)
    for ext in ('.nii.gz', '.nii'):
        if name.endswith(ext):
            return name[:-len(ext)]
    return name


def voxel_spacing(img: nib.Nifti1Image) -> Tuple[float, float, float]:
    zooms = img.header.get_zooms()
    return tuple(float(z) for z in zooms[:3])


def copy_geometry(
    data: np.ndarray,
    geometry: nib.Nifti1Image,
    output_file: Optional[Path] = None,
    dtype=np.float32
) -> nib.Nifti1Image:
    """
    Wrap ``data`` in the affine and header of ``geometry``.

    Parameters
    ----------
    data : np.ndarray
        Voxel data (3-D or 4-D); spatial dimensions must match ``geometry``
    geometry : Nifti1Image
        Image providing the affine and header
    output_file : Path, optional
        If given, the image is saved there
    dtype : numpy dtype
        On-disk data type

    Returns
    -------
    Nifti1Image
    """
    if tuple(data.shape[:3]) != tuple(geometry.shape[:3]):
        raise ValueError(
            f"Data shape {data.shape} does not match geometry {geometry.shape}"
        )

    header = geometry.header.copy()
    header.set_data_dtype(dtype)
    # drop any scaling so the data round-trips unchanged
    header.set_slope_inter(1.0, 0.0)
    zooms = header.get_zooms()
    img = nib.Nifti1Image(np.asarray(data, dtype=dtype), geometry.affine, header)
    if data.ndim == len(zooms):
        img.header.set_zooms(zooms)
    elif data.ndim > 3 and len(zooms) == 3:
        img.header.set_zooms(tuple(zooms) + (1.0,) * (data.ndim - 3))

    if output_file is not None:
        output_file = Path(output_file)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        nib.save(img, output_file)
    return img


def volume_geometry(img: nib.Nifti1Image) -> nib.Nifti1Image:
    """3-D geometry image (first volume) of a 3-D or 4-D image."""
    if len(img.shape) > 3:
        return img.slicer[:, :, :, 0]
    return img
