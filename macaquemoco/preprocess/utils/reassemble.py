"""
Reassembly of registered slices into volumes and timeseries.

Slices are stacked along the slice axis into per-volume files as soon as a
volume is done, then the per-volume files are merged along time in chunks.
Each chunk is written as a sub-merge (``<name>_x1``, ``<name>_x2``, ...)
before the final merge, so no single step handles more than
``chunk_size`` files at a time.
"""

import logging
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

import nibabel as nib
import numpy as np

from macaquemoco.utils.image_io import copy_geometry, remove_ext

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000


def volume_file(directory: Path, volume: int, suffix: str = '') -> Path:
    """Per-volume file name, zero padded so lexical and volume order agree."""
    return Path(directory) / f'vol{volume:04d}{suffix}.nii.gz'


def stack_slices(slices: Sequence[np.ndarray]) -> np.ndarray:
    """Stack 2-D slices along the slice axis (axis 2), in order."""
    if len(slices) == 0:
        raise ValueError("No slices to stack")
    return np.stack([np.asarray(s) for s in slices], axis=2)


def write_volume(
    slices: Sequence[np.ndarray],
    geometry: nib.Nifti1Image,
    output_file: Path
) -> Path:
    """Stack slices into a volume written with the geometry of ``geometry``."""
    copy_geometry(stack_slices(slices), geometry, output_file)
    return Path(output_file)


def _chunks(items: Sequence[Path], size: int) -> List[Sequence[Path]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _concatenate(files: Sequence[Path]) -> np.ndarray:
    arrays = []
    for f in files:
        data = np.asarray(nib.load(f).dataobj, dtype=np.float32)
        if data.ndim == 3:
            data = data[..., np.newaxis]
        arrays.append(data)
    return np.concatenate(arrays, axis=3)


def merge_volumes(
    volume_files: Sequence[Path],
    output_file: Path,
    geometry: nib.Nifti1Image,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    work_dir: Optional[Path] = None,
    cleanup: bool = True
) -> Path:
    """
    Merge 3-D volume files into a 4-D timeseries.

    Parameters
    ----------
    volume_files : sequence of Path
        Volume files in volume order
    output_file : Path
        Output 4-D image
    geometry : Nifti1Image
        Image providing the affine and header (typically the source
        timeseries)
    chunk_size : int
        Maximum number of files merged in one step (at least 2)
    work_dir : Path, optional
        Directory for the intermediate sub-merges (default: next to the
        output)
    cleanup : bool
        Remove the intermediate sub-merges afterwards

    Returns
    -------
    Path
        Path to the merged timeseries
    """
    volume_files = [Path(f) for f in volume_files]
    if not volume_files:
        raise ValueError("No volumes to merge")
    if chunk_size < 2:
        raise ValueError(f"chunk_size must be >= 2, got {chunk_size}")

    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    if len(volume_files) <= chunk_size:
        copy_geometry(_concatenate(volume_files), geometry, output_file)
        return output_file

    work_dir = Path(work_dir) if work_dir is not None else output_file.parent
    work_dir.mkdir(parents=True, exist_ok=True)
    stem = Path(remove_ext(output_file)).name

    partial_files = []
    for i, chunk in enumerate(_chunks(volume_files, chunk_size), start=1):
        partial = work_dir / f'{stem}_x{i}.nii.gz'
        logger.debug("  merging volumes into %s (%d files)", partial.name, len(chunk))
        copy_geometry(_concatenate(chunk), geometry, partial)
        partial_files.append(partial)

    # sub-merges may themselves exceed the chunk size for very long series
    parts_dir = work_dir / f'{stem}_parts'
    merge_volumes(partial_files, output_file, geometry, chunk_size, parts_dir, cleanup)

    if cleanup:
        for partial in partial_files:
            partial.unlink(missing_ok=True)
        shutil.rmtree(parts_dir, ignore_errors=True)
    return output_file


def clip_ringing(data: np.ndarray) -> np.ndarray:
    """
    Zero voxels below half the magnitude of the minimum value.

    Spline interpolation overshoots at sharp edges, leaving negative values
    in the background. The threshold is ``|min| / 2`` of the whole array.
    """
    data = np.asarray(data, dtype=np.float32).copy()
    thr = abs(float(data.min())) / 2.0
    data[data < thr] = 0
    return data


def reassemble_timeseries(
    volume_files: Sequence[Path],
    output_file: Path,
    geometry: nib.Nifti1Image,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    clip: bool = True,
    work_dir: Optional[Path] = None,
    cleanup: bool = True
) -> Path:
    """
    Merge aligned volumes into the aligned timeseries and clip ringing.

    Returns
    -------
    Path
        Path to the aligned timeseries
    """
    logger.info("  merging image volumes into an image timeseries")
    merge_volumes(volume_files, output_file, geometry, chunk_size, work_dir, cleanup)
    if clip:
        logger.info("  cutting off spline interpolation ringing")
        img = nib.load(output_file)
        copy_geometry(clip_ringing(img.get_fdata(dtype=np.float32)), geometry, output_file)
    return Path(output_file)


def merge_distortion_fields(
    warp_files: Sequence[Path],
    displacement_files: Sequence[Path],
    transform_dir: Path,
    geometry: nib.Nifti1Image,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    cleanup: bool = True
) -> dict:
    """
    Merge the per-volume warp and displacement fields into 4-D fields.

    Returns
    -------
    dict
        'warp_field' and 'displacement_field' paths
    """
    transform_dir = Path(transform_dir)
    logger.info("  merging warp and displacement fields")
    outputs = {
        'warp_field': merge_volumes(
            warp_files, transform_dir / 'motionWarpField.nii.gz',
            geometry, chunk_size, cleanup=cleanup
        ),
        'displacement_field': merge_volumes(
            displacement_files, transform_dir / 'motionDisplacementField.nii.gz',
            geometry, chunk_size, cleanup=cleanup
        ),
    }
    if cleanup:
        for f in list(warp_files) + list(displacement_files):
            Path(f).unlink(missing_ok=True)
    return outputs
