"""
Slice-wise motion-distortion correction workflow for macaque EPI timeseries.

Every 2-D slice of every volume is registered to the matching slice of a
reference volume built from the best volumes of the series, first linearly
(phase-encode scale and translation) then with a B-spline SyN deformation
restricted to the phase-encode axis.

Outputs, for an input ``<epiDir>/<epi>.nii.gz``:

- ``<epiDir>/<epi>_aligned.nii.gz``: corrected timeseries
- ``<epiDir>/<epi>_mean.nii.gz``: mean of the good volumes
- ``<epiDir>/<epi>_ref*.nii.gz``: reference image, brain and head mask
- ``<epiDir>/report/``: progress log, similarity reports and QC
- ``<epiDir>/../transform/``: transform parameters, distortion fields and
  their principal components
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

import nibabel as nib
import numpy as np

from macaquemoco.config import ConfigurationError, get_config_value
from macaquemoco.preprocess.qc.motion_qc import check_motion_correction
from macaquemoco.preprocess.utils.distortion_components import extract_distortion_components
from macaquemoco.preprocess.utils.reassemble import (
    merge_distortion_fields,
    reassemble_timeseries,
    volume_file,
    write_volume,
)
from macaquemoco.preprocess.utils.validation import ImageValidationError, validate_inputs
from macaquemoco.reference.brain_mask import create_brain_mask
from macaquemoco.reference.builder import ReferenceResult, build_reference
from macaquemoco.reference.head_mask import build_mask_hierarchy
from macaquemoco.reference.scoring import score_volumes
from macaquemoco.registration.dependency import SliceDependencyGraph
from macaquemoco.registration.engine import AntsEngine, RegistrationEngine
from macaquemoco.registration.parameters import resolve_quality_profile
from macaquemoco.registration.slice_registration import SliceRegistrar
from macaquemoco.utils.image_io import copy_geometry, remove_ext, voxel_spacing, volume_geometry
from macaquemoco.utils.transforms import MotionReport, SliceTransformRegistry

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = 'macaquemoco'


def setup_logging(report_dir: Path, verbose: bool = False) -> logging.Logger:
    """
    Configure logging to ``report/progress.txt`` and the console.

    Parameters
    ----------
    report_dir : Path
        Report directory of the EPI series
    verbose : bool
        Log per-slice detail

    Returns
    -------
    logging.Logger
        The package logger
    """
    report_dir = Path(report_dir)
    report_dir.mkdir(parents=True, exist_ok=True)
    log_file = report_dir / 'progress.txt'

    pkg_logger = logging.getLogger(PACKAGE_LOGGER)
    level = logging.DEBUG if verbose else logging.INFO
    pkg_logger.setLevel(level)

    # Avoid duplicate handlers on repeated calls
    for handler in list(pkg_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            pkg_logger.removeHandler(handler)
            handler.close()

    fh = logging.FileHandler(log_file, mode='w')
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter('%(message)s'))
    pkg_logger.addHandler(fh)

    if not any(type(h) is logging.StreamHandler for h in pkg_logger.handlers):
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        pkg_logger.addHandler(ch)

    return pkg_logger


def _banner(title: str) -> None:
    logger.info("")
    logger.info(title)


def _load_mask(mask_file: Path) -> np.ndarray:
    return np.asarray(nib.load(mask_file).get_fdata()) > 0


def _save(data: np.ndarray, geometry: nib.Nifti1Image, output_file: Path, dtype=np.float32) -> Path:
    copy_geometry(data, geometry, output_file, dtype=dtype)
    return output_file


def run_motion_correction(
    config: Dict[str, Any],
    epi_file: Path,
    ref_image: Optional[Path] = None,
    ref_brain_mask: Optional[Path] = None,
    ref_head_mask: Optional[Path] = None,
    t1w_image: Optional[Path] = None,
    t1w_mask: Optional[Path] = None,
    work_dir: Optional[Path] = None,
    engine: Optional[RegistrationEngine] = None
) -> Dict[str, Any]:
    """
    Run the slice-wise motion-distortion correction of an EPI timeseries.

    Steps:
    1. Input validation
    2. Reference image (best volumes, or prebuilt)
    3. Reference brain mask (T1w-based, FSL bet, or prebuilt)
    4. Head mask hierarchy
    5. Slice-by-slice registration of every volume
    6. Reassembly of the aligned timeseries and distortion fields
    7. Principal components of the distortion fields
    8. Quality check and mean image

    Parameters
    ----------
    config : dict
        Configuration dictionary from load_config()
    epi_file : Path
        4D EPI timeseries (.nii.gz)
    ref_image : Path, optional
        Prebuilt reference image
    ref_brain_mask : Path, optional
        Prebuilt reference brain mask
    ref_head_mask : Path, optional
        Prebuilt reference (strict) head mask
    t1w_image, t1w_mask : Path, optional
        T1w image and brain mask for the T1W brain extraction method
    work_dir : Path, optional
        Working directory (default: ``<epiDir>/work``). Removed at the end
        unless it already existed or debug is set.
    engine : RegistrationEngine, optional
        Registration engine (default: ANTs)

    Returns
    -------
    dict
        Output file paths and processing summary

    Raises
    ------
    ImageValidationError
        If the inputs are invalid
    ConfigurationError
        If required inputs for the configured methods are missing
    """
    mc = config.get('motion_correction', {})
    suffixes = config.get('suffixes', {})
    s_ref = suffixes.get('reference', '_ref')
    s_aligned = suffixes.get('aligned', '_aligned')
    s_brain = suffixes.get('brain_mask', '_brain_mask')
    s_head = suffixes.get('head_mask', '_head_mask')
    s_restore = suffixes.get('restore', '_restore')

    quality = mc.get('quality', 2)
    check_registration = mc.get('check_registration', True)
    store_linear = mc.get('store_linear', True)
    store_warp = mc.get('store_warp', True)
    debug = mc.get('debug', False)
    bias_correct = mc.get('bias_correct', False)
    method = str(get_config_value(mc, 'brain_extraction.method', 'T1W')).upper()
    chunk_size = get_config_value(mc, 'reassembly.merge_chunk_size', 1000)
    num_threads = get_config_value(config, 'ants.num_threads', 1)

    epi_file = Path(epi_file)
    epi_dir = epi_file.parent.resolve()
    epi = Path(remove_ext(epi_file)).name
    report_dir = epi_dir / 'report'
    transform_dir = epi_dir.parent / 'transform'

    # =========================================================================
    # STEP 1: Input validation
    # =========================================================================
    properties = validate_inputs(epi_file, ref_image, ref_brain_mask, ref_head_mask, s_brain)

    if ref_brain_mask is None and method == 'T1W':
        if t1w_image is None or t1w_mask is None:
            raise ConfigurationError(
                "Please provide a T1w image and mask for the brain extraction. "
                "Alternatively, select the EPI brain extraction method."
            )
        for f in (t1w_image, t1w_mask):
            if not Path(f).exists():
                raise ImageValidationError(f"T1w input not found: {f}")
    elif ref_image is not None and ref_brain_mask is not None:
        logger.debug("Brain extraction method ignored, a reference brain mask is provided")

    profile = resolve_quality_profile(quality, mc.get('perfect_threshold'))

    if work_dir is None:
        work_dir = epi_dir / 'work'
    work_dir = Path(work_dir).resolve()
    new_work_dir = not work_dir.exists()
    if not new_work_dir and not debug:
        logger.warning(
            "The working directory already exists: %s. Files may be overwritten "
            "and clean-up of intermediate files won't be possible.", work_dir
        )
    ref_dir = work_dir / 'ref'
    ref_dir.mkdir(parents=True, exist_ok=True)
    if store_linear or store_warp:
        transform_dir.mkdir(parents=True, exist_ok=True)

    if engine is None:
        engine = AntsEngine(work_dir / 'tmp', num_threads=num_threads, verbose=debug)

    img = nib.load(epi_file)
    geometry = volume_geometry(img)
    spacing = voxel_spacing(img)
    n_volumes = properties['n_volumes']
    n_slices = properties['shape'][2]

    logger.info("=" * 80)
    logger.info("SLICE-WISE MOTION CORRECTION")
    logger.info("=" * 80)
    logger.info("Input EPI: %s", epi_file)
    logger.info("Quality level: %d (perfect threshold %.2f)", profile.level, profile.perfect_threshold)
    logger.info("Working directory: %s", work_dir)

    results: Dict[str, Any] = {'outputs': {}, 'work_dir': work_dir}
    outputs = results['outputs']

    # =========================================================================
    # STEP 2: Reference image
    # =========================================================================
    ref_file = ref_dir / 'ref.nii.gz'
    if ref_image is not None:
        _banner("EPI TIMESERIES TO VOLUMES")
        reference = np.asarray(nib.load(ref_image).get_fdata(), dtype=np.float64)
        reference_result = ReferenceResult(image=reference, prebuilt=True)
        copy_geometry(reference, geometry, ref_file)
    else:
        _banner("CREATING A REFERENCE IMAGE")
        logger.info("  finding best volumes in the timeseries")
        timeseries = np.asarray(img.get_fdata(), dtype=np.float64)
        selection = score_volumes(
            timeseries,
            get_config_value(mc, 'reference.liberal_fraction', 0.4),
            get_config_value(mc, 'reference.strict_fraction', 0.5)
        )
        logger.info("  volumes selected for the reference: %s", selection.strict)
        reference_result = build_reference(timeseries, selection, engine, spacing)
        del timeseries
        copy_geometry(reference_result.image, geometry, ref_file)
        outputs['reference'] = _save(
            reference_result.image, geometry, epi_dir / f'{epi}{s_ref}.nii.gz'
        )
    results['reference'] = reference_result

    # =========================================================================
    # STEP 3: Brain mask
    # =========================================================================
    _banner("PREPARING THE REFERENCE VOLUME")
    brain_mask_file = ref_dir / f'ref{s_brain}.nii.gz'
    if ref_brain_mask is not None:
        copy_geometry(_load_mask(ref_brain_mask).astype(np.uint8), geometry, brain_mask_file, dtype=np.uint8)
    else:
        create_brain_mask(
            method, ref_file, brain_mask_file, t1w_image, t1w_mask,
            bet_frac=get_config_value(mc, 'brain_extraction.bet_frac', 0.3),
            n_cores=num_threads
        )
    brain = _load_mask(brain_mask_file)
    if not brain.any():
        raise ImageValidationError(f"Reference brain mask is empty: {brain_mask_file}")
    outputs['brain_mask'] = _save(
        brain.astype(np.uint8), geometry, epi_dir / f'{epi}{s_ref}{s_brain}.nii.gz', dtype=np.uint8
    )

    # =========================================================================
    # STEP 4: Head mask hierarchy
    # =========================================================================
    _banner("CREATING HEAD MASKS")
    prebuilt_head = _load_mask(ref_head_mask) if ref_head_mask is not None else None
    apply_bias = bias_correct and ref_image is None
    masks = build_mask_hierarchy(
        reference_result.image,
        brain,
        restrict_mode=mc.get('restrict_head', 1),
        head_mask=prebuilt_head,
        engine=engine,
        bias_correct=apply_bias,
        spacing=spacing
    )
    if not masks.is_nested():
        raise RuntimeError("Mask hierarchy is not nested; check the reference brain mask")
    outputs['head_mask'] = _save(
        masks.strict.astype(np.uint8), geometry, epi_dir / f'{epi}{s_ref}{s_head}.nii.gz', dtype=np.uint8
    )
    if apply_bias:
        outputs['restore'] = _save(
            masks.registration_reference, geometry, epi_dir / f'{epi}{s_ref}{s_restore}.nii.gz'
        )
    results['masks'] = masks

    # =========================================================================
    # STEP 5: Slice-wise registration
    # =========================================================================
    _banner("CORRECTING FOR MOTION DISTORTION")
    logger.info("  number of volumes: %4d", n_volumes)

    registrar = SliceRegistrar(
        engine,
        masks,
        profile,
        SliceDependencyGraph(n_volumes, n_slices, mc.get('interleave', 2)),
        check_registration=check_registration,
        mask_zeros=mc.get('mask_zeros', True),
        init_from_previous=mc.get('init_from_previous', False),
        store_warp=store_warp,
        spacing=spacing[:2]
    )
    report = MotionReport(report_dir, transform_dir, check_registration, store_linear)
    registry = SliceTransformRegistry(transform_dir, n_volumes, n_slices) if store_linear else None

    aligned_files, warp_files, displacement_files = [], [], []
    for v in range(n_volumes):
        logger.info("  volume %d", v)
        volume = np.asarray(img.dataobj[..., v], dtype=np.float64)
        slice_results = registrar.register_volume(v, volume)

        aligned_files.append(write_volume(
            [r.aligned for r in slice_results], geometry, volume_file(work_dir, v, s_aligned)
        ))
        if store_warp:
            warp_files.append(write_volume(
                [r.warp for r in slice_results], geometry,
                transform_dir / f'warpField_vol{v:04d}.nii.gz'
            ))
            displacement_files.append(write_volume(
                [r.displacement for r in slice_results], geometry,
                transform_dir / f'displacementField_vol{v:04d}.nii.gz'
            ))

        for r in slice_results:
            report.add_slice(r)
            if registry is not None:
                registry.add(r)
        report.end_volume()

    if registry is not None:
        outputs['transforms'] = registry.save(
            epi=str(epi_file), quality=profile.level, interleave=mc.get('interleave', 2)
        )
        logger.info("  slice outcomes: %s", registry.outcome_counts())

    # =========================================================================
    # STEP 6: Reassembly
    # =========================================================================
    _banner("CREATING ALIGNED EPI TIMESERIES AND MEAN IMAGE")
    aligned_file = epi_dir / f'{epi}{s_aligned}.nii.gz'
    reassemble_timeseries(
        aligned_files, aligned_file, img, chunk_size,
        clip=get_config_value(mc, 'reassembly.clip_ringing', True),
        work_dir=work_dir, cleanup=not debug
    )
    outputs['aligned'] = aligned_file

    # =========================================================================
    # STEP 7: Distortion fields and their components
    # =========================================================================
    if store_warp:
        fields = merge_distortion_fields(
            warp_files, displacement_files, transform_dir, img, chunk_size, cleanup=not debug
        )
        outputs.update(fields)
        components = extract_distortion_components(
            fields['displacement_field'], brain_mask_file, transform_dir,
            get_config_value(mc, 'components.n_components', 12)
        )
        outputs['displacement_components'] = components['displacement_components']
        outputs['distance_components'] = components['distance_components']

    # =========================================================================
    # STEP 8: Quality check
    # =========================================================================
    slice_scores = None
    if check_registration:
        slice_scores = MotionReport.read(report_dir / 'similarityMetricWarp.txt')
    qc = check_motion_correction(
        aligned_file,
        brain_mask_file,
        epi_name=epi,
        report_dir=report_dir,
        outlier_sd=get_config_value(mc, 'quality_report.outlier_sd', 3.0),
        suffixes=suffixes,
        slice_scores=slice_scores,
        keep_detrended=debug
    )
    outputs.update({f'qc_{k}': v for k, v in qc['outputs'].items()})
    results['qc'] = qc['metrics']

    # Clean-up
    if not debug and new_work_dir:
        shutil.rmtree(work_dir, ignore_errors=True)

    _banner("DONE")
    return results
