"""
Quality check of a motion-corrected timeseries.

Two stages select the good volumes of the aligned timeseries:

1. Slice consistency: each volume is compared to a copy of itself averaged
   across neighbouring slices. Residual slice-wise distortion makes the
   two differ.
2. Consistency over time: the timeseries is linearly detrended (mean
   preserved) and each volume is compared to the mean of the stage 1 good
   volumes. Skipped detrending for 3 volumes or fewer.

In each stage, volumes scoring more than ``outlier_sd`` standard deviations
above the best (lowest) score are flagged as bad. Good volume indices are
zero indexed, as FSL counts volumes.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import nibabel as nib
import numpy as np
import pandas as pd
import seaborn as sns
from scipy.signal import detrend

from macaquemoco.registration.similarity import normalized_correlation, score_against_slice_proxy
from macaquemoco.utils.image_io import copy_geometry, volume_geometry

logger = logging.getLogger(__name__)

DEFAULT_OUTLIER_SD = 3.0
MIN_VOLUMES_FOR_DETREND = 4

GOOD_HEADER = 'good volumes, zero indexed (FSL style)'
BAD_HEADER = 'bad volumes, zero indexed (FSL style)'

DEFAULT_SUFFIXES = {
    'aligned': '_aligned',
    'detrend': '_detrend',
    'mean': '_mean',
}


def detrend_timeseries(data: np.ndarray) -> np.ndarray:
    """Remove a linear trend from every voxel, keeping the voxel mean."""
    data = np.asarray(data, dtype=np.float64)
    return detrend(data, axis=-1, type='linear') + data.mean(axis=-1, keepdims=True)


def slice_consistency_scores(timeseries: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Similarity of every volume to its slice-averaged copy within ``mask``."""
    return np.array([
        score_against_slice_proxy(timeseries[..., v], mask)
        for v in range(timeseries.shape[-1])
    ])


def reference_scores(timeseries: np.ndarray, reference: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Similarity of every volume to a reference volume within ``mask``."""
    return np.array([
        normalized_correlation(timeseries[..., v], reference, mask)
        for v in range(timeseries.shape[-1])
    ])


def select_good_volumes(
    scores: np.ndarray,
    outlier_sd: float = DEFAULT_OUTLIER_SD
) -> Tuple[List[int], List[int], float]:
    """
    Split volumes into good and bad on their similarity scores.

    The threshold is ``min + outlier_sd * sd`` (sample standard deviation).
    Good volumes score strictly below it. If every score is identical no
    volume falls strictly below the threshold; all volumes are then good.

    Returns
    -------
    good : list of int
    bad : list of int
    threshold : float
    """
    scores = np.asarray(scores, dtype=np.float64)
    if scores.size == 0:
        raise ValueError("No scores to select from")

    sd = float(np.std(scores, ddof=1)) if scores.size > 1 else 0.0
    threshold = float(scores.min()) + outlier_sd * sd

    good = [int(v) for v in np.flatnonzero(scores < threshold)]
    if not good:
        good = list(range(scores.size))
    good_set = set(good)
    bad = [v for v in range(scores.size) if v not in good_set]
    return good, bad, threshold


def write_volume_list(output_file: Path, header: str, indices: List[int]) -> Path:
    lines = [header] + [str(v) for v in indices]
    Path(output_file).write_text('\n'.join(lines) + '\n')
    return Path(output_file)


def read_volume_list(input_file: Path) -> List[int]:
    """Indices from a good/bad volume list, skipping the header line."""
    lines = Path(input_file).read_text().splitlines()
    return [int(line) for line in lines[1:] if line.strip()]


def write_scores(output_file: Path, scores: np.ndarray) -> Path:
    np.savetxt(output_file, scores, fmt='%.6f')
    return Path(output_file)


def _plot_quality(
    stages: Dict[str, Dict[str, Any]],
    slice_scores: Optional[np.ndarray],
    title: str,
    output_file: Path
) -> Path:
    n_panels = len(stages) + (1 if slice_scores is not None else 0)
    fig, axes = plt.subplots(n_panels, 1, figsize=(12, 3.5 * n_panels), squeeze=False)
    axes = axes[:, 0]

    for ax, (name, stage) in zip(axes, stages.items()):
        scores = np.asarray(stage['scores'])
        volumes = np.arange(len(scores))
        bad = np.asarray(stage['bad'], dtype=int)
        ax.plot(volumes, scores, 'b-', linewidth=1)
        ax.axhline(y=stage['threshold'], color='r', linestyle='--',
                   label=f"Threshold ({stage['threshold']:.3f})")
        if bad.size:
            ax.scatter(bad, scores[bad], color='red', zorder=3, label=f'Bad volumes ({bad.size})')
        ax.set_ylabel('r-value')
        ax.set_title(f'{name} consistency')
        ax.legend(loc='upper right')
        ax.grid(True, alpha=0.3)
    axes[len(stages) - 1].set_xlabel('Volume')

    if slice_scores is not None:
        ax = axes[-1]
        # unscored slices are reported as 1
        masked = np.where(slice_scores > 0, np.nan, slice_scores)
        sns.heatmap(masked.T, ax=ax, cmap='RdYlGn_r', vmin=-1, vmax=0,
                    cbar_kws={'label': 'r-value'})
        ax.invert_yaxis()
        ax.set_xlabel('Volume')
        ax.set_ylabel('Slice')
        ax.set_title('Similarity to the reference after registration')

    fig.suptitle(title)
    plt.tight_layout()
    plt.savefig(output_file, dpi=150, bbox_inches='tight')
    plt.close()
    return output_file


def check_motion_correction(
    aligned_file: Path,
    brain_mask_file: Path,
    epi_name: Optional[str] = None,
    report_dir: Optional[Path] = None,
    outlier_sd: float = DEFAULT_OUTLIER_SD,
    suffixes: Optional[Dict[str, str]] = None,
    slice_scores: Optional[np.ndarray] = None,
    keep_detrended: bool = False
) -> Dict[str, Any]:
    """
    Check the quality of a motion-corrected timeseries and average the good volumes.

    Parameters
    ----------
    aligned_file : Path
        Aligned 4D timeseries (``<epi>_aligned.nii.gz``)
    brain_mask_file : Path
        Brain mask of the reference
    epi_name : str, optional
        Base name of the EPI series (default: inferred from ``aligned_file``)
    report_dir : Path, optional
        Output directory for reports (default: ``<epiDir>/report``)
    outlier_sd : float
        Number of standard deviations above the best score that flags a
        volume as bad
    suffixes : dict, optional
        File name suffixes ('aligned', 'detrend', 'mean')
    slice_scores : np.ndarray, optional
        (n_volumes, n_slices) similarity after registration, for the heat map
    keep_detrended : bool
        Keep ``<epi>_aligned_detrend.nii.gz``

    Returns
    -------
    dict
        Output paths, good/bad volumes per stage and summary statistics
    """
    suffixes = {**DEFAULT_SUFFIXES, **(suffixes or {})}
    aligned_file = Path(aligned_file)
    epi_dir = aligned_file.parent
    if epi_name is None:
        name = aligned_file.name.replace('.nii.gz', '').replace('.nii', '')
        epi_name = name[:-len(suffixes['aligned'])] if name.endswith(suffixes['aligned']) else name
    report_dir = Path(report_dir) if report_dir is not None else epi_dir / 'report'
    report_dir.mkdir(parents=True, exist_ok=True)

    logger.info("")
    logger.info("CHECKING QUALITY OF MOTION CORRECTION")

    img = nib.load(aligned_file)
    data = np.asarray(img.get_fdata(), dtype=np.float64)
    if data.ndim != 4:
        raise ValueError(f"Expected a 4D aligned timeseries, got shape {data.shape}")
    n_volumes = data.shape[3]
    mask = np.asarray(nib.load(brain_mask_file).get_fdata()) > 0
    geometry = volume_geometry(img)
    aligned_stem = f'{epi_name}{suffixes["aligned"]}'

    stages: Dict[str, Dict[str, Any]] = {}
    outputs: Dict[str, Any] = {}

    # Stage 1: slice consistency
    logger.info("  selecting volumes with high-consistency across slices")
    scores = slice_consistency_scores(data, mask)
    good, bad, thr = select_good_volumes(scores, outlier_sd)
    stages['Slices'] = {'scores': scores, 'good': good, 'bad': bad, 'threshold': thr}

    # Stage 2: consistency with the good mean
    detrended = None
    if n_volumes >= MIN_VOLUMES_FOR_DETREND:
        logger.info("  detrending the timeseries")
        detrended = detrend_timeseries(data)
        if keep_detrended:
            detrended_file = epi_dir / f'{aligned_stem}{suffixes["detrend"]}.nii.gz'
            copy_geometry(detrended, img, detrended_file)
            outputs['detrended'] = detrended_file
    else:
        logger.info("  only %d volumes, timeseries won't be detrended", n_volumes)

    stage_mean = None
    for stage_name in ('Slices', 'Overall'):
        if stage_name == 'Overall':
            logger.info("  selecting volumes that are well-aligned to the mean")
            series = detrended if detrended is not None else data
            scores = reference_scores(series, stage_mean, mask)
            good, bad, thr = select_good_volumes(scores, outlier_sd)
            stages['Overall'] = {'scores': scores, 'good': good, 'bad': bad, 'threshold': thr}

        stage = stages[stage_name]
        write_scores(report_dir / f'rvalue{stage_name}.txt', stage['scores'])
        outputs[f'good{stage_name}'] = write_volume_list(
            report_dir / f'good{stage_name}.txt', GOOD_HEADER, stage['good'])
        outputs[f'bad{stage_name}'] = write_volume_list(
            report_dir / f'bad{stage_name}.txt', BAD_HEADER, stage['bad'])

        if stage_name == 'Slices':
            logger.info("  average EPI images with low slice-by-slice variability")
        else:
            logger.info("  average EPI images that are well-aligned to the mean")
        stage_mean = data[..., stage['good']].mean(axis=-1)
        mean_file = report_dir / f'{aligned_stem}_good{stage_name}{suffixes["mean"]}.nii.gz'
        copy_geometry(stage_mean, geometry, mean_file)
        outputs[f'good{stage_name}_mean'] = mean_file

    # the final good-volume mean becomes the mean EPI image
    mean_file = epi_dir / f'{epi_name}{suffixes["mean"]}.nii.gz'
    copy_geometry(stage_mean, geometry, mean_file)
    outputs['mean'] = mean_file

    n_bad_slices = len(stages['Slices']['bad'])
    n_bad_overall = len(stages['Overall']['bad'])
    logger.info("  report")
    logger.info("    total number of volumes: %d", n_volumes)
    logger.info("    with bad slice-alignment: %d", n_bad_slices)
    logger.info("    poorly matching the mean: %d", n_bad_overall)

    # Per-volume table
    table = pd.DataFrame({
        'volume': np.arange(n_volumes),
        'rvalue_slices': stages['Slices']['scores'],
        'good_slices': np.isin(np.arange(n_volumes), stages['Slices']['good']),
        'rvalue_overall': stages['Overall']['scores'],
        'good_overall': np.isin(np.arange(n_volumes), stages['Overall']['good']),
    })
    table_file = report_dir / f'{epi_name}_volume_qc.tsv'
    table.to_csv(table_file, sep='\t', index=False)
    outputs['table'] = table_file

    outputs['figure'] = _plot_quality(
        stages, slice_scores, f'Motion correction QC: {epi_name}',
        report_dir / f'{epi_name}_motion_qc.png'
    )

    metrics = {
        'n_volumes': int(n_volumes),
        'detrended': detrended is not None,
        'outlier_sd': float(outlier_sd),
        'stages': {
            name: {
                'threshold': float(stage['threshold']),
                'min_rvalue': float(np.min(stage['scores'])),
                'mean_rvalue': float(np.mean(stage['scores'])),
                'n_good': len(stage['good']),
                'n_bad': len(stage['bad']),
                'bad_volumes': stage['bad'],
            }
            for name, stage in stages.items()
        },
    }
    if slice_scores is not None:
        scored = slice_scores[slice_scores <= 0]
        metrics['registration'] = {
            'mean_slice_rvalue': float(np.mean(scored)) if scored.size else None,
            'worst_slice_rvalue': float(np.max(scored)) if scored.size else None,
        }
    metrics_file = report_dir / f'{epi_name}_motion_qc.json'
    with open(metrics_file, 'w') as f:
        json.dump(metrics, f, indent=2)
    outputs['metrics'] = metrics_file

    return {
        'outputs': outputs,
        'stages': stages,
        'metrics': metrics,
    }
