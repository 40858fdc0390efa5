"""
Quality Control for motion-corrected timeseries.

Report Directory Structure:
    {epiDir}/report/
    ├── progress.txt                       # Workflow log
    ├── similarityMetric{Orig,Linear,Warp}.txt
    ├── rvalue{Slices,Overall}.txt         # Per-volume r-values
    ├── {good,bad}{Slices,Overall}.txt     # Volume lists (zero indexed)
    ├── {epi}_aligned_good*_mean.nii.gz
    ├── {epi}_volume_qc.tsv
    ├── {epi}_motion_qc.json
    └── {epi}_motion_qc.png
"""

from macaquemoco.preprocess.qc.motion_qc import (
    check_motion_correction,
    select_good_volumes,
    detrend_timeseries,
)

__all__ = [
    'check_motion_correction',
    'select_good_volumes',
    'detrend_timeseries',
]
