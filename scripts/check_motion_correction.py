#!/usr/bin/env python3
"""
Check the quality of a motion-corrected EPI timeseries.

Runs the two-stage good-volume selection on ``<epi>_aligned.nii.gz`` and
writes the r-value reports, good/bad volume lists and the mean of the good
volumes. Useful to re-run the check after a correction finished.
"""

import argparse
import sys
from pathlib import Path

# Add macaquemoco to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from macaquemoco.config import ConfigurationError, get_config_value, load_config
from macaquemoco.preprocess.qc.motion_qc import check_motion_correction
from macaquemoco.preprocess.utils.validation import ImageValidationError
from macaquemoco.preprocess.workflows.motion_correction import setup_logging
from macaquemoco.utils.image_io import remove_ext
from macaquemoco.utils.transforms import MotionReport


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Check the quality of a motion-corrected EPI timeseries'
    )
    parser.add_argument(
        '--episeries',
        type=Path,
        required=True,
        help='Original EPI timeseries; <epi>_aligned.nii.gz is checked'
    )
    parser.add_argument(
        '--refbrainmask',
        type=Path,
        required=True,
        help='Reference brain mask'
    )
    parser.add_argument(
        '--outliersd',
        type=float,
        default=None,
        help='Standard deviations above the best r-value that flag a bad volume (default: 3)'
    )
    parser.add_argument(
        '--config',
        type=Path,
        default=None,
        help='Study configuration file'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Keep the detrended timeseries'
    )

    args = parser.parse_args(argv)

    epi_dir = args.episeries.parent
    epi = Path(remove_ext(args.episeries)).name
    report_dir = epi_dir / 'report'

    try:
        config = load_config(args.config)
        suffixes = config.get('suffixes', {})
        aligned_file = epi_dir / f"{epi}{suffixes.get('aligned', '_aligned')}.nii.gz"
        for f in (aligned_file, args.refbrainmask):
            if not Path(f).exists():
                raise ImageValidationError(f"Input image not found: {f}")
        setup_logging(report_dir)

        outlier_sd = args.outliersd
        if outlier_sd is None:
            outlier_sd = get_config_value(config, 'motion_correction.quality_report.outlier_sd', 3.0)

        warp_report = report_dir / 'similarityMetricWarp.txt'
        slice_scores = MotionReport.read(warp_report) if warp_report.exists() else None

        qc = check_motion_correction(
            aligned_file,
            args.refbrainmask,
            epi_name=epi,
            report_dir=report_dir,
            outlier_sd=outlier_sd,
            suffixes=suffixes,
            slice_scores=slice_scores,
            keep_detrended=args.debug
        )
    except (ConfigurationError, ImageValidationError) as e:
        print(f"\nError: {e}\n", file=sys.stderr)
        return 1

    stages = qc['metrics']['stages']
    print(f"\nBad volumes (slices): {stages['Slices']['n_bad']}")
    print(f"Bad volumes (overall): {stages['Overall']['n_bad']}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
