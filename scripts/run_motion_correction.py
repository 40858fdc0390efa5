#!/usr/bin/env python3
"""
Slice-wise motion-distortion correction of a macaque EPI timeseries.

Registers every slice of every volume to a reference built from the best
volumes of the series and writes the corrected timeseries, the transform
parameters, distortion fields and a quality report.

Example:
    python scripts/run_motion_correction.py \\
        --episeries /data/sub01/func/epi.nii.gz \\
        --t1wimg /data/sub01/anat/T1w.nii.gz \\
        --t1wmask /data/sub01/anat/T1w_brain_mask.nii.gz
"""

import argparse
import sys
from pathlib import Path

# Add macaquemoco to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from macaquemoco.config import ConfigurationError, get_config_value, load_config, validate_config
from macaquemoco.preprocess.utils.validation import ImageValidationError, validate_inputs
from macaquemoco.preprocess.workflows.motion_correction import run_motion_correction, setup_logging

# command line flag -> motion_correction config key
SWITCHES = {
    'checkreg': 'check_registration',
    'storelinear': 'store_linear',
    'storewarp': 'store_warp',
    'maskzeros': 'mask_zeros',
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Slice-wise motion-distortion correction of macaque EPI timeseries'
    )
    parser.add_argument(
        '--episeries',
        type=Path,
        required=True,
        help='4D EPI timeseries (.nii.gz)'
    )
    parser.add_argument(
        '--quality',
        type=int,
        default=None,
        help='Registration quality: 0 fast, 1 moderate, 2 accurate (default), 3 most accurate'
    )
    parser.add_argument(
        '--refimg',
        type=Path,
        default=None,
        help='Prebuilt reference image (default: built from the best volumes)'
    )
    parser.add_argument(
        '--refbrainmask',
        type=Path,
        default=None,
        help='Prebuilt reference brain mask'
    )
    parser.add_argument(
        '--refheadmask',
        type=Path,
        default=None,
        help='Prebuilt reference head mask'
    )
    parser.add_argument(
        '--workdir',
        type=Path,
        default=None,
        help='Working directory (default: <epiDir>/work)'
    )
    parser.add_argument(
        '--betmethod',
        type=str.upper,
        choices=['T1W', 'EPI'],
        default=None,
        help='Brain extraction method for the reference (default: T1W)'
    )
    parser.add_argument(
        '--t1wimg',
        type=Path,
        default=None,
        help='T1w image, for the T1W brain extraction method'
    )
    parser.add_argument(
        '--t1wmask',
        type=Path,
        default=None,
        help='T1w brain mask, for the T1W brain extraction method'
    )
    for flag, key in SWITCHES.items():
        parser.add_argument(
            f'--{flag}',
            type=int,
            choices=[0, 1],
            default=None,
            help=f'Enable (1) or disable (0) {key.replace("_", " ")}'
        )
    parser.add_argument(
        '--checkregthresh',
        type=float,
        default=None,
        help='Similarity below which a slice is considered a perfect match ([-1, 0])'
    )
    parser.add_argument(
        '--restricthead',
        type=int,
        choices=[0, 1, 2],
        default=None,
        help='Lateral head-mask restriction: 0 off, 1 fixed width (default), 2 per slice'
    )
    parser.add_argument(
        '--config',
        type=Path,
        default=None,
        help='Study configuration file (merged over configs/default.yaml)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Keep the working directory and intermediate files'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Report every slice'
    )
    return parser


def apply_arguments(config: dict, args: argparse.Namespace) -> dict:
    """Override configuration values with the command line arguments given."""
    mc = config.setdefault('motion_correction', {})
    if args.quality is not None:
        mc['quality'] = args.quality
    if args.checkregthresh is not None:
        mc['perfect_threshold'] = args.checkregthresh
    if args.restricthead is not None:
        mc['restrict_head'] = args.restricthead
    if args.betmethod is not None:
        mc.setdefault('brain_extraction', {})['method'] = args.betmethod
    for flag, key in SWITCHES.items():
        value = getattr(args, flag)
        if value is not None:
            mc[key] = bool(value)
    if args.debug:
        mc['debug'] = True
    validate_config(config, validate_workflows=True)
    return config


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    epi_file = args.episeries
    try:
        config = apply_arguments(load_config(args.config), args)
        validate_inputs(
            epi_file, args.refimg, args.refbrainmask, args.refheadmask,
            get_config_value(config, 'suffixes.brain_mask', '_brain_mask')
        )
    except (ConfigurationError, ImageValidationError) as e:
        print(f"\nError: {e}\n", file=sys.stderr)
        return 1

    setup_logging(epi_file.parent / 'report', verbose=args.verbose or args.debug)

    try:
        results = run_motion_correction(
            config,
            epi_file,
            ref_image=args.refimg,
            ref_brain_mask=args.refbrainmask,
            ref_head_mask=args.refheadmask,
            t1w_image=args.t1wimg,
            t1w_mask=args.t1wmask,
            work_dir=args.workdir,
        )
    except (ConfigurationError, ImageValidationError) as e:
        print(f"\nError: {e}\n", file=sys.stderr)
        return 1

    print(f"\nAligned timeseries: {results['outputs']['aligned']}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
