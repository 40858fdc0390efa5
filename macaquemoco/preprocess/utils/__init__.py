"""Preprocessing utilities."""

from macaquemoco.preprocess.utils.reassemble import (
    merge_volumes,
    reassemble_timeseries,
    clip_ringing,
)
from macaquemoco.preprocess.utils.validation import (
    ImageValidationError,
    validate_inputs,
)

__all__ = [
    'merge_volumes',
    'reassemble_timeseries',
    'clip_ringing',
    'ImageValidationError',
    'validate_inputs',
]
