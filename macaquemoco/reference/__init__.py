"""Reference volume, brain mask and head mask construction."""

from macaquemoco.reference.builder import ReferenceResult, build_reference
from macaquemoco.reference.head_mask import MaskHierarchy, MaskTier, build_mask_hierarchy
from macaquemoco.reference.scoring import VolumeSelection, score_volumes

__all__ = [
    'score_volumes',
    'VolumeSelection',
    'build_reference',
    'ReferenceResult',
    'build_mask_hierarchy',
    'MaskHierarchy',
    'MaskTier',
]
