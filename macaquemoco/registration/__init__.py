"""
Registration module for macaquemoco.

Provides the per-slice registration state machine, its quality profiles and
the registration engine it drives.
"""

from macaquemoco.registration.dependency import SliceDependencyGraph
from macaquemoco.registration.engine import (
    AntsEngine,
    InitStrategy,
    Initialization,
    RegistrationEngine,
    RegistrationEngineError,
    RegistrationOutcome,
)
from macaquemoco.registration.parameters import QualityProfile, resolve_quality_profile
from macaquemoco.registration.similarity import normalized_correlation
from macaquemoco.registration.slice_registration import (
    SliceOutcome,
    SliceRegistrar,
    SliceResult,
    next_init_strategy,
)
from macaquemoco.registration.transforms import AffineTransform2D

__all__ = [
    # Engine
    'AntsEngine',
    'RegistrationEngine',
    'RegistrationEngineError',
    'RegistrationOutcome',
    'InitStrategy',
    'Initialization',
    # Slice registration
    'SliceRegistrar',
    'SliceResult',
    'SliceOutcome',
    'SliceDependencyGraph',
    'next_init_strategy',
    # Parameters and transforms
    'QualityProfile',
    'resolve_quality_profile',
    'AffineTransform2D',
    'normalized_correlation',
]
