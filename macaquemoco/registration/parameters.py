"""
Quality profiles and registration stage definitions.

The quality level selects the optimizer convergence settings of the linear
and non-linear slice registration stages together with the "perfect"
similarity threshold above which a slice is registered at all. The profile
is resolved once per run and passed, read-only, to every component.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

from macaquemoco.config import ConfigurationError


# Fixed similarity thresholds (normalized negative correlation, lower is better)
GOOD_THRESHOLD = -0.85
OKAY_THRESHOLD = -0.75
FLOOR_THRESHOLD = -0.3

DEFAULT_LINEAR_STEP = 0.1
NONLINEAR_TRANSFORM = 'BSplineSyN[0.1,1x5,0]'
CC_RADIUS = 3


@dataclass(frozen=True)
class StageParameters:
    """Optimizer settings for one registration stage, in ANTs syntax."""

    convergence: str
    shrink_factors: str
    smoothing_sigmas: str

    @property
    def iterations(self) -> Tuple[int, ...]:
        """Iterations per resolution level parsed from the convergence string."""
        levels = self.convergence.strip('[]').split(',')[0]
        return tuple(int(n) for n in levels.split('x'))

    @property
    def total_iterations(self) -> int:
        return sum(self.iterations)


@dataclass(frozen=True)
class RegistrationStage:
    """
    One ``--transform``/``--metric`` block of an ``antsRegistration`` call.

    Attributes
    ----------
    transform : str
        Transform specification, e.g. ``'Affine[0.1]'``
    metric : str
        ``'MeanSquares'`` or ``'CC'``
    parameters : StageParameters
        Convergence, shrink factors, smoothing sigmas
    restrict_deformation : str
        ANTs restrict-deformation vector (1 = free, 0 = fixed)
    metric_radius : int
        Neighbourhood radius for CC
    """

    transform: str
    metric: str
    parameters: StageParameters
    restrict_deformation: str
    metric_radius: int = CC_RADIUS

    @property
    def is_linear(self) -> bool:
        return not self.transform.startswith(('SyN', 'BSplineSyN'))

    def metric_argument(self, fixed: str, moving: str) -> str:
        if self.metric == 'CC':
            return f'CC[{fixed},{moving},1,{self.metric_radius}]'
        if self.metric == 'MI':
            return f'MI[{fixed},{moving},1,32]'
        return f'{self.metric}[{fixed},{moving},1]'


@dataclass(frozen=True)
class QualityProfile:
    """Immutable bundle of thresholds and stage settings for one quality level."""

    level: int
    perfect_threshold: float
    linear: StageParameters
    nonlinear: StageParameters
    good_threshold: float = GOOD_THRESHOLD
    okay_threshold: float = OKAY_THRESHOLD
    floor_threshold: float = FLOOR_THRESHOLD

    def linear_stages(self, step: float = DEFAULT_LINEAR_STEP) -> Tuple[RegistrationStage, ...]:
        """Translation-only stage followed by a y-scale/y-translation affine stage."""
        return (
            RegistrationStage(
                transform=f'Translation[{step:g}]',
                metric='MeanSquares',
                parameters=self.linear,
                restrict_deformation='0x1',
            ),
            RegistrationStage(
                transform=f'Affine[{step:g}]',
                metric='MeanSquares',
                parameters=self.linear,
                restrict_deformation='0x0x0x1x0x1',
            ),
        )

    def nonlinear_stages(self) -> Tuple[RegistrationStage, ...]:
        return (
            RegistrationStage(
                transform=NONLINEAR_TRANSFORM,
                metric='CC',
                parameters=self.nonlinear,
                restrict_deformation='0x1',
            ),
        )


_LEVEL_0 = QualityProfile(
    level=0,
    perfect_threshold=-0.95,
    linear=StageParameters('[5,1e-4,2]', '2', '1vox'),
    nonlinear=StageParameters('[3,1e-4,2]', '2', '1vox'),
)

_LEVEL_1 = QualityProfile(
    level=1,
    perfect_threshold=-0.97,
    linear=StageParameters('[15x10,1e-6,4]', '2x1', '1x0vox'),
    nonlinear=StageParameters('[15,1e-6,4]', '1', '0vox'),
)

_LEVEL_2 = QualityProfile(
    level=2,
    perfect_threshold=-1.0,
    linear=StageParameters('[50x20,1e-6,4]', '2x1', '1x0vox'),
    nonlinear=StageParameters('[30,1e-6,4]', '1', '0vox'),
)

_LEVEL_3 = QualityProfile(
    level=3,
    perfect_threshold=-1.0,
    linear=StageParameters('[50x20,1e-6,4]', '2x1', '1x0vox'),
    nonlinear=StageParameters('[50,1e-8,6]', '1', '0vox'),
)


def resolve_quality_profile(
    level: int = 2,
    perfect_threshold: Optional[float] = None
) -> QualityProfile:
    """
    Build the quality profile for a quality level.

    Parameters
    ----------
    level : int
        0 (fast) to 3+ (most accurate). Levels above 3 use the level 3 settings.
    perfect_threshold : float, optional
        Override of the level's "perfect" similarity threshold, in [-1, 0]

    Returns
    -------
    QualityProfile

    Raises
    ------
    ConfigurationError
        If the level or threshold is out of range
    """
    if isinstance(level, bool) or not isinstance(level, int) or level < 0:
        raise ConfigurationError(f"quality must be a non-negative integer, got {level!r}")

    profile = {0: _LEVEL_0, 1: _LEVEL_1, 2: _LEVEL_2}.get(level, _LEVEL_3)
    profile = replace(profile, level=level)

    if perfect_threshold is not None:
        perfect_threshold = float(perfect_threshold)
        if not -1.0 <= perfect_threshold <= 0.0:
            raise ConfigurationError(
                f"perfect_threshold must be within [-1, 0], got {perfect_threshold}"
            )
        profile = replace(profile, perfect_threshold=perfect_threshold)

    return profile
