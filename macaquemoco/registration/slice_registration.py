"""
Per-slice registration with quality gating, retries and fallbacks.

Each 2-D slice of each volume is registered to the matching reference slice:

1. The untouched slice is scored against the reference under the strict
   mask. Slices that already match perfectly, and slices above the brain,
   are kept as they are.
2. A mask tier is chosen from that score; poorly matching slices get a wider
   capture range.
3. A translation + affine (phase-encode scale and translation only)
   registration runs up to five times with different initializations until
   it beats both the floor threshold and the original score. If every
   attempt fails, the predecessor's transform is tried, then identity.
4. Unless the linear result is already perfect, a B-spline SyN registration
   along the phase-encode axis refines it. The deformation is only kept if
   it strictly improves the score.

All comparisons are strict: ties count as "no improvement".
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from macaquemoco.reference.head_mask import MaskHierarchy, MaskTier
from macaquemoco.registration.dependency import SliceDependencyGraph, SliceKey
from macaquemoco.registration.engine import (
    InitStrategy,
    Initialization,
    RegistrationEngine,
)
from macaquemoco.registration.parameters import DEFAULT_LINEAR_STEP, QualityProfile
from macaquemoco.registration.similarity import normalized_correlation
from macaquemoco.registration.transforms import AffineTransform2D

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5

# Initialization used for the next attempt after a failure
RETRY_TRANSITIONS = {
    InitStrategy.ORIGIN: InitStrategy.INTENSITY_BASED,
    InitStrategy.INTENSITY_BASED: InitStrategy.PREVIOUS_SLICE,
    InitStrategy.PREVIOUS_SLICE: InitStrategy.GEOMETRIC_CENTER,
    InitStrategy.GEOMETRIC_CENTER: InitStrategy.INTENSITY_BASED,
}


class AttemptStatus(Enum):
    OK = 'ok'
    OVERLAP = 'overlap'
    QUALITY = 'quality'


class SliceOutcome(Enum):
    """How the final transform of a slice was obtained."""

    ABOVE_BRAIN = 'above_brain'
    ALREADY_PERFECT = 'already_perfect'
    LINEAR = 'linear'
    NONLINEAR = 'nonlinear'
    NEIGHBOR_FALLBACK = 'neighbor_fallback'
    IDENTITY_FALLBACK = 'identity_fallback'


@dataclass
class AttemptResult:
    """One linear registration attempt."""

    attempt: int
    strategy: InitStrategy
    status: AttemptStatus
    affine: Optional[AffineTransform2D] = None
    score: Optional[float] = None
    message: str = ''
    aligned: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status is AttemptStatus.OK


@dataclass
class SliceResult:
    """
    Final registration of one slice.

    Scores are None when they were not computed (slices above the brain, or
    registration checking disabled).
    """

    volume: int
    slice_idx: int
    aligned: np.ndarray
    affine: AffineTransform2D
    warp: np.ndarray
    outcome: SliceOutcome
    displacement: Optional[np.ndarray] = None
    tier: Optional[MaskTier] = None
    original_score: Optional[float] = None
    linear_score: Optional[float] = None
    final_score: Optional[float] = None
    attempts: List[AttemptResult] = field(default_factory=list)
    nonlinear_ran: bool = False

    @property
    def n_linear_attempts(self) -> int:
        return len(self.attempts)


def next_init_strategy(attempt: int, current: InitStrategy) -> InitStrategy:
    """
    Initialization for ``attempt`` (1-based) after ``current`` failed.

    The last attempt always starts from the image origin.
    """
    if attempt >= MAX_ATTEMPTS:
        return InitStrategy.ORIGIN
    return RETRY_TRANSITIONS[current]


def select_mask_tier(
    original_score: Optional[float],
    profile: QualityProfile
) -> MaskTier:
    """Strict for good matches, regular for okay matches, liberal otherwise."""
    if original_score is None:
        return MaskTier.LIBERAL
    if original_score < profile.good_threshold:
        return MaskTier.STRICT
    if original_score < profile.okay_threshold:
        return MaskTier.REGULAR
    return MaskTier.LIBERAL


class SliceRegistrar:
    """
    Drives the registration of every slice against a fixed reference.

    Parameters
    ----------
    engine : RegistrationEngine
        Registration backend
    masks : MaskHierarchy
        Reference masks and registration reference
    profile : QualityProfile
        Thresholds and stage settings
    graph : SliceDependencyGraph
        Predecessor of each slice for transform initialization and fallback
    check_registration : bool
        Score registrations and retry on quality failures
    mask_zeros : bool
        Pass background-rejection masks to the engine
    init_from_previous : bool
        Start the first attempt from the predecessor's transform
    store_warp : bool
        Compute the displacement field of the final transform
    spacing : sequence of float
        In-plane voxel size
    """

    def __init__(
        self,
        engine: RegistrationEngine,
        masks: MaskHierarchy,
        profile: QualityProfile,
        graph: SliceDependencyGraph,
        check_registration: bool = True,
        mask_zeros: bool = True,
        init_from_previous: bool = False,
        store_warp: bool = True,
        spacing: Sequence[float] = (1.0, 1.0)
    ):
        self.engine = engine
        self.masks = masks
        self.profile = profile
        self.graph = graph
        self.check_registration = check_registration
        self.mask_zeros = mask_zeros
        self.init_from_previous = init_from_previous
        self.store_warp = store_warp
        self.spacing = tuple(spacing)[:2]
        self.accepted: Dict[SliceKey, AffineTransform2D] = {}

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _score(self, image: np.ndarray, slice_idx: int) -> float:
        return normalized_correlation(
            image,
            self.masks.registration_reference[:, :, slice_idx],
            self.masks.strict[:, :, slice_idx]
        )

    def _predecessor_transform(self, key: SliceKey) -> Optional[AffineTransform2D]:
        predecessor = self.graph.predecessor(*key)
        if predecessor is None:
            return None
        return self.accepted.get(predecessor)

    def _resolve_initialization(self, strategy: InitStrategy, key: SliceKey) -> Initialization:
        if strategy is InitStrategy.PREVIOUS_SLICE:
            transform = self._predecessor_transform(key)
            if transform is None:
                return Initialization(strategy=InitStrategy.ORIGIN)
            return Initialization(strategy=strategy, transform=transform)
        return Initialization(strategy=strategy)

    def _passes_quality(self, score: float, original: float) -> bool:
        return score < self.profile.floor_threshold and score < original

    def _finish(self, result: SliceResult, fixed: np.ndarray) -> SliceResult:
        if self.store_warp:
            if result.affine.is_identity() and not np.any(result.warp):
                result.displacement = np.zeros_like(fixed)
            else:
                result.displacement = self.engine.displacement_field(
                    fixed, result.affine,
                    result.warp if np.any(result.warp) else None,
                    self.spacing
                )
        self.accepted[(result.volume, result.slice_idx)] = result.affine
        return result

    def _unmoved(self, key: SliceKey, source: np.ndarray, outcome: SliceOutcome,
                 score: Optional[float] = None) -> SliceResult:
        result = SliceResult(
            volume=key[0],
            slice_idx=key[1],
            aligned=source.copy(),
            affine=AffineTransform2D.identity(),
            warp=np.zeros_like(source, dtype=np.float64),
            outcome=outcome,
            original_score=score,
            linear_score=score,
            final_score=score,
        )
        self.accepted[key] = result.affine
        if self.store_warp:
            result.displacement = np.zeros_like(source, dtype=np.float64)
        return result

    # ------------------------------------------------------------------
    # linear stage
    # ------------------------------------------------------------------

    def _linear_attempt(
        self,
        attempt: int,
        strategy: InitStrategy,
        key: SliceKey,
        source: np.ndarray,
        moving: np.ndarray,
        engine_masks: Tuple[Optional[np.ndarray], Optional[np.ndarray]],
        step: float,
        original: Optional[float]
    ) -> AttemptResult:
        fixed = self.masks.registration_reference[:, :, key[1]]
        outcome = self.engine.register(
            fixed,
            moving,
            self.profile.linear_stages(step),
            self._resolve_initialization(strategy, key),
            engine_masks[0],
            engine_masks[1],
            self.spacing
        )
        if outcome.failed or outcome.affine is None:
            return AttemptResult(attempt, strategy, AttemptStatus.OVERLAP, message=outcome.message)

        if not self.check_registration:
            return AttemptResult(attempt, strategy, AttemptStatus.OK, affine=outcome.affine)

        aligned = self.engine.apply(source, fixed, outcome.affine, spacing=self.spacing)
        score = self._score(aligned, key[1])
        status = AttemptStatus.OK if self._passes_quality(score, original) else AttemptStatus.QUALITY
        return AttemptResult(attempt, strategy, status, affine=outcome.affine,
                             score=score, aligned=aligned)

    def _linear_fallback(self, key: SliceKey, source: np.ndarray,
                         original: Optional[float]) -> Tuple[AffineTransform2D, np.ndarray, Optional[float], SliceOutcome]:
        fixed = self.masks.registration_reference[:, :, key[1]]
        transform = self._predecessor_transform(key)

        if transform is not None:
            logger.info("      copying the affine transform of slice %s", self.graph.predecessor(*key))
            aligned = self.engine.apply(source, fixed, transform, spacing=self.spacing)
            if not self.check_registration:
                return transform, aligned, None, SliceOutcome.NEIGHBOR_FALLBACK
            score = self._score(aligned, key[1])
            if self._passes_quality(score, original):
                logger.info("      success, r-value: %.4f", score)
                return transform, aligned, score, SliceOutcome.NEIGHBOR_FALLBACK
            logger.info("      copied registration is also poor, r-value: %.4f", score)

        logger.info("      keeping the original slice as it is, without a transformation")
        return AffineTransform2D.identity(), source.copy(), original, SliceOutcome.IDENTITY_FALLBACK

    # ------------------------------------------------------------------
    # public
    # ------------------------------------------------------------------

    def register_slice(self, volume: int, slice_idx: int, source: np.ndarray) -> SliceResult:
        """
        Register one source slice to the reference.

        Parameters
        ----------
        volume : int
            Volume index
        slice_idx : int
            Slice index
        source : np.ndarray
            2-D source slice

        Returns
        -------
        SliceResult
        """
        key = (volume, slice_idx)
        source = np.asarray(source, dtype=np.float64)
        fixed = self.masks.registration_reference[:, :, slice_idx]

        if slice_idx > self.masks.top_slice:
            return self._unmoved(key, source, SliceOutcome.ABOVE_BRAIN)

        # ORIGINAL_CHECK
        original = None
        if self.check_registration:
            original = self._score(source, slice_idx)
            if original < self.profile.perfect_threshold:
                logger.debug("  slice %d already matches, r-value: %.4f", slice_idx, original)
                return self._unmoved(key, source, SliceOutcome.ALREADY_PERFECT, original)

        # MASK_SELECT
        tier = select_mask_tier(original, self.profile)
        moving = source * self.masks.tier(tier)[:, :, slice_idx]
        engine_masks = (None, None)
        if self.mask_zeros:
            engine_masks = (
                self.masks.strict_dilated[:, :, slice_idx].astype(np.float64),
                self.masks.dilated(tier)[:, :, slice_idx].astype(np.float64),
            )

        step = DEFAULT_LINEAR_STEP
        if original is not None and original < self.profile.good_threshold:
            # refined search for slices that already match well
            step /= 10.0

        # LINEAR_REGISTER
        strategy = InitStrategy.ORIGIN
        if self.init_from_previous and self._predecessor_transform(key) is not None:
            strategy = InitStrategy.PREVIOUS_SLICE

        attempts = []
        accepted = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            if attempt > 1:
                strategy = next_init_strategy(attempt, strategy)
                if attempt == MAX_ATTEMPTS:
                    logger.info("      trying one last time with smaller registration steps")
                    step /= 10.0
                else:
                    logger.info("      trying again, initialising with %s", strategy.value)

            result = self._linear_attempt(attempt, strategy, key, source, moving,
                                          engine_masks, step, original)
            attempts.append(result)
            if result.ok:
                accepted = result
                break

            if result.status is AttemptStatus.OVERLAP:
                logger.info("  volume %d, slice %d: registration failed (%s)",
                            volume, slice_idx, result.message.splitlines()[0] if result.message else 'engine error')
            elif result.score is not None and not result.score < self.profile.floor_threshold:
                logger.info("  volume %d, slice %d: registration is poor, r-value: %.4f",
                            volume, slice_idx, result.score)
            else:
                logger.info("  volume %d, slice %d: registration did not improve beyond "
                            "the original match (%.4f >= %.4f)", volume, slice_idx,
                            result.score, original)

        if accepted is not None:
            affine = accepted.affine
            linear_score = accepted.score
            outcome = SliceOutcome.LINEAR
            if accepted.aligned is not None:
                linear_aligned = accepted.aligned
            else:
                linear_aligned = self.engine.apply(source, fixed, affine, spacing=self.spacing)
            if accepted.attempt > 1:
                logger.info("      success after %d attempts", accepted.attempt)
        else:
            logger.info("      registration is consistently poor, running out of options")
            affine, linear_aligned, linear_score, outcome = self._linear_fallback(key, source, original)

        result = SliceResult(
            volume=volume,
            slice_idx=slice_idx,
            aligned=linear_aligned,
            affine=affine,
            warp=np.zeros_like(source),
            outcome=outcome,
            tier=tier,
            original_score=original,
            linear_score=linear_score,
            final_score=linear_score,
            attempts=attempts,
        )

        # LINEAR_ACCEPT_CHECK
        if linear_score is not None and linear_score < self.profile.perfect_threshold:
            logger.debug("  slice %d: linear registration is already good enough", slice_idx)
            return self._finish(result, fixed)

        # NONLINEAR_REGISTER
        self._nonlinear(result, source, fixed)
        return self._finish(result, fixed)

    def _nonlinear(self, result: SliceResult, source: np.ndarray, fixed: np.ndarray) -> None:
        s = result.slice_idx
        strict = self.masks.strict[:, :, s].astype(np.float64)
        source_mask = self.engine.apply(
            strict, fixed, result.affine, invert=True,
            interpolation='NearestNeighbor', spacing=self.spacing
        ) > 0.5
        moving = source * source_mask

        engine_masks = (None, None)
        if self.mask_zeros:
            strict_dil = self.masks.strict_dilated[:, :, s].astype(np.float64)
            engine_masks = (strict_dil, strict_dil)

        outcome = self.engine.register(
            fixed,
            moving,
            self.profile.nonlinear_stages(),
            Initialization(transform=result.affine),
            engine_masks[0],
            engine_masks[1],
            self.spacing
        )
        result.nonlinear_ran = True
        if outcome.failed or outcome.warp is None:
            logger.info("  volume %d, slice %d: non-linear registration failed, keeping linear result",
                        result.volume, s)
            return

        warped = self.engine.apply(source, fixed, result.affine, outcome.warp, spacing=self.spacing)

        # NONLINEAR_ACCEPT_CHECK
        if self.check_registration:
            warp_score = self._score(warped, s)
            if not warp_score < result.linear_score:
                logger.debug("  slice %d: non-linear warp (%.4f) did not improve beyond "
                             "linear registration (%.4f)", s, warp_score, result.linear_score)
                return
            result.final_score = warp_score

        result.aligned = warped
        result.warp = np.asarray(outcome.warp, dtype=np.float64)
        result.outcome = SliceOutcome.NONLINEAR

    def register_volume(self, volume: int, data: np.ndarray) -> List[SliceResult]:
        """Register all slices of a 3-D volume in slice order."""
        results = [self.register_slice(volume, s, data[:, :, s]) for s in range(data.shape[2])]
        # predecessors never reach back more than one volume
        self.accepted = {key: affine for key, affine in self.accepted.items() if key[0] >= volume}
        return results
