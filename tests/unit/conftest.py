"""
Shared fixtures: a synthetic macaque-like head phantom and an in-memory
registration engine that only models phase-encode translations.
"""

import numpy as np
import nibabel as nib
import pytest
from scipy import ndimage

from macaquemoco.reference.head_mask import (
    MaskHierarchy,
    ball,
    directional_dilation,
    slice_extent,
)
from macaquemoco.registration.engine import RegistrationEngine, RegistrationOutcome
from macaquemoco.registration.transforms import AffineTransform2D


PHANTOM_SHAPE = (24, 32, 10)


def _make_phantom(shape=PHANTOM_SHAPE, seed=0):
    """Textured ellipsoid brain inside a dimmer head, zero background."""
    rng = np.random.RandomState(seed)
    xx, yy, zz = np.ogrid[:shape[0], :shape[1], :shape[2]]
    cx, cy, cz = (shape[0] - 1) / 2.0, shape[1] / 2.0 + 1, (shape[2] - 1) / 2.0

    brain = (((xx - cx) / 7.0) ** 2 + ((yy - cy) / 9.0) ** 2 + ((zz - cz) / 4.0) ** 2) <= 1.0
    head = (((xx - cx) / 10.0) ** 2 + ((yy - cy) / 12.0) ** 2 + ((zz - cz) / 6.0) ** 2) <= 1.0

    texture = ndimage.gaussian_filter(rng.normal(size=shape), 1.5)
    texture /= np.abs(texture).max()

    reference = np.zeros(shape)
    reference[head] = 60 + 15 * texture[head]
    reference[brain] = 100 + 30 * texture[brain]
    return reference, brain


def _simple_masks(reference, brain):
    """Mask hierarchy built directly from the brain, for registration tests."""
    strict = ndimage.binary_dilation(brain, structure=ball(1))
    regular = directional_dilation(strict, axis=1, reach=2, towards_negative=True)
    liberal = directional_dilation(strict, axis=1, reach=4, towards_negative=True)
    structure = ball(1)
    return MaskHierarchy(
        brain=brain,
        strict=strict,
        regular=regular,
        liberal=liberal,
        strict_dilated=ndimage.binary_dilation(strict, structure=structure),
        regular_dilated=ndimage.binary_dilation(regular, structure=structure),
        liberal_dilated=ndimage.binary_dilation(liberal, structure=structure),
        registration_reference=reference * strict,
        extent=slice_extent(brain),
    )


def shift_y(image, shift):
    """Sample ``image`` at ``y + shift`` (ITK mapping convention), zero fill."""
    return ndimage.shift(np.asarray(image, dtype=np.float64), (0, -shift), order=0, mode='constant', cval=0.0)


class FakeEngine(RegistrationEngine):
    """
    Registration engine restricted to integer phase-encode translations.

    Linear stages search all shifts within ``max_shift`` for the lowest
    mean squared difference. Non-linear stages search the residual shift
    after the initial transform and return it as a constant warp.

    Parameters
    ----------
    max_shift : int
        Search range of the linear stages
    warp_max_shift : int
        Search range of the non-linear stage
    fail_first : int
        Number of initial linear calls reported as non-overlapping
    always_fail : bool
        Report every linear call as non-overlapping
    """

    def __init__(self, max_shift=3, warp_max_shift=0, fail_first=0, always_fail=False):
        self.max_shift = max_shift
        self.warp_max_shift = warp_max_shift
        self.fail_first = fail_first
        self.always_fail = always_fail
        self.linear_calls = []
        self.nonlinear_calls = []
        self.n_motion_correct = 0
        self.n_bias_correct = 0

    @staticmethod
    def _best_shift(fixed, moving, max_shift, mask=None):
        # zero voxels are ignored, as with the background masks of ANTs
        region = np.ones(fixed.shape, dtype=bool) if mask is None else mask > 0
        region &= fixed != 0
        best, best_err = 0, np.inf
        for t in sorted(range(-max_shift, max_shift + 1), key=abs):
            candidate = shift_y(moving, t)
            overlap = region & (candidate != 0)
            if not overlap.any():
                continue
            err = float(np.mean((candidate - fixed)[overlap] ** 2))
            if err < best_err - 1e-12:
                best, best_err = t, err
        return best

    @staticmethod
    def _total_shift(affine, warp):
        t = affine.y_translation if affine is not None else 0.0
        if warp is not None:
            t += float(np.mean(warp))
        return t

    def register(self, fixed, moving, stages, initialization=None,
                 fixed_mask=None, moving_mask=None, spacing=(1.0, 1.0)):
        if stages[0].is_linear:
            self.linear_calls.append({'stages': stages, 'initialization': initialization})
            n_call = len(self.linear_calls)
            if self.always_fail or n_call <= self.fail_first:
                return RegistrationOutcome(failed=True, message='All samples map outside moving image buffer')
            t = self._best_shift(fixed, moving, self.max_shift, fixed_mask)
            return RegistrationOutcome(affine=AffineTransform2D(translation=[0.0, float(t)]))

        self.nonlinear_calls.append({'stages': stages, 'initialization': initialization})
        affine = initialization.transform if initialization is not None else None
        pre = self.apply(moving, fixed, affine)
        residual = self._best_shift(fixed, pre, self.warp_max_shift, fixed_mask)
        return RegistrationOutcome(affine=affine, warp=np.full(fixed.shape, float(residual)))

    def apply(self, image, reference, affine=None, warp=None, invert=False,
              interpolation='BSpline', spacing=(1.0, 1.0)):
        t = self._total_shift(affine, warp)
        if invert:
            t = -t
        return shift_y(image, t)

    def displacement_field(self, reference, affine, warp=None, spacing=(1.0, 1.0)):
        return np.full(reference.shape, self._total_shift(affine, warp))

    def motion_correct(self, volumes, spacing=(1.0, 1.0, 1.0)):
        self.n_motion_correct += 1
        return np.array(volumes, dtype=np.float64)

    def bias_correct(self, image, mask, spacing=(1.0, 1.0, 1.0)):
        self.n_bias_correct += 1
        return np.array(image, dtype=np.float64)


@pytest.fixture
def phantom():
    """Reference volume and brain mask."""
    return _make_phantom()


@pytest.fixture
def masks(phantom):
    reference, brain = phantom
    return _simple_masks(reference, brain)


@pytest.fixture
def make_engine():
    """Factory for :class:`FakeEngine`."""
    return FakeEngine


@pytest.fixture
def make_timeseries(phantom):
    """
    Factory for a 4-D timeseries of the phantom with per-slice y-shifts.

    ``shifts`` maps ``(volume, slice)`` to an integer shift; ``noise`` adds
    gaussian noise of that standard deviation inside the head.
    """
    reference, _ = phantom

    def _make(n_volumes=5, shifts=None, noise=0.5, seed=1):
        rng = np.random.RandomState(seed)
        shifts = shifts or {}
        data = np.repeat(reference[..., np.newaxis], n_volumes, axis=3)
        head = reference > 0
        for v in range(n_volumes):
            volume = data[..., v]
            volume[head] += rng.normal(0, noise, size=int(head.sum()))
            for (sv, s), t in shifts.items():
                if sv == v:
                    volume[:, :, s] = shift_y(volume[:, :, s], t)
        return data

    return _make


@pytest.fixture
def write_nifti(tmp_path):
    """Write an array as a NIfTI-GZ image with 1.5 mm voxels."""

    def _write(data, name, dtype=np.float32):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        affine = np.diag([1.5, 1.5, 1.5, 1.0])
        nib.save(nib.Nifti1Image(np.asarray(data, dtype=dtype), affine), path)
        return path

    return _write
