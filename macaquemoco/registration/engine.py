"""
Registration engine interface and its ANTs implementation.

The slice registration state machine, the reference builder and the mask
builder only talk to :class:`RegistrationEngine`. :class:`AntsEngine` drives
the ANTs command line tools through ``subprocess`` on temporary NIfTI files,
so the orchestration logic never touches engine-specific file handling.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import nibabel as nib
import numpy as np

from macaquemoco.registration.parameters import RegistrationStage
from macaquemoco.registration.transforms import AffineTransform2D

logger = logging.getLogger(__name__)


class RegistrationEngineError(RuntimeError):
    """Raised when the engine cannot run at all (missing binary, broken output)."""
    pass


class InitStrategy(Enum):
    """How the moving image is placed before optimization starts."""

    ORIGIN = 'origin'
    INTENSITY_BASED = 'intensity'
    PREVIOUS_SLICE = 'previous'
    GEOMETRIC_CENTER = 'center'

    @property
    def ants_code(self) -> Optional[int]:
        """Code for ``--initial-moving-transform [fixed,moving,code]``."""
        return {
            InitStrategy.GEOMETRIC_CENTER: 0,
            InitStrategy.INTENSITY_BASED: 1,
            InitStrategy.ORIGIN: 2,
        }.get(self)


@dataclass
class Initialization:
    """Initialization strategy plus the transform it resolves to, if any."""

    strategy: InitStrategy = InitStrategy.ORIGIN
    transform: Optional[AffineTransform2D] = None


@dataclass
class RegistrationOutcome:
    """
    Result of a single engine invocation.

    Attributes
    ----------
    affine : AffineTransform2D or None
        Accepted linear transform (includes the initial transform)
    warp : np.ndarray or None
        Phase-encode component of the deformation field, for non-linear stages
    failed : bool
        True if the engine reported non-overlapping images or another error
    message : str
        Engine error output
    """

    affine: Optional[AffineTransform2D] = None
    warp: Optional[np.ndarray] = None
    failed: bool = False
    message: str = ''


class RegistrationEngine(ABC):
    """Capabilities required from a registration engine."""

    @abstractmethod
    def register(
        self,
        fixed: np.ndarray,
        moving: np.ndarray,
        stages: Sequence[RegistrationStage],
        initialization: Optional[Initialization] = None,
        fixed_mask: Optional[np.ndarray] = None,
        moving_mask: Optional[np.ndarray] = None,
        spacing: Sequence[float] = (1.0, 1.0)
    ) -> RegistrationOutcome:
        """Register ``moving`` to ``fixed`` through the given stages."""

    @abstractmethod
    def apply(
        self,
        image: np.ndarray,
        reference: np.ndarray,
        affine: Optional[AffineTransform2D] = None,
        warp: Optional[np.ndarray] = None,
        invert: bool = False,
        interpolation: str = 'BSpline',
        spacing: Sequence[float] = (1.0, 1.0)
    ) -> np.ndarray:
        """Resample ``image`` into ``reference`` space through ``warp`` then ``affine``."""

    @abstractmethod
    def displacement_field(
        self,
        reference: np.ndarray,
        affine: AffineTransform2D,
        warp: Optional[np.ndarray] = None,
        spacing: Sequence[float] = (1.0, 1.0)
    ) -> np.ndarray:
        """Phase-encode component of the total displacement of the composed transform."""

    @abstractmethod
    def motion_correct(
        self,
        volumes: np.ndarray,
        spacing: Sequence[float] = (1.0, 1.0, 1.0)
    ) -> np.ndarray:
        """Rigidly align a 4-D stack of volumes to its own mean."""

    @abstractmethod
    def bias_correct(
        self,
        image: np.ndarray,
        mask: np.ndarray,
        spacing: Sequence[float] = (1.0, 1.0, 1.0)
    ) -> np.ndarray:
        """Remove a smooth intensity bias field within ``mask``."""


def _spacing_affine(spacing: Sequence[float]) -> np.ndarray:
    affine = np.eye(4)
    for i, sp in enumerate(list(spacing)[:3]):
        affine[i, i] = float(sp)
    return affine


class AntsEngine(RegistrationEngine):
    """
    Registration engine backed by the ANTs command line tools.

    Parameters
    ----------
    work_dir : Path
        Directory for temporary files (one sub-directory per call)
    num_threads : int
        Threads for ANTs (ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS)
    verbose : bool
        Pass ``--verbose 1`` to the ANTs tools
    """

    def __init__(self, work_dir: Path, num_threads: int = 1, verbose: bool = False):
        self.work_dir = Path(work_dir)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.num_threads = num_threads
        self.verbose = verbose

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        env = dict(os.environ, ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS=str(self.num_threads))
        logger.debug("Running: %s", ' '.join(cmd))
        try:
            return subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env
            )
        except FileNotFoundError as e:
            raise RegistrationEngineError(
                f"ANTs executable not found: {cmd[0]}. Is ANTs on the PATH?"
            ) from e

    def _check(self, result: subprocess.CompletedProcess, tool: str) -> None:
        if result.returncode != 0:
            logger.error("%s failed:\n%s", tool, result.stderr[-1000:])
            raise RegistrationEngineError(f"{tool} failed")

    def _tmpdir(self) -> Path:
        return Path(tempfile.mkdtemp(prefix='ants_', dir=self.work_dir))

    @staticmethod
    def _write(data: np.ndarray, path: Path, spacing: Sequence[float]) -> Path:
        img = nib.Nifti1Image(np.asarray(data, dtype=np.float32), _spacing_affine(spacing))
        nib.save(img, path)
        return path

    @staticmethod
    def _write_warp(warp: np.ndarray, path: Path, spacing: Sequence[float]) -> Path:
        # ITK displacement field: (X, Y, 1, 1, 2) vector image, x component zero
        field = np.zeros(warp.shape + (1, 1, 2), dtype=np.float32)
        field[..., 0, 0, 1] = warp
        img = nib.Nifti1Image(field, _spacing_affine(spacing))
        img.header.set_intent('vector')
        nib.save(img, path)
        return path

    @staticmethod
    def _read_y_component(path: Path, shape: Tuple[int, ...]) -> np.ndarray:
        data = np.asarray(nib.load(path).get_fdata(), dtype=np.float64)
        return data.reshape(shape + (-1,))[..., 1]

    @staticmethod
    def _read(path: Path, shape: Tuple[int, ...]) -> np.ndarray:
        return np.asarray(nib.load(path).get_fdata(), dtype=np.float64).reshape(shape)

    # ------------------------------------------------------------------
    # RegistrationEngine
    # ------------------------------------------------------------------

    def register(
        self,
        fixed,
        moving,
        stages,
        initialization=None,
        fixed_mask=None,
        moving_mask=None,
        spacing=(1.0, 1.0)
    ):
        initialization = initialization or Initialization()
        tmp = self._tmpdir()
        try:
            fixed_file = self._write(fixed, tmp / 'fixed.nii.gz', spacing)
            moving_file = self._write(moving, tmp / 'moving.nii.gz', spacing)
            prefix = tmp / 'reg_'

            if initialization.transform is not None:
                init_arg = str(initialization.transform.write(tmp / 'init.txt'))
            else:
                code = initialization.strategy.ants_code
                init_arg = f'[{fixed_file},{moving_file},{2 if code is None else code}]'

            cmd = [
                'antsRegistration',
                '--dimensionality', str(fixed.ndim),
                '--output', f'[{prefix}]',
                '--interpolation', 'BSpline',
                '--use-histogram-matching', '1',
                '--winsorize-image-intensities', '[0.005,0.995]',
            ]
            if fixed_mask is not None and moving_mask is not None:
                fmask = self._write(fixed_mask, tmp / 'fixed_mask.nii.gz', spacing)
                mmask = self._write(moving_mask, tmp / 'moving_mask.nii.gz', spacing)
                cmd.extend(['--masks', f'[{fmask},{mmask}]'])
            cmd.extend(['--initial-moving-transform', init_arg])

            for stage in stages:
                cmd.extend([
                    '--transform', stage.transform,
                    '--metric', stage.metric_argument(str(fixed_file), str(moving_file)),
                    '--convergence', stage.parameters.convergence,
                    '--shrink-factors', stage.parameters.shrink_factors,
                    '--smoothing-sigmas', stage.parameters.smoothing_sigmas,
                    '--restrict-deformation', stage.restrict_deformation,
                ])
            cmd.extend(['--verbose', '1' if self.verbose else '0', '--float'])

            result = self._run(cmd)
            # Non-overlapping images are reported on stderr, possibly with exit code 0
            if result.returncode != 0 or result.stderr.strip():
                return RegistrationOutcome(failed=True, message=result.stderr.strip())

            affine_file = Path(f'{prefix}0GenericAffine.mat')
            if not affine_file.exists():
                return RegistrationOutcome(
                    failed=True, message=f"Expected transform not found: {affine_file.name}"
                )
            outcome = RegistrationOutcome(affine=AffineTransform2D.read(affine_file))

            warp_file = Path(f'{prefix}1Warp.nii.gz')
            if warp_file.exists():
                outcome.warp = self._read_y_component(warp_file, fixed.shape)
            return outcome
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

    def _transform_args(self, tmp, affine, warp, invert, spacing) -> List[str]:
        args = []
        if warp is not None:
            args.extend(['--transform', str(self._write_warp(warp, tmp / 'warp.nii.gz', spacing))])
        if affine is not None:
            affine_file = str(affine.write(tmp / 'affine.txt'))
            args.extend(['--transform', f'[{affine_file},1]' if invert else affine_file])
        if not args:
            args.extend(['--transform', 'identity'])
        return args

    def apply(
        self,
        image,
        reference,
        affine=None,
        warp=None,
        invert=False,
        interpolation='BSpline',
        spacing=(1.0, 1.0)
    ):
        tmp = self._tmpdir()
        try:
            output = tmp / 'out.nii.gz'
            cmd = [
                'antsApplyTransforms',
                '--dimensionality', str(image.ndim),
                '--input', str(self._write(image, tmp / 'in.nii.gz', spacing)),
                '--reference-image', str(self._write(reference, tmp / 'ref.nii.gz', spacing)),
                '--output', str(output),
                '--interpolation', interpolation,
            ]
            cmd.extend(self._transform_args(tmp, affine, warp, invert, spacing))
            cmd.extend(['--default-value', '0', '--float'])

            self._check(self._run(cmd), 'antsApplyTransforms')
            return self._read(output, reference.shape)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

    def displacement_field(self, reference, affine, warp=None, spacing=(1.0, 1.0)):
        tmp = self._tmpdir()
        try:
            output = tmp / 'displacement.nii.gz'
            ref_file = str(self._write(reference, tmp / 'ref.nii.gz', spacing))
            cmd = [
                'antsApplyTransforms',
                '--dimensionality', str(reference.ndim),
                '--input', ref_file,
                '--reference-image', ref_file,
                '--output', f'[{output},1]',
                '--interpolation', 'BSpline',
            ]
            cmd.extend(self._transform_args(tmp, affine, warp, False, spacing))
            cmd.extend(['--default-value', '0', '--float'])

            self._check(self._run(cmd), 'antsApplyTransforms')
            return self._read_y_component(output, reference.shape)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

    def motion_correct(self, volumes, spacing=(1.0, 1.0, 1.0)):
        n_images = volumes.shape[-1]
        if n_images < 2:
            return np.array(volumes, dtype=np.float64)

        tmp = self._tmpdir()
        try:
            series = self._write(volumes, tmp / 'series.nii.gz', list(spacing) + [1.0])
            reference = self._write(volumes.mean(axis=-1), tmp / 'mean.nii.gz', spacing)
            aligned = tmp / 'aligned.nii.gz'
            cmd = [
                'antsMotionCorr',
                '--dimensionality', '3',
                '--output', f'[{tmp / "moco_"},{aligned},{tmp / "avg.nii.gz"}]',
                '--useFixedReferenceImage', '1',
                '--useScalesEstimator', '1',
                '--n-images', str(n_images),
                '--transform', 'Affine[0.1]',
                '--metric', f'MI[{reference},{series},1,32,Regular,0.1]',
                '--iterations', '15x3',
                '--smoothingSigmas', '1x0',
                '--shrinkFactors', '2x1',
                '--verbose', '1' if self.verbose else '0',
            ]
            self._check(self._run(cmd), 'antsMotionCorr')
            return self._read(aligned, volumes.shape)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

    def bias_correct(self, image, mask, spacing=(1.0, 1.0, 1.0)):
        tmp = self._tmpdir()
        try:
            output = tmp / 'restore.nii.gz'
            cmd = [
                'N4BiasFieldCorrection',
                '--image-dimensionality', str(image.ndim),
                '--input-image', str(self._write(image, tmp / 'in.nii.gz', spacing)),
                '--mask-image', str(self._write(mask, tmp / 'mask.nii.gz', spacing)),
                '--shrink-factor', '4',
                '--convergence', '[50x50x50x50,0.0000001]',
                '--output', str(output),
                '--verbose', '1' if self.verbose else '0',
            ]
            self._check(self._run(cmd), 'N4BiasFieldCorrection')
            return self._read(output, image.shape)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)
