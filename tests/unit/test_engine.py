"""
Unit tests for the ANTs registration engine.

The ANTs binaries are replaced by a stand-in for ``subprocess.run`` that
records the command line and writes the files ANTs would produce.
"""

import shutil
import subprocess

import nibabel as nib
import numpy as np
import pytest
from scipy.io import savemat

from macaquemoco.registration import engine as engine_module
from macaquemoco.registration.engine import (
    AntsEngine,
    InitStrategy,
    Initialization,
    RegistrationEngineError,
)
from macaquemoco.registration.parameters import resolve_quality_profile
from macaquemoco.registration.transforms import AffineTransform2D


def _arg(cmd, flag):
    return cmd[cmd.index(flag) + 1]


class FakeAnts:
    """Records commands and writes ANTs-like outputs."""

    def __init__(self, returncode=0, stderr='', write_outputs=True):
        self.returncode = returncode
        self.stderr = stderr
        self.write_outputs = write_outputs
        self.commands = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        if self.write_outputs and self.returncode == 0:
            if cmd[0] == 'antsRegistration':
                prefix = _arg(cmd, '--output').strip('[]')
                savemat(prefix + '0GenericAffine.mat', {
                    'AffineTransform_double_2_2': np.array([[1.0], [0.0], [0.0], [1.0], [0.0], [-2.0]]),
                    'fixed': np.zeros((2, 1)),
                })
            elif cmd[0] == 'antsApplyTransforms':
                output = _arg(cmd, '--output')
                shutil.copy(_arg(cmd, '--input'), output)
        return subprocess.CompletedProcess(cmd, self.returncode, stdout='', stderr=self.stderr)


@pytest.fixture
def images():
    rng = np.random.RandomState(0)
    return rng.uniform(0, 100, size=(12, 16)), rng.uniform(0, 100, size=(12, 16))


class TestAntsRegister:
    """Tests for AntsEngine.register()."""

    def test_command_and_result(self, tmp_path, monkeypatch, images):
        fake = FakeAnts()
        monkeypatch.setattr(engine_module.subprocess, 'run', fake)
        fixed, moving = images
        engine = AntsEngine(tmp_path)

        outcome = engine.register(
            fixed, moving, resolve_quality_profile(2).linear_stages(),
            Initialization(InitStrategy.INTENSITY_BASED),
            fixed_mask=np.ones_like(fixed), moving_mask=np.ones_like(moving)
        )

        assert not outcome.failed
        assert outcome.affine.y_translation == pytest.approx(-2.0)
        assert outcome.warp is None

        cmd = fake.commands[0]
        assert cmd[0] == 'antsRegistration'
        assert _arg(cmd, '--dimensionality') == '2'
        assert _arg(cmd, '--initial-moving-transform').endswith(',1]')
        assert '--masks' in cmd
        assert cmd.count('--transform') == 2
        assert cmd.count('--restrict-deformation') == 2
        assert '0x0x0x1x0x1' in cmd

    def test_explicit_initial_transform(self, tmp_path, monkeypatch, images):
        fake = FakeAnts()
        monkeypatch.setattr(engine_module.subprocess, 'run', fake)
        fixed, moving = images
        init = Initialization(InitStrategy.PREVIOUS_SLICE, AffineTransform2D(translation=[0, 1.0]))

        AntsEngine(tmp_path).register(fixed, moving, resolve_quality_profile(0).linear_stages(), init)

        assert _arg(fake.commands[0], '--initial-moving-transform').endswith('init.txt')
        assert '--masks' not in fake.commands[0]

    def test_nonzero_exit_is_failed_outcome(self, tmp_path, monkeypatch, images):
        monkeypatch.setattr(engine_module.subprocess, 'run', FakeAnts(returncode=1, stderr='error'))
        fixed, moving = images

        outcome = AntsEngine(tmp_path).register(fixed, moving, resolve_quality_profile(2).linear_stages())

        assert outcome.failed
        assert outcome.affine is None
        assert outcome.message == 'error'

    def test_overlap_warning_is_failed_outcome(self, tmp_path, monkeypatch, images):
        message = 'All samples map outside moving image buffer'
        monkeypatch.setattr(engine_module.subprocess, 'run', FakeAnts(stderr=message))
        fixed, moving = images

        outcome = AntsEngine(tmp_path).register(fixed, moving, resolve_quality_profile(2).linear_stages())

        assert outcome.failed
        assert message in outcome.message

    def test_missing_transform_is_failed_outcome(self, tmp_path, monkeypatch, images):
        monkeypatch.setattr(engine_module.subprocess, 'run', FakeAnts(write_outputs=False))
        fixed, moving = images

        outcome = AntsEngine(tmp_path).register(fixed, moving, resolve_quality_profile(2).linear_stages())

        assert outcome.failed
        assert 'GenericAffine' in outcome.message

    def test_missing_binary_raises(self, tmp_path, monkeypatch, images):
        def _missing(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(engine_module.subprocess, 'run', _missing)
        fixed, moving = images

        with pytest.raises(RegistrationEngineError, match="ANTs executable not found"):
            AntsEngine(tmp_path).register(fixed, moving, resolve_quality_profile(2).linear_stages())

    def test_temporary_files_removed(self, tmp_path, monkeypatch, images):
        monkeypatch.setattr(engine_module.subprocess, 'run', FakeAnts())
        fixed, moving = images

        AntsEngine(tmp_path).register(fixed, moving, resolve_quality_profile(2).linear_stages())

        assert list(tmp_path.iterdir()) == []


class TestAntsApply:
    """Tests for AntsEngine.apply() and AntsEngine.bias_correct()."""

    def test_inverse_affine_argument(self, tmp_path, monkeypatch, images):
        fake = FakeAnts()
        monkeypatch.setattr(engine_module.subprocess, 'run', fake)
        image, reference = images

        out = AntsEngine(tmp_path).apply(
            image, reference, AffineTransform2D(translation=[0, 1.0]),
            invert=True, interpolation='NearestNeighbor'
        )

        cmd = fake.commands[0]
        assert _arg(cmd, '--interpolation') == 'NearestNeighbor'
        assert _arg(cmd, '--transform').endswith(',1]')
        np.testing.assert_allclose(out, image, rtol=1e-6)

    def test_warp_precedes_affine(self, tmp_path, monkeypatch, images):
        fake = FakeAnts()
        monkeypatch.setattr(engine_module.subprocess, 'run', fake)
        image, reference = images

        AntsEngine(tmp_path).apply(image, reference, AffineTransform2D(), np.zeros_like(image))

        transforms = [fake.commands[0][i + 1] for i, a in enumerate(fake.commands[0]) if a == '--transform']
        assert transforms[0].endswith('warp.nii.gz')
        assert transforms[1].endswith('affine.txt')

    def test_failed_apply_raises(self, tmp_path, monkeypatch, images):
        monkeypatch.setattr(engine_module.subprocess, 'run', FakeAnts(returncode=1, stderr='boom'))
        image, reference = images

        with pytest.raises(RegistrationEngineError, match="antsApplyTransforms"):
            AntsEngine(tmp_path).apply(image, reference)

    def test_warp_written_as_vector_image(self, tmp_path):
        warp = np.full((4, 5), 0.5)
        path = AntsEngine._write_warp(warp, tmp_path / 'warp.nii.gz', (1.0, 1.0))
        field = nib.load(path).get_fdata()
        assert field.shape == (4, 5, 1, 1, 2)
        np.testing.assert_allclose(field[..., 0, 0, 1], 0.5)
        np.testing.assert_allclose(field[..., 0, 0, 0], 0.0)

    def test_single_volume_needs_no_motion_correction(self, tmp_path, monkeypatch):
        fake = FakeAnts()
        monkeypatch.setattr(engine_module.subprocess, 'run', fake)
        volumes = np.ones((4, 4, 3, 1))

        out = AntsEngine(tmp_path).motion_correct(volumes)

        assert fake.commands == []
        np.testing.assert_array_equal(out, volumes)
