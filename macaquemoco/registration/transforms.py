"""
Two-dimensional affine transforms in ITK convention.

ANTs writes linear slice transforms as MATLAB ``.mat`` files holding
``AffineTransform_double_2_2`` (matrix followed by translation) and
``fixed`` (centre of rotation). Initial transforms are passed back to
``antsRegistration`` as ITK text files, like the initial Z-offset transform
in the functional template registration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import numpy as np
from scipy.io import loadmat


ITK_TRANSFORM_NAME = 'AffineTransform_double_2_2'


@dataclass(eq=False)
class AffineTransform2D:
    """
    ITK affine transform ``x' = A (x - c) + t + c`` for 2-D slices.

    Attributes
    ----------
    matrix : np.ndarray
        2x2 linear part
    translation : np.ndarray
        Translation vector (physical units)
    center : np.ndarray
        Fixed centre of rotation
    """

    matrix: np.ndarray = field(default_factory=lambda: np.eye(2))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(2))
    center: np.ndarray = field(default_factory=lambda: np.zeros(2))

    def __post_init__(self):
        self.matrix = np.asarray(self.matrix, dtype=np.float64).reshape(2, 2)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(2)
        self.center = np.asarray(self.center, dtype=np.float64).reshape(2)

    @classmethod
    def identity(cls) -> 'AffineTransform2D':
        return cls()

    @property
    def offset(self) -> np.ndarray:
        return self.translation + self.center - self.matrix @ self.center

    def homogeneous(self) -> np.ndarray:
        """3x3 homogeneous matrix, as ``ConvertTransformFile --homogeneousMatrix``."""
        mat = np.eye(3)
        mat[:2, :2] = self.matrix
        mat[:2, 2] = self.offset
        return mat

    @property
    def y_scale(self) -> float:
        """Scaling along the phase-encode axis."""
        return float(self.homogeneous()[1, 1])

    @property
    def y_translation(self) -> float:
        """Translation along the phase-encode axis."""
        return float(self.homogeneous()[1, 2])

    def is_identity(self, atol: float = 1e-9) -> bool:
        return bool(np.allclose(self.homogeneous(), np.eye(3), atol=atol))

    def inverse(self) -> 'AffineTransform2D':
        inv = np.linalg.inv(self.homogeneous())
        return AffineTransform2D(matrix=inv[:2, :2], translation=inv[:2, 2])

    def parameters(self) -> np.ndarray:
        """ITK parameter vector: a11 a12 a21 a22 tx ty."""
        return np.concatenate([self.matrix.ravel(), self.translation])

    def to_itk_text(self) -> str:
        params = ' '.join(f'{p:.10g}' for p in self.parameters())
        fixed = ' '.join(f'{c:.10g}' for c in self.center)
        return (
            "#Insight Transform File V1.0\n"
            "#Transform 0\n"
            f"Transform: {ITK_TRANSFORM_NAME}\n"
            f"Parameters: {params}\n"
            f"FixedParameters: {fixed}\n"
        )

    def write(self, output_file: Path) -> Path:
        """Write the transform as an ITK text file."""
        output_file = Path(output_file)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with open(output_file, 'w') as f:
            f.write(self.to_itk_text())
        return output_file

    @classmethod
    def from_parameters(cls, parameters, fixed=(0.0, 0.0)) -> 'AffineTransform2D':
        parameters = np.asarray(parameters, dtype=np.float64).ravel()
        if parameters.size != 6:
            raise ValueError(f"Expected 6 affine parameters, got {parameters.size}")
        return cls(matrix=parameters[:4], translation=parameters[4:], center=fixed)

    @classmethod
    def from_itk_text(cls, text: str) -> 'AffineTransform2D':
        params = None
        fixed = (0.0, 0.0)
        for line in text.splitlines():
            if line.startswith('Parameters:'):
                params = [float(p) for p in line.split(':', 1)[1].split()]
            elif line.startswith('FixedParameters:'):
                fixed = [float(p) for p in line.split(':', 1)[1].split()]
        if params is None:
            raise ValueError("No 'Parameters:' line found in ITK transform text")
        return cls.from_parameters(params, fixed)

    @classmethod
    def read(cls, transform_file: Union[str, Path]) -> 'AffineTransform2D':
        """
        Read an ANTs ``.mat`` transform or an ITK text transform.

        Parameters
        ----------
        transform_file : Path
            ``*GenericAffine.mat`` (MATLAB v4/v5) or ITK ``.txt``

        Returns
        -------
        AffineTransform2D
        """
        transform_file = Path(transform_file)
        if not transform_file.exists():
            raise FileNotFoundError(f"Transform not found: {transform_file}")

        if transform_file.suffix == '.mat':
            content = loadmat(str(transform_file))
            key = next((k for k in content if k.startswith('AffineTransform')), None)
            if key is None:
                raise ValueError(f"No affine parameters in {transform_file}")
            fixed = content.get('fixed', np.zeros(2))
            return cls.from_parameters(content[key], np.asarray(fixed).ravel())

        with open(transform_file, 'r') as f:
            return cls.from_itk_text(f.read())
