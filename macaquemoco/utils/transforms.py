#!/usr/bin/env python3
"""
Storage of per-slice transforms and the incremental registration reports.

Report streams (one row per volume, one tab-separated column per slice):

- report/similarityMetricOrig.txt: original match
- report/similarityMetricLinear.txt: after linear registration
- report/similarityMetricWarp.txt: final match
- transform/yScale.txt, transform/yTranslate.txt: phase-encode scale and
  translation of the accepted affine

Rows are appended as slices finish, so partial runs stay diagnosable.
Slices above the brain are never scored and are reported as ``1``.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import numpy as np

from macaquemoco.registration.slice_registration import SliceResult
from macaquemoco.registration.transforms import AffineTransform2D


UNSCORED = '1'


class MotionReport:
    """
    Append-only similarity and transform-parameter reports.

    Parameters
    ----------
    report_dir : Path
        Directory for similarity reports
    transform_dir : Path, optional
        Directory for y-scale/y-translation reports
    check_registration : bool
        Whether similarity reports are written
    store_linear : bool
        Whether transform-parameter reports are written
    """

    def __init__(
        self,
        report_dir: Path,
        transform_dir: Optional[Path] = None,
        check_registration: bool = True,
        store_linear: bool = True
    ):
        self.report_dir = Path(report_dir)
        self.report_dir.mkdir(parents=True, exist_ok=True)
        self.streams: Dict[str, Path] = {}

        if check_registration:
            for name in ('orig', 'linear', 'warp'):
                self.streams[name] = self.report_dir / f'similarityMetric{name.capitalize()}.txt'
        if store_linear and transform_dir is not None:
            transform_dir = Path(transform_dir)
            transform_dir.mkdir(parents=True, exist_ok=True)
            self.streams['y_scale'] = transform_dir / 'yScale.txt'
            self.streams['y_translate'] = transform_dir / 'yTranslate.txt'

        # start from empty files
        for path in self.streams.values():
            path.write_text('')

    def _append(self, name: str, text: str) -> None:
        if name in self.streams:
            with open(self.streams[name], 'a') as f:
                f.write(text)

    @staticmethod
    def _format_score(score: Optional[float]) -> str:
        return UNSCORED if score is None else f'{score:.4f}'

    def add_slice(self, result: SliceResult) -> None:
        self._append('orig', self._format_score(result.original_score) + '\t')
        self._append('linear', self._format_score(result.linear_score) + '\t')
        self._append('warp', self._format_score(result.final_score) + '\t')
        self._append('y_scale', f'{result.affine.y_scale:.6f}\t')
        self._append('y_translate', f'{result.affine.y_translation:.6f}\t')

    def end_volume(self) -> None:
        for name in self.streams:
            self._append(name, '\n')

    @staticmethod
    def read(path: Path) -> np.ndarray:
        """Load a report as a (n_volumes, n_slices) array."""
        rows = [
            [float(v) for v in line.strip('\n').split('\t') if v != '']
            for line in Path(path).read_text().splitlines()
            if line.strip()
        ]
        return np.array(rows, dtype=np.float64)


class SliceTransformRegistry:
    """
    Registry of the accepted affine transform of every slice.

    Parameters are kept in memory and written as one ``.npy`` array of
    shape (n_volumes, n_slices, 8) (six ITK parameters followed by the
    fixed centre) with a JSON metadata file alongside.

    Parameters
    ----------
    transform_dir : Path
        Output directory
    n_volumes, n_slices : int
        Timeseries dimensions
    """

    def __init__(self, transform_dir: Path, n_volumes: int, n_slices: int):
        self.transform_dir = Path(transform_dir)
        self.transform_dir.mkdir(parents=True, exist_ok=True)
        self.parameters = np.zeros((n_volumes, n_slices, 8))
        self.parameters[:, :, [0, 3]] = 1.0
        self.outcomes = np.full((n_volumes, n_slices), '', dtype=object)
        self.metadata_file = self.transform_dir / 'slice_transforms.json'
        self.array_file = self.transform_dir / 'slice_transforms.npy'
        self.metadata = {
            'created': datetime.now().isoformat(),
            'n_volumes': n_volumes,
            'n_slices': n_slices,
            'layout': 'a11 a12 a21 a22 tx ty cx cy',
        }

    def add(self, result: SliceResult) -> None:
        self.parameters[result.volume, result.slice_idx] = np.concatenate(
            [result.affine.parameters(), result.affine.center]
        )
        self.outcomes[result.volume, result.slice_idx] = result.outcome.value

    def get(self, volume: int, slice_idx: int) -> AffineTransform2D:
        params = self.parameters[volume, slice_idx]
        return AffineTransform2D.from_parameters(params[:6], params[6:])

    def outcome_counts(self) -> Dict[str, int]:
        values, counts = np.unique(self.outcomes[self.outcomes != ''].astype(str), return_counts=True)
        return {str(v): int(c) for v, c in zip(values, counts)}

    def save(self, **extra) -> Path:
        """Write parameters and metadata; returns the metadata path."""
        np.save(self.array_file, self.parameters)
        self.metadata.update(extra)
        self.metadata['outcomes'] = self.outcome_counts()
        self.metadata['last_updated'] = datetime.now().isoformat()
        with open(self.metadata_file, 'w') as f:
            json.dump(self.metadata, f, indent=2)
        return self.metadata_file

    @classmethod
    def load(cls, transform_dir: Path) -> 'SliceTransformRegistry':
        transform_dir = Path(transform_dir)
        with open(transform_dir / 'slice_transforms.json', 'r') as f:
            metadata = json.load(f)
        registry = cls(transform_dir, metadata['n_volumes'], metadata['n_slices'])
        registry.parameters = np.load(transform_dir / 'slice_transforms.npy')
        registry.metadata.update(metadata)
        return registry
