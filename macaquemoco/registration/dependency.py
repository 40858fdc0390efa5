"""
Predecessor relationships between slices for transform initialization.

Slices are acquired interleaved, so the spatially adjacent slice acquired
just before slice ``s`` is ``s - 2``. Slice 1 falls back to slice 0 of the
same volume and slice 0 falls back to slice 0 of the previous volume.
"""

from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

SliceKey = Tuple[int, int]


@dataclass(frozen=True)
class SliceDependencyGraph:
    """
    Explicit ``(volume, slice) -> predecessor`` map.

    Parameters
    ----------
    n_volumes : int
        Number of volumes in the timeseries
    n_slices : int
        Number of slices per volume
    interleave : int
        Acquisition offset between spatially adjacent slices (default 2)
    """

    n_volumes: int
    n_slices: int
    interleave: int = 2

    def predecessor(self, volume: int, slice_idx: int) -> Optional[SliceKey]:
        """Return the slice whose accepted transform seeds ``(volume, slice_idx)``."""
        if not (0 <= volume < self.n_volumes and 0 <= slice_idx < self.n_slices):
            raise IndexError(f"Slice ({volume}, {slice_idx}) outside the timeseries")

        if slice_idx >= self.interleave:
            return (volume, slice_idx - self.interleave)
        if slice_idx > 0:
            return (volume, 0)
        if volume > 0:
            return (volume - 1, 0)
        return None

    def processing_order(self) -> Iterator[SliceKey]:
        """Volume-major order that always visits a predecessor first."""
        for v in range(self.n_volumes):
            for s in range(self.n_slices):
                yield (v, s)
