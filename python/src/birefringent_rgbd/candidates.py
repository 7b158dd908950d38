from __future__ import annotations

from dataclasses import dataclass
from typing import Self

import numpy as np
from numpy.typing import NDArray

from .arrays import F32, MapU8


@dataclass(frozen=True, slots=True)
class DepthCandidates:
    """Disparity hypotheses between ``max_depth`` (index 0) and ``min_depth``.

    Candidates are evenly spaced in disparity (hence in inverse depth), about
    one pixel apart at working resolution.
    """
    disparity_coef: float
    disparities: NDArray[F32]

    @classmethod
    def from_depth_range(cls, min_depth: float, max_depth: float, disparity_coef: float) -> Self:
        if min_depth <= 0 or max_depth <= 0:
            raise ValueError(f"Depths must be positive, got [{min_depth}, {max_depth}]")
        if min_depth >= max_depth:
            raise ValueError(f"min_depth ({min_depth}) must be below max_depth ({max_depth})")
        if disparity_coef == 0:
            raise ValueError("disparity_coef must be non-zero")

        first = disparity_coef / max_depth
        last = disparity_coef / min_depth
        count = max(2, int(abs(last - first) + 1.5))
        step = (last - first) / (count - 1)
        disparities = (first + np.arange(count, dtype=np.float64) * step).astype(np.float32)
        return cls(disparity_coef=float(disparity_coef), disparities=disparities)

    def __len__(self) -> int:
        return int(self.disparities.size)

    @property
    def step(self) -> float:
        return float(self.disparities[1] - self.disparities[0])

    @property
    def min_depth(self) -> float:
        return self.depth_of(float(self.disparities[-1]))

    @property
    def max_depth(self) -> float:
        return self.depth_of(float(self.disparities[0]))

    def depth_of(self, disparity):
        return self.disparity_coef / disparity

    def depths(self) -> NDArray[F32]:
        return (self.disparity_coef / self.disparities.astype(np.float64)).astype(np.float32)

    def depth_from_sparse(self, sparse: MapU8) -> NDArray[F32]:
        """Convert a [0, 255] sparse disparity map to depth; 0 stays 0.

        ``v`` encodes the 1-based candidate index ``v * N / 255``.
        """
        n = len(self)
        v = sparse.astype(np.float64)
        # rounding in the [0, 255] encoding can land just outside the range
        index = np.clip(v * (n / 255.0) - 1.0, 0.0, n - 1.0)
        disparity = self.disparities[0] + index * self.step
        valid = sparse > 0
        depth = np.zeros(sparse.shape, dtype=np.float32)
        depth[valid] = (self.disparity_coef / disparity[valid]).astype(np.float32)
        return depth
