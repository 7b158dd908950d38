"""Filtering of the sparse (confidence-gated) disparity map.

Two strategies share one interface and one is picked when the estimator is
built: the confidence-gated joint bilateral filter, or a pass-through that
only rescales the map when the filter cannot be set up.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Final

import cv2
import numpy as np
from numpy.typing import NDArray

from .arrays import F32, ImageU8, MapU8
from .config import FilterMode

log = logging.getLogger(__name__)

FILTER_RADIUS: Final[int] = 10
SIGMA_SPACE: Final[float] = 5.0
SIGMA_GUIDE: Final[float] = 20.0
# On the [0, 255] scale
OUTLIER_THRESH: Final[int] = 6


class DisparityFilter(ABC):
    """Rescales 1-based candidate indices to [0, 255] and filters them."""

    name: str = "base"

    def prepare(self, shape: tuple[int, int]) -> None:
        """Allocate whatever the filter needs for maps of ``shape``."""

    def apply(self, indices: MapU8, count: int, guide: ImageU8, out: MapU8) -> MapU8:
        """Filter ``indices`` (0 = unreliable) in place and write the result to ``out``.

        ``indices`` is rescaled by 255 / count as a side effect.
        """
        cv2.convertScaleAbs(indices, dst=indices, alpha=255.0 / count)
        return self.filter(indices, guide, out)

    @abstractmethod
    def filter(self, values: MapU8, guide: ImageU8, out: MapU8) -> MapU8:
        """Filter [0, 255] ``values`` into ``out``; 0 marks unreliable pixels."""


class PassThroughFilter(DisparityFilter):
    name = "none"

    def filter(self, values: MapU8, guide: ImageU8, out: MapU8) -> MapU8:
        np.copyto(out, values)
        return out


class ConfidenceBilateralFilter(DisparityFilter):
    """Joint bilateral filter guided by the restored image.

    Spatial weights are Gaussian on a disc, range weights compare guide
    colours. Pixels with value 0 neither contribute nor receive a value.
    Results that move more than ``outlier_thresh`` from the input are
    dropped to 0.
    """

    name = "bilateral"

    def __init__(self, radius: int = FILTER_RADIUS, sigma_space: float = SIGMA_SPACE,
                 sigma_guide: float = SIGMA_GUIDE, outlier_thresh: int = OUTLIER_THRESH):
        self.radius = int(radius)
        self.outlier_thresh = int(outlier_thresh)
        self.guide_coeff = -0.5 / (sigma_guide * sigma_guide)

        space_coeff = -0.5 / (sigma_space * sigma_space)
        offsets: list[tuple[int, int]] = []
        weights: list[float] = []
        for i in range(-self.radius, self.radius + 1):
            for j in range(-self.radius, self.radius + 1):
                r2 = float(i * i + j * j)
                if r2 > self.radius * self.radius:
                    continue
                offsets.append((i, j))
                weights.append(float(np.exp(r2 * space_coeff)))
        self.offsets: tuple[tuple[int, int], ...] = tuple(offsets)
        self.space_weight: NDArray[F32] = np.asarray(weights, dtype=np.float32)
        self._shape: tuple[int, int] | None = None

    def prepare(self, shape: tuple[int, int]) -> None:
        h, w = int(shape[0]), int(shape[1])
        if h <= 0 or w <= 0:
            raise ValueError(f"Cannot filter an empty map: {shape}")
        r = self.radius
        self._values = np.zeros((h + 2 * r, w + 2 * r), dtype=np.float32)
        self._guide = np.zeros((h + 2 * r, w + 2 * r, 3), dtype=np.float32)
        self._num = np.zeros((h, w), dtype=np.float32)
        self._den = np.zeros((h, w), dtype=np.float32)
        self._wgt = np.zeros((h, w), dtype=np.float32)
        self._dist = np.zeros((h, w), dtype=np.float32)
        self._diff = np.zeros((h, w, 3), dtype=np.float32)
        self._shape = (h, w)

    def filter(self, values: MapU8, guide: ImageU8, out: MapU8) -> MapU8:
        if self._shape != values.shape[:2]:
            self.prepare(values.shape[:2])
        h, w = values.shape[:2]
        r = self.radius

        vpad, gpad = self._values, self._guide
        vpad[r:r + h, r:r + w] = values
        gpad[...] = cv2.copyMakeBorder(guide, r, r, r, r, cv2.BORDER_REPLICATE)
        center = gpad[r:r + h, r:r + w]
        num, den, wgt, dist, diff = self._num, self._den, self._wgt, self._dist, self._diff
        num.fill(0.0)
        den.fill(0.0)

        for (dy, dx), ws in zip(self.offsets, self.space_weight):
            v = vpad[r + dy:r + dy + h, r + dx:r + dx + w]
            g = gpad[r + dy:r + dy + h, r + dx:r + dx + w]
            np.subtract(g, center, out=diff)
            np.multiply(diff, diff, out=diff)
            np.sum(diff, axis=2, out=dist)
            np.multiply(dist, self.guide_coeff, out=dist)
            np.exp(dist, out=wgt)
            wgt *= ws
            # unreliable neighbours carry no weight
            wgt *= (v > 0)
            den += wgt
            wgt *= v
            num += wgt

        np.divide(num, den, out=num, where=den > 0)
        num[den <= 0] = 0.0
        np.rint(num, out=num)
        np.clip(num, 0, 255, out=num)
        out[...] = num.astype(np.uint8)
        out[values == 0] = 0

        # outlier removal
        moved = cv2.absdiff(values, out)
        out[moved > self.outlier_thresh] = 0
        return out


def select_disparity_filter(mode: FilterMode, shape: tuple[int, int]) -> DisparityFilter:
    """Pick the filter once; ``auto`` degrades to pass-through on failure."""
    mode = FilterMode(mode)
    if mode is FilterMode.NONE:
        log.info("Disparity filtering disabled")
        return PassThroughFilter()

    flt = ConfidenceBilateralFilter()
    try:
        flt.prepare(shape)
    except (MemoryError, ValueError, cv2.error) as e:
        if mode is FilterMode.BILATERAL:
            raise
        log.warning("Could not set up the bilateral filter (%s), depth filtering will be skipped", e)
        return PassThroughFilter()
    log.info("Disparity filter: %s (%d taps) on %dx%d", flt.name, len(flt.offsets), shape[1], shape[0])
    return flt
