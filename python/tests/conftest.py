from __future__ import annotations

import numpy as np
import pytest

import birefringent_rgbd  # noqa: F401  (enables OpenEXR before cv2 is used)
from birefringent_rgbd.arrays import identity_field

MARGIN = 30


def stripe_texture(rows: int, cols: int, seed: int = 0) -> np.ndarray:
    """Vertical stripes, levels are multiples of 16 in [48, 192], neighbours differ by >= 32."""
    rng = np.random.default_rng(seed)
    levels = np.arange(48, 193, 16)
    line = np.empty(cols, dtype=np.int64)
    x = 0
    level = int(rng.choice(levels))
    while x < cols:
        width = int(rng.integers(6, 15))
        line[x:x + width] = level
        x += width
        nxt = level
        while abs(nxt - level) < 32:
            nxt = int(rng.choice(levels))
        level = nxt
    return np.tile(line, (rows, 1))


def blend(source: np.ndarray, disparity: np.ndarray, tau: float) -> np.ndarray:
    """source + tau * source shifted right by ``disparity`` (per column), as uint8 BGR.

    Columns without a shifted contribution are returned unblended.
    """
    rows, cols = source.shape
    out = source.astype(np.float64).copy()
    for x in range(cols):
        d = int(disparity[x])
        if x - d >= 0:
            out[:, x] += tau * source[:, x - d]
    grey = np.clip(np.rint(out), 0, 255).astype(np.uint8)
    return np.dstack([grey, grey, grey])


@pytest.fixture
def identity_tables():
    def make(rows: int, cols: int):
        return identity_field(rows, cols + MARGIN), identity_field(rows, cols)
    return make


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
