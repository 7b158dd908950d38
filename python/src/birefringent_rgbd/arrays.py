from __future__ import annotations

from typing import TypeAlias

import numpy as np
from numpy.typing import NDArray


# -----------------------------
# Typing aliases
# -----------------------------
F32: TypeAlias = np.float32
U8: TypeAlias = np.uint8

OffsetField: TypeAlias = NDArray[F32]  # (H, W, 2): x, y
ImageU8: TypeAlias = NDArray[U8]       # (H, W, 3) BGR
MapU8: TypeAlias = NDArray[U8]         # (H, W)


# -----------------------------
# Small numeric helpers
# -----------------------------
def as_offset_field(x) -> OffsetField:
    f = np.ascontiguousarray(x, dtype=np.float32)
    if f.ndim != 3 or f.shape[2] != 2:
        raise ValueError(f"Offset field must be (H, W, 2), got {f.shape}")
    return f


def identity_field(rows: int, cols: int) -> OffsetField:
    """Offset field where every pixel points at itself."""
    ys, xs = np.mgrid[0:rows, 0:cols].astype(np.float32)
    return np.dstack([xs, ys])


def shift_columns(dst: NDArray, src: NDArray, shift: int) -> None:
    """Copy ``src`` into ``dst`` moved ``shift`` columns right (left if negative).

    Columns of ``dst`` that receive nothing keep their previous contents.
    """
    w = src.shape[1]
    if shift >= w or -shift >= w:
        return
    if shift > 0:
        dst[:, shift:] = src[:, : w - shift]
    elif shift < 0:
        dst[:, : w + shift] = src[:, -shift:]
    else:
        dst[...] = src


def round_half_away(x: float) -> int:
    # int() truncates toward zero, so this rounds halves away from zero
    return int(x - 0.5) if x < 0 else int(x + 0.5)
