"""Rectification tables for uneven double refraction.

The o-ray and e-ray offset fields differ by a depth-independent skew. The
forward table straightens that skew so the remaining o/e displacement is a
purely horizontal disparity; the inverse table maps the rectified grid back
onto the captured image.
"""
from __future__ import annotations

import logging

import cv2
import numpy as np

from .arrays import OffsetField, as_offset_field

log = logging.getLogger(__name__)

# 3x3 neighbourhood visited around every scattered target
_NEIGHBOURS: tuple[tuple[int, int], ...] = tuple((k % 3 - 1, k // 3 - 1) for k in range(9))


def build_rectification(o_offset: OffsetField, e_offset: OffsetField, margin: int = 30) -> tuple[OffsetField, float]:
    """Build the forward rectification table by dynamic programming.

    Args:
        o_offset: o-ray to captured-image offsets, (H, W, 2).
        e_offset: e-ray to captured-image offsets, same shape.
        margin: extra columns on the right so cumulative drift is not cropped.

    Returns:
        forward: (H, W + margin, 2) table, for every rectified pixel the
            captured-image position it samples.
        baseline: mean horizontal o-to-e offset (f * baseline).
    """
    o = as_offset_field(o_offset)
    e = as_offset_field(e_offset)
    if o.shape != e.shape:
        raise ValueError(f"Offset fields differ in shape: {o.shape} vs {e.shape}")
    rows, cols = o.shape[:2]

    # Removing e from o cancels the depth dependency
    o2e = o - e
    baseline = float(np.mean(o2e[..., 0]))
    local = (o2e / np.float32(baseline)).astype(np.float32)

    forward = np.zeros((rows, cols + margin, 2), dtype=np.float32)
    forward[:, 0, 1] = np.arange(rows, dtype=np.float32)

    for j in range(1, forward.shape[1]):
        prev = np.ascontiguousarray(forward[:, j - 1:j])
        # local disparity at the position the previous column points to
        step = cv2.remap(local, prev, None, cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT, borderValue=0)
        forward[:, j] = prev[:, 0] + step.reshape(rows, 2)

    log.info("Rectification: %dx%d -> %dx%d, baseline=%.4f", cols, rows, forward.shape[1], rows, baseline)
    return forward, baseline


def reverse_rectification(
    forward: OffsetField,
    inverse_shape: tuple[int, int],
    scale: float = 6.0,
    max_chunk: int = 1_000_000,
) -> OffsetField:
    """Approximate inverse of a locally smooth remapping table.

    The forward table is upsampled by ``scale`` and every interior source
    pixel is scattered to the 3x3 neighbourhood of the cell it lands on. A
    cell keeps the source closest to its centre (half squared distance below
    1); on equal distances the earlier source in row-major order wins. This
    is the result of a sequential scan, computed one block of rows at a time.

    Args:
        forward: (H, W', 2) table to invert.
        inverse_shape: (rows, cols) of the inverse table (captured image).
        scale: upsampling used during the scatter.
        max_chunk: upper bound on source pixels handled per block.

    Returns:
        (rows, cols, 2) float32 inverse table.
    """
    fwd = as_offset_field(forward)
    big = cv2.resize(fwd, None, fx=scale, fy=scale, interpolation=cv2.INTER_LINEAR)
    big *= np.float32(scale)

    rows, cols = int(inverse_shape[0]), int(inverse_shape[1])
    rows_t, cols_t = int(rows * scale), int(cols * scale)
    inverse_big = np.zeros((rows_t * cols_t, 2), dtype=np.float32)
    best = np.ones(rows_t * cols_t, dtype=np.float32)

    src_rows, src_cols = big.shape[:2]
    inner_cols = src_cols - 2
    if src_rows < 3 or inner_cols < 1:
        raise ValueError(f"Forward table too small to invert: {fwd.shape}")
    block = max(1, max_chunk // inner_cols)
    col_idx = np.arange(1, src_cols - 1, dtype=np.int64)

    for r0 in range(1, src_rows - 1, block):
        r1 = min(r0 + block, src_rows - 1)
        pos = big[r0:r1, 1:src_cols - 1].reshape(-1, 2)
        src_i = np.repeat(np.arange(r0, r1, dtype=np.int64), inner_cols)
        src_j = np.tile(col_idx, r1 - r0)

        px, py = pos[:, 0], pos[:, 1]
        cx = np.rint(px).astype(np.int64)
        cy = np.rint(py).astype(np.int64)
        # the table boundary is never sampled, so no padding is needed
        inside = (cx > 1) & (cy > 1) & (cx < cols_t - 1) & (cy < rows_t - 1)
        if not np.any(inside):
            continue
        order = np.flatnonzero(inside)
        px, py, cx, cy = px[order], py[order], cx[order], cy[order]

        cells, diffs, orders = [], [], []
        for dx, dy in _NEIGHBOURS:
            x = cx + dx
            y = cy + dy
            diff = ((px - x.astype(np.float32)) ** 2 + (py - y.astype(np.float32)) ** 2) / np.float32(2.0)
            keep = diff < 1.0
            cells.append(y[keep] * cols_t + x[keep])
            diffs.append(diff[keep])
            orders.append(order[keep])
        cell = np.concatenate(cells)
        diff = np.concatenate(diffs)
        src = np.concatenate(orders)
        if cell.size == 0:
            continue

        # per cell: smallest distance, then earliest source
        srt = np.lexsort((src, diff, cell))
        cell, diff, src = cell[srt], diff[srt], src[srt]
        first = np.ones(cell.size, dtype=bool)
        first[1:] = cell[1:] != cell[:-1]
        cell, diff, src = cell[first], diff[first], src[first]

        better = diff < best[cell]
        cell, diff, src = cell[better], diff[better], src[better]
        best[cell] = diff
        inverse_big[cell, 0] = src_j[src]
        inverse_big[cell, 1] = src_i[src]

    filled = int(np.count_nonzero(best < 1.0))
    log.info("Reverse rectification: %d/%d cells filled at scale %.1f", filled, best.size, scale)

    inverse = cv2.resize(inverse_big.reshape(rows_t, cols_t, 2), (cols, rows), interpolation=cv2.INTER_LINEAR)
    inverse *= np.float32(1.0 / scale)
    inverse -= np.float32(1.0)
    return inverse
