"""Reading and writing offset fields and images.

Offset fields are stored as one single-channel float EXR per component
(``<stem>1.exr`` holds x, ``<stem>2.exr`` holds y).
"""
from __future__ import annotations

import logging
from pathlib import Path

import cv2
import numpy as np
from numpy.typing import NDArray

from .arrays import F32, ImageU8, OffsetField, as_offset_field

log = logging.getLogger(__name__)


def read_float_channel(path: Path) -> NDArray[F32]:
    arr = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if arr is None:
        raise FileNotFoundError(f"Could not read float image: {path}")
    if arr.ndim == 3:
        arr = arr[:, :, 0]
    return arr.astype(np.float32, copy=False)


def read_offset_field(path_x: Path, path_y: Path) -> OffsetField:
    """Merge two single-channel files into an (H, W, 2) field."""
    fx = read_float_channel(path_x)
    fy = read_float_channel(path_y)
    field = cv2.merge([fx, fy])
    log.debug("Read offset field %s + %s: %dx%d", path_x.name, path_y.name, field.shape[1], field.shape[0])
    return field


def write_offset_field(field: OffsetField, path_x: Path, path_y: Path) -> None:
    fx, fy = cv2.split(as_offset_field(field))
    for p, ch in ((path_x, fx), (path_y, fy)):
        p.parent.mkdir(parents=True, exist_ok=True)
        if not cv2.imwrite(str(p), ch):
            raise OSError(f"Could not write {p}")


def offset_field_paths(directory: Path, stem: str) -> tuple[Path, Path]:
    return directory / f"{stem}1.exr", directory / f"{stem}2.exr"


def read_image(path: Path) -> ImageU8:
    img = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Missing image: {path}")
    return img


def write_depth(path: Path, depth: NDArray[F32]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), depth.astype(np.float32, copy=False)):
        raise OSError(f"Could not write {path}")
