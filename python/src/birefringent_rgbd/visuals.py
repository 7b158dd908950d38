from __future__ import annotations

from pathlib import Path

import cv2
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from numpy.typing import NDArray
from PIL import Image, ImageDraw

from .arrays import F32, ImageU8, MapU8
from .candidates import DepthCandidates

COLORMAPS: dict[str, int] = {
    "magma": cv2.COLORMAP_MAGMA,
    "turbo": cv2.COLORMAP_TURBO,
    "viridis": cv2.COLORMAP_VIRIDIS,
    "jet": cv2.COLORMAP_JET,
}


def colorize_disparity(sparse: MapU8, colormap: int = cv2.COLORMAP_MAGMA) -> ImageU8:
    """Colour a sparse [0, 255] disparity map; valid values are lifted off black."""
    scaled = cv2.multiply(sparse, 0.8)
    vis = np.zeros_like(sparse)
    cv2.add(scaled, 0.25 * 255.0, dst=vis, mask=scaled)
    vis = cv2.dilate(vis, np.ones((3, 3), dtype=np.uint8))
    return cv2.applyColorMap(vis, colormap)


def export_candidates_csv(path: Path, candidates: DepthCandidates, winners: MapU8 | None = None) -> pd.DataFrame:
    """One row per depth candidate; ``winners`` holds 1-based indices (0 = none)."""
    n = len(candidates)
    counts = np.zeros(n, dtype=np.int64)
    if winners is not None:
        hist = np.bincount(winners.ravel(), minlength=n + 1)
        counts = hist[1:n + 1]
    table = pd.DataFrame({
        "index": np.arange(n),
        "disparity": candidates.disparities.astype(np.float64),
        "depth": candidates.depths().astype(np.float64),
        "pixels": counts,
    })
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, index=False)
    return table


def render_montage(out_path: Path, images: list[ImageU8], captions: list[str], target_h: int = 420) -> None:
    """Side-by-side BGR images with a caption above each."""
    pil = [Image.fromarray(cv2.cvtColor(im, cv2.COLOR_BGR2RGB)) for im in images]
    resized = [im.resize((int(round(im.size[0] * (target_h / im.size[1]))), target_h)) for im in pil]
    gap = 12
    W = sum(im.size[0] for im in resized) + gap * (len(resized) - 1)
    H = target_h + 48
    montage = Image.new("RGB", (W, H), (255, 255, 255))
    draw = ImageDraw.Draw(montage)

    x = 0
    for caption, im in zip(captions, resized):
        montage.paste(im, (x, 48))
        draw.text((x, 10), caption, fill=(0, 0, 0))
        x += im.size[0] + gap

    montage.save(out_path)


def render_summary(out_path: Path, img: ImageU8, restored: ImageU8, sparse: MapU8,
                   depth: NDArray[F32], candidates: DepthCandidates) -> None:
    """Input, restored image, sparse disparity and depth on one figure."""
    fig, axes = plt.subplots(1, 4, figsize=(20, 5))

    axes[0].imshow(cv2.cvtColor(img, cv2.COLOR_BGR2RGB))
    axes[0].set_title("Input")
    axes[1].imshow(cv2.cvtColor(restored, cv2.COLOR_BGR2RGB))
    axes[1].set_title("Restored")
    axes[2].imshow(cv2.cvtColor(colorize_disparity(sparse), cv2.COLOR_BGR2RGB))
    axes[2].set_title("Sparse disparity")

    shown = np.where(depth > 0, depth, np.nan)
    lo, hi = sorted((candidates.min_depth, candidates.max_depth))
    im = axes[3].imshow(shown, cmap="magma_r", vmin=lo, vmax=hi)
    axes[3].set_title("Depth")
    fig.colorbar(im, ax=axes[3], fraction=0.046, pad=0.04, label="Depth")

    for ax in axes:
        ax.axis("off")
    fig.tight_layout()
    plt.savefig(out_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
