"""Command-line entry points.

Examples:
  # Build rectification tables from the o-ray / e-ray offset fields
  birefringent-rectify --o-offset resources/b_o2d_1.exr resources/b_o2d_2.exr \\
      --e-offset resources/b_e2d_1.exr resources/b_e2d_2.exr --out resources

  # Restore a captured image and estimate its depth
  birefringent-depth --image resources/demo.png --tables resources --out outputs --visuals
"""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

import cv2

from .config import (
    FilterMode,
    OutputConfig,
    RectificationConfig,
    estimator_config_from,
    load_section,
    resolve,
)
from .estimator import DepthEstimator
from .offset_io import (
    offset_field_paths,
    read_image,
    read_offset_field,
    write_depth,
    write_offset_field,
)
from .rectifier import build_rectification, reverse_rectification
from .visuals import COLORMAPS, export_candidates_csv, render_montage, render_summary

FORWARD_STEM = "tform_ind"
INVERSE_STEM = "inv_ind"


def _setup_logging(level: str) -> logging.Logger:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format="%(levelname)s: %(message)s")
    return logging.getLogger("run")


# -----------------------------
# Rectification tool
# -----------------------------
def parse_rectify_args(argv: list[str] | None = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Build rectification tables for uneven double refraction.",
                                 formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    ap.add_argument("--config", type=Path, default=None,
                    help="Path to repo-level config.json. If omitted, uses <repo>/config.json when present.")
    ap.add_argument("--o-offset", type=Path, nargs=2, required=True, metavar=("X", "Y"),
                    help="o-ray offset field, one float EXR per component.")
    ap.add_argument("--e-offset", type=Path, nargs=2, required=True, metavar=("X", "Y"),
                    help="e-ray offset field, one float EXR per component.")
    ap.add_argument("--out", type=Path, default=Path("resources"), help="Output directory for the tables.")
    ap.add_argument("--scale", type=float, default=None, help="Upsampling used to reverse the rectification.")
    ap.add_argument("--margin", type=int, default=None, help="Extra rectified columns on the right.")
    ap.add_argument("--log", default="INFO", help="Logging level.")
    return ap.parse_args(argv)


def rectify_main(argv: list[str] | None = None) -> int:
    args = parse_rectify_args(argv)
    log = _setup_logging(args.log)

    cfg_all = load_section(args.config, 'rectify', log)
    dflt = RectificationConfig()
    cfg = RectificationConfig(
        scale=float(resolve(args.scale, cfg_all, ['rectification', 'scale'], dflt.scale)),
        margin=int(resolve(args.margin, cfg_all, ['rectification', 'margin'], dflt.margin)),
    )

    o_offset = read_offset_field(*args.o_offset)
    e_offset = read_offset_field(*args.e_offset)
    if o_offset.shape != e_offset.shape:
        raise SystemExit(f"Offset fields differ in size: {o_offset.shape[:2]} vs {e_offset.shape[:2]}")

    forward, baseline = build_rectification(o_offset, e_offset, margin=cfg.margin)
    print(f"Disparity coefficient: f * baseline = {baseline}")
    log.info("Reverse rectification...")
    inverse = reverse_rectification(forward, o_offset.shape[:2], scale=cfg.scale)

    write_offset_field(forward, *offset_field_paths(args.out, FORWARD_STEM))
    write_offset_field(inverse, *offset_field_paths(args.out, INVERSE_STEM))
    log.info("Wrote %s* and %s* to %s", FORWARD_STEM, INVERSE_STEM, args.out)
    return 0


# -----------------------------
# Depth demo
# -----------------------------
def parse_depth_args(argv: list[str] | None = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Single-shot RGB-D from an uneven double refraction image.",
                                 formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    ap.add_argument("--config", type=Path, default=None,
                    help="Path to repo-level config.json. If omitted, uses <repo>/config.json when present.")
    ap.add_argument("--image", type=Path, required=True, help="Captured birefractive image (8-bit colour).")
    ap.add_argument("--tables", type=Path, default=Path("resources"),
                    help="Directory holding tform_ind1/2.exr and inv_ind1/2.exr.")
    ap.add_argument("--out", type=Path, default=Path("outputs"), help="Output directory.")
    ap.add_argument("--min-depth", type=float, default=None, help="Nearest depth candidate.")
    ap.add_argument("--max-depth", type=float, default=None, help="Farthest depth candidate.")
    ap.add_argument("--disparity-coef", type=float, default=None, help="f * baseline (disparity = coef / depth).")
    ap.add_argument("--tau", type=float, default=None, help="e-ray / o-ray intensity ratio.")
    ap.add_argument("--upsampling", type=float, default=None, help="Rectified grid upsampling.")
    ap.add_argument("--scale-mask", type=float, default=None, help="Resize factor of the sparse maps.")
    ap.add_argument("--win-size", type=int, default=None, help="Cost window size.")
    ap.add_argument("--thresh-grad", type=int, default=None, help="Edge threshold for reliable pixels.")
    ap.add_argument("--thresh-cost", type=int, default=None, help="Cost spread threshold for reliable pixels.")
    ap.add_argument("--filter", choices=[m.value for m in FilterMode], default=None,
                    help="Sparse disparity filter.")
    ap.add_argument("--visuals", action=argparse.BooleanOptionalAction, default=None,
                    help="Write the summary figure and the montage.")
    ap.add_argument("--colormap", choices=sorted(COLORMAPS), default=None, help="Colour map for the disparity image.")
    ap.add_argument("--log", default="INFO", help="Logging level.")
    return ap.parse_args(argv)


def depth_main(argv: list[str] | None = None) -> int:
    args = parse_depth_args(argv)
    log = _setup_logging(args.log)

    cfg_all = load_section(args.config, 'depth', log)
    cfg = estimator_config_from(cfg_all, {
        'min_depth': args.min_depth,
        'max_depth': args.max_depth,
        'disparity_coef': args.disparity_coef,
        'tau': args.tau,
        'upsampling': args.upsampling,
        'scale_mask': args.scale_mask,
        'win_size': args.win_size,
        'thresh_grad': args.thresh_grad,
        'thresh_cost': args.thresh_cost,
        'filter_mode': args.filter,
    })
    dflt_out = OutputConfig()
    out_cfg = OutputConfig(
        visuals=bool(resolve(args.visuals, cfg_all, ['outputs', 'visuals'], dflt_out.visuals)),
        colormap=str(resolve(args.colormap, cfg_all, ['outputs', 'colormap'], dflt_out.colormap)),
        depth_name=str(resolve(None, cfg_all, ['outputs', 'depth_name'], dflt_out.depth_name)),
    )
    if out_cfg.colormap not in COLORMAPS:
        raise SystemExit(f"Unknown colormap '{out_cfg.colormap}', expected one of {sorted(COLORMAPS)}")

    forward = read_offset_field(*offset_field_paths(args.tables, FORWARD_STEM))
    inverse = read_offset_field(*offset_field_paths(args.tables, INVERSE_STEM))
    estimator = DepthEstimator.from_config(forward, inverse, cfg)
    del forward, inverse

    img = read_image(args.image)
    estimator.set_frame(img)

    restored = estimator.restored_image()
    sparse = estimator.disparity_map()
    depth = estimator.depth()

    args.out.mkdir(parents=True, exist_ok=True)
    cv2.imwrite(str(args.out / "restored.png"), restored)
    cv2.imwrite(str(args.out / "disparity.png"), sparse)
    cv2.imwrite(str(args.out / "disparity_color.png"), estimator.colored_disparity_map(COLORMAPS[out_cfg.colormap]))
    write_depth(args.out / out_cfg.depth_name, depth)
    table = export_candidates_csv(args.out / "candidates.csv", estimator.candidates, estimator.winner_indices)

    if out_cfg.visuals:
        render_summary(args.out / "summary.png", img, restored, sparse, depth, estimator.candidates)
        render_montage(args.out / "montage.png", [img, restored], [f"Input: {args.image.name}", "Restored"])

    valid = depth > 0
    print("\n=== Summary ===")
    print(f"Depth candidates: {len(table)}")
    print(f"Reliable pixels:  {int(valid.sum())} / {valid.size}")
    if valid.any():
        print(f"Depth range:      [{float(depth[valid].min()):.1f}, {float(depth[valid].max()):.1f}]")
    print(f"Filter:           {estimator.disparity_filter.name}")
    print(f"Outputs in:       {args.out.resolve()}")
    return 0


def main_rectify() -> None:
    raise SystemExit(rectify_main())


def main_depth() -> None:
    raise SystemExit(depth_main())
