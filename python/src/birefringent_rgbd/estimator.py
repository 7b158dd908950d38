from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Self

import cv2
import numpy as np
from numpy.typing import NDArray

from .arrays import F32, ImageU8, MapU8, OffsetField, as_offset_field, shift_columns
from .candidates import DepthCandidates
from .config import EstimatorConfig, FilterMode
from .filters import DisparityFilter, select_disparity_filter
from .restoration import cost_field, edge_response, intensity_correction, restore_image
from .visuals import colorize_disparity

log = logging.getLogger(__name__)

# The restoration model does not hold near the rectification boundary;
# these bands of the output are copied from the captured image.
BORDER_ROWS = 5
BORDER_RIGHT_COLS = 40

_ERODE_KERNEL = np.ones((2, 2), dtype=np.uint8)


@dataclass(slots=True)
class EstimatorBuffers:
    """Working memory for one estimator, sized once and reused every frame.

    Three resolutions are involved: the captured image (``out``), the
    rectified grid (``rect``) and the reduced grid used for confidence and
    the sparse disparity map (``conf``).
    """
    # captured resolution
    img: ImageU8
    restored: ImageU8
    # rectified resolution
    rectified: ImageU8
    restored_rectified: ImageU8
    translated: ImageU8
    candidate: ImageU8
    grad_a: ImageU8
    grad_b: ImageU8
    cost: MapU8
    cost_tmp: MapU8
    min_cost: MapU8
    max_cost: MapU8
    mask_best: NDArray[np.bool_]
    winners: MapU8
    # confidence resolution
    restored_conf: ImageU8
    winners_conf: MapU8
    confidence: MapU8
    min_cost_conf: MapU8
    edges_a: ImageU8
    edges_b: ImageU8
    edges_grey: MapU8
    conf_handle: MapU8
    mask_conf: NDArray[np.bool_]
    sparse: MapU8

    @classmethod
    def allocate(cls, out_shape: tuple[int, int], rect_shape: tuple[int, int],
                 conf_shape: tuple[int, int]) -> Self:
        def u8(shape, cn=0):
            return np.zeros((*shape, cn) if cn else shape, dtype=np.uint8)

        return cls(
            img=u8(out_shape, 3),
            restored=u8(out_shape, 3),
            rectified=u8(rect_shape, 3),
            restored_rectified=u8(rect_shape, 3),
            translated=u8(rect_shape, 3),
            candidate=u8(rect_shape, 3),
            grad_a=u8(rect_shape, 3),
            grad_b=u8(rect_shape, 3),
            cost=u8(rect_shape),
            cost_tmp=u8(rect_shape),
            min_cost=u8(rect_shape),
            max_cost=u8(rect_shape),
            mask_best=np.zeros(rect_shape, dtype=bool),
            winners=u8(rect_shape),
            restored_conf=u8(conf_shape, 3),
            winners_conf=u8(conf_shape),
            confidence=u8(conf_shape),
            min_cost_conf=u8(conf_shape),
            edges_a=u8(conf_shape, 3),
            edges_b=u8(conf_shape, 3),
            edges_grey=u8(conf_shape),
            conf_handle=u8(conf_shape),
            mask_conf=np.zeros(conf_shape, dtype=bool),
            sparse=u8(conf_shape),
        )


class DepthEstimator:
    """Depth and colour restoration for uneven double refraction images.

    Rectification tables are converted once; every call to :meth:`set_frame`
    reruns the whole pipeline into the same buffers. Calls on one instance
    must not overlap.
    """

    def __init__(
        self,
        forward: OffsetField,
        inverse: OffsetField,
        min_depth: float,
        max_depth: float,
        disparity_coef: float,
        tau: float,
        upsampling: float = 1.0,
        scale_mask: float = 0.3,
        win_size: int = 61,
        thresh_grad: int = 220,
        thresh_cost: int = 1,
        filter_mode: FilterMode = FilterMode.AUTO,
    ):
        """
        Args:
            forward: rectification table, (H, W + margin, 2).
            inverse: table reversing rectification, (H, W, 2).
            min_depth: nearest depth candidate.
            max_depth: farthest depth candidate.
            disparity_coef: f * baseline, disparity = disparity_coef / depth.
            tau: e-ray to o-ray intensity ratio, 0 < tau < 1.
            upsampling: working-resolution factor for the rectified grid.
            scale_mask: resize factor of the confidence / sparse maps.
            win_size: cost window at the original resolution.
            thresh_grad: minimum edge response for a reliable pixel.
            thresh_cost: minimum max-min cost spread for a reliable pixel.
            filter_mode: sparse disparity filter selection.
        """
        if not 0.0 < tau < 1.0:
            raise ValueError(f"tau must be in (0, 1), got {tau}")
        self.tau = float(tau)
        self.thresh_grad = int(thresh_grad)
        self.thresh_cost = int(thresh_cost)
        win = int(upsampling * win_size)
        self.win_size = win + 1 - (win % 2)

        self.candidates = DepthCandidates.from_depth_range(min_depth, max_depth, upsampling * disparity_coef)
        if len(self.candidates) > 255:
            raise ValueError(f"{len(self.candidates)} depth candidates do not fit an 8-bit index map")

        # Lookup tables at working resolution
        inv = as_offset_field(inverse) * np.float32(upsampling)
        inv_mask = cv2.resize(inv, None, fx=scale_mask, fy=scale_mask, interpolation=cv2.INTER_LINEAR)
        fwd = cv2.resize(as_offset_field(forward), None, fx=upsampling, fy=upsampling, interpolation=cv2.INTER_LINEAR)
        self._fwd_maps = cv2.convertMaps(fwd, None, cv2.CV_16SC2)
        self._inv_maps = cv2.convertMaps(inv, None, cv2.CV_16SC2)
        self._mask_maps = cv2.convertMaps(inv_mask, None, cv2.CV_16SC2)

        out_shape = inv.shape[:2]
        rect_shape = fwd.shape[:2]
        conf_shape = inv_mask.shape[:2]
        self.buffers = EstimatorBuffers.allocate(out_shape, rect_shape, conf_shape)
        # horizontal offset of cost-window artefacts, in confidence pixels
        self.displacement = int(float(self.win_size * conf_shape[1]) / (rect_shape[1] * 2))

        self.disparity_filter: DisparityFilter = select_disparity_filter(filter_mode, conf_shape)

        log.info("Depth candidates: %d disparities in [%.2f, %.2f] (step %.3f px), depth [%.1f, %.1f]",
                 len(self.candidates), float(self.candidates.disparities[0]),
                 float(self.candidates.disparities[-1]), self.candidates.step,
                 self.candidates.min_depth, self.candidates.max_depth)
        log.info("Resolutions: captured=%dx%d rectified=%dx%d confidence=%dx%d, window=%d",
                 out_shape[1], out_shape[0], rect_shape[1], rect_shape[0],
                 conf_shape[1], conf_shape[0], self.win_size)

    @classmethod
    def from_config(cls, forward: OffsetField, inverse: OffsetField, cfg: EstimatorConfig) -> Self:
        return cls(
            forward, inverse,
            min_depth=cfg.min_depth, max_depth=cfg.max_depth,
            disparity_coef=cfg.disparity_coef, tau=cfg.tau,
            upsampling=cfg.upsampling, scale_mask=cfg.scale_mask,
            win_size=cfg.win_size, thresh_grad=cfg.thresh_grad,
            thresh_cost=cfg.thresh_cost, filter_mode=cfg.filter_mode,
        )

    # -----------------------------
    # Pipeline
    # -----------------------------
    def set_frame(self, img: ImageU8) -> None:
        """Run restoration and depth estimation on one captured image (uint8 BGR)."""
        t0 = time.perf_counter()
        b = self.buffers
        if img.shape != b.img.shape or img.dtype != np.uint8:
            raise ValueError(f"Expected a uint8 image of shape {b.img.shape}, got {img.dtype} {img.shape}")
        np.copyto(b.img, img)
        cv2.remap(b.img, self._fwd_maps[0], self._fwd_maps[1], cv2.INTER_LINEAR, dst=b.rectified)
        self._reconstruct_depth_and_colour()
        self._unwarp_and_fix_colour()
        self._mask_disparity_map()
        self._filter_disparity()
        log.info("Frame processed in %.3fs (%d reliable pixels)",
                 time.perf_counter() - t0, int(np.count_nonzero(b.sparse)))

    def _reconstruct_depth_and_colour(self) -> None:
        b = self.buffers
        for k, disparity in enumerate(self.candidates.disparities):
            restore_image(float(disparity), self.tau, b.rectified, b.translated, b.candidate)
            cost_field(b.candidate, self.win_size, b.grad_a, b.grad_b, b.cost_tmp, b.cost)

            if k == 0:
                np.copyto(b.min_cost, b.cost)
                np.copyto(b.max_cost, b.cost)
                b.winners.fill(1)
                np.copyto(b.restored_rectified, b.candidate)
                continue

            # ties go to the later candidate
            np.greater_equal(b.min_cost, b.cost, out=b.mask_best)
            np.copyto(b.min_cost, b.cost, where=b.mask_best)
            np.maximum(b.max_cost, b.cost, out=b.max_cost)
            b.winners[b.mask_best] = k + 1
            np.copyto(b.restored_rectified, b.candidate, where=b.mask_best[..., None])
            log.debug("candidate %d (d=%.2f): %d pixels improved", k, float(disparity),
                      int(np.count_nonzero(b.mask_best)))

    def _unwarp_and_fix_colour(self) -> None:
        b = self.buffers
        cv2.convertScaleAbs(b.restored_rectified, dst=b.restored_rectified,
                            alpha=intensity_correction(self.tau))

        inv1, inv2 = self._inv_maps
        mask1, mask2 = self._mask_maps
        cv2.remap(b.restored_rectified, inv1, inv2, cv2.INTER_LINEAR, dst=b.restored)
        cv2.remap(b.restored_rectified, mask1, mask2, cv2.INTER_LINEAR, dst=b.restored_conf)
        cv2.remap(b.winners, mask1, None, cv2.INTER_NEAREST, dst=b.winners_conf)
        cv2.remap(b.max_cost, mask1, None, cv2.INTER_NEAREST, dst=b.confidence)
        cv2.remap(b.min_cost, mask1, None, cv2.INTER_NEAREST, dst=b.min_cost_conf)

        rows, cols = b.img.shape[:2]
        top = min(BORDER_ROWS, rows)
        right = min(BORDER_RIGHT_COLS, cols)
        b.restored[:top] = b.img[:top]
        b.restored[rows - top:] = b.img[rows - top:]
        b.restored[:, cols - right:] = b.img[:, cols - right:]

    def _mask_disparity_map(self) -> None:
        b = self.buffers
        # no clear winner: best and worst cost too close
        cv2.subtract(b.confidence, b.min_cost_conf, dst=b.min_cost_conf)
        np.less_equal(b.min_cost_conf, self.thresh_cost, out=b.mask_conf)

        # artefacts of a wrong candidate show up shifted by half a window
        if self.displacement > 0:
            np.copyto(b.conf_handle, b.winners_conf)
            shift_columns(b.winners_conf, b.conf_handle, self.displacement)
            np.copyto(b.conf_handle, b.confidence)
            shift_columns(b.confidence, b.conf_handle, self.displacement)

        np.maximum(b.confidence, 1, out=b.confidence)
        b.confidence -= 1
        b.confidence[b.mask_conf] = 0
        np.minimum(b.confidence, 1, out=b.confidence)

        # flat areas of the restored image are unreliable
        edge_response(b.restored_conf, b.edges_a, b.edges_b, b.edges_grey)
        b.confidence[b.edges_grey < self.thresh_grad] = 0
        cv2.erode(b.confidence, _ERODE_KERNEL, dst=b.confidence)

        b.winners_conf[b.confidence == 0] = 0

    def _filter_disparity(self) -> None:
        b = self.buffers
        b.sparse.fill(0)
        self.disparity_filter.apply(b.winners_conf, len(self.candidates), b.restored_conf, b.sparse)

    # -----------------------------
    # Results (copies; the buffers are rewritten by the next frame)
    # -----------------------------
    def restored_image(self) -> ImageU8:
        return self.buffers.restored.copy()

    def disparity_map(self) -> MapU8:
        """Sparse disparity on [0, 255]; 0 marks unreliable pixels."""
        return self.buffers.sparse.copy()

    def colored_disparity_map(self, colormap: int = cv2.COLORMAP_MAGMA) -> ImageU8:
        return colorize_disparity(self.buffers.sparse, colormap)

    def depth(self) -> NDArray[F32]:
        """Depth in scene units at confidence resolution; 0 where unreliable."""
        return self.candidates.depth_from_sparse(self.buffers.sparse)

    def confidence(self) -> MapU8:
        return self.buffers.confidence.copy()

    @property
    def winner_indices(self) -> MapU8:
        """1-based winning candidate per rectified pixel, before masking."""
        return self.buffers.winners

    @property
    def min_cost(self) -> MapU8:
        return self.buffers.min_cost

    @property
    def max_cost(self) -> MapU8:
        return self.buffers.max_cost
