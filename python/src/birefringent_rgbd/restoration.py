from __future__ import annotations

from typing import Final

import cv2
import numpy as np
from numpy.typing import NDArray

from .arrays import F32, ImageU8, MapU8, round_half_away, shift_columns

# Horizontal derivative and its negation. Each response saturates at 0 in
# uint8, so their sum is the gradient magnitude along the shift axis.
KERNEL_GRAD_POS: Final[NDArray[F32]] = np.array(
    [[-6, 0, 6],
     [-20, 0, 20],
     [-6, 0, 6]], dtype=np.float32)
KERNEL_GRAD_NEG: Final[NDArray[F32]] = -KERNEL_GRAD_POS

ROUNDS: Final[int] = 2


def restore_image(
    disparity: float,
    tau: float,
    rectified: ImageU8,
    translated: ImageU8 | None = None,
    out: ImageU8 | None = None,
) -> ImageU8:
    """Remove the e-ray copy from a rectified image for one disparity.

    Model: I = I_o + tau * shift(I_o, disparity). Each round translates the
    current estimate, scales it by tau and alternately subtracts then adds
    it, doubling the disparity and squaring tau. After two rounds what is
    left of the blend is tau**4 times the source shifted by 4 * disparity.

    Args:
        disparity: horizontal shift in pixels (positive shifts to the right).
        tau: e-ray intensity ratio, 0 < tau < 1.
        rectified: rectified captured image (uint8).
        translated: scratch buffer of the same shape. Columns the shift
            leaves uncovered keep whatever the buffer already held.
        out: output buffer.

    Returns:
        The restored candidate (``out``).
    """
    if translated is None:
        translated = np.zeros_like(rectified)
    if out is None:
        out = np.empty_like(rectified)
    np.copyto(out, rectified)

    for k in range(ROUNDS):
        shift_columns(translated, out, round_half_away(disparity))
        cv2.addWeighted(translated, tau, translated, 0.0, 0.0, dst=translated)
        if k == 0:
            cv2.subtract(out, translated, dst=out)
        else:
            cv2.add(out, translated, dst=out)
        disparity *= 2.0
        tau *= tau
    return out


def intensity_correction(tau: float) -> float:
    """Gain undoing the tau**4 residual and the removed e-ray energy."""
    return (1.0 + tau) / (1.0 + tau ** 4)


def edge_response(
    img: ImageU8,
    grad_a: ImageU8 | None = None,
    grad_b: ImageU8 | None = None,
    out: MapU8 | None = None,
) -> MapU8:
    """Grey-level horizontal gradient magnitude of a colour image."""
    grad_a = cv2.filter2D(img, -1, KERNEL_GRAD_POS, dst=grad_a)
    grad_b = cv2.filter2D(img, -1, KERNEL_GRAD_NEG, dst=grad_b)
    cv2.add(grad_a, grad_b, dst=grad_a)
    # storage order weighted as R, G, B; thresh_grad and thresh_cost assume it
    return cv2.cvtColor(grad_a, cv2.COLOR_RGB2GRAY, dst=out)


def cost_field(
    candidate: ImageU8,
    win_size: int,
    grad_a: ImageU8 | None = None,
    grad_b: ImageU8 | None = None,
    tmp: MapU8 | None = None,
    out: MapU8 | None = None,
) -> MapU8:
    """Window-averaged edge response; low where the restoration is consistent."""
    grey = edge_response(candidate, grad_a, grad_b, out)
    tmp = cv2.boxFilter(grey, -1, (win_size, 1), dst=tmp)
    return cv2.boxFilter(tmp, -1, (1, win_size), dst=grey)
