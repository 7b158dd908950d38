"""Single-shot RGB-D imaging through an uneven birefractive element.

Rectification tables are built once from the ray offset fields
(:mod:`.rectifier`); :class:`DepthEstimator` then restores the colour image
and estimates depth from one captured frame.
"""
import os

# OpenCV only handles EXR when this is set before cv2 is first imported
os.environ.setdefault("OPENCV_IO_ENABLE_OPENEXR", "1")

from .candidates import DepthCandidates  # noqa: E402
from .config import EstimatorConfig, FilterMode, RectificationConfig  # noqa: E402
from .estimator import DepthEstimator  # noqa: E402
from .rectifier import build_rectification, reverse_rectification  # noqa: E402
from .restoration import restore_image  # noqa: E402

__all__ = [
    "DepthCandidates",
    "DepthEstimator",
    "EstimatorConfig",
    "FilterMode",
    "RectificationConfig",
    "build_rectification",
    "restore_image",
    "reverse_rectification",
]
