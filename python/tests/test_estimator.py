import numpy as np
import pytest
from conftest import MARGIN, blend, stripe_texture

from birefringent_rgbd.config import EstimatorConfig, FilterMode
from birefringent_rgbd.estimator import BORDER_RIGHT_COLS, BORDER_ROWS, DepthEstimator
from birefringent_rgbd.filters import ConfidenceBilateralFilter, PassThroughFilter
from birefringent_rgbd.restoration import cost_field, restore_image

# disparities 5..10 with a step of one pixel
COEF, MIN_DEPTH, MAX_DEPTH = 60.0, 6.0, 12.0


def _estimator(tables, rows, cols, **kw):
    forward, inverse = tables(rows, cols)
    params = dict(min_depth=MIN_DEPTH, max_depth=MAX_DEPTH, disparity_coef=COEF, tau=0.25,
                  scale_mask=1.0, win_size=21, filter_mode=FilterMode.NONE)
    params.update(kw)
    return DepthEstimator(forward, inverse, **params)


def _two_plane_frame(rows=40, cols=240, split=120, tau=0.25):
    source = stripe_texture(rows, cols, seed=3)
    disparity = np.where(np.arange(cols) < split, 6, 9)
    return blend(source, disparity, tau)


def test_construction(identity_tables):
    est = _estimator(identity_tables, 40, 120, win_size=20)
    assert len(est.candidates) == 6
    assert est.win_size == 21
    assert est.buffers.rectified.shape == (40, 120 + MARGIN, 3)
    assert est.buffers.sparse.shape == (40, 120)
    assert est.displacement == int(21 * 120 / ((120 + MARGIN) * 2))
    assert isinstance(est.disparity_filter, PassThroughFilter)


def test_from_config(identity_tables):
    forward, inverse = identity_tables(30, 60)
    cfg = EstimatorConfig(min_depth=MIN_DEPTH, max_depth=MAX_DEPTH, disparity_coef=COEF,
                          tau=0.3, scale_mask=0.5, win_size=11, filter_mode=FilterMode.BILATERAL)
    est = DepthEstimator.from_config(forward, inverse, cfg)
    assert est.tau == pytest.approx(0.3)
    assert est.buffers.sparse.shape == (15, 30)
    assert isinstance(est.disparity_filter, ConfidenceBilateralFilter)


@pytest.mark.parametrize("tau", [0.0, 1.0, -0.2])
def test_tau_out_of_range_raises(identity_tables, tau):
    with pytest.raises(ValueError):
        _estimator(identity_tables, 20, 40, tau=tau)


def test_too_many_candidates_raise(identity_tables):
    with pytest.raises(ValueError):
        _estimator(identity_tables, 20, 40, min_depth=0.1, max_depth=12.0)


def test_wrong_frame_shape_raises(identity_tables):
    est = _estimator(identity_tables, 20, 40)
    with pytest.raises(ValueError):
        est.set_frame(np.zeros((20, 41, 3), dtype=np.uint8))


def test_flat_scene_is_unreliable(identity_tables):
    rows, cols = 60, 120
    est = _estimator(identity_tables, rows, cols, tau=0.3)
    est.set_frame(np.full((rows, cols, 3), 128, dtype=np.uint8))

    inner = (slice(15, rows - 15), slice(45, cols - 40))
    # every candidate ties; the last one is kept
    assert np.all(est.winner_indices[inner] == len(est.candidates))
    assert not est.confidence()[inner].any()
    assert not est.disparity_map()[inner].any()
    assert not est.depth()[inner].any()
    restored = est.restored_image().astype(int)
    assert np.all(np.abs(restored[inner] - 128) <= 4)


def test_running_costs_match_brute_force(identity_tables, rng):
    rows, cols = 30, 80
    est = _estimator(identity_tables, rows, cols, tau=0.3, win_size=9)
    img = rng.integers(40, 200, size=(rows, cols, 3)).astype(np.uint8)
    est.set_frame(img)

    rectified = np.zeros((rows, cols + MARGIN, 3), dtype=np.uint8)
    rectified[:, :cols] = img
    translated = np.zeros_like(rectified)
    costs = []
    for d in est.candidates.disparities:
        candidate = restore_image(float(d), 0.3, rectified, translated)
        costs.append(cost_field(candidate, est.win_size).copy())
    costs = np.stack(costs)

    assert np.array_equal(est.min_cost, costs.min(axis=0))
    assert np.array_equal(est.max_cost, costs.max(axis=0))
    # later candidates win ties: last index attaining the minimum, 1-based
    n = len(costs)
    last_best = n - np.argmin(costs[::-1], axis=0)
    assert np.array_equal(est.winner_indices, last_best)


def test_two_planes_recover_disparity_and_depth(identity_tables):
    rows, cols = 40, 240
    est = _estimator(identity_tables, rows, cols)
    est.set_frame(_two_plane_frame(rows, cols))

    winners = est.winner_indices
    # candidate k + 1 for disparity 5 + k
    assert np.mean(winners[5:rows - 5, 50:105] == 2) >= 0.9
    assert np.mean(winners[5:rows - 5, 175:220] == 5) >= 0.9

    depth = est.depth()
    for cols_, truth in ((slice(55, 105), COEF / 6), (slice(180, 220), COEF / 9)):
        region = depth[5:rows - 5, cols_]
        reliable = region[region > 0]
        assert reliable.size > 0
        assert np.median(reliable) == pytest.approx(truth, abs=0.3)
        assert np.mean(np.abs(reliable - truth) < 0.5) >= 0.8


def test_two_planes_with_bilateral_filter(identity_tables):
    rows, cols = 40, 240
    est = _estimator(identity_tables, rows, cols, filter_mode=FilterMode.BILATERAL)
    est.set_frame(_two_plane_frame(rows, cols))

    depth = est.depth()
    left = depth[5:rows - 5, 55:105]
    right = depth[5:rows - 5, 180:220]
    assert np.median(left[left > 0]) == pytest.approx(COEF / 6, abs=0.5)
    assert np.median(right[right > 0]) == pytest.approx(COEF / 9, abs=0.5)


def test_later_stages_only_clear_pixels(identity_tables):
    rows, cols = 40, 240
    frame = _two_plane_frame(rows, cols)

    est = _estimator(identity_tables, rows, cols)
    est.set_frame(frame)
    conf = est.confidence()
    assert set(np.unique(conf)) <= {0, 1}
    # with no filtering the sparse map is exactly the confident set
    assert np.array_equal(est.disparity_map() > 0, conf > 0)
    assert np.array_equal(est.depth() > 0, conf > 0)

    strict = _estimator(identity_tables, rows, cols, thresh_grad=254, thresh_cost=3)
    strict.set_frame(frame)
    assert not np.any((strict.confidence() > 0) & (conf == 0))

    filtered = _estimator(identity_tables, rows, cols, filter_mode=FilterMode.BILATERAL)
    filtered.set_frame(frame)
    assert not np.any((filtered.disparity_map() > 0) & (filtered.confidence() == 0))


def test_border_bands_come_from_the_captured_image(identity_tables, rng):
    rows, cols = 40, 120
    est = _estimator(identity_tables, rows, cols)
    img = rng.integers(0, 256, size=(rows, cols, 3)).astype(np.uint8)
    est.set_frame(img)
    restored = est.restored_image()
    assert np.array_equal(restored[:BORDER_ROWS], img[:BORDER_ROWS])
    assert np.array_equal(restored[-BORDER_ROWS:], img[-BORDER_ROWS:])
    assert np.array_equal(restored[:, -BORDER_RIGHT_COLS:], img[:, -BORDER_RIGHT_COLS:])


def test_buffers_are_reused_across_frames(identity_tables, rng):
    rows, cols = 40, 160
    first = rng.integers(0, 256, size=(rows, cols, 3)).astype(np.uint8)
    second = _two_plane_frame(rows, cols, split=80)

    est = _estimator(identity_tables, rows, cols)
    sparse_buffer = est.buffers.sparse
    est.set_frame(first)
    est.set_frame(second)
    assert est.buffers.sparse is sparse_buffer

    fresh = _estimator(identity_tables, rows, cols)
    fresh.set_frame(second)
    # stale translation columns only reach the left part of the frame
    assert np.array_equal(est.restored_image()[:, 90:], fresh.restored_image()[:, 90:])
    assert np.array_equal(est.disparity_map()[:, 90:], fresh.disparity_map()[:, 90:])


def test_results_are_copies(identity_tables, rng):
    rows, cols = 30, 80
    est = _estimator(identity_tables, rows, cols)
    est.set_frame(rng.integers(0, 256, size=(rows, cols, 3)).astype(np.uint8))
    restored = est.restored_image()
    sparse = est.disparity_map()
    restored[...] = 7
    sparse[...] = 7
    assert not np.array_equal(est.restored_image(), restored)
    assert not np.array_equal(est.disparity_map(), sparse)


def test_colored_disparity_map(identity_tables):
    rows, cols = 40, 240
    est = _estimator(identity_tables, rows, cols)
    est.set_frame(_two_plane_frame(rows, cols))
    colored = est.colored_disparity_map()
    assert colored.shape == (rows, cols, 3)
    assert colored.dtype == np.uint8


def test_two_planes_at_double_resolution(identity_tables):
    rows, cols = 40, 240
    est = _estimator(identity_tables, rows, cols, upsampling=2.0)
    # disparities 10..20 at working resolution
    assert len(est.candidates) == 11
    assert est.candidates.disparities[0] == pytest.approx(10.0)
    assert est.candidates.disparities[-1] == pytest.approx(20.0)
    assert est.win_size == 43
    assert est.buffers.rectified.shape == (2 * rows, 2 * (cols + MARGIN), 3)
    assert est.buffers.restored.shape == (rows, cols, 3)
    assert est.buffers.sparse.shape == (rows, cols)

    est.set_frame(_two_plane_frame(rows, cols))
    depth = est.depth()
    left = depth[5:rows - 5, 55:105]
    right = depth[5:rows - 5, 180:220]
    # one candidate step is about 0.8 near depth 10 and 0.35 near depth 6.7
    assert np.median(left[left > 0]) == pytest.approx(COEF / 6, abs=0.8)
    assert np.median(right[right > 0]) == pytest.approx(COEF / 9, abs=0.35)
