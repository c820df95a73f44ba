import numpy as np
import pytest

from charm_postscale.composite import (
    CropBox,
    Placement,
    blend_layer,
    composite_layers,
    compute_placement,
    inject_alpha,
)
from charm_postscale.shadow import build_shadow_layer, shadow_alpha


def _rgba(h: int, w: int, color) -> np.ndarray:
    img = np.zeros((h, w, 4), dtype=np.uint8)
    img[...] = color
    return img


def test_shadow_layer_is_black_with_attenuated_alpha():
    obj = _rgba(16, 16, (200, 150, 100, 255))
    shadow = build_shadow_layer(obj, blur=0, opacity=0.28)
    assert shadow.shape == obj.shape
    assert int(shadow[..., :3].max()) == 0
    # 255 * 0.28 = 71.4
    assert int(shadow[..., 3].max()) == 71
    assert int(shadow[..., 3].min()) == 71


def test_shadow_opacity_and_blur_are_clamped():
    alpha = np.full((8, 8), 255, dtype=np.uint8)
    assert int(shadow_alpha(alpha, blur=0, opacity=5.0).max()) == 153
    assert int(shadow_alpha(alpha, blur=0, opacity=-1).max()) == 0

    point = np.zeros((31, 31), dtype=np.uint8)
    point[15, 15] = 255
    wide = shadow_alpha(point, blur=50, opacity=0.6)
    narrow = shadow_alpha(point, blur=12, opacity=0.6)
    np.testing.assert_array_equal(wide, narrow)


def test_shadow_blur_spreads_alpha():
    point = np.zeros((21, 21), dtype=np.uint8)
    point[10, 10] = 255
    sharp = shadow_alpha(point, blur=0, opacity=0.6)
    soft = shadow_alpha(point, blur=2, opacity=0.6)
    assert int(np.count_nonzero(sharp)) == 1
    assert int(np.count_nonzero(soft)) > 1
    assert int(soft.max()) < int(sharp.max())


def test_placement_keeps_center_and_top():
    p = compute_placement(CropBox(left=66, top=66, width=72, height=72), 20, 20, 200, 200)
    assert p == Placement(left=92, top=66, shadow_top=67)


def test_placement_clamps_inside_canvas():
    p = compute_placement(CropBox(left=180, top=10, width=20, height=20), 30, 30, 200, 200)
    assert p == Placement(left=170, top=10, shadow_top=11)
    p = compute_placement(CropBox(left=0, top=190, width=10, height=10), 20, 20, 200, 200)
    assert p == Placement(left=0, top=180, shadow_top=180)


def test_composite_shadow_then_object():
    base = _rgba(50, 50, (100, 100, 100, 255))
    obj = _rgba(10, 10, (255, 0, 0, 0))
    obj[0, 0, 3] = 255
    shadow = inject_alpha(np.zeros((10, 10, 3), np.uint8), np.full((10, 10), 128, np.uint8))

    out = composite_layers(base, obj, shadow, Placement(left=5, top=5, shadow_top=6))
    assert out.shape == base.shape
    assert out.dtype == np.uint8
    # object over base (row 5 has no shadow beneath it)
    assert tuple(out[5, 5]) == (255, 0, 0, 255)
    # shadow only: multiply by black at ~50% coverage halves the base
    assert abs(int(out[15, 10, 0]) - 50) <= 1
    assert int(out[15, 10, 3]) == 255
    # untouched pixels stay exact
    assert tuple(out[0, 0]) == (100, 100, 100, 255)
    assert tuple(out[40, 40]) == (100, 100, 100, 255)


def test_composite_accepts_rgb_base():
    base = np.full((20, 20, 3), 80, dtype=np.uint8)
    obj = _rgba(4, 4, (10, 10, 10, 255))
    shadow = _rgba(4, 4, (0, 0, 0, 0))
    out = composite_layers(base, obj, shadow, Placement(left=0, top=0, shadow_top=1))
    assert out.shape == (20, 20, 4)
    assert tuple(out[1, 1]) == (10, 10, 10, 255)


def test_blend_layer_rejects_out_of_bounds():
    canvas = np.zeros((10, 10, 4), dtype=np.float32)
    with pytest.raises(ValueError):
        blend_layer(canvas, _rgba(4, 4, (0, 0, 0, 255)), 8, 8)
    with pytest.raises(ValueError):
        blend_layer(canvas, _rgba(4, 4, (0, 0, 0, 255)), 0, 0, mode="screen")
