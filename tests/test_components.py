import unittest

import numpy as np

from charm_postscale.components import downsample_mask, largest_component_bbox, refine_bbox
from charm_postscale.diff_mask import BoundingBox, build_candidate, compute_diff_map


def _mask(h: int, w: int) -> np.ndarray:
    return np.zeros((h, w), dtype=np.uint8)


class TestDownsample(unittest.TestCase):
    def test_shape_and_binary(self):
        m = _mask(200, 200)
        m[100:140, 100:140] = 255
        small = downsample_mask(m)
        self.assertEqual(small.shape, (50, 50))
        self.assertTrue(set(np.unique(small)).issubset({0, 1}))
        # nearest sampling at multiples of 4: 100..136 -> cells 25..34
        ys, xs = np.where(small > 0)
        self.assertEqual((int(xs.min()), int(xs.max())), (25, 34))

    def test_rounds_half_up_and_never_empty(self):
        self.assertEqual(downsample_mask(_mask(10, 10)).shape, (3, 3))
        self.assertEqual(downsample_mask(_mask(1, 1)).shape, (1, 1))

    def test_rejects_3d(self):
        with self.assertRaises(ValueError):
            downsample_mask(np.zeros((4, 4, 3), dtype=np.uint8))


class TestLargestComponent(unittest.TestCase):
    def test_empty(self):
        self.assertIsNone(largest_component_bbox(_mask(10, 10)))

    def test_diagonal_cells_are_not_connected(self):
        b = _mask(20, 20)
        for i in range(13):
            b[i, i] = 1
        # 13 single-cell components under 4-connectivity
        self.assertIsNone(largest_component_bbox(b, min_area=12))
        self.assertIsNotNone(largest_component_bbox(b, min_area=1))

    def test_picks_largest(self):
        b = _mask(30, 30)
        b[2:5, 2:5] = 1  # 9
        b[10:20, 12:18] = 1  # 60
        box = largest_component_bbox(b, min_area=1)
        self.assertEqual(box, BoundingBox(min_x=12, min_y=10, max_x=17, max_y=19))


class TestRefineBBox(unittest.TestCase):
    def test_drops_small_satellite_region(self):
        m = _mask(200, 200)
        m[100:140, 100:140] = 255
        m[20:36, 20:36] = 255
        original = BoundingBox(20, 20, 139, 139)
        refined = refine_bbox(m, original)
        self.assertEqual(refined, BoundingBox(92, 92, 147, 147))

    def test_does_not_shrink_below_object(self):
        base = np.zeros((200, 200, 4), dtype=np.uint8)
        base[...] = (60, 90, 120, 255)
        pass_a = base.copy()
        pass_a[80:120, 80:120] = (230, 200, 40, 255)
        cand = build_candidate(compute_diff_map(pass_a, base), 40)
        refined = refine_bbox(cand.mask, cand.bbox)
        self.assertLessEqual(refined.min_x, 80)
        self.assertLessEqual(refined.min_y, 80)
        self.assertGreaterEqual(refined.max_x, 119)
        self.assertGreaterEqual(refined.max_y, 119)
        self.assertGreaterEqual(refined.area, 40 * 40)

    def test_passthrough_when_only_speckle(self):
        m = _mask(100, 100)
        m[50:52, 50:52] = 255
        original = BoundingBox(50, 50, 51, 51)
        self.assertEqual(refine_bbox(m, original), original)

    def test_clamped_to_canvas(self):
        m = _mask(64, 64)
        m[48:64, 48:64] = 255
        refined = refine_bbox(m, BoundingBox(48, 48, 63, 63))
        self.assertEqual((refined.max_x, refined.max_y), (63, 63))
        self.assertEqual((refined.min_x, refined.min_y), (40, 40))


if __name__ == "__main__":
    unittest.main()
