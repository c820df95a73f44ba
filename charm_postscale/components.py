from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from .config import COMPONENT_PAD, DOWNSAMPLE, MIN_COMPONENT_AREA
from .contracts import round_half_up
from .diff_mask import BoundingBox

logger = logging.getLogger(__name__)


def downsample_mask(mask: np.ndarray, factor: int = DOWNSAMPLE) -> np.ndarray:
    """
    Nearest-neighbour downsample of a 0/255 mask, re-binarized to 0/1.
    """
    if mask.ndim != 2:
        raise ValueError(f"Expected 2D mask, got shape={mask.shape}")
    h, w = mask.shape
    small_w = max(1, round_half_up(w / float(factor)))
    small_h = max(1, round_half_up(h / float(factor)))
    small = cv2.resize(mask, (small_w, small_h), interpolation=cv2.INTER_NEAREST)
    return (small >= 1).astype(np.uint8)


def largest_component_bbox(binary: np.ndarray, min_area: int = MIN_COMPONENT_AREA) -> Optional[BoundingBox]:
    """
    Bounding box of the largest 4-connected component with at least `min_area` pixels.
    """
    if int(binary.sum()) == 0:
        return None

    num_labels, _labels, stats, _centroids = cv2.connectedComponentsWithStats(binary, connectivity=4)
    if num_labels <= 1:
        return None

    # label 0 is background
    areas = stats[1:, cv2.CC_STAT_AREA]
    keep = int(np.argmax(areas))
    if int(areas[keep]) < int(min_area):
        return None

    x, y, w, h = (int(v) for v in stats[keep + 1, :4])
    return BoundingBox(min_x=x, min_y=y, max_x=x + w - 1, max_y=y + h - 1)


def refine_bbox(
    mask: np.ndarray,
    bbox: BoundingBox,
    factor: int = DOWNSAMPLE,
    pad: int = COMPONENT_PAD,
    min_area: int = MIN_COMPONENT_AREA,
) -> BoundingBox:
    """
    Shrink `bbox` to the dominant connected region of `mask`.

    Works on a `factor`-downsampled grid, pads the winning component by `pad`
    grid cells and maps it back to full resolution. Passes `bbox` through when
    no component qualifies or labeling fails.
    """
    h, w = mask.shape[:2]
    try:
        small = downsample_mask(mask, factor)
        best = largest_component_bbox(small, min_area=min_area)
    except (cv2.error, ValueError) as e:
        logger.debug("component refinement failed, keeping bbox %s: %s", bbox, e)
        return bbox

    if best is None:
        logger.debug("no component >= %d cells, keeping bbox %s", min_area, bbox)
        return bbox

    small_h, small_w = small.shape
    sx1 = max(0, best.min_x - pad)
    sy1 = max(0, best.min_y - pad)
    sx2 = min(small_w - 1, best.max_x + pad)
    sy2 = min(small_h - 1, best.max_y + pad)

    refined = BoundingBox(
        min_x=sx1 * factor,
        min_y=sy1 * factor,
        max_x=(sx2 + 1) * factor - 1,
        max_y=(sy2 + 1) * factor - 1,
    )
    return refined.clamp(w, h)
