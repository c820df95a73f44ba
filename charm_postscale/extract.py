from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from .composite import CropBox, apply_crop, inject_alpha
from .config import ALPHA_BLUR_RADIUS, CROP_PAD
from .diff_mask import BoundingBox


def pad_bbox(bbox: BoundingBox, canvas_w: int, canvas_h: int, pad: int = CROP_PAD) -> CropBox:
    """
    Grow the bbox by `pad` on each side so anti-aliased edges and the jump ring survive the crop.
    """
    left = max(0, bbox.min_x - pad)
    top = max(0, bbox.min_y - pad)
    width = min(canvas_w - left, bbox.width + pad * 2)
    height = min(canvas_h - top, bbox.height + pad * 2)
    return CropBox(left=left, top=top, width=width, height=height)


def soft_alpha(mask_crop: np.ndarray, radius: float = ALPHA_BLUR_RADIUS) -> np.ndarray:
    if mask_crop.ndim != 2:
        raise ValueError(f"Expected 2D mask crop, got shape={mask_crop.shape}")
    m8 = mask_crop.astype(np.uint8, copy=False)
    if radius <= 0:
        return m8
    return cv2.GaussianBlur(m8, (0, 0), sigmaX=float(radius), sigmaY=float(radius))


def extract_object(pass_a: np.ndarray, mask: np.ndarray, bbox: BoundingBox) -> Tuple[np.ndarray, CropBox]:
    """
    Cut the object out of pass-A as an RGBA layer whose alpha is the feathered diff mask.
    """
    if mask.shape[:2] != pass_a.shape[:2]:
        raise ValueError(f"Mask shape {mask.shape} does not match image {pass_a.shape[:2]}")
    h, w = pass_a.shape[:2]
    crop = pad_bbox(bbox, w, h)
    alpha = soft_alpha(apply_crop(mask, crop))
    layer = inject_alpha(apply_crop(pass_a, crop)[..., :3], alpha)
    return layer, crop
