from __future__ import annotations

import math
from typing import Optional

import numpy as np
from PIL import Image

from .composite import CropBox, apply_crop
from .config import ANCHOR_X_DEFAULT, ANCHOR_Y_DEFAULT, ZOOM_ACTIVATION
from .contracts import clamp_number, round_half_up


def zoom_crop_box(width: int, height: int, zoom: float, anchor_x: float, anchor_y: float) -> CropBox:
    crop_w = max(1, round_half_up(width / zoom))
    crop_h = max(1, round_half_up(height / zoom))
    left = round_half_up(width * anchor_x - crop_w / 2.0)
    top = round_half_up(height * anchor_y - crop_h / 2.0)
    left = max(0, min(width - crop_w, left))
    top = max(0, min(height - crop_h, top))
    return CropBox(left=left, top=top, width=crop_w, height=crop_h)


def apply_frame_zoom(
    img: np.ndarray,
    zoom: Optional[float] = None,
    anchor_x: float = ANCHOR_X_DEFAULT,
    anchor_y: float = ANCHOR_Y_DEFAULT,
) -> np.ndarray:
    """
    Deterministic final framing: crop around (anchor_x, anchor_y) then resize back to the original size.

    Only for final outputs. Returns `img` itself when zoom is missing or <= ZOOM_ACTIVATION.
    """
    if zoom is None:
        return img
    try:
        z = float(zoom)
    except (TypeError, ValueError):
        return img
    if not math.isfinite(z) or z <= ZOOM_ACTIVATION:
        return img
    if img.ndim != 3 or img.shape[2] not in (3, 4):
        raise ValueError(f"Expected RGB/RGBA image, got shape={img.shape}")

    h, w = img.shape[:2]
    ax = clamp_number(anchor_x, 0.0, 1.0, ANCHOR_X_DEFAULT)
    ay = clamp_number(anchor_y, 0.0, 1.0, ANCHOR_Y_DEFAULT)
    crop = zoom_crop_box(w, h, z, ax, ay)

    cropped = Image.fromarray(np.ascontiguousarray(apply_crop(img, crop), dtype=np.uint8))
    return np.array(cropped.resize((w, h), Image.Resampling.LANCZOS), dtype=np.uint8)
