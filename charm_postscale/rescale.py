from __future__ import annotations

import math
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from .config import (
    SCALE_DEFAULT,
    SCALE_MAX,
    SCALE_MIN,
    SHARPEN_AMOUNT,
    SHARPEN_SIGMA,
    TARGET_PX_DEFAULT,
    TARGET_PX_MAX,
    TARGET_PX_MIN,
)
from .contracts import clamp_number, round_half_up
from .errors import CollapsedAlpha


def fit_within(out_w: int, out_h: int, canvas_w: int, canvas_h: int) -> Tuple[int, int]:
    """Uniformly shrink (floor) until both sides fit the canvas."""
    if out_w > canvas_w:
        k = canvas_w / float(out_w)
        out_w = max(1, int(math.floor(out_w * k)))
        out_h = max(1, int(math.floor(out_h * k)))
    if out_h > canvas_h:
        k = canvas_h / float(out_h)
        out_w = max(1, int(math.floor(out_w * k)))
        out_h = max(1, int(math.floor(out_h * k)))
    return out_w, out_h


def target_size(
    crop_w: int,
    crop_h: int,
    canvas_w: int,
    canvas_h: int,
    target_px: Optional[float] = None,
    scale: Optional[float] = None,
) -> Tuple[int, int]:
    """
    Output (width, height) for the rescaled object.

    `target_px` is the desired output height; when absent the legacy `scale`
    multiplier is applied to both crop dimensions.
    """
    if target_px is not None:
        out_h = max(1, round_half_up(clamp_number(target_px, TARGET_PX_MIN, TARGET_PX_MAX, TARGET_PX_DEFAULT)))
        aspect = crop_w / float(crop_h) if crop_h > 0 else 1.0
        out_w = max(1, round_half_up(out_h * aspect))
    else:
        s = clamp_number(scale, SCALE_MIN, SCALE_MAX, SCALE_DEFAULT)
        out_w = max(1, round_half_up(crop_w * s))
        out_h = max(1, round_half_up(crop_h * s))
    return fit_within(out_w, out_h, canvas_w, canvas_h)


def sharpen_rgb(rgba: np.ndarray, sigma: float = SHARPEN_SIGMA, amount: float = SHARPEN_AMOUNT) -> np.ndarray:
    """
    Unsharp mask on the colour channels only; alpha is left untouched.
    """
    if sigma <= 0 or amount <= 0:
        return rgba
    rgb = rgba[..., :3].astype(np.float32)
    blurred = cv2.GaussianBlur(rgb, (0, 0), sigmaX=float(sigma), sigmaY=float(sigma))
    sharp = cv2.addWeighted(rgb, 1.0 + amount, blurred, -amount, 0.0)
    out = rgba.copy()
    out[..., :3] = np.clip(np.round(sharp), 0, 255).astype(np.uint8)
    return out


def resize_rgba(rgba: np.ndarray, out_w: int, out_h: int) -> np.ndarray:
    img = Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8))
    return np.array(img.resize((out_w, out_h), Image.Resampling.LANCZOS), dtype=np.uint8)


def rescale_object(
    layer: np.ndarray,
    canvas_w: int,
    canvas_h: int,
    target_px: Optional[float] = None,
    scale: Optional[float] = None,
) -> np.ndarray:
    """
    Lanczos resize + mild sharpen of the extracted RGBA object.

    Raises CollapsedAlpha when nothing visible survives the resize.
    """
    if layer.ndim != 3 or layer.shape[2] != 4:
        raise ValueError(f"Expected RGBA layer (H,W,4), got shape={layer.shape}")
    crop_h, crop_w = layer.shape[:2]
    out_w, out_h = target_size(crop_w, crop_h, canvas_w, canvas_h, target_px=target_px, scale=scale)

    scaled = sharpen_rgb(resize_rgba(layer, out_w, out_h))
    if int(scaled[..., 3].max()) == 0:
        raise CollapsedAlpha(f"alpha collapsed after resize to {out_w}x{out_h}")
    return scaled
