from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .config import SHADOW_OFFSET_Y
from .contracts import round_half_up

BLEND_OVER = "over"
BLEND_MULTIPLY = "multiply"


@dataclass(frozen=True)
class CropBox:
    """Rectangle as (left, top, width, height) in canvas pixels."""

    left: int
    top: int
    width: int
    height: int


@dataclass(frozen=True)
class Placement:
    left: int
    top: int
    shadow_top: int


def inject_alpha(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """
    Create an RGBA uint8 array from RGB uint8 and alpha (uint8, or float32 in [0,1]).
    """
    if rgb.ndim != 3 or rgb.shape[2] not in (3, 4):
        raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
    if alpha.ndim != 2 or alpha.shape[:2] != rgb.shape[:2]:
        raise ValueError(f"Alpha shape {alpha.shape} does not match RGB {rgb.shape[:2]}")

    if alpha.dtype == np.uint8:
        a8 = alpha
    else:
        a8 = np.round(np.clip(alpha, 0.0, 1.0) * 255.0).astype(np.uint8)
    return np.dstack([rgb[..., :3].astype(np.uint8, copy=False), a8])


def ensure_rgba(img: np.ndarray) -> np.ndarray:
    if img.ndim == 3 and img.shape[2] == 4:
        return img
    if img.ndim == 3 and img.shape[2] == 3:
        return inject_alpha(img, np.full(img.shape[:2], 255, dtype=np.uint8))
    raise ValueError(f"Expected RGB/RGBA image, got shape={img.shape}")


def apply_crop(img: np.ndarray, crop: CropBox) -> np.ndarray:
    return img[crop.top : crop.top + crop.height, crop.left : crop.left + crop.width]


def compute_placement(crop: CropBox, out_w: int, out_h: int, canvas_w: int, canvas_h: int) -> Placement:
    """
    Keep the horizontal center of the original crop and its top edge (the bail / jump ring) fixed.
    """
    anchor_x = crop.left + round_half_up(crop.width / 2.0)
    left = max(0, min(canvas_w - out_w, round_half_up(anchor_x - out_w / 2.0)))
    top = max(0, min(canvas_h - out_h, crop.top))
    shadow_top = max(0, min(canvas_h - out_h, top + SHADOW_OFFSET_Y))
    return Placement(left=left, top=top, shadow_top=shadow_top)


def blend_layer(canvas: np.ndarray, layer: np.ndarray, left: int, top: int, mode: str = BLEND_OVER) -> None:
    """
    Blend an RGBA uint8 `layer` into a float32 RGBA `canvas` (values in [0,1]) in place.

    Separable blend then source-over:
      mixed = (1 - Ab) * Cs + Ab * B(Cb, Cs)
      Ao    = As + Ab * (1 - As)
      Co    = (As * mixed + Ab * (1 - As) * Cb) / Ao
    """
    if mode not in (BLEND_OVER, BLEND_MULTIPLY):
        raise ValueError(f"Unsupported blend mode: {mode}")

    h, w = layer.shape[:2]
    region = canvas[top : top + h, left : left + w]
    if region.shape[:2] != (h, w):
        raise ValueError(f"Layer {w}x{h} at ({left},{top}) does not fit canvas {canvas.shape[1]}x{canvas.shape[0]}")

    src = layer.astype(np.float32) / 255.0
    cs, a_s = src[..., :3], src[..., 3:4]
    cb, a_b = region[..., :3], region[..., 3:4]

    blended = cb * cs if mode == BLEND_MULTIPLY else cs
    mixed = (1.0 - a_b) * cs + a_b * blended
    a_o = a_s + a_b * (1.0 - a_s)
    num = a_s * mixed + a_b * (1.0 - a_s) * cb
    co = np.divide(num, a_o, out=np.zeros_like(num), where=a_o > 0)

    region[..., :3] = co
    region[..., 3:4] = a_o


def composite_layers(
    base: np.ndarray,
    obj: np.ndarray,
    shadow: np.ndarray,
    placement: Placement,
) -> np.ndarray:
    """
    Shadow (multiply, one pixel lower) then object (over) onto the clean base.

    Returns a flattened RGBA uint8 array the size of `base`.
    """
    canvas = ensure_rgba(base).astype(np.float32) / 255.0
    blend_layer(canvas, shadow, placement.left, placement.shadow_top, mode=BLEND_MULTIPLY)
    blend_layer(canvas, obj, placement.left, placement.top, mode=BLEND_OVER)
    return np.round(np.clip(canvas, 0.0, 1.0) * 255.0).astype(np.uint8)
