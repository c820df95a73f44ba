from __future__ import annotations

import cv2
import numpy as np

from .composite import inject_alpha
from .config import (
    SHADOW_BLUR_DEFAULT,
    SHADOW_BLUR_MAX,
    SHADOW_BLUR_MIN,
    SHADOW_OPACITY_DEFAULT,
    SHADOW_OPACITY_MAX,
    SHADOW_OPACITY_MIN,
)
from .contracts import clamp_number


def shadow_alpha(alpha: np.ndarray, blur: float = SHADOW_BLUR_DEFAULT, opacity: float = SHADOW_OPACITY_DEFAULT) -> np.ndarray:
    """
    Blurred, attenuated copy of the object's alpha. Returns uint8 (H, W).
    """
    if alpha.ndim != 2:
        raise ValueError(f"Expected 2D alpha, got shape={alpha.shape}")
    radius = clamp_number(blur, SHADOW_BLUR_MIN, SHADOW_BLUR_MAX, SHADOW_BLUR_DEFAULT)
    op = clamp_number(opacity, SHADOW_OPACITY_MIN, SHADOW_OPACITY_MAX, SHADOW_OPACITY_DEFAULT)

    a = alpha.astype(np.float32)
    if radius > 0:
        a = cv2.GaussianBlur(a, (0, 0), sigmaX=radius, sigmaY=radius)
    return np.clip(np.round(a * op), 0, 255).astype(np.uint8)


def build_shadow_layer(obj: np.ndarray, blur: float = SHADOW_BLUR_DEFAULT, opacity: float = SHADOW_OPACITY_DEFAULT) -> np.ndarray:
    """
    Black RGBA layer the size of `obj` whose alpha is the contact shadow.
    """
    if obj.ndim != 3 or obj.shape[2] != 4:
        raise ValueError(f"Expected RGBA layer (H,W,4), got shape={obj.shape}")
    black = np.zeros(obj.shape[:2] + (3,), dtype=np.uint8)
    return inject_alpha(black, shadow_alpha(obj[..., 3], blur=blur, opacity=opacity))
