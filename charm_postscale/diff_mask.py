from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import (
    CENTER_MAX,
    CENTER_MIN,
    DIFF_THRESHOLD_CEILING,
    DIFF_THRESHOLD_DEFAULT,
    DIFF_THRESHOLD_MAX,
    DIFF_THRESHOLD_MIN,
    DIFF_THRESHOLD_STEP,
    FEATHER_RADIUS,
    FEATHER_THRESHOLD,
    MAX_BBOX_AREA_RATIO,
    MAX_BBOX_H_RATIO,
    MAX_BBOX_W_RATIO,
    MAX_MASK_PX_RATIO,
    MIN_DENSITY,
    OVERSIZED_AREA_RATIO,
)
from .contracts import clamp_number
from .errors import NoObjectFound, OversizedRegion, PreconditionMismatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundingBox:
    """Inclusive pixel box in canvas coordinates."""

    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return (self.min_x + self.max_x) / 2.0, (self.min_y + self.max_y) / 2.0

    def clamp(self, width: int, height: int) -> "BoundingBox":
        return BoundingBox(
            min_x=max(0, self.min_x),
            min_y=max(0, self.min_y),
            max_x=min(width - 1, self.max_x),
            max_y=min(height - 1, self.max_y),
        )


@dataclass(frozen=True)
class Candidate:
    """Result of one threshold tried by the adaptive search."""

    threshold: float
    mask: np.ndarray
    bbox: Optional[BoundingBox]
    count: int

    @property
    def found(self) -> bool:
        return self.bbox is not None

    @property
    def density(self) -> float:
        if self.bbox is None or self.bbox.area <= 0:
            return 0.0
        return self.count / float(self.bbox.area)


def check_same_size(pass_a: np.ndarray, base: np.ndarray) -> Tuple[int, int]:
    """
    Validate both images and return the shared (width, height).
    """
    for name, img in (("pass_a", pass_a), ("base", base)):
        if img.ndim != 3 or img.shape[2] not in (3, 4):
            raise ValueError(f"Expected {name} image (H,W,3|4), got shape={img.shape}")
    if pass_a.shape[:2] != base.shape[:2]:
        ha, wa = pass_a.shape[:2]
        hb, wb = base.shape[:2]
        raise PreconditionMismatch(f"postprocess requires same dimensions. passA={wa}x{ha}, base={wb}x{hb}")
    h, w = pass_a.shape[:2]
    return w, h


def compute_diff_map(pass_a: np.ndarray, base: np.ndarray) -> np.ndarray:
    """
    Per-pixel max(|dR|, |dG|, |dB|) as uint8 (H, W).
    """
    check_same_size(pass_a, base)
    a = pass_a[..., :3].astype(np.int16)
    b = base[..., :3].astype(np.int16)
    return np.abs(a - b).max(axis=2).astype(np.uint8)


def mask_bbox(mask: np.ndarray) -> Optional[BoundingBox]:
    ys, xs = np.where(mask > 0)
    if ys.size == 0:
        return None
    return BoundingBox(min_x=int(xs.min()), min_y=int(ys.min()), max_x=int(xs.max()), max_y=int(ys.max()))


def build_candidate(diff: np.ndarray, threshold: float, feather: float = FEATHER_RADIUS) -> Candidate:
    """
    Binarize the diff map at `threshold`, feather it, and re-threshold to kill speckle.
    """
    if diff.ndim != 2:
        raise ValueError(f"Expected 2D diff map, got shape={diff.shape}")
    binary = (diff > threshold).astype(np.uint8) * 255
    if feather > 0:
        binary = cv2.GaussianBlur(binary, (0, 0), sigmaX=float(feather), sigmaY=float(feather))
    mask = (binary >= FEATHER_THRESHOLD).astype(np.uint8) * 255
    return Candidate(
        threshold=float(threshold),
        mask=mask,
        bbox=mask_bbox(mask),
        count=int(np.count_nonzero(mask)),
    )


def is_acceptable(candidate: Candidate, width: int, height: int) -> bool:
    """
    Plausibility of a candidate as a small inset object near the middle of the frame.
    """
    if candidate.bbox is None:
        return False
    total = float(width * height)
    box = candidate.bbox
    cx, cy = box.center
    ok_center = (width * CENTER_MIN <= cx <= width * CENTER_MAX) and (height * CENTER_MIN <= cy <= height * CENTER_MAX)
    return (
        candidate.count <= total * MAX_MASK_PX_RATIO
        and box.area <= total * MAX_BBOX_AREA_RATIO
        and box.width / float(width) <= MAX_BBOX_W_RATIO
        and box.height / float(height) <= MAX_BBOX_H_RATIO
        and candidate.density >= MIN_DENSITY
        and ok_center
    )


def candidate_thresholds(diff_threshold: float) -> List[float]:
    thr = clamp_number(diff_threshold, DIFF_THRESHOLD_MIN, DIFF_THRESHOLD_MAX, DIFF_THRESHOLD_DEFAULT)
    out: List[float] = []
    while thr <= DIFF_THRESHOLD_CEILING:
        out.append(thr)
        thr += DIFF_THRESHOLD_STEP
    return out


def locate_region(
    pass_a: np.ndarray,
    base: np.ndarray,
    diff_threshold: float = DIFF_THRESHOLD_DEFAULT,
) -> Candidate:
    """
    Adaptive threshold search for the inserted object.

    Returns the first candidate that passes `is_acceptable`, else the found
    candidate with the smallest bbox area.

    Raises:
      - PreconditionMismatch: images differ in size
      - NoObjectFound: no threshold produced any foreground
      - OversizedRegion: chosen bbox covers more than OVERSIZED_AREA_RATIO of the canvas
    """
    width, height = check_same_size(pass_a, base)
    diff = compute_diff_map(pass_a, base)

    chosen: Optional[Candidate] = None
    best: Optional[Candidate] = None
    for thr in candidate_thresholds(diff_threshold):
        cand = build_candidate(diff, thr)
        if not cand.found:
            continue
        if best is None or cand.bbox.area < best.bbox.area:
            best = cand
        if is_acceptable(cand, width, height):
            chosen = cand
            break

    if chosen is None:
        chosen = best
    if chosen is None:
        raise NoObjectFound("No diff region found at any threshold.")

    total = width * height
    logger.debug(
        "diff region thr=%.1f bbox=%s count=%d density=%.3f",
        chosen.threshold,
        chosen.bbox,
        chosen.count,
        chosen.density,
    )
    if chosen.bbox.area > total * OVERSIZED_AREA_RATIO:
        raise OversizedRegion(f"bbox too large: area={chosen.bbox.area} total={total} thr={chosen.threshold:.1f}")
    return chosen
