from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import numpy as np

from .components import refine_bbox
from .composite import CropBox, composite_layers, compute_placement
from .contracts import PostscaleParams
from .diff_mask import BoundingBox, check_same_size, locate_region
from .errors import PostscaleSkipped
from .extract import extract_object
from .frame import apply_frame_zoom
from .io import decode_image, encode_png
from .rescale import rescale_object
from .shadow import build_shadow_layer

logger = logging.getLogger(__name__)

OUTCOME_COMPOSITED = "composited"


@dataclass(frozen=True)
class StageTimings:
    locate_s: float = 0.0
    refine_s: float = 0.0
    extract_s: float = 0.0
    rescale_s: float = 0.0
    composite_s: float = 0.0
    total_s: float = 0.0


@dataclass(frozen=True)
class PostscaleResult:
    image: np.ndarray
    outcome: str
    threshold: Optional[float] = None
    bbox: Optional[BoundingBox] = None
    refined_bbox: Optional[BoundingBox] = None
    crop: Optional[CropBox] = None
    output_size: Optional[Tuple[int, int]] = None
    timings: StageTimings = field(default_factory=StageTimings)

    @property
    def applied(self) -> bool:
        return self.outcome == OUTCOME_COMPOSITED


def postscale_composite(
    pass_a: np.ndarray,
    base: np.ndarray,
    params: Optional[PostscaleParams] = None,
) -> PostscaleResult:
    """
    Deterministic, linear pipeline:
      1) Locate the inserted object by diffing pass-A against base
      2) Refine the region to its dominant connected component
      3) Extract object pixels + soft alpha from pass-A
      4) Rescale (target_px or legacy scale)
      5) Synthesize the contact shadow
      6) Composite shadow + object onto base

    PreconditionMismatch propagates. NoObjectFound / OversizedRegion /
    CollapsedAlpha are recovered here: the result carries pass-A itself.
    """
    params = params or PostscaleParams()
    width, height = check_same_size(pass_a, base)

    t0 = time.perf_counter()
    stage = {}
    try:
        # Locate
        t_loc0 = time.perf_counter()
        cand = locate_region(pass_a, base, diff_threshold=params.diff_threshold)
        stage["threshold"] = cand.threshold
        stage["bbox"] = cand.bbox
        t_loc1 = time.perf_counter()

        # Refine
        refined = refine_bbox(cand.mask, cand.bbox)
        stage["refined_bbox"] = refined
        t_ref1 = time.perf_counter()

        # Extract
        layer, crop = extract_object(pass_a, cand.mask, refined)
        stage["crop"] = crop
        t_ext1 = time.perf_counter()

        # Rescale
        scaled = rescale_object(layer, width, height, target_px=params.target_px, scale=params.scale)
        out_h, out_w = scaled.shape[:2]
        t_res1 = time.perf_counter()
    except PostscaleSkipped as e:
        logger.info("%s; returning pass-A unchanged (%s)", e.outcome, e)
        return PostscaleResult(
            image=pass_a,
            outcome=e.outcome,
            timings=StageTimings(total_s=time.perf_counter() - t0),
            **stage,
        )

    # Shadow + composite
    shadow = build_shadow_layer(scaled, blur=params.shadow_blur, opacity=params.shadow_opacity)
    placement = compute_placement(crop, out_w, out_h, width, height)
    out = composite_layers(base, scaled, shadow, placement)
    t_comp1 = time.perf_counter()

    logger.debug(
        "composited thr=%.1f bbox=%s refined=%s out=%dx%d at (%d,%d)",
        cand.threshold,
        cand.bbox,
        refined,
        out_w,
        out_h,
        placement.left,
        placement.top,
    )
    return PostscaleResult(
        image=out,
        outcome=OUTCOME_COMPOSITED,
        output_size=(out_w, out_h),
        timings=StageTimings(
            locate_s=t_loc1 - t_loc0,
            refine_s=t_ref1 - t_loc1,
            extract_s=t_ext1 - t_ref1,
            rescale_s=t_res1 - t_ext1,
            composite_s=t_comp1 - t_res1,
            total_s=t_comp1 - t0,
        ),
        **stage,
    )


def process_pair(
    pass_a: np.ndarray,
    base: np.ndarray,
    params: Optional[PostscaleParams] = None,
) -> PostscaleResult:
    """
    `postscale_composite` followed by the optional final frame zoom.
    """
    params = params or PostscaleParams()
    result = postscale_composite(pass_a, base, params)
    framed = apply_frame_zoom(result.image, params.final_frame_zoom, params.anchor_x, params.anchor_y)
    if framed is result.image:
        return result
    return replace(result, image=framed)


def postscale_png(pass_a_png: bytes, base_png: bytes, params: Optional[PostscaleParams] = None) -> bytes:
    """
    Bytes in, PNG bytes out. Hands back the exact pass-A bytes when nothing was changed.
    """
    pass_a = decode_image(pass_a_png)
    base = decode_image(base_png)
    result = process_pair(pass_a, base, params)
    if result.image is pass_a:
        return pass_a_png
    return encode_png(result.image)
