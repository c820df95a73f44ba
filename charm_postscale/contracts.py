from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .config import (
    ACK_STATUS_CODE,
    ANCHOR_X_DEFAULT,
    ANCHOR_Y_DEFAULT,
    DIFF_THRESHOLD_DEFAULT,
    DIFF_THRESHOLD_MAX,
    DIFF_THRESHOLD_MIN,
    SCALE_DEFAULT,
    SCALE_MAX,
    SCALE_MIN,
    SHADOW_BLUR_DEFAULT,
    SHADOW_BLUR_MAX,
    SHADOW_BLUR_MIN,
    SHADOW_OPACITY_DEFAULT,
    SHADOW_OPACITY_MAX,
    SHADOW_OPACITY_MIN,
    TARGET_PX_DEFAULT,
    TARGET_PX_MAX,
    TARGET_PX_MIN,
)


def clamp_number(n: Any, lo: float, hi: float, fallback: float) -> float:
    """
    Coerce to float and clamp into [lo, hi]; anything non-numeric or non-finite yields `fallback`.
    """
    try:
        x = float(n)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(x):
        return fallback
    return max(lo, min(hi, x))


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _finite_or_none(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        x = float(v)
    except (TypeError, ValueError):
        return None
    return x if math.isfinite(x) else None


class JobStage(str, Enum):
    STARTING = "starting"
    DOWNLOADING_INPUTS = "downloading_inputs"
    REMOVING_CHARM = "removing_charm"
    POSTPROCESSING = "postprocessing"
    UPLOADING = "uploading"
    DONE = "done"
    ERROR = "error"


class PostscaleParams(BaseModel):
    """
    Numeric knobs for one post-scale run. Out-of-range values are clamped, junk falls back to defaults.

    `target_px` (absolute output height) wins over the legacy `scale` multiplier.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    diff_threshold: float = Field(DIFF_THRESHOLD_DEFAULT, alias="diffThreshold")
    target_px: Optional[int] = Field(None, alias="targetPx")
    scale: float = SCALE_DEFAULT
    shadow_opacity: float = Field(SHADOW_OPACITY_DEFAULT, alias="shadowOpacity")
    shadow_blur: float = Field(SHADOW_BLUR_DEFAULT, alias="shadowBlur")
    final_frame_zoom: Optional[float] = Field(None, alias="finalFrameZoom")
    anchor_x: float = Field(ANCHOR_X_DEFAULT, alias="anchorX")
    anchor_y: float = Field(ANCHOR_Y_DEFAULT, alias="anchorY")

    @field_validator("diff_threshold", mode="before")
    @classmethod
    def _clamp_diff_threshold(cls, v: Any) -> float:
        return clamp_number(v, DIFF_THRESHOLD_MIN, DIFF_THRESHOLD_MAX, DIFF_THRESHOLD_DEFAULT)

    @field_validator("target_px", mode="before")
    @classmethod
    def _clamp_target_px(cls, v: Any) -> Optional[int]:
        x = _finite_or_none(v)
        if x is None:
            return None
        return round_half_up(clamp_number(x, TARGET_PX_MIN, TARGET_PX_MAX, TARGET_PX_DEFAULT))

    @field_validator("scale", mode="before")
    @classmethod
    def _clamp_scale(cls, v: Any) -> float:
        return clamp_number(v, SCALE_MIN, SCALE_MAX, SCALE_DEFAULT)

    @field_validator("shadow_opacity", mode="before")
    @classmethod
    def _clamp_shadow_opacity(cls, v: Any) -> float:
        return clamp_number(v, SHADOW_OPACITY_MIN, SHADOW_OPACITY_MAX, SHADOW_OPACITY_DEFAULT)

    @field_validator("shadow_blur", mode="before")
    @classmethod
    def _clamp_shadow_blur(cls, v: Any) -> float:
        return clamp_number(v, SHADOW_BLUR_MIN, SHADOW_BLUR_MAX, SHADOW_BLUR_DEFAULT)

    @field_validator("final_frame_zoom", mode="before")
    @classmethod
    def _finite_zoom(cls, v: Any) -> Optional[float]:
        return _finite_or_none(v)

    @field_validator("anchor_x", mode="before")
    @classmethod
    def _clamp_anchor_x(cls, v: Any) -> float:
        return clamp_number(v, 0.0, 1.0, ANCHOR_X_DEFAULT)

    @field_validator("anchor_y", mode="before")
    @classmethod
    def _clamp_anchor_y(cls, v: Any) -> float:
        return clamp_number(v, 0.0, 1.0, ANCHOR_Y_DEFAULT)


class JobRequest(BaseModel):
    """One charm post-scale job as received from the request boundary."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    job_id: str = Field(..., min_length=1, alias="jobId")
    run_id: Optional[str] = Field(None, alias="runId")
    slot_index: Optional[int] = Field(None, alias="slotIndex")
    pass_a: Optional[str] = Field(
        None, validation_alias=AliasChoices("pass_a", "input_storage_path", "input_image")
    )
    base: Optional[str] = Field(None, validation_alias=AliasChoices("base", "base_storage_path", "base_image"))
    remove_prompt: Optional[str] = None
    postprocess: PostscaleParams = Field(default_factory=PostscaleParams)
    output_base_path: Optional[str] = None
    active_category: Optional[str] = Field(None, alias="activeCategory")
    traits: Optional[Dict[str, Any]] = None


class ErrorInfo(BaseModel):
    message: str
    name: str
    stack: Optional[str] = None


class JobAck(BaseModel):
    """Soft-success acknowledgment returned at the request boundary, even on failure."""

    ok: bool
    job_id: str
    status_code: int = ACK_STATUS_CODE
    storage_path: Optional[str] = None
    error: Optional[ErrorInfo] = None


class ImageRecord(BaseModel):
    """Metadata stored next to every uploaded image."""

    run_id: Optional[str]
    slot_index: int
    storage_path: str
    model: str
    prompt: str = ""
    job_id: Optional[str] = None
    kind: str
    postprocess: Optional[Dict[str, Any]] = None
    traits: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
