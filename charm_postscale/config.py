"""
Centralized configuration constants for the charm post-scale pipeline.

Ground rules:
- No I/O, no env reads here; callers pass explicit parameters.
- Ratios are fractions of the canvas (W * H, W or H).
"""

# Diff search
DIFF_THRESHOLD_MIN = 8
DIFF_THRESHOLD_MAX = 120
DIFF_THRESHOLD_DEFAULT = 40
DIFF_THRESHOLD_CEILING = 90
DIFF_THRESHOLD_STEP = 8
FEATHER_RADIUS = 1.0
FEATHER_THRESHOLD = 18

# Acceptance predicate for a candidate region.
MAX_MASK_PX_RATIO = 0.035
MAX_BBOX_AREA_RATIO = 0.075
MAX_BBOX_W_RATIO = 0.35
MAX_BBOX_H_RATIO = 0.35
MIN_DENSITY = 0.035
CENTER_MIN = 0.12
CENTER_MAX = 0.88

# Safety gate: anything bigger is not an inset object.
OVERSIZED_AREA_RATIO = 0.25

# Connected-component refinement (downsampled grid).
DOWNSAMPLE = 4
MIN_COMPONENT_AREA = 12
COMPONENT_PAD = 2

# Extraction
CROP_PAD = 6
ALPHA_BLUR_RADIUS = 0.8

# Rescale
TARGET_PX_MIN = 4
TARGET_PX_MAX = 96
TARGET_PX_DEFAULT = 14
SCALE_MIN = 0.50
SCALE_MAX = 0.70
SCALE_DEFAULT = 0.65
SHARPEN_SIGMA = 0.6
SHARPEN_AMOUNT = 1.0

# Contact shadow
SHADOW_BLUR_MIN = 0.0
SHADOW_BLUR_MAX = 12.0
SHADOW_BLUR_DEFAULT = 2.0
SHADOW_OPACITY_MIN = 0.0
SHADOW_OPACITY_MAX = 0.6
SHADOW_OPACITY_DEFAULT = 0.28
SHADOW_OFFSET_Y = 1

# Final frame zoom
ZOOM_ACTIVATION = 1.0001
ANCHOR_X_DEFAULT = 0.5
ANCHOR_Y_DEFAULT = 0.45

# Job layer
IMAGE_MODEL = "gemini-3-pro-image-preview"
JOB_KIND = "charm_postscale"
ACK_STATUS_CODE = 202
OUTPUT_PREFIX = "listing-generator-1"
FETCH_TIMEOUT_S = 30.0

# Status sink retry (capped exponential backoff with jitter).
STATUS_RETRY_ATTEMPTS = 8
STATUS_RETRY_BASE_S = 0.25
STATUS_RETRY_CAP_S = 6.0
STATUS_RETRY_JITTER_S = 0.25

# Versioned prompt (keep changes explicit + centralized).
REMOVE_PROMPT = """Remove the pendant charm + jump ring completely.
Reconstruct the underlying pixels (chain, skin, fabric, background) so the area looks untouched.
Do NOT change framing, lighting, colors, or any other part of the image.
"""
