from __future__ import annotations

import base64
import binascii
import io
import json
import re
from pathlib import Path
from typing import Any, Dict, Tuple

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from .config import FETCH_TIMEOUT_S
from .errors import UpstreamDependencyError

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode any Pillow-readable bytes into an RGBA uint8 array (alpha added if missing).
    """
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Could not decode image bytes: {e}") from e
    return np.array(img.convert("RGBA"), dtype=np.uint8)


def encode_png(img: np.ndarray) -> bytes:
    """
    Lossless PNG bytes from an RGB/RGBA uint8 array.
    """
    if img.ndim != 3 or img.shape[2] not in (3, 4):
        raise ValueError(f"Expected RGB/RGBA image array, got shape={img.shape}")
    buf = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(img, dtype=np.uint8)).save(buf, format="PNG", optimize=False)
    return buf.getvalue()


def write_json(path: str, data: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(data, indent=2, sort_keys=True, default=str), encoding="utf-8")


def read_json(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    return json.loads(p.read_text(encoding="utf-8"))


def data_url_to_bytes(data_url: str) -> Tuple[str, bytes]:
    """
    "data:image/png;base64,xxxx" -> ("image/png", b"...")
    """
    m = _DATA_URL_RE.match(data_url or "")
    if not m:
        raise ValueError("image must be a data URL: data:<mime>;base64,<...>")
    try:
        return m.group(1), base64.b64decode(m.group(2), validate=False)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload in data URL: {e}") from e


def fetch_source(source: str, timeout: float = FETCH_TIMEOUT_S) -> bytes:
    """
    Resolve an image source to raw bytes. Accepts data URLs, http(s) URLs and local paths.

    Every retrieval failure is raised as UpstreamDependencyError.
    """
    s = str(source or "").strip()
    if not s:
        raise UpstreamDependencyError("image source must be a non-empty string")

    if s.startswith("data:"):
        try:
            return data_url_to_bytes(s)[1]
        except ValueError as e:
            raise UpstreamDependencyError(str(e)) from e

    if s.startswith(("http://", "https://")):
        try:
            resp = requests.get(s, timeout=timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise UpstreamDependencyError(f"Could not fetch {s}: {e}") from e
        return resp.content

    p = Path(s)
    if not p.is_file():
        raise UpstreamDependencyError(f"image source not found: {s}")
    try:
        return p.read_bytes()
    except OSError as e:
        raise UpstreamDependencyError(f"Could not read {s}: {e}") from e


def resize_to_match(img: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Lanczos resize to (width, height); returns `img` itself when already that size.
    """
    h, w = img.shape[:2]
    if (w, h) == (width, height):
        return img
    pil = Image.fromarray(np.ascontiguousarray(img, dtype=np.uint8))
    return np.array(pil.resize((width, height), Image.Resampling.LANCZOS), dtype=np.uint8)
