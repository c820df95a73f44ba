from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Tuple

from .config import OUTPUT_PREFIX
from .contracts import ImageRecord

_OUTPUT_BASE_RE = re.compile(rf"^{re.escape(OUTPUT_PREFIX)}/([^/]+)/Ready_To_List/Set_\d+$", re.IGNORECASE)
_DOT_SEGMENTS = (".", "..")
_SET_DIR_RE = re.compile(r"^Set_(\d+)$")


def assert_allowed_output_base(base: str) -> str:
    """Output bases look like: listing-generator-1/<Category>/Ready_To_List/Set_<N>"""
    b = str(base or "").strip()
    m = _OUTPUT_BASE_RE.match(b)
    if not m or m.group(1).strip() in _DOT_SEGMENTS:
        raise ValueError(f"output_base_path not allowed: {b!r}")
    return b


def effective_slot(slot_index: Optional[int]) -> int:
    try:
        s = int(slot_index)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    return s if s >= 0 else 0


def next_set_path(root: str, category: str, prefix: str = OUTPUT_PREFIX) -> Tuple[int, str]:
    """
    Allocate the next `Set_<N>` under `<prefix>/<category>/Ready_To_List/`.
    """
    cat = str(category or "").strip()
    if not cat or "/" in cat or cat in _DOT_SEGMENTS:
        raise ValueError(f"invalid category: {category!r}")
    parent = Path(root) / prefix / cat / "Ready_To_List"
    max_n = 0
    if parent.is_dir():
        for child in parent.iterdir():
            m = _SET_DIR_RE.match(child.name)
            if child.is_dir() and m:
                max_n = max(max_n, int(m.group(1)))
    set_n = max_n + 1
    return set_n, f"{prefix}/{cat}/Ready_To_List/Set_{set_n}"


@dataclass(frozen=True)
class StoredImage:
    storage_path: str
    local_path: str
    run_id: Optional[str]
    slot_index: int


class ImageStore(Protocol):
    def save_png(
        self,
        png: bytes,
        *,
        output_base_path: Optional[str],
        slot_index: Optional[int],
        job_id: Optional[str],
        run_id: Optional[str],
    ) -> StoredImage: ...

    def add_record(self, record: ImageRecord) -> None: ...

    def alloc_next_set(self, category: str) -> Tuple[int, str]: ...


class LocalImageStore:
    """
    Directory-backed store: PNGs under `root`, metadata records appended to `root/images.jsonl`.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    @property
    def records_path(self) -> Path:
        return self.root / "images.jsonl"

    def alloc_next_set(self, category: str) -> Tuple[int, str]:
        set_n, base = next_set_path(str(self.root), category)
        (self.root / base).mkdir(parents=True, exist_ok=True)
        return set_n, base

    def save_png(
        self,
        png: bytes,
        *,
        output_base_path: Optional[str] = None,
        slot_index: Optional[int] = None,
        job_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> StoredImage:
        slot = effective_slot(slot_index)
        if output_base_path:
            base = assert_allowed_output_base(output_base_path)
            storage_path = f"{base}/Slot_{slot + 1}.png"
            eff_run = run_id or job_id
        else:
            eff_run = run_id or f"lg1_{int(time.time() * 1000)}"
            storage_path = f"{OUTPUT_PREFIX}/generated/{eff_run}/slot_{slot + 1}.png"

        local = self.root / storage_path
        local.parent.mkdir(parents=True, exist_ok=True)
        local.write_bytes(png)
        return StoredImage(storage_path=storage_path, local_path=str(local), run_id=eff_run, slot_index=slot)

    def add_record(self, record: ImageRecord) -> None:
        self.records_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.records_path, "a", encoding="utf-8") as fp:
            fp.write(json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n")
