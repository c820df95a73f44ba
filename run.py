from __future__ import annotations

import argparse
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv
from tqdm import tqdm

from charm_postscale.jobs import handle_request
from charm_postscale.status import JsonFileStatusSink, RetryingStatusSink
from charm_postscale.storage import LocalImageStore


def _read_manifest(path: Path) -> List[Dict[str, Any]]:
    jobs = []
    with open(path, "r", encoding="utf-8") as fp:
        for line in fp:
            line = line.strip()
            if line:
                jobs.append(json.loads(line))
    return jobs


def _single_job(args: argparse.Namespace) -> Dict[str, Any]:
    postprocess: Dict[str, Any] = {
        "diffThreshold": args.diff_threshold,
        "scale": args.scale,
        "shadowOpacity": args.shadow_opacity,
        "shadowBlur": args.shadow_blur,
        "finalFrameZoom": args.zoom,
        "anchorX": args.anchor_x,
        "anchorY": args.anchor_y,
    }
    if args.target_px is not None:
        postprocess["targetPx"] = args.target_px
    return {
        "jobId": args.job_id or f"local_{int(time.time() * 1000)}",
        "runId": args.run_id,
        "slotIndex": args.slot_index,
        "pass_a": args.pass_a,
        "base": args.base,
        "output_base_path": args.output_base_path,
        "activeCategory": args.category,
        "postprocess": {k: v for k, v in postprocess.items() if v is not None},
    }


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Charm post-scale: shrink the inset object via pass-A/base diff.")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--pass-a", type=str, help="Pass-A image (path, http(s) URL or data URL).")
    src.add_argument("--manifest", type=str, help="JSONL file, one job request per line.")
    parser.add_argument("--base", type=str, default=None, help="Clean base image without the charm.")
    parser.add_argument(
        "--output",
        type=str,
        default=os.getenv("POSTSCALE_OUTPUT_DIR", "output"),
        help="Output root (images + jobs/ status + images.jsonl).",
    )
    parser.add_argument("--job-id", type=str, default=None)
    parser.add_argument("--run-id", type=str, default=None)
    parser.add_argument("--slot-index", type=int, default=None)
    parser.add_argument("--output-base-path", type=str, default=None, help="listing-generator-1/<Category>/Ready_To_List/Set_N")
    parser.add_argument(
        "--category",
        type=str,
        default=None,
        help="Allocate the next Ready_To_List/Set_N for this category when --output-base-path is not given.",
    )
    parser.add_argument("--diff-threshold", type=float, default=None)
    parser.add_argument("--target-px", type=float, default=None, help="Output height of the charm in pixels.")
    parser.add_argument("--scale", type=float, default=None, help="Legacy multiplier (ignored with --target-px).")
    parser.add_argument("--shadow-opacity", type=float, default=None)
    parser.add_argument("--shadow-blur", type=float, default=None)
    parser.add_argument("--zoom", type=float, default=None, help="Final frame zoom (> 1.0001 to activate).")
    parser.add_argument("--anchor-x", type=float, default=None)
    parser.add_argument("--anchor-y", type=float, default=None)
    parser.add_argument("--log-level", type=str, default="WARNING")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    output_dir = Path(args.output)
    status = RetryingStatusSink(JsonFileStatusSink(str(output_dir)))
    store = LocalImageStore(str(output_dir))

    if args.manifest:
        manifest_path = Path(args.manifest)
        if not manifest_path.exists():
            raise FileNotFoundError(f"Manifest not found: {manifest_path}")
        payloads = _read_manifest(manifest_path)
    else:
        payloads = [_single_job(args)]

    if not payloads:
        print(f"No jobs found in {args.manifest}")
        return 0

    stats = {"total": 0, "done": 0, "error": 0}
    t0 = time.perf_counter()
    for payload in tqdm(payloads, desc="Post-scaling", unit="job", disable=len(payloads) == 1):
        t_job0 = time.perf_counter()
        ack = handle_request(payload, status, store)
        t_job1 = time.perf_counter()

        stats["total"] += 1
        stats["done" if ack.ok else "error"] += 1
        if ack.ok:
            print(f"{ack.job_id}: ok path={ack.storage_path} ({t_job1 - t_job0:.3f}s)")
        else:
            print(f"{ack.job_id}: error {ack.error.name if ack.error else ''}: {ack.error.message if ack.error else ''}")

    t1 = time.perf_counter()
    print(
        "Done.\n"
        f"- total: {stats['total']}\n"
        f"- done:  {stats['done']}\n"
        f"- error: {stats['error']}\n"
        f"- elapsed_s: {t1 - t0:.2f}\n"
        f"- output: {output_dir.resolve()}"
    )
    return 0 if stats["error"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
