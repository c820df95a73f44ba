from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import numpy as np
from pydantic import ValidationError

from .config import IMAGE_MODEL, JOB_KIND, REMOVE_PROMPT
from .contracts import ErrorInfo, ImageRecord, JobAck, JobRequest, JobStage
from .errors import MissingInputError, UpstreamDependencyError, error_payload
from .io import decode_image, encode_png, fetch_source, resize_to_match
from .pipeline import PostscaleResult, process_pair
from .status import StatusSink
from .storage import ImageStore

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], bytes]


class CharmRemover(Protocol):
    """Produces the clean base frame (same shot, inset object erased) from pass-A PNG bytes."""

    def remove(self, pass_a_png: bytes, prompt: str) -> bytes: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_input(data: bytes, label: str) -> np.ndarray:
    try:
        return decode_image(data)
    except ValueError as e:
        raise UpstreamDependencyError(f"{label} is not a readable image: {e}") from e


def _set_stage(status: StatusSink, job_id: str, stage: JobStage, **fields: Any) -> None:
    status.update(job_id, {"stage": stage.value, **fields})


def _obtain_base(
    request: JobRequest,
    pass_a_png: bytes,
    fetch: Fetcher,
    status: StatusSink,
    remover: Optional[CharmRemover],
) -> Tuple[bytes, str]:
    """Returns (base_png, prompt_used). Skips the removal stage when a base was supplied."""
    prompt = (request.remove_prompt or "").strip()
    if request.base:
        return fetch(request.base), prompt

    _set_stage(status, request.job_id, JobStage.REMOVING_CHARM)
    prompt = prompt or REMOVE_PROMPT
    try:
        return remover.remove(pass_a_png, prompt), prompt
    except UpstreamDependencyError:
        raise
    except Exception as e:
        raise UpstreamDependencyError(f"charm removal failed: {e}") from e


def run_postscale_job(
    request: JobRequest,
    status: StatusSink,
    store: ImageStore,
    fetch: Fetcher = fetch_source,
    remover: Optional[CharmRemover] = None,
    model: str = IMAGE_MODEL,
) -> JobAck:
    """
    STRICT ORDER:
      starting -> downloading_inputs -> removing_charm (only without a base) ->
      postprocessing -> uploading -> done

    Any failure lands in `error` with a diagnostic payload. Always returns a
    JobAck (status 202); the caller's enqueue never fails on job errors.
    """
    job_id = request.job_id
    try:
        status.update(
            job_id,
            {
                "status": "running",
                "stage": JobStage.STARTING.value,
                "run_id": request.run_id,
                "slot_index": request.slot_index,
                "kind": JOB_KIND,
                "model": model,
                "output_base_path": request.output_base_path,
            },
        )

        if not request.pass_a:
            raise MissingInputError(f"{JOB_KIND} requires a pass-A image (input_storage_path or input_image)")
        if not request.base and remover is None:
            raise MissingInputError(f"{JOB_KIND} requires a base image when no charm remover is configured")

        # 1) Inputs
        _set_stage(status, job_id, JobStage.DOWNLOADING_INPUTS)
        pass_a_png = fetch(request.pass_a)
        pass_a = _decode_input(pass_a_png, "pass-A")
        h, w = pass_a.shape[:2]

        # 2) Base frame (supplied, or produced by the remover)
        base_png, prompt = _obtain_base(request, pass_a_png, fetch, status, remover)
        base = resize_to_match(_decode_input(base_png, "base"), w, h)

        # 3) Post-process
        _set_stage(status, job_id, JobStage.POSTPROCESSING)
        result: PostscaleResult = process_pair(pass_a, base, request.postprocess)
        final_png = encode_png(result.image)

        # 4) Upload + metadata
        _set_stage(status, job_id, JobStage.UPLOADING)
        output_base = request.output_base_path
        if not output_base and request.active_category:
            _set_n, output_base = store.alloc_next_set(request.active_category)
        stored = store.save_png(
            final_png,
            output_base_path=output_base,
            slot_index=request.slot_index,
            job_id=job_id,
            run_id=request.run_id,
        )
        store.add_record(
            ImageRecord(
                run_id=stored.run_id,
                slot_index=stored.slot_index,
                storage_path=stored.storage_path,
                model=model,
                prompt=prompt,
                job_id=job_id,
                kind=JOB_KIND,
                postprocess=request.postprocess.model_dump(by_alias=True),
                traits=request.traits,
            )
        )

        status.update(
            job_id,
            {
                "status": "done",
                "stage": JobStage.DONE.value,
                "storage_path": stored.storage_path,
                "output_base_path": output_base,
                "outcome": result.outcome,
                "finished_at": _now_iso(),
            },
        )
        logger.info("[%s] done outcome=%s path=%s", job_id, result.outcome, stored.storage_path)
        return JobAck(ok=True, job_id=job_id, storage_path=stored.storage_path)
    except Exception as e:
        logger.exception("[%s] job failed", job_id)
        payload = error_payload(e)
        try:
            status.update(job_id, {"status": "error", "stage": JobStage.ERROR.value, "error": payload})
        except Exception:
            logger.exception("[%s] could not record error status", job_id)
        return JobAck(ok=False, job_id=job_id, error=ErrorInfo(**payload))


def handle_request(
    payload: Dict[str, Any],
    status: StatusSink,
    store: ImageStore,
    fetch: Fetcher = fetch_source,
    remover: Optional[CharmRemover] = None,
) -> JobAck:
    """
    Request-boundary entry point: validate the raw body, then run the job.

    A body that does not validate (e.g. missing jobId) is rejected with status 400
    and never touches the status sink.
    """
    try:
        request = JobRequest.model_validate(payload or {})
    except ValidationError as e:
        body = payload if isinstance(payload, dict) else {}
        job_id = str(body.get("jobId") or body.get("job_id") or "")
        return JobAck(
            ok=False,
            job_id=job_id,
            status_code=400,
            error=ErrorInfo(message=str(e), name=type(e).__name__),
        )
    return run_postscale_job(request, status, store, fetch=fetch, remover=remover)
