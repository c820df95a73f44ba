from __future__ import annotations

import base64
from pathlib import Path

import numpy as np
import pytest
import requests

from charm_postscale import io as io_mod
from charm_postscale.contracts import ImageRecord
from charm_postscale.errors import TransientStatusError, UpstreamDependencyError
from charm_postscale.io import (
    data_url_to_bytes,
    decode_image,
    encode_png,
    fetch_source,
    resize_to_match,
)
from charm_postscale.status import JsonFileStatusSink, MemoryStatusSink, RetryingStatusSink, safe_job_id
from charm_postscale.storage import LocalImageStore, assert_allowed_output_base, next_set_path


class _FakeResp:
    def __init__(self, content: bytes, status: int = 200):
        self.content = content
        self.status = status

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")


class _FlakySink:
    def __init__(self, failures: int, exc: Exception):
        self.failures = failures
        self.exc = exc
        self.calls = 0
        self.inner = MemoryStatusSink()

    def update(self, job_id, fields):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        self.inner.update(job_id, fields)


# ---- status ----


def test_json_file_sink_merges(tmp_path: Path):
    sink = JsonFileStatusSink(str(tmp_path))
    sink.update("run 1/slot:2", {"status": "running", "stage": "starting"})
    first = sink.read("run 1/slot:2")
    sink.update("run 1/slot:2", {"stage": "postprocessing"})
    doc = sink.read("run 1/slot:2")

    assert sink.path_for("run 1/slot:2").name == "run_1__slot_2.json"
    assert doc["status"] == "running"
    assert doc["stage"] == "postprocessing"
    assert doc["job_id"] == "run 1/slot:2"
    assert doc["created_at"] == first["created_at"]


def test_safe_job_id():
    assert safe_job_id("a/b c:d") == "a__b_c_d"


def test_retrying_sink_recovers_from_transient_errors():
    flaky = _FlakySink(2, TransientStatusError("unavailable"))
    sleeps = []
    sink = RetryingStatusSink(flaky, sleep=sleeps.append)
    sink.update("j", {"stage": "starting"})

    assert flaky.calls == 3
    assert flaky.inner.docs["j"]["stage"] == "starting"
    assert len(sleeps) == 2
    assert all(0 < s <= 6.25 for s in sleeps)


def test_retrying_sink_gives_up_after_attempts():
    flaky = _FlakySink(100, TransientStatusError("unavailable"))
    sink = RetryingStatusSink(flaky, attempts=3, sleep=lambda _s: None)
    with pytest.raises(TransientStatusError):
        sink.update("j", {"stage": "starting"})
    assert flaky.calls == 3


def test_retrying_sink_does_not_retry_programming_errors():
    flaky = _FlakySink(100, KeyError("bad field"))
    sink = RetryingStatusSink(flaky, sleep=lambda _s: None)
    with pytest.raises(KeyError):
        sink.update("j", {"stage": "starting"})
    assert flaky.calls == 1


# ---- storage ----


def test_store_set_path_and_record(tmp_path: Path):
    store = LocalImageStore(str(tmp_path))
    saved = store.save_png(
        b"png-bytes",
        output_base_path="listing-generator-1/Charms/Ready_To_List/Set_7",
        slot_index=0,
        job_id="job-x",
    )
    assert saved.storage_path == "listing-generator-1/Charms/Ready_To_List/Set_7/Slot_1.png"
    assert saved.run_id == "job-x"
    assert Path(saved.local_path).read_bytes() == b"png-bytes"

    store.add_record(
        ImageRecord(
            run_id=saved.run_id,
            slot_index=saved.slot_index,
            storage_path=saved.storage_path,
            model="m",
            kind="charm_postscale",
        )
    )
    assert store.records_path.exists()


def test_store_fallback_path(tmp_path: Path):
    store = LocalImageStore(str(tmp_path))
    saved = store.save_png(b"x", slot_index=-3, run_id="run9")
    assert saved.storage_path == "listing-generator-1/generated/run9/slot_1.png"
    generated = store.save_png(b"x", slot_index=None)
    assert generated.run_id.startswith("lg1_")


def test_output_base_validation():
    ok = "listing-generator-1/Charms/Ready_To_List/Set_2"
    assert assert_allowed_output_base(f" {ok} ") == ok
    assert assert_allowed_output_base("LISTING-GENERATOR-1/Charms/ready_to_list/set_9")
    for bad in [
        "",
        "a/Charms/Ready_To_List/Set_2",
        "listing-generator-1/Charms/Set_2",
        "listing-generator-1/Charms/Ready_To_List/Set_x",
        "listing-generator-1/Charms/Ready_To_List/Set_1/x",
        "../escaped/Ready_To_List/Set_1",
        "listing-generator-1/../Ready_To_List/Set_1",
        "listing-generator-1/./Ready_To_List/Set_1",
    ]:
        with pytest.raises(ValueError):
            assert_allowed_output_base(bad)


def test_store_never_writes_outside_root(tmp_path: Path):
    root = tmp_path / "out"
    store = LocalImageStore(str(root))
    for base in ["../escaped/Ready_To_List/Set_1", "listing-generator-1/../Ready_To_List/Set_1"]:
        with pytest.raises(ValueError):
            store.save_png(b"x", output_base_path=base, slot_index=0)
    assert not (tmp_path / "escaped").exists()
    assert not root.exists()


def test_next_set_path(tmp_path: Path):
    assert next_set_path(str(tmp_path), "Charms") == (1, "listing-generator-1/Charms/Ready_To_List/Set_1")
    parent = tmp_path / "listing-generator-1" / "Charms" / "Ready_To_List"
    (parent / "Set_1").mkdir(parents=True)
    (parent / "Set_4").mkdir()
    (parent / "notes").mkdir()
    assert next_set_path(str(tmp_path), "Charms") == (5, "listing-generator-1/Charms/Ready_To_List/Set_5")
    with pytest.raises(ValueError):
        next_set_path(str(tmp_path), "a/b")
    with pytest.raises(ValueError):
        next_set_path(str(tmp_path), "..")


def test_store_allocates_sets(tmp_path: Path):
    store = LocalImageStore(str(tmp_path))
    assert store.alloc_next_set("Charms") == (1, "listing-generator-1/Charms/Ready_To_List/Set_1")
    assert (tmp_path / "listing-generator-1" / "Charms" / "Ready_To_List" / "Set_1").is_dir()
    assert store.alloc_next_set("Charms") == (2, "listing-generator-1/Charms/Ready_To_List/Set_2")


# ---- io ----


def test_decode_adds_alpha():
    rgb = np.zeros((6, 8, 3), dtype=np.uint8)
    rgb[..., 1] = 99
    out = decode_image(encode_png(rgb))
    assert out.shape == (6, 8, 4)
    assert int(out[..., 3].min()) == 255
    assert int(out[..., 1].max()) == 99


def test_decode_rejects_garbage():
    with pytest.raises(ValueError):
        decode_image(b"definitely not an image")


def test_data_url():
    payload = base64.b64encode(b"abc").decode("utf-8")
    assert data_url_to_bytes(f"data:image/png;base64,{payload}") == ("image/png", b"abc")
    with pytest.raises(ValueError):
        data_url_to_bytes("image/png;base64,abc")


def test_fetch_source_local_and_data(tmp_path: Path):
    p = tmp_path / "a.bin"
    p.write_bytes(b"123")
    assert fetch_source(str(p)) == b"123"
    assert fetch_source("data:text/plain;base64," + base64.b64encode(b"hi").decode()) == b"hi"
    with pytest.raises(UpstreamDependencyError):
        fetch_source(str(tmp_path / "nope.png"))
    with pytest.raises(UpstreamDependencyError):
        fetch_source("   ")
    with pytest.raises(UpstreamDependencyError):
        fetch_source("data:broken")


def test_fetch_source_http(monkeypatch):
    calls = []

    def _fake_get(url, timeout=None):
        calls.append((url, timeout))
        if url.endswith("/missing.png"):
            return _FakeResp(b"", status=404)
        if url.endswith("/down.png"):
            raise requests.ConnectionError("connection refused")
        return _FakeResp(b"remote-bytes")

    monkeypatch.setattr(io_mod.requests, "get", _fake_get)

    assert fetch_source("https://example.test/a.png", timeout=5) == b"remote-bytes"
    assert calls[0] == ("https://example.test/a.png", 5)
    with pytest.raises(UpstreamDependencyError):
        fetch_source("https://example.test/missing.png")
    with pytest.raises(UpstreamDependencyError):
        fetch_source("http://example.test/down.png")


def test_resize_to_match():
    img = np.zeros((10, 20, 4), dtype=np.uint8)
    assert resize_to_match(img, 20, 10) is img
    assert resize_to_match(img, 40, 30).shape == (30, 40, 4)
