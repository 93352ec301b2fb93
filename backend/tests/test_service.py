import threading

import pytest
from conftest import FakeBackend

from mediaopt.conversion.capabilities import CapabilityDetector
from mediaopt.conversion.models import ConversionRequest, TaskStatus
from mediaopt.conversion.pipeline import ConversionPipeline
from mediaopt.conversion.service import ConversionService


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def blocking_service(gate, tracker, library):
    backend = FakeBackend("pillow", formats=["webp"], gate=gate)
    svc = ConversionService(ConversionPipeline(CapabilityDetector(backends=[backend])), tracker, library, max_workers=1)
    svc.backend = backend
    yield svc
    gate.set()
    svc.shutdown()


def _request(asset_id, path):
    return ConversionRequest(asset_id=asset_id, source_path=str(path), mimetype="image/png", requested_formats=("webp",))


def test_duplicate_key_is_coalesced(blocking_service, gate, make_image):
    request = _request(1, make_image("a.png"))

    first = blocking_service.submit(request)
    second = blocking_service.submit(request)

    key = (1, "webp", "full")
    assert first[key] is second[key]
    assert blocking_service.in_flight(key)

    gate.set()
    task = first[key].result(timeout=10)
    assert task.status == TaskStatus.COMPLETED
    assert len(blocking_service.backend.calls) == 1


def test_cancel_only_affects_queued_tasks(blocking_service, gate, make_image):
    running = blocking_service.submit(_request(1, make_image("a.png")))[(1, "webp", "full")]
    queued = blocking_service.submit(_request(2, make_image("b.png")))[(2, "webp", "full")]
    queued_task = blocking_service.get_task_for((2, "webp", "full"))

    assert blocking_service.cancel_pending(asset_id=2) == 1
    assert queued.cancelled()
    assert queued_task.status == TaskStatus.CANCELLED

    gate.set()
    assert running.result(timeout=10).status == TaskStatus.COMPLETED


def test_completed_task_updates_tracker_and_library(pipeline, tracker, library, make_image, media_dir):
    svc = ConversionService(pipeline, tracker, library, max_workers=1)
    source = make_image("c.png")
    try:
        task = svc.submit(_request(3, source))[(3, "webp", "full")].result(timeout=10)
    finally:
        svc.shutdown()

    assert task.status == TaskStatus.COMPLETED
    assert svc.get_task(task.task_id) is task
    assert task.output_path == str(media_dir / "c.webp")
    assert tracker.has_conversion(3, "webp", "full")
    assert library.get_file_size(3, "original", "full") == source.stat().st_size
    assert library.get_files(3)["full"]["webp"]["filesize"] == task.output_size


def test_failed_task_carries_error(pipeline, tracker, library, media_dir):
    svc = ConversionService(pipeline, tracker, library, max_workers=1)
    try:
        task = svc.submit(_request(4, media_dir / "missing.png"))[(4, "webp", "full")].result(timeout=10)
    finally:
        svc.shutdown()

    assert task.status == TaskStatus.FAILED
    assert task.retryable is False
    assert "not readable" in task.error
    assert not tracker.has_conversion(4, "webp")


def test_webp_source_is_left_untouched(pipeline, tracker, library, media_dir):
    source = media_dir / "pic.webp"
    source.write_bytes(b"RIFF" + b"\x00" * 38)
    library.register("image/webp", source, attachment_id=5)
    svc = ConversionService(pipeline, tracker, library, max_workers=1)
    try:
        futures = svc.submit(
            ConversionRequest(asset_id=5, source_path=str(source), mimetype="image/webp", requested_formats=("webp",))
        )
    finally:
        svc.shutdown()

    assert futures == {}
    assert source.stat().st_size == 42
    assert tracker.get_attachment_conversions(5) == []
    assert library.get_file_size(5, "original", "full") == 42


def test_finished_task_history_is_capped(pipeline, tracker, library, make_image):
    svc = ConversionService(pipeline, tracker, library, max_workers=1, max_history=2)
    tasks = []
    try:
        for asset_id in range(1, 5):
            futures = svc.submit(_request(asset_id, make_image(f"h{asset_id}.png")))
            tasks.append(futures[(asset_id, "webp", "full")].result(timeout=10))
    finally:
        svc.shutdown()

    assert [svc.get_task(t.task_id) for t in tasks] == [None, None, tasks[2], tasks[3]]
    assert svc.get_task_for((1, "webp", "full")) is None
    assert svc.get_task_for((4, "webp", "full")) is tasks[3]
