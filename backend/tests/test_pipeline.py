import errno
import os
import subprocess

import pytest
from conftest import FakeBackend

from mediaopt.conversion.capabilities import CapabilityDetector
from mediaopt.conversion.errors import PermanentEncodeFailure
from mediaopt.conversion.models import ConversionMode, ConversionRequest
from mediaopt.conversion.pipeline import (
    ConversionJob,
    ConversionPipeline,
    clamp_options,
    convert_request,
    destination_for,
    plan_request,
)


def _leftover_temp_files(directory):
    return [p for p in directory.iterdir() if p.name.endswith(".tmp")]


def test_convert_writes_destination_and_reports_sizes(pipeline, make_image, media_dir):
    source = make_image("photo.png")
    result = pipeline.convert(source, media_dir / "photo.webp", "webp", {"quality": 80})

    assert result.success
    assert result.destination_path == str(media_dir / "photo.webp")
    assert result.original_bytes == source.stat().st_size
    assert result.converted_bytes == (media_dir / "photo.webp").stat().st_size
    assert result.backend == "pillow"
    assert result.animation_lost is False
    assert _leftover_temp_files(media_dir) == []


def test_convert_twice_is_idempotent(pipeline, make_image, media_dir):
    source = make_image("photo.png")
    destination = media_dir / "photo.webp"
    first = pipeline.convert(source, destination, "webp", {"quality": 80})
    content = destination.read_bytes()
    second = pipeline.convert(source, destination, "webp", {"quality": 80})

    assert destination.read_bytes() == content
    assert (first.original_bytes, first.converted_bytes) == (second.original_bytes, second.converted_bytes)


@pytest.mark.parametrize(
    "exc, code, retryable",
    [
        (PermanentEncodeFailure("bad pixels", "corrupt_source"), "corrupt_source", False),
        (subprocess.TimeoutExpired(cmd="ffmpeg", timeout=5), "encoder_timeout", True),
        (OSError(errno.ENOSPC, "No space left on device"), "disk_full", True),
    ],
)
def test_failure_is_typed_and_leaves_no_partial_file(make_image, media_dir, exc, code, retryable):
    backend = FakeBackend("pillow", fail_with=exc)
    pipeline = ConversionPipeline(CapabilityDetector(backends=[backend]))
    source = make_image("photo.png")
    destination = media_dir / "photo.webp"

    result = pipeline.convert(source, destination, "webp")

    assert not result.success
    assert result.code == code
    assert result.retryable is retryable
    assert not destination.exists()
    assert _leftover_temp_files(media_dir) == []


def test_failure_keeps_previous_destination(make_image, media_dir):
    source = make_image("photo.png")
    destination = media_dir / "photo.webp"
    destination.write_bytes(b"previous")
    backend = FakeBackend("pillow", fail_with=PermanentEncodeFailure("boom"))
    result = ConversionPipeline(CapabilityDetector(backends=[backend])).convert(source, destination, "webp")

    assert not result.success
    assert destination.read_bytes() == b"previous"


def test_unsupported_format_is_a_failure_not_an_exception(make_image, media_dir):
    pipeline = ConversionPipeline(CapabilityDetector(backends=[FakeBackend("pillow", formats=["webp"])]))
    result = pipeline.convert(make_image(), media_dir / "photo.avif", "avif")
    assert not result.success
    assert result.code == "unsupported_format"
    assert result.retryable is False


def test_missing_source_and_unwritable_destination(pipeline, make_image, media_dir):
    missing = pipeline.convert(media_dir / "nope.png", media_dir / "nope.webp", "webp")
    assert missing.code == "source_unreadable"

    bad_dir = pipeline.convert(make_image(), media_dir / "missing" / "photo.webp", "webp")
    assert bad_dir.code == "destination_unwritable"


def test_animated_source_flags_animation_loss(make_image, media_dir):
    backend = FakeBackend("pillow", animation=())
    pipeline = ConversionPipeline(CapabilityDetector(backends=[backend]))
    source = make_image("anim.gif", animated=True)

    result = pipeline.convert(source, media_dir / "anim.webp", "webp")

    assert result.success
    assert result.animation_lost is True
    assert backend.calls[0]["animated"] is False


def test_animated_source_uses_backend_that_keeps_animation(make_image, media_dir):
    magick = FakeBackend("imagemagick", animation=())
    pillow = FakeBackend("pillow", animation=("webp",))
    pipeline = ConversionPipeline(CapabilityDetector(backends=[magick, pillow]))

    result = pipeline.convert(make_image("anim.gif", animated=True), media_dir / "anim.webp", "webp")

    assert result.backend == "pillow"
    assert result.animation_lost is False
    assert pillow.calls[0]["animated"] is True
    assert magick.calls == []


def test_clamp_options_clamps_instead_of_rejecting():
    assert clamp_options("webp", {"quality": 150}) == {"quality": 100}
    assert clamp_options("avif", {"quality": -5, "speed": 42}) == {"quality": 0, "speed": 10}
    assert clamp_options("av1", {"crf": 99, "cpu_used": 9, "timeout": 60}) == {"crf": 63, "cpu_used": 8, "timeout": 60}
    assert clamp_options("webm", {"crf": "30", "speed": 7.4}) == {"crf": 30, "speed": 5}
    assert clamp_options("webp", {"quality": "high"}) == {}


def test_out_of_range_options_reach_backend_clamped(pipeline, fake_backend, make_image, media_dir):
    pipeline.convert(make_image(), media_dir / "photo.webp", "webp", {"quality": 500})
    assert fake_backend.calls[0]["options"]["quality"] == 100


def test_builder_is_immutable_and_lazy(pipeline, fake_backend, make_image, media_dir):
    source = make_image()
    base = pipeline.job()
    configured = base.from_(source).to(media_dir / "photo.webp").with_options(quality=60)

    assert base.source_path is None
    assert configured.format == "webp"
    assert fake_backend.calls == []

    result = configured.convert()
    assert result.success
    assert fake_backend.calls[0]["options"] == {"quality": 60}


def test_builder_infers_av1_from_suffix():
    job = ConversionJob().to("clip.av1.mp4")
    assert job.format == "av1"


def test_builder_requires_all_parts(pipeline):
    with pytest.raises(ValueError):
        pipeline.job().to("x.webp").convert()


def test_destination_for():
    assert str(destination_for("/m/photo.jpg", "webp")) == os.path.join("/m", "photo.webp")
    assert str(destination_for("/m/clip.mov", "av1")) == os.path.join("/m", "clip.av1.mp4")


def _request(source, thumb, mode):
    return ConversionRequest(
        asset_id=7,
        source_path=str(source),
        mimetype="image/png",
        requested_formats=("webp", "avif"),
        renditions={"thumbnail": str(thumb)},
        quality_options={"webp": {"quality": 70}},
        mode=mode,
    )


def test_hybrid_plans_every_supported_format(pipeline, make_image):
    request = _request(make_image("photo.png"), make_image("photo-150x150.png", size=(15, 15)), ConversionMode.HYBRID)
    units = plan_request(request, pipeline.selector())
    assert {(u.format, u.size_name) for u in units} == {
        ("webp", "full"), ("webp", "thumbnail"), ("avif", "full"), ("avif", "thumbnail"),
    }


def test_native_plans_every_supported_format_too(pipeline, make_image):
    request = _request(make_image("photo.png"), make_image("photo-150x150.png", size=(15, 15)), ConversionMode.NATIVE)
    units = plan_request(request, pipeline.selector())
    assert {(u.format, u.size_name) for u in units} == {
        ("webp", "full"), ("webp", "thumbnail"), ("avif", "full"), ("avif", "thumbnail"),
    }


def test_convert_request_produces_artifact_per_format(pipeline, make_image, media_dir):
    request = _request(make_image("photo.png"), make_image("photo-150x150.png", size=(15, 15)), ConversionMode.HYBRID)
    outcomes = convert_request(pipeline, request)

    assert all(o.success for o in outcomes.values())
    for name in ("photo.webp", "photo.avif", "photo-150x150.webp", "photo-150x150.avif"):
        assert (media_dir / name).is_file()


def test_request_is_immutable(make_image):
    request = _request(make_image("photo.png"), make_image("t.png"), "hybrid")
    assert request.mode == ConversionMode.HYBRID
    assert request.rendition_sizes == ("thumbnail", "full")
    with pytest.raises(TypeError):
        request.renditions["large"] = "x"
    with pytest.raises(Exception):
        request.asset_id = 8


def test_source_already_in_target_format_is_not_planned(pipeline, media_dir):
    source = media_dir / "pic.webp"
    source.write_bytes(b"RIFF" + b"\x00" * 38)
    request = ConversionRequest(
        asset_id=9,
        source_path=str(source),
        mimetype="image/webp",
        requested_formats=("webp", "avif"),
        mode=ConversionMode.HYBRID,
    )

    units = plan_request(request, pipeline.selector())

    assert [(u.format, u.destination_path) for u in units] == [("avif", str(media_dir / "pic.avif"))]


def test_rendition_matching_target_extension_is_not_planned(pipeline, make_image, media_dir):
    thumb = media_dir / "photo-150x150.webp"
    thumb.write_bytes(b"RIFF" + b"\x00" * 20)
    request = ConversionRequest(
        asset_id=9,
        source_path=str(make_image("photo.png")),
        mimetype="image/png",
        requested_formats=("webp",),
        renditions={"thumbnail": str(thumb)},
    )

    units = plan_request(request, pipeline.selector())

    assert [u.size_name for u in units] == ["full"]


def test_convert_refuses_to_overwrite_its_source(pipeline, fake_backend, media_dir):
    source = media_dir / "pic.webp"
    source.write_bytes(b"RIFF" + b"\x00" * 38)

    result = pipeline.convert(source, source, "webp", {"quality": 80})

    assert not result.success
    assert result.code == "destination_is_source"
    assert result.retryable is False
    assert source.read_bytes() == b"RIFF" + b"\x00" * 38
    assert fake_backend.calls == []
