"""Real encodes through Pillow. Skipped when this Pillow build lacks WebP."""
import pytest
from PIL import Image, features

from mediaopt.conversion.capabilities import CapabilityDetector
from mediaopt.conversion.imaging import PillowProcessor, is_animated
from mediaopt.conversion.pipeline import ConversionPipeline

webp_only = pytest.mark.skipif(not features.check("webp"), reason="Pillow built without WebP")


def test_is_animated(make_image):
    assert is_animated(make_image("anim.gif", animated=True)) is True
    assert is_animated(make_image("still.png")) is False


def test_is_animated_on_garbage_is_false(media_dir):
    path = media_dir / "junk.gif"
    path.write_bytes(b"not an image")
    assert is_animated(path) is False


@webp_only
def test_pillow_probe_reports_webp():
    capability = PillowProcessor().probe()
    assert capability.available
    assert capability.supports("webp")
    assert capability.version_string.startswith("Pillow ")


@webp_only
def test_pillow_converts_png_to_webp(make_image, media_dir):
    pipeline = ConversionPipeline(CapabilityDetector(backends=[PillowProcessor()]))
    source = make_image("photo.png", size=(120, 80))

    result = pipeline.convert(source, media_dir / "photo.webp", "webp", {"quality": 75})

    assert result.success, result
    with Image.open(result.destination_path) as img:
        assert img.format == "WEBP"
        assert img.size == (120, 80)


@webp_only
def test_pillow_keeps_animation_when_supported(make_image, media_dir):
    processor = PillowProcessor()
    if not processor.probe().preserves_animation("webp"):
        pytest.skip("Pillow cannot write animated WebP here")
    pipeline = ConversionPipeline(CapabilityDetector(backends=[processor]))

    result = pipeline.convert(make_image("anim.gif", animated=True), media_dir / "anim.webp", "webp")

    assert result.success
    assert result.animation_lost is False
    with Image.open(result.destination_path) as img:
        assert img.n_frames == 3


def test_corrupt_source_is_permanent_failure(media_dir):
    source = media_dir / "broken.png"
    source.write_bytes(b"\x89PNG garbage")
    pipeline = ConversionPipeline(CapabilityDetector(backends=[PillowProcessor()]))
    if not pipeline.detector.get_matrix().supports("webp"):
        pytest.skip("Pillow built without WebP")

    result = pipeline.convert(source, media_dir / "broken.webp", "webp")

    assert not result.success
    assert result.retryable is False
    assert not (media_dir / "broken.webp").exists()
