"""Shared fixtures: temporary database, settings, generated media and fake codec backends."""
import os
import tempfile

# Keep media/data directories out of the source tree before mediaopt.config is imported
_TMP_ROOT = tempfile.mkdtemp(prefix="mediaopt-tests-")
os.environ.setdefault("MEDIA_ROOT", os.path.join(_TMP_ROOT, "media"))
os.environ.setdefault("DATA_DIR", os.path.join(_TMP_ROOT, "data"))

import pytest
from PIL import Image

from mediaopt import config, db
from mediaopt.config import ConversionSettings
from mediaopt.conversion.capabilities import CapabilityDetector
from mediaopt.conversion.models import FormatSupport, MediaKind, ProcessorCapability, SupportedFormats
from mediaopt.conversion.pipeline import ConversionPipeline
from mediaopt.library import MediaLibrary
from mediaopt.tracker import ConversionTracker


class FakeBackend:
    """Stands in for a codec backend; writes half the source size as output."""

    def __init__(self, name, kind=MediaKind.IMAGE, formats=None, animation=(), fail_with=None, gate=None):
        self.name = name
        self.kind = kind
        targets = SupportedFormats.IMAGE if kind == MediaKind.IMAGE else SupportedFormats.VIDEO
        supported = set(targets if formats is None else formats)
        self.formats = {f: FormatSupport(f in supported, f in supported and f in animation) for f in targets}
        self.fail_with = fail_with
        self.gate = gate
        self.calls = []

    def probe(self):
        return ProcessorCapability(self.name, self.kind, True, f"{self.name} 1.0", self.formats)

    def convert(self, source, destination, fmt, options, animated=False):
        self.calls.append({"source": str(source), "destination": str(destination), "format": fmt, "options": dict(options), "animated": animated})
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.fail_with is not None:
            with open(destination, "wb") as fh:
                fh.write(b"partial")
            raise self.fail_with
        size = os.path.getsize(source)
        with open(destination, "wb") as fh:
            fh.write(b"x" * max(1, size // 2))


class BrokenBackend(FakeBackend):
    def probe(self):
        raise RuntimeError("library not installed")


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    db.reset_engine()
    db.init_db()
    yield
    db.reset_engine()


@pytest.fixture
def settings():
    return ConversionSettings(
        image_formats=("webp",),
        video_formats=("av1",),
        account_id="acct-123",
        external_service_url="http://remote.test",
        webhook_url="http://media.test/api/webhook",
        media_base_url="http://media.test/media",
        cdn_base_url="https://cdn.test",
    )


@pytest.fixture
def media_dir(tmp_path):
    path = tmp_path / "media"
    path.mkdir()
    return path


@pytest.fixture
def make_image(media_dir):
    def _make(name="photo.png", size=(64, 48), color="red", animated=False):
        path = media_dir / name
        if animated:
            frames = [Image.new("RGB", size, c) for c in ("red", "green", "blue")]
            frames[0].save(path, save_all=True, append_images=frames[1:], duration=100, loop=0)
        else:
            Image.new("RGB", size, color).save(path)
        return path

    return _make


@pytest.fixture
def fake_backend():
    return FakeBackend("pillow")


@pytest.fixture
def detector(fake_backend):
    return CapabilityDetector(backends=[fake_backend])


@pytest.fixture
def pipeline(detector):
    return ConversionPipeline(detector)


@pytest.fixture
def tracker(database):
    return ConversionTracker()


@pytest.fixture
def library(database, media_dir):
    return MediaLibrary(media_root=media_dir, media_base_url="http://media.test/media")
