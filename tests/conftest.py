import os
import tempfile
from pathlib import Path

import pytest
from PIL import Image

# Keep import-time directory creation out of the source tree
_SCRATCH = Path(tempfile.mkdtemp(prefix="mediavariants-tests-"))
os.environ.setdefault("MEDIA_ROOT", str(_SCRATCH / "media"))
os.environ.setdefault("UPLOAD_TMP_DIR", str(_SCRATCH / "uploads"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_SCRATCH / 'bootstrap.db'}")

from mediavariants import assets, db  # noqa: E402
from mediavariants import config as app_config  # noqa: E402
from mediavariants.conversion import service as service_module  # noqa: E402
from mediavariants.conversion.capabilities import CLI, FFMPEG, PILLOW, CapabilityDetector, ProbeResult  # noqa: E402
from mediavariants.conversion.models import Format  # noqa: E402
from mediavariants.conversion.orchestrator import ConversionOrchestrator  # noqa: E402
from mediavariants.conversion.store import VariantStore  # noqa: E402
from mediavariants.conversion.tracker import ConversionTracker  # noqa: E402
from mediavariants.settings import default_settings  # noqa: E402


class FakeEncoder:
    """Records every call and writes a small output file instead of running a codec."""

    def __init__(self, output_bytes: int = 64, fail=None):
        self.calls = []
        self.output_bytes = output_bytes
        # fail(fmt, source, dest) -> exception instance or None
        self.fail = fail

    def encode(self, fmt, source, dest, options):
        self.calls.append({"format": fmt, "source": Path(source), "dest": Path(dest), "options": options})
        if self.fail is not None:
            error = self.fail(fmt, Path(source), Path(dest))
            if error is not None:
                raise error
        Path(dest).write_bytes(b"v" * self.output_bytes)
        return True

    def formats(self):
        return [c["format"] for c in self.calls]


def fake_detector(image_formats=(Format.WEBP, Format.AVIF), video_formats=(Format.AV1, Format.WEBM)):
    return CapabilityDetector(probes={
        PILLOW: lambda: ProbeResult(frozenset(image_formats)),
        CLI: lambda: ProbeResult(error="not installed"),
        FFMPEG: lambda: ProbeResult(frozenset(video_formats)),
    })


def make_image(path: Path, size=(1200, 800), color=(200, 40, 40), fmt="JPEG") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, format=fmt, quality=95)
    return path


def make_animated_gif(path: Path, size=(600, 400), frames=3) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    images = [Image.new("RGB", size, (i * 80 % 256, 40, 200 - i * 50 % 200)) for i in range(frames)]
    images[0].save(path, save_all=True, append_images=images[1:], duration=100, loop=0)
    return path


@pytest.fixture(autouse=True)
def app_env(tmp_path, monkeypatch):
    """Fresh media root, SQLite database and service singleton for every test."""
    media = tmp_path / "media"
    uploads = tmp_path / "uploads"
    media.mkdir()
    uploads.mkdir()
    monkeypatch.setattr(app_config, "MEDIA_ROOT", media)
    monkeypatch.setattr(app_config, "UPLOAD_TMP_DIR", uploads)
    monkeypatch.setattr(app_config, "MEDIA_BASE_URL", "/media")
    monkeypatch.setattr(app_config, "DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setattr(app_config, "REGISTERED_SIZES", {"thumbnail": (150, 150, True), "medium": (300, 300, False)})
    monkeypatch.setattr(service_module, "_conversion_service", None)
    db.dispose_engine()
    db.init_db()
    yield media
    svc = service_module._conversion_service
    if svc is not None:
        svc.shutdown()
    db.dispose_engine()


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def settings():
    s = default_settings()
    s.image_formats = [Format.WEBP, Format.AVIF]
    s.video_formats = [Format.AV1, Format.WEBM]
    return s


@pytest.fixture
def store():
    return VariantStore()


@pytest.fixture
def tracker():
    return ConversionTracker()


@pytest.fixture
def orchestrator(store, tracker, encoder, settings):
    return ConversionOrchestrator(
        store=store,
        tracker=tracker,
        detector=fake_detector(),
        encoders={PILLOW: encoder, CLI: encoder, FFMPEG: encoder},
        settings_provider=lambda: settings,
    )


@pytest.fixture
def image_asset(tmp_path):
    """A 1200x800 JPEG registered with thumbnail (150x150 crop) and medium (300x200) renditions."""
    upload = make_image(tmp_path / "uploads" / "upload.jpg")
    return assets.create_asset(upload, "photo.jpg", "image/jpeg")


@pytest.fixture
def video_asset(tmp_path):
    upload = tmp_path / "uploads" / "clip.mp4"
    upload.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 4096)
    return assets.create_asset(upload, "clip.mp4", "video/mp4")
