import subprocess
from unittest.mock import MagicMock, patch

from conftest import fake_detector
from mediavariants.conversion.capabilities import (
    CLI,
    FFMPEG,
    PILLOW,
    Capability,
    CapabilityDetector,
    ProbeResult,
    best_encoder,
    probe_cli,
    probe_ffmpeg,
)
from mediavariants.conversion.models import Format


def test_probe_reports_failures_without_raising():
    caps = CapabilityDetector(probes={
        PILLOW: lambda: ProbeResult(frozenset({Format.WEBP})),
        CLI: lambda: ProbeResult(error="cwebp and avifenc not found on PATH"),
        FFMPEG: lambda: ProbeResult(frozenset()),
    }).probe()

    assert caps[PILLOW] == Capability(available=True, supports=frozenset({Format.WEBP}))
    assert caps[CLI].available is False
    assert caps[CLI].error == "cwebp and avifenc not found on PATH"
    assert caps[FFMPEG].available is False
    assert caps[PILLOW].to_dict() == {"available": True, "supports": ["webp"], "error": None}


def test_probe_runs_every_time():
    calls = []

    def probe():
        calls.append(1)
        return ProbeResult(frozenset({Format.WEBP}))

    detector = CapabilityDetector(probes={PILLOW: probe})
    detector.probe()
    detector.probe()
    assert len(calls) == 2


def test_best_encoder_prefers_richest():
    caps = fake_detector().probe()
    caps[CLI] = Capability(available=True, supports=frozenset({Format.WEBP, Format.AVIF}))

    assert best_encoder(Format.WEBP, caps) == PILLOW
    assert best_encoder(Format.AV1, caps) == FFMPEG
    assert best_encoder(Format.ORIGINAL, caps) is None

    caps[PILLOW] = Capability(available=True, supports=frozenset({Format.WEBP}))
    assert best_encoder(Format.AVIF, caps) == CLI


def test_best_encoder_animated_needs_pillow():
    caps = {
        PILLOW: Capability(available=True, supports=frozenset({Format.WEBP})),
        CLI: Capability(available=True, supports=frozenset({Format.WEBP, Format.AVIF})),
    }
    assert best_encoder(Format.WEBP, caps, animated=True) == PILLOW
    assert best_encoder(Format.AVIF, caps, animated=True) is None
    assert best_encoder(Format.AVIF, caps) == CLI


def test_probe_cli():
    with patch("shutil.which", side_effect=lambda name: "/usr/bin/cwebp" if name == "cwebp" else None):
        result = probe_cli()
    assert result.ok
    assert result.value == frozenset({Format.WEBP})

    with patch("shutil.which", return_value=None):
        assert not probe_cli().ok


def test_probe_ffmpeg_lists_encoders():
    listing = " V..... libaom-av1           libaom AV1\n V..... libvpx-vp9           libvpx VP9\n"
    with patch("shutil.which", return_value="/usr/bin/ffmpeg"), \
            patch("subprocess.run", return_value=MagicMock(returncode=0, stdout=listing, stderr="")) as run:
        result = probe_ffmpeg()

    assert result.value == frozenset({Format.AV1, Format.WEBM})
    assert run.call_args[0][0] == ["/usr/bin/ffmpeg", "-hide_banner", "-encoders"]


def test_probe_ffmpeg_without_av1():
    listing = " V..... libvpx-vp9           libvpx VP9\n"
    with patch("shutil.which", return_value="/usr/bin/ffmpeg"), \
            patch("subprocess.run", return_value=MagicMock(returncode=0, stdout=listing, stderr="")):
        assert probe_ffmpeg().value == frozenset({Format.WEBM})


def test_probe_ffmpeg_failures():
    with patch("shutil.which", return_value=None):
        assert probe_ffmpeg().error == "ffmpeg not found on PATH"

    with patch("shutil.which", return_value="/usr/bin/ffmpeg"), \
            patch("subprocess.run", side_effect=subprocess.TimeoutExpired("ffmpeg", 15)):
        result = probe_ffmpeg()
    assert not result.ok
    assert result.error.startswith("ffmpeg probe failed")
