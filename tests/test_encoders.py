import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image, features

from conftest import make_animated_gif, make_image
from mediavariants.conversion.encoders import CliEncoder, FFmpegEncoder, PillowEncoder, run_encoder_command
from mediavariants.conversion.errors import EncodeError
from mediavariants.conversion.models import EncodeOptions, Format

needs_webp = pytest.mark.skipif(not features.check("webp"), reason="Pillow built without WebP")


def _avif_supported() -> bool:
    Image.init()
    return "AVIF" in Image.SAVE


def test_cwebp_command():
    cmd = CliEncoder.command(Format.WEBP, Path("/m/a.jpg"), Path("/m/a.webp"), EncodeOptions(quality=80, lossless=True))
    assert cmd == ["cwebp", "-q", "80", "-m", "4", "-metadata", "none", "-lossless", "/m/a.jpg", "-o", "/m/a.webp"]


def test_avifenc_command_maps_quality_to_quantizer():
    cmd = CliEncoder.command(Format.AVIF, Path("/m/a.jpg"), Path("/m/a.avif"), EncodeOptions(quality=70, speed=6))
    assert cmd == ["avifenc", "--speed", "6", "--min", "18", "--max", "18", "/m/a.jpg", "/m/a.avif"]


def test_ffmpeg_av1_command():
    cmd = FFmpegEncoder().command(Format.AV1, Path("/m/c.mp4"), Path("/m/c.av1.mp4"), EncodeOptions(crf=28, speed=4))
    assert cmd[:4] == ["ffmpeg", "-y", "-i", "/m/c.mp4"]
    assert cmd[cmd.index("-c:v") + 1] == "libaom-av1"
    assert cmd[cmd.index("-crf") + 1] == "28"
    assert cmd[cmd.index("-cpu-used") + 1] == "4"
    assert cmd[cmd.index("-c:a") + 1] == "libopus"
    assert "+faststart" in cmd
    assert cmd[-1] == "/m/c.av1.mp4"


def test_ffmpeg_webm_command():
    cmd = FFmpegEncoder("/opt/ffmpeg").command(Format.WEBM, Path("/m/c.mp4"), Path("/m/c.webm"), EncodeOptions(crf=30, speed=2))
    assert cmd[0] == "/opt/ffmpeg"
    assert cmd[cmd.index("-c:v") + 1] == "libvpx-vp9"
    assert cmd[cmd.index("-speed") + 1] == "2"
    assert cmd[cmd.index("-c:a") + 1] == "libvorbis"


def test_unsupported_formats_raise():
    with pytest.raises(EncodeError):
        FFmpegEncoder().command(Format.WEBP, Path("a"), Path("b"), EncodeOptions())
    with pytest.raises(EncodeError):
        CliEncoder.command(Format.AV1, Path("a"), Path("b"), EncodeOptions())


@patch("subprocess.run")
def test_failed_command_raises_and_removes_output(mock_run, tmp_path):
    dest = tmp_path / "c.webm"
    dest.write_bytes(b"partial")
    mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="frame=1\nError while opening encoder\n")

    with pytest.raises(EncodeError, match="Error while opening encoder"):
        FFmpegEncoder().encode(Format.WEBM, tmp_path / "c.mp4", dest, EncodeOptions(crf=30, speed=4))
    assert not dest.exists()


@patch("subprocess.run")
def test_encoders_refuse_to_overwrite_their_source(mock_run, tmp_path):
    source = tmp_path / "clip.webm"
    source.write_bytes(b"original")

    with pytest.raises(EncodeError, match="overwrite"):
        FFmpegEncoder().encode(Format.WEBM, source, source, EncodeOptions(crf=30, speed=4))
    with pytest.raises(EncodeError, match="overwrite"):
        PillowEncoder().encode(Format.WEBP, source, source, EncodeOptions(quality=75))

    mock_run.assert_not_called()
    assert source.read_bytes() == b"original"


@patch("subprocess.run")
def test_successful_command(mock_run, tmp_path):
    mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
    assert CliEncoder().encode(Format.WEBP, tmp_path / "a.jpg", tmp_path / "a.webp", EncodeOptions(quality=75))
    cmd = mock_run.call_args[0][0]
    assert cmd[0] == "cwebp"
    assert mock_run.call_args[1]["timeout"] > 0


def test_run_encoder_command_errors():
    with patch("subprocess.run", side_effect=FileNotFoundError()):
        with pytest.raises(EncodeError, match="cwebp not installed"):
            run_encoder_command(["cwebp", "a", "-o", "b"])
    with patch("subprocess.run", side_effect=subprocess.TimeoutExpired("avifenc", 5)):
        with pytest.raises(EncodeError, match="timed out after 5s"):
            run_encoder_command(["avifenc", "a", "b"], timeout=5)


@needs_webp
def test_pillow_webp(tmp_path):
    source = make_image(tmp_path / "a.jpg", size=(400, 300))
    dest = tmp_path / "a.webp"

    assert PillowEncoder().encode(Format.WEBP, source, dest, EncodeOptions(quality=75))

    with Image.open(dest) as img:
        assert img.format == "WEBP"
        assert img.size == (400, 300)


@needs_webp
def test_pillow_resize_hints(tmp_path):
    source = make_image(tmp_path / "a.jpg", size=(400, 300))
    dest = tmp_path / "a.webp"

    PillowEncoder().encode(Format.WEBP, source, dest, EncodeOptions(quality=75, width=100, height=100, crop=True))

    with Image.open(dest) as img:
        assert img.size == (100, 100)


@needs_webp
def test_pillow_animated_webp_keeps_frames(tmp_path):
    source = make_animated_gif(tmp_path / "anim.gif", size=(200, 100), frames=3)
    dest = tmp_path / "anim.webp"

    PillowEncoder().encode(Format.WEBP, source, dest, EncodeOptions(quality=75, animated=True, width=100, height=100))

    with Image.open(dest) as img:
        assert img.n_frames == 3
        assert img.size == (100, 50)


@pytest.mark.skipif(not _avif_supported(), reason="Pillow built without AVIF")
def test_pillow_avif(tmp_path):
    source = make_image(tmp_path / "a.png", size=(64, 48), fmt="PNG")
    dest = tmp_path / "a.avif"

    PillowEncoder().encode(Format.AVIF, source, dest, EncodeOptions(quality=70, speed=8))

    with Image.open(dest) as img:
        assert img.size == (64, 48)


def test_pillow_unreadable_source(tmp_path):
    source = tmp_path / "broken.jpg"
    source.write_bytes(b"not an image")
    dest = tmp_path / "broken.webp"

    with pytest.raises(EncodeError):
        PillowEncoder().encode(Format.WEBP, source, dest, EncodeOptions(quality=75))
    assert not dest.exists()
