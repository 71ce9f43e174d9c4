"""Codec collaborators. Each exposes encode(fmt, source, dest, options) -> bool and raises EncodeError on failure."""
import logging
import subprocess
from pathlib import Path
from typing import Optional

from PIL import Image, ImageSequence

from mediavariants import config as app_config
from mediavariants.conversion.capabilities import CLI, FFMPEG, PILLOW
from mediavariants.conversion.errors import EncodeError
from mediavariants.conversion.models import EncodeOptions, Format, same_path
from mediavariants.conversion.options import quality_to_quantizer
from mediavariants.conversion.resize import normalize_mode, resize_for_size, resize_frames

logger = logging.getLogger("mediavariants.encoders")


def run_encoder_command(cmd: list[str], timeout: Optional[int] = None) -> None:
    """Run an encoder subprocess. Non-zero exit, timeout or a missing binary raise EncodeError."""
    timeout = timeout or app_config.ENCODE_TIMEOUT
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise EncodeError(f"{cmd[0]} not installed") from e
    except subprocess.TimeoutExpired as e:
        raise EncodeError(f"{cmd[0]} timed out after {timeout}s") from e
    if result.returncode != 0:
        message = (result.stderr or result.stdout or f"{cmd[0]} failed").strip()
        raise EncodeError(message.splitlines()[-1] if message else f"{cmd[0]} failed")


def _check_dest(source: Path, dest: Path) -> None:
    if same_path(source, dest):
        raise EncodeError(f"output {dest.name} would overwrite its source")


def _discard(dest: Path, source: Path) -> None:
    if same_path(source, dest):
        logger.error("Refusing to remove %s: it is the encoder source", dest)
        return
    try:
        dest.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove partial output %s: %s", dest, e)


class PillowEncoder:
    """WebP/AVIF through Pillow. Supports lossless WebP, resize hints and animated sources."""

    name = PILLOW

    @staticmethod
    def _save_kwargs(fmt: Format, options: EncodeOptions) -> dict:
        if fmt is Format.WEBP:
            kw = {"format": "WEBP", "quality": options.quality, "method": 4}
            if options.lossless:
                kw["lossless"] = True
            return kw
        if fmt is Format.AVIF:
            kw = {"format": "AVIF", "quality": options.quality}
            if options.speed is not None:
                kw["speed"] = options.speed
            return kw
        raise EncodeError(f"Pillow cannot encode {fmt.value}")

    def encode(self, fmt: Format, source: Path, dest: Path, options: EncodeOptions) -> bool:
        _check_dest(source, dest)
        save_kw = self._save_kwargs(fmt, options)
        try:
            with Image.open(source) as img:
                if options.animated and getattr(img, "is_animated", False):
                    durations = [frame.info.get("duration", 100) for frame in ImageSequence.Iterator(img)]
                    frames = resize_frames(img, options.width or 0, options.height or 0, options.crop)
                    frames[0].save(
                        str(dest),
                        save_all=True,
                        append_images=frames[1:],
                        duration=durations,
                        loop=img.info.get("loop", 0),
                        **save_kw,
                    )
                else:
                    work = normalize_mode(img)
                    if options.width or options.height:
                        work = resize_for_size(work, options.width or 0, options.height or 0, options.crop)
                    # No exif/icc passed: metadata is stripped
                    work.save(str(dest), **save_kw)
        except (OSError, ValueError, KeyError) as e:
            _discard(dest, source)
            raise EncodeError(str(e) or type(e).__name__) from e
        logger.info("Encoded %s -> %s", source.name, dest.name)
        return True


class CliEncoder:
    """Baseline still-image encoder using cwebp and avifenc."""

    name = CLI

    @staticmethod
    def command(fmt: Format, source: Path, dest: Path, options: EncodeOptions) -> list[str]:
        if fmt is Format.WEBP:
            cmd = ["cwebp", "-q", str(options.quality), "-m", "4", "-metadata", "none"]
            if options.lossless:
                cmd.append("-lossless")
            return cmd + [str(source), "-o", str(dest)]
        if fmt is Format.AVIF:
            quantizer = str(quality_to_quantizer(options.quality))
            return [
                "avifenc",
                "--speed", str(options.speed if options.speed is not None else 6),
                "--min", quantizer, "--max", quantizer,
                str(source), str(dest),
            ]
        raise EncodeError(f"cli encoder cannot encode {fmt.value}")

    def encode(self, fmt: Format, source: Path, dest: Path, options: EncodeOptions) -> bool:
        _check_dest(source, dest)
        cmd = self.command(fmt, source, dest, options)
        try:
            run_encoder_command(cmd)
        except EncodeError:
            _discard(dest, source)
            raise
        logger.info("Encoded %s -> %s with %s", source.name, dest.name, cmd[0])
        return True


class FFmpegEncoder:
    """AV1 (libaom) and VP9 WebM video through ffmpeg."""

    name = FFMPEG

    def __init__(self, binary: str = "ffmpeg"):
        self.binary = binary

    def command(self, fmt: Format, source: Path, dest: Path, options: EncodeOptions) -> list[str]:
        if fmt is Format.AV1:
            return [
                self.binary, "-y", "-i", str(source),
                "-c:v", "libaom-av1", "-crf", str(options.crf), "-b:v", "0",
                "-cpu-used", str(options.speed),
                "-c:a", "libopus", "-b:a", "128k",
                "-movflags", "+faststart",
                str(dest),
            ]
        if fmt is Format.WEBM:
            return [
                self.binary, "-y", "-i", str(source),
                "-c:v", "libvpx-vp9", "-crf", str(options.crf), "-b:v", "0",
                "-speed", str(options.speed),
                "-c:a", "libvorbis", "-b:a", "128k",
                str(dest),
            ]
        raise EncodeError(f"ffmpeg encoder cannot encode {fmt.value}")

    def encode(self, fmt: Format, source: Path, dest: Path, options: EncodeOptions) -> bool:
        _check_dest(source, dest)
        cmd = self.command(fmt, source, dest, options)
        try:
            run_encoder_command(cmd)
        except EncodeError:
            _discard(dest, source)
            raise
        logger.info("Converted video %s -> %s", source.name, dest.name)
        return True


def default_encoders() -> dict:
    return {
        PILLOW: PillowEncoder(),
        CLI: CliEncoder(),
        FFMPEG: FFmpegEncoder(),
    }
