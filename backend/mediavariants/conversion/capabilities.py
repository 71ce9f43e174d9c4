"""Encoder capability probing.

Each probe returns a ProbeResult instead of raising: a missing library or binary is a
normal outcome. Results are not cached; call probe() once per conversion pass."""
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Generic, Optional, TypeVar

from mediavariants.conversion.models import Format, MediaKind

logger = logging.getLogger("mediavariants.capabilities")

T = TypeVar("T")

PILLOW = "pillow"
CLI = "cli"
FFMPEG = "ffmpeg"

# Richest encoder first
ENCODER_PREFERENCE = {
    MediaKind.IMAGE: (PILLOW, CLI),
    MediaKind.VIDEO: (FFMPEG,),
}

FFMPEG_ENCODER_NAMES = {
    Format.AV1: ("libaom-av1", "libsvtav1"),
    Format.WEBM: ("libvpx-vp9",),
}


@dataclass
class ProbeResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Capability:
    available: bool = False
    supports: frozenset = field(default_factory=frozenset)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "supports": sorted(f.value for f in self.supports),
            "error": self.error,
        }


def probe_pillow() -> ProbeResult[frozenset]:
    try:
        from PIL import Image, features

        Image.init()
        supported = set()
        if features.check("webp") and "WEBP" in Image.SAVE:
            supported.add(Format.WEBP)
        if "AVIF" in Image.SAVE:
            supported.add(Format.AVIF)
        return ProbeResult(frozenset(supported))
    except (ImportError, OSError, ValueError) as e:
        return ProbeResult(error=f"Pillow unavailable: {e}")


def probe_cli() -> ProbeResult[frozenset]:
    supported = set()
    if shutil.which("cwebp"):
        supported.add(Format.WEBP)
    if shutil.which("avifenc"):
        supported.add(Format.AVIF)
    if not supported:
        return ProbeResult(error="cwebp and avifenc not found on PATH")
    return ProbeResult(frozenset(supported))


def probe_ffmpeg() -> ProbeResult[frozenset]:
    binary = shutil.which("ffmpeg")
    if not binary:
        return ProbeResult(error="ffmpeg not found on PATH")
    try:
        result = subprocess.run(
            [binary, "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
            timeout=15,
        )
    except (OSError, subprocess.SubprocessError) as e:
        return ProbeResult(error=f"ffmpeg probe failed: {e}")
    if result.returncode != 0:
        return ProbeResult(error=(result.stderr or "ffmpeg -encoders failed").strip())
    listed = result.stdout or ""
    supported = {
        fmt
        for fmt, names in FFMPEG_ENCODER_NAMES.items()
        if any(name in listed for name in names)
    }
    return ProbeResult(frozenset(supported))


class CapabilityDetector:
    """Probes the installed encoders and reports which formats each can produce."""

    def __init__(self, probes: Optional[dict[str, Callable[[], ProbeResult]]] = None):
        self._probes = probes if probes is not None else {
            PILLOW: probe_pillow,
            CLI: probe_cli,
            FFMPEG: probe_ffmpeg,
        }

    def probe(self) -> dict[str, Capability]:
        capabilities: dict[str, Capability] = {}
        for name, probe in self._probes.items():
            result = probe()
            if result.ok:
                supports = frozenset(result.value or ())
                capabilities[name] = Capability(available=bool(supports), supports=supports)
            else:
                logger.debug("Encoder %s unavailable: %s", name, result.error)
                capabilities[name] = Capability(available=False, error=result.error)
        return capabilities


def best_encoder(fmt: Format, capabilities: dict[str, Capability], animated: bool = False) -> Optional[str]:
    """Richest available encoder for fmt, or None when fmt is infeasible.
    Animated sources need the encoder that can keep every frame."""
    kind = fmt.media_kind
    if kind is None:
        return None
    for name in ENCODER_PREFERENCE[kind]:
        if animated and name != PILLOW:
            continue
        cap = capabilities.get(name)
        if cap and cap.available and fmt in cap.supports:
            return name
    return None
