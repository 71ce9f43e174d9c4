"""Encoder option building. Out-of-range values are clamped to the encoder's domain, never rejected."""
from mediavariants.conversion.models import EncodeOptions, Format

QUALITY_MIN, QUALITY_MAX = 1, 100
CRF_MIN, CRF_MAX = 0, 63
AVIF_SPEED_MAX = 10
AV1_CPU_USED_MAX = 8
WEBM_SPEED_MAX = 9


def _clamp(value, low: int, high: int) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        value = low
    return max(low, min(high, value))


def clamp_quality(value) -> int:
    return _clamp(value, QUALITY_MIN, QUALITY_MAX)


def clamp_crf(value) -> int:
    return _clamp(value, CRF_MIN, CRF_MAX)


def clamp_speed(value, maximum: int) -> int:
    return _clamp(value, 0, maximum)


def quality_to_quantizer(quality: int) -> int:
    """Map a 1-100 quality to the 0-63 AVIF quantizer scale (lower is better)."""
    return clamp_crf(int(63 - clamp_quality(quality) * 0.63))


def build_encode_options(fmt: Format, settings) -> EncodeOptions:
    """Options for fmt from a ConversionSettings-like object."""
    if fmt is Format.WEBP:
        return EncodeOptions(quality=clamp_quality(settings.webp_quality), lossless=bool(settings.webp_lossless))
    if fmt is Format.AVIF:
        return EncodeOptions(
            quality=clamp_quality(settings.avif_quality),
            speed=clamp_speed(settings.avif_speed, AVIF_SPEED_MAX),
        )
    if fmt is Format.AV1:
        return EncodeOptions(crf=clamp_crf(settings.av1_crf), speed=clamp_speed(settings.av1_cpu_used, AV1_CPU_USED_MAX))
    if fmt is Format.WEBM:
        return EncodeOptions(crf=clamp_crf(settings.webm_crf), speed=clamp_speed(settings.webm_speed, WEBM_SPEED_MAX))
    raise ValueError(f"No encoder options for format: {fmt}")
