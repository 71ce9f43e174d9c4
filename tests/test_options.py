import pytest

from mediavariants.conversion.models import Format
from mediavariants.conversion.options import (
    build_encode_options,
    clamp_crf,
    clamp_quality,
    clamp_speed,
    quality_to_quantizer,
)


def test_clamping():
    assert clamp_quality(150) == 100
    assert clamp_quality(0) == 1
    assert clamp_quality("80") == 80
    assert clamp_quality(None) == 1
    assert clamp_crf(-3) == 0
    assert clamp_crf(99) == 63
    assert clamp_speed(-5, 10) == 0
    assert clamp_speed(12, 8) == 8


def test_quality_to_quantizer():
    assert quality_to_quantizer(100) == 0
    assert quality_to_quantizer(70) == 18
    assert quality_to_quantizer(1) == 62


def test_build_encode_options(settings):
    settings.webp_quality, settings.webp_lossless = 75, True
    settings.avif_quality, settings.avif_speed = 70, 6
    settings.av1_crf, settings.webm_speed = 28, 4
    settings.av1_cpu_used = 20
    settings.webm_crf = 70

    webp = build_encode_options(Format.WEBP, settings)
    assert (webp.quality, webp.lossless) == (75, True)
    avif = build_encode_options(Format.AVIF, settings)
    assert (avif.quality, avif.speed) == (70, 6)
    av1 = build_encode_options(Format.AV1, settings)
    assert (av1.crf, av1.speed) == (28, 8)
    webm = build_encode_options(Format.WEBM, settings)
    assert (webm.crf, webm.speed) == (63, 4)

    with pytest.raises(ValueError):
        build_encode_options(Format.ORIGINAL, settings)
