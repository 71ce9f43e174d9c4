import pytest

from mediavariants import config as app_config
from mediavariants import db
from mediavariants.config import parse_size_registry
from mediavariants.conversion.models import Format, MediaKind
from mediavariants.settings import SETTING_KEYS, default_settings, get_settings, reset_settings, update_settings


def test_defaults_come_from_config(monkeypatch):
    monkeypatch.setattr(app_config, "IMAGE_FORMATS", ["avif", "webp", "av1", "jpeg"])
    monkeypatch.setattr(app_config, "WEBP_QUALITY", 82)

    settings = default_settings()

    assert settings.image_formats == [Format.AVIF, Format.WEBP]
    assert settings.webp_quality == 82
    assert settings.formats_for(MediaKind.IMAGE) == [Format.AVIF, Format.WEBP]


def test_update_is_persisted_and_read_fresh():
    updated = update_settings({"image_formats": "avif,webp", "webp_quality": "90", "hybrid_approach": "false"})

    assert updated.image_formats == [Format.AVIF, Format.WEBP]
    assert updated.webp_quality == 90
    assert updated.hybrid_approach is False
    assert db.get_options()["image_formats"] == ["avif", "webp"]
    assert get_settings().webp_quality == 90


def test_update_rejects_unknown_keys_and_bad_values():
    with pytest.raises(ValueError, match="Unknown setting"):
        update_settings({"jpeg_quality": 80})
    with pytest.raises(ValueError):
        update_settings({"webp_quality": "high"})
    with pytest.raises(ValueError):
        update_settings({"image_formats": 5})
    assert db.get_options() == {}


def test_invalid_stored_values_are_ignored():
    db.save_options({"webp_quality": "high", "unrelated": 1})
    assert get_settings().webp_quality == default_settings().webp_quality


def test_reset():
    update_settings({"avif_speed": 2})
    assert reset_settings().avif_speed == default_settings().avif_speed
    assert db.get_options() == {}


def test_to_dict_round_trips_through_update():
    data = get_settings().to_dict()
    assert set(data) == SETTING_KEYS
    assert update_settings(data).to_dict() == data


def test_parse_size_registry():
    sizes = parse_size_registry("thumbnail:150x150:crop, medium:300x300,wide:768x0,full:10x10,broken:abc,bare")
    assert sizes == {
        "thumbnail": (150, 150, True),
        "medium": (300, 300, False),
        "wide": (768, 0, False),
    }
    assert list(sizes) == ["thumbnail", "medium", "wide"]
