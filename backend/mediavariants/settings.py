"""Runtime conversion settings: env defaults from config overlaid with options stored in the settings table."""
import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from mediavariants import config as app_config
from mediavariants import db
from mediavariants.conversion.models import Format, MediaKind, parse_formats

logger = logging.getLogger("mediavariants.settings")


@dataclass
class ConversionSettings:
    image_formats: list[Format] = field(default_factory=list)
    video_formats: list[Format] = field(default_factory=list)
    webp_quality: int = 75
    webp_lossless: bool = False
    avif_quality: int = 70
    avif_speed: int = 6
    av1_crf: int = 28
    av1_cpu_used: int = 4
    webm_crf: int = 30
    webm_speed: int = 4
    hybrid_approach: bool = True
    image_auto_convert: bool = True
    video_auto_convert: bool = True

    def formats_for(self, kind: MediaKind) -> list[Format]:
        return list(self.image_formats if kind is MediaKind.IMAGE else self.video_formats)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["image_formats"] = [f.value for f in self.image_formats]
        d["video_formats"] = [f.value for f in self.video_formats]
        return d


_INT_KEYS = {f.name for f in fields(ConversionSettings) if f.type in (int, "int")}
_BOOL_KEYS = {f.name for f in fields(ConversionSettings) if f.type in (bool, "bool")}
_FORMAT_KEYS = {"image_formats": MediaKind.IMAGE, "video_formats": MediaKind.VIDEO}
SETTING_KEYS = _INT_KEYS | _BOOL_KEYS | set(_FORMAT_KEYS)


def default_settings() -> ConversionSettings:
    return ConversionSettings(
        image_formats=parse_formats(app_config.IMAGE_FORMATS, MediaKind.IMAGE),
        video_formats=parse_formats(app_config.VIDEO_FORMATS, MediaKind.VIDEO),
        webp_quality=app_config.WEBP_QUALITY,
        webp_lossless=app_config.WEBP_LOSSLESS,
        avif_quality=app_config.AVIF_QUALITY,
        avif_speed=app_config.AVIF_SPEED,
        av1_crf=app_config.AV1_CRF,
        av1_cpu_used=app_config.AV1_CPU_USED,
        webm_crf=app_config.WEBM_CRF,
        webm_speed=app_config.WEBM_SPEED,
        hybrid_approach=app_config.HYBRID_APPROACH,
        image_auto_convert=app_config.IMAGE_AUTO_CONVERT,
        video_auto_convert=app_config.VIDEO_AUTO_CONVERT,
    )


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw option to its field type. Raises ValueError for values that cannot be converted."""
    if key in _FORMAT_KEYS:
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, (list, tuple)):
            raise ValueError(f"{key} must be a list of formats")
        return parse_formats(value, _FORMAT_KEYS[key])
    if key in _BOOL_KEYS:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if key in _INT_KEYS:
        if isinstance(value, bool):
            raise ValueError(f"{key} must be an integer")
        return int(value)
    raise ValueError(f"Unknown setting: {key}")


def _apply(settings: ConversionSettings, options: dict) -> ConversionSettings:
    for key, value in options.items():
        if key not in SETTING_KEYS:
            continue
        try:
            setattr(settings, key, _coerce(key, value))
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring stored setting %s=%r: %s", key, value, e)
    return settings


def get_settings() -> ConversionSettings:
    """Current settings. Read fresh on every call so configuration changes apply to the next pass."""
    return _apply(default_settings(), db.get_options())


def update_settings(options: dict) -> ConversionSettings:
    """Validate and persist options. Raises ValueError on unknown keys or unconvertible values."""
    clean: dict = {}
    for key, value in options.items():
        if key not in SETTING_KEYS:
            raise ValueError(f"Unknown setting: {key}")
        coerced = _coerce(key, value)
        clean[key] = [f.value for f in coerced] if key in _FORMAT_KEYS else coerced
    if clean:
        db.save_options(clean)
        logger.info("Settings updated: %s", ", ".join(sorted(clean)))
    return get_settings()


def reset_settings() -> ConversionSettings:
    db.delete_options()
    logger.info("Settings reset to defaults")
    return get_settings()
