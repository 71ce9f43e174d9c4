"""Conversion pass for one asset: prune stale sizes, clean up disabled formats, encode missing (size, format) pairs."""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from mediavariants import assets
from mediavariants import config as app_config
from mediavariants import db
from mediavariants.conversion.capabilities import Capability, CapabilityDetector, best_encoder
from mediavariants.conversion.encoders import default_encoders
from mediavariants.conversion.errors import EncodeError, SourceMissingError, StoreError
from mediavariants.conversion.gif import is_animated_gif
from mediavariants.conversion.models import (
    FULL_SIZE,
    Asset,
    EncodeOptions,
    Format,
    MediaKind,
    PassResult,
    Variant,
    output_path_for,
)
from mediavariants.conversion.options import build_encode_options
from mediavariants.conversion.store import (
    VariantMap,
    VariantStore,
    delete_variant_files,
    formats_present,
    path_for_url,
    url_for_path,
)
from mediavariants.conversion.tracker import ConversionTracker
from mediavariants.settings import ConversionSettings, get_settings

logger = logging.getLogger("mediavariants.orchestrator")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class ConversionOrchestrator:
    """Runs conversion passes. At most one pass per asset may be active; callers enforce that with the job guard."""

    def __init__(
        self,
        store: Optional[VariantStore] = None,
        tracker: Optional[ConversionTracker] = None,
        detector: Optional[CapabilityDetector] = None,
        encoders: Optional[dict] = None,
        settings_provider: Callable[[], ConversionSettings] = get_settings,
        asset_loader: Callable[[str], Asset] = assets.require_asset,
        size_names: Callable[[], list[str]] = assets.list_registered_size_names,
        clock: Callable[[], str] = db.now_iso,
    ):
        self.store = store or VariantStore()
        self.tracker = tracker or ConversionTracker()
        self.detector = detector or CapabilityDetector()
        self.encoders = encoders if encoders is not None else default_encoders()
        self.settings_provider = settings_provider
        self.asset_loader = asset_loader
        self.size_names = size_names
        self.clock = clock

    def orchestrate(
        self,
        asset_id: str,
        sources: Optional[dict[str, Path]] = None,
        formats: Optional[list[Format]] = None,
        settings: Optional[ConversionSettings] = None,
    ) -> PassResult:
        """One conversion pass. Only a metadata failure fails the whole pass; encode errors are collected."""
        try:
            return self._run(asset_id, sources or {}, formats, settings)
        except StoreError as e:
            logger.error("Conversion pass aborted for asset %s: %s", asset_id, e)
            return PassResult(success=False, errors=[str(e)])

    # Steps

    def _run(
        self,
        asset_id: str,
        sources: dict[str, Path],
        formats: Optional[list[Format]],
        settings: Optional[ConversionSettings],
    ) -> PassResult:
        if self.store.is_disabled(asset_id):
            logger.info("Conversion disabled for asset %s, skipping", asset_id)
            return PassResult(success=False, skipped="disabled")

        asset = self.asset_loader(asset_id)
        settings = settings or self.settings_provider()
        configured = list(formats) if formats is not None else settings.formats_for(asset.media_kind)
        result = PassResult()

        registered = self.size_names() if asset.media_kind is MediaKind.IMAGE else []
        self.store.prune_unregistered_sizes(asset_id, registered)
        variants = self.store.get_all_variants(asset_id)

        result.cleanup_happened = self._remove_disabled_formats(asset_id, variants, configured)
        if result.cleanup_happened:
            variants = self.store.get_all_variants(asset_id)

        capabilities = self.detector.probe()
        full_source = sources.get(FULL_SIZE) or Path(asset.file_path)
        animated = asset.media_kind is MediaKind.IMAGE and is_animated_gif(full_source)
        last_converted = _parse_timestamp(self.store.get_state(asset_id).last_converted_at)

        sizes = [FULL_SIZE] + [n for n in registered if n != FULL_SIZE]
        for size in sizes:
            try:
                source, rendition, hints = self._resolve_source(asset, size, sources, full_source, animated)
            except SourceMissingError as e:
                logger.warning("Skipping size %s for asset %s: %s", size, asset_id, e)
                continue
            for fmt in configured:
                self._convert_one(
                    asset_id, size, fmt, source, rendition, hints,
                    variants, capabilities, animated, last_converted, settings, result,
                )

        present = formats_present(variants)
        result.success = bool(present) or result.cleanup_happened
        if not result.success:
            logger.warning("No variants produced for asset %s (%d errors)", asset_id, len(result.errors))
            return result

        self.store.set_last_converted(asset_id, self.clock())
        result.converted_formats = [f for f in configured if f in present]
        self.store.set_converted_formats(asset_id, result.converted_formats)
        result.converted_locations = self._locations(variants, result.converted_formats)
        logger.info(
            "Conversion pass for asset %s: formats=%s errors=%d cleanup=%s",
            asset_id,
            ",".join(f.value for f in result.converted_formats) or "-",
            len(result.errors),
            result.cleanup_happened,
        )
        return result

    def _remove_disabled_formats(self, asset_id: str, variants: VariantMap, configured: list[Format]) -> bool:
        disabled = formats_present(variants) - set(configured)
        if not disabled:
            return False
        names = ", ".join(sorted(f.value for f in disabled))
        files = delete_variant_files(variants, disabled)
        count = self.store.delete_variants_for_formats(asset_id, disabled)
        try:
            self.tracker.delete_asset_conversions_by_formats(asset_id, disabled)
        except SQLAlchemyError as e:
            raise StoreError(f"Could not delete conversion records for asset {asset_id}: {e}") from e
        logger.info("Removed disabled formats for asset %s: %s (%d entries, %d files)", asset_id, names, count, files)
        return count > 0

    @staticmethod
    def _resolve_source(
        asset: Asset,
        size: str,
        sources: dict[str, Path],
        full_source: Path,
        animated: bool,
    ) -> tuple[Path, Path, Optional[tuple[int, int, bool]]]:
        """(file to encode, rendition the output is named after, resize hints)."""
        rendition = sources.get(size) or assets.size_source(asset, size)
        if rendition is None:
            raise SourceMissingError("size not rendered")
        rendition = Path(rendition)
        hints = None
        source = rendition
        if animated and size != FULL_SIZE:
            # Down-scaled renditions of an animated GIF are static; encode from the full file instead
            source = full_source
            rendered = asset.sizes.get(size)
            crop = app_config.REGISTERED_SIZES.get(size, (0, 0, False))[2]
            if rendered is not None:
                hints = (rendered.width, rendered.height, crop)
        if not source.is_file():
            raise SourceMissingError(f"source file missing: {source}")
        return source, rendition, hints

    @staticmethod
    def _is_current(variant: Variant, source: Path, last_converted: Optional[datetime]) -> bool:
        """An existing variant is kept when its file is present and the source has not changed since the last pass."""
        if last_converted is None:
            return False
        path = path_for_url(variant.url)
        if path is not None and not path.is_file():
            return False
        modified = datetime.fromtimestamp(source.stat().st_mtime, tz=timezone.utc)
        return modified <= last_converted

    def _convert_one(
        self,
        asset_id: str,
        size: str,
        fmt: Format,
        source: Path,
        rendition: Path,
        hints: Optional[tuple[int, int, bool]],
        variants: VariantMap,
        capabilities: dict[str, Capability],
        animated: bool,
        last_converted: Optional[datetime],
        settings: ConversionSettings,
        result: PassResult,
    ) -> None:
        encoder_name = best_encoder(fmt, capabilities, animated=animated)
        if encoder_name is None or encoder_name not in self.encoders:
            logger.debug("No encoder for %s, skipping %s/%s", fmt.value, asset_id, size)
            return
        existing = variants.get(size, {}).get(fmt)
        if existing is not None and self._is_current(existing, source, last_converted):
            return

        dest = output_path_for(rendition, fmt, source)
        options: EncodeOptions = build_encode_options(fmt, settings)
        if animated:
            options.animated = True
        if hints is not None:
            options.width, options.height, options.crop = hints

        try:
            ok = self.encoders[encoder_name].encode(fmt, source, dest, options)
        except EncodeError as e:
            result.errors.append(f"{size}/{fmt.value}: {e}")
            logger.warning("Encoding %s/%s failed for asset %s: %s", size, fmt.value, asset_id, e)
            return
        except Exception as e:
            result.errors.append(f"{size}/{fmt.value}: {e}")
            logger.exception("Encoder %s raised for asset %s %s/%s", encoder_name, asset_id, size, fmt.value)
            return
        if not ok or not dest.is_file():
            result.errors.append(f"{size}/{fmt.value}: encoder produced no output")
            logger.warning("Encoder %s produced no output for asset %s %s/%s", encoder_name, asset_id, size, fmt.value)
            return

        original_bytes = rendition.stat().st_size if rendition.is_file() else source.stat().st_size
        converted_bytes = dest.stat().st_size
        files = variants.setdefault(size, {})
        files[fmt] = Variant(format=fmt, url=url_for_path(dest), filesize=converted_bytes)
        files[Format.ORIGINAL] = Variant(format=Format.ORIGINAL, url=url_for_path(rendition), filesize=original_bytes)
        self.store.set_variants(asset_id, variants)
        try:
            self.tracker.record_conversion(asset_id, fmt, original_bytes, converted_bytes, size)
        except SQLAlchemyError as e:
            raise StoreError(f"Could not record conversion for asset {asset_id}: {e}") from e

    @staticmethod
    def _locations(variants: VariantMap, formats: list[Format]) -> dict[Format, str]:
        """Location of each format, preferring the full size."""
        locations: dict[Format, str] = {}
        ordered = sorted(variants, key=lambda s: s != FULL_SIZE)
        for fmt in formats:
            for size in ordered:
                variant = variants[size].get(fmt)
                if variant is not None:
                    locations[fmt] = variant.url
                    break
        return locations
