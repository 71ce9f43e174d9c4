"""Variant store: per-asset variant metadata over the host key-value metadata store.

Persisted shape per asset (one JSON value per key):
    converted_files_by_size  {size: {format: {"url": ..., "filesize": N}}}
    converted_formats        ["webp", "avif"]
    conversion_date          ISO timestamp of the last successful pass
    conversion_disabled      bool
Older assets may instead carry converted_files = {format: location}, which is read
as the "full" size. Both shapes are normalised once, when the document is loaded."""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

from mediavariants import config as app_config
from mediavariants import db
from mediavariants.conversion.errors import StoreError
from mediavariants.conversion.models import (
    BLOCKING_JOB_STATES,
    FULL_SIZE,
    ConversionState,
    Format,
    JobState,
    Variant,
)

logger = logging.getLogger("mediavariants.store")

META_BY_SIZE = "converted_files_by_size"
META_LEGACY = "converted_files"
META_FORMATS = "converted_formats"
META_DATE = "conversion_date"
META_DISABLED = "conversion_disabled"

ALL_META_KEYS = (META_BY_SIZE, META_LEGACY, META_FORMATS, META_DATE, META_DISABLED)

VariantMap = dict[str, dict[Format, Variant]]


# --- URL synthesis ----------------------------------------------------------

def synthesize_url(path, media_root: Path, base_url: str) -> str:
    """Public URL for a storage path under media_root; other locations are returned unchanged."""
    location = str(path)
    if location.startswith(("http://", "https://", "//")):
        return location
    try:
        relative = Path(path).resolve().relative_to(Path(media_root).resolve())
    except ValueError:
        return location
    return f"{base_url.rstrip('/')}/{relative.as_posix()}"


def resolve_location(url: str, media_root: Path, base_url: str) -> Optional[Path]:
    """Storage path behind a URL produced by synthesize_url, or None for external references."""
    prefix = base_url.rstrip("/") + "/"
    if not url or not url.startswith(prefix):
        return None
    root = Path(media_root).resolve()
    candidate = (root / url[len(prefix):]).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    return candidate


def url_for_path(path) -> str:
    return synthesize_url(path, app_config.MEDIA_ROOT, app_config.MEDIA_BASE_URL)


def path_for_url(url: str) -> Optional[Path]:
    return resolve_location(url, app_config.MEDIA_ROOT, app_config.MEDIA_BASE_URL)


# --- Document shapes --------------------------------------------------------

@dataclass(frozen=True)
class LegacyVariants:
    """Flat {format: location} map from before variants were tracked per size."""
    files: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SizedVariants:
    sizes: dict = field(default_factory=dict)


VariantDocument = Union[LegacyVariants, SizedVariants]


def _variant_from_raw(fmt: Format, raw) -> Optional[Variant]:
    if isinstance(raw, str):
        location, filesize = raw, 0
    elif isinstance(raw, dict) and raw.get("url"):
        location, filesize = raw["url"], raw.get("filesize") or 0
    else:
        return None
    url = url_for_path(location)
    if not filesize:
        path = path_for_url(url)
        if path is not None and path.is_file():
            filesize = path.stat().st_size
    return Variant(format=fmt, url=url, filesize=int(filesize))


def _format_map(raw: dict) -> dict[Format, Variant]:
    out: dict[Format, Variant] = {}
    for key, value in (raw or {}).items():
        fmt = Format.parse(key)
        if fmt is None:
            continue
        variant = _variant_from_raw(fmt, value)
        if variant is not None:
            out[fmt] = variant
    return out


def load_document(by_size_raw, legacy_raw) -> VariantDocument:
    if isinstance(by_size_raw, dict) and by_size_raw:
        return SizedVariants(sizes=by_size_raw)
    if isinstance(legacy_raw, dict) and legacy_raw:
        return LegacyVariants(files=legacy_raw)
    return SizedVariants(sizes={})


def normalize(document: VariantDocument) -> VariantMap:
    if isinstance(document, LegacyVariants):
        files = _format_map(document.files)
        return {FULL_SIZE: files} if files else {}
    variants: VariantMap = {}
    for size, raw in document.sizes.items():
        if not isinstance(raw, dict):
            continue
        files = _format_map(raw)
        if files:
            variants[str(size)] = files
    return variants


def serialize(variants: VariantMap) -> dict:
    return {
        size: {fmt.value: v.to_dict() for fmt, v in files.items()}
        for size, files in variants.items()
        if files
    }


def modern_formats(files: dict) -> list[Format]:
    """Converted formats in a size's map, excluding the original entry."""
    return [fmt for fmt in files if fmt is not Format.ORIGINAL]


def formats_present(variants: VariantMap) -> set[Format]:
    present: set[Format] = set()
    for files in variants.values():
        present.update(modern_formats(files))
    return present


def delete_variant_files(
    variants: VariantMap,
    formats: Optional[Iterable[Format]] = None,
    protected: Iterable[Path] = (),
) -> int:
    """Delete the files behind converted variants (all formats, or only formats).
    Original renditions, protected paths and external references are never touched. Returns files removed."""
    wanted = set(formats) if formats is not None else None
    keep = {Path(p).resolve() for p in protected}
    for files in variants.values():
        original = files.get(Format.ORIGINAL)
        original_path = path_for_url(original.url) if original is not None else None
        if original_path is not None:
            keep.add(original_path.resolve())
    removed = 0
    for size, files in variants.items():
        for fmt, variant in files.items():
            if fmt is Format.ORIGINAL or (wanted is not None and fmt not in wanted):
                continue
            path = path_for_url(variant.url)
            if path is None:
                logger.debug("Not deleting external variant %s/%s: %s", size, fmt.value, variant.url)
                continue
            if path.resolve() in keep:
                logger.warning("Not deleting %s/%s: %s is an original file", size, fmt.value, path)
                continue
            try:
                if path.is_file():
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.warning("Could not remove variant file %s: %s", path, e)
    return removed


# --- Metadata backend -------------------------------------------------------

class SqlMetadataStore:
    """Host metadata store (get/set/delete by asset id and key) backed by the asset_meta table."""

    def get(self, asset_id: str, key: str):
        return db.get_meta(asset_id, key)

    def set(self, asset_id: str, key: str, value) -> bool:
        return db.set_meta(asset_id, key, value)

    def delete(self, asset_id: str, key: str) -> bool:
        return db.delete_meta(asset_id, key)

    def get_job_state(self, asset_id: str) -> Optional[str]:
        return db.get_job_state(asset_id)

    def set_job_state(self, asset_id: str, state: str) -> bool:
        return db.set_job_state(asset_id, state)

    def claim_job_state(self, asset_id: str, state: str, blocked: Iterable[str]) -> bool:
        return db.claim_job_state(asset_id, state, blocked)

    def reset_job_states(self, states: Iterable[str], state: str) -> int:
        return db.reset_job_states(states, state)


class VariantStore:
    """CRUD over asset -> size -> format -> variant plus ConversionState and job state.
    Writes are last-write-wins per key. A failed write raises StoreError."""

    def __init__(self, meta=None):
        self.meta = meta if meta is not None else SqlMetadataStore()

    def _read(self, asset_id: str, key: str):
        try:
            return self.meta.get(asset_id, key)
        except Exception as e:
            raise StoreError(f"Could not read {key} for asset {asset_id}: {e}") from e

    def _write(self, asset_id: str, key: str, value) -> None:
        try:
            ok = self.meta.set(asset_id, key, value)
        except Exception as e:
            raise StoreError(f"Could not write {key} for asset {asset_id}: {e}") from e
        if not ok:
            raise StoreError(f"Could not write {key} for asset {asset_id}")

    def _delete(self, asset_id: str, key: str) -> None:
        try:
            ok = self.meta.delete(asset_id, key)
        except Exception as e:
            raise StoreError(f"Could not delete {key} for asset {asset_id}: {e}") from e
        if not ok:
            raise StoreError(f"Could not delete {key} for asset {asset_id}")

    # Variants

    def get_all_variants(self, asset_id: str) -> VariantMap:
        document = load_document(self._read(asset_id, META_BY_SIZE), self._read(asset_id, META_LEGACY))
        return normalize(document)

    def get_variants(self, asset_id: str, size: str = FULL_SIZE) -> dict[Format, Variant]:
        """Variants for size, falling back to "full", then to an empty map. Never raises."""
        try:
            variants = self.get_all_variants(asset_id)
        except StoreError as e:
            logger.warning("Variant lookup failed for asset %s: %s", asset_id, e)
            return {}
        files = variants.get(size) or {}
        if not modern_formats(files) and size != FULL_SIZE:
            files = variants.get(FULL_SIZE) or {}
        return dict(files)

    def set_variants(self, asset_id: str, variants: VariantMap) -> None:
        self._write(asset_id, META_BY_SIZE, serialize(variants))
        if self._read(asset_id, META_LEGACY) is not None:
            self._delete(asset_id, META_LEGACY)

    def set_variant(self, asset_id: str, size: str, fmt: Format, location, filesize: int = 0) -> Variant:
        """Upsert one variant. A storage path under MEDIA_ROOT is stored as its public URL."""
        variants = self.get_all_variants(asset_id)
        variant = Variant(format=fmt, url=url_for_path(location), filesize=int(filesize or 0))
        variants.setdefault(size, {})[fmt] = variant
        self.set_variants(asset_id, variants)
        return variant

    def prune_unregistered_sizes(self, asset_id: str, valid_size_names: Iterable[str]) -> list[str]:
        valid = set(valid_size_names) | {FULL_SIZE}
        variants = self.get_all_variants(asset_id)
        stale = [size for size in variants if size not in valid]
        if stale:
            for size in stale:
                del variants[size]
            self.set_variants(asset_id, variants)
            logger.info("Pruned unregistered sizes for asset %s: %s", asset_id, ", ".join(stale))
        return stale

    def delete_variants_for_formats(self, asset_id: str, formats: Iterable[Format]) -> int:
        targets = {f for f in formats if f is not Format.ORIGINAL}
        variants = self.get_all_variants(asset_id)
        count = 0
        for size in list(variants):
            files = variants[size]
            for fmt in list(files):
                if fmt in targets:
                    del files[fmt]
                    count += 1
            if not modern_formats(files):
                del variants[size]
        if count:
            self.set_variants(asset_id, variants)
            remaining = [f for f in self.get_converted_formats(asset_id) if f not in targets]
            self.set_converted_formats(asset_id, remaining)
        return count

    def delete_all(self, asset_id: str) -> bool:
        for key in ALL_META_KEYS:
            self._delete(asset_id, key)
        self.set_job_state(asset_id, JobState.NONE)
        return True

    # Converted formats

    def get_converted_formats(self, asset_id: str) -> list[Format]:
        raw = self._read(asset_id, META_FORMATS) or []
        return [f for f in (Format.parse(v) for v in raw) if f is not None]

    def set_converted_formats(self, asset_id: str, formats: Iterable[Format]) -> None:
        self._write(asset_id, META_FORMATS, [f.value for f in formats])

    # ConversionState

    def get_state(self, asset_id: str) -> ConversionState:
        return ConversionState(
            disabled=bool(self._read(asset_id, META_DISABLED)),
            last_converted_at=self._read(asset_id, META_DATE),
        )

    def is_disabled(self, asset_id: str) -> bool:
        return bool(self._read(asset_id, META_DISABLED))

    def set_disabled(self, asset_id: str, disabled: bool) -> None:
        if disabled:
            self._write(asset_id, META_DISABLED, True)
        else:
            self._delete(asset_id, META_DISABLED)

    def set_last_converted(self, asset_id: str, timestamp: str) -> None:
        self._write(asset_id, META_DATE, timestamp)

    def clear_last_converted(self, asset_id: str) -> None:
        self._delete(asset_id, META_DATE)

    # ExternalJobState

    def get_job_state(self, asset_id: str) -> JobState:
        raw = self.meta.get_job_state(asset_id)
        try:
            return JobState(raw or JobState.NONE.value)
        except ValueError:
            return JobState.NONE

    def set_job_state(self, asset_id: str, state: JobState) -> bool:
        return self.meta.set_job_state(asset_id, JobState(state).value)

    def claim_job(self, asset_id: str, state: JobState) -> bool:
        """Atomically move to state unless a pass is already queued or processing."""
        return self.meta.claim_job_state(
            asset_id,
            JobState(state).value,
            [s.value for s in BLOCKING_JOB_STATES],
        )

    def reset_interrupted_jobs(self) -> int:
        """Release queued or processing guards left by a process that exited mid-job."""
        return self.meta.reset_job_states([s.value for s in BLOCKING_JOB_STATES], JobState.NONE.value)
