"""Asset registry: stores uploaded originals under MEDIA_ROOT and renders the registered sizes."""
import logging
import mimetypes
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from mediavariants import config as app_config
from mediavariants import db
from mediavariants.conversion.errors import AssetNotFoundError
from mediavariants.conversion.models import FULL_SIZE, Asset, MediaKind, SizeRendition
from mediavariants.conversion.resize import normalize_mode, resize_for_size, target_dimensions
from mediavariants.conversion.store import url_for_path

logger = logging.getLogger("mediavariants.assets")


def media_kind_for(filename: str) -> Optional[MediaKind]:
    ext = Path(filename).suffix.lower()
    if ext in app_config.IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    if ext in app_config.VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    return None


def _sanitize_filename(name: str) -> str:
    """Safe file name (no path separators, no empty stem)."""
    path = Path(name or "")
    stem = "".join(c for c in path.stem if c.isalnum() or c in "._-").strip("._") or "file"
    return f"{stem[:80]}{path.suffix.lower()}"


def _unique_path(directory: Path, filename: str) -> Path:
    candidate = directory / filename
    stem, suffix = candidate.stem, candidate.suffix
    n = 1
    while candidate.exists():
        candidate = directory / f"{stem}-{n}{suffix}"
        n += 1
    return candidate


def list_registered_size_names() -> list[str]:
    """Registered size names in registration order ("full" is implicit and not listed)."""
    return list(app_config.REGISTERED_SIZES)


def _render_sizes(source: Path) -> tuple[int, int, dict[str, SizeRendition]]:
    """Render every registered size smaller than the source. Animated sources get a static first frame."""
    renditions: dict[str, SizeRendition] = {}
    with Image.open(source) as img:
        width, height = img.size
        fmt = img.format
        base = normalize_mode(img)
        if source.suffix.lower() in (".jpg", ".jpeg") and base.mode != "RGB":
            base = base.convert("RGB")
        for name, (max_w, max_h, crop) in app_config.REGISTERED_SIZES.items():
            dims = target_dimensions(width, height, max_w, max_h, crop)
            if dims is None:
                continue
            out = resize_for_size(base, max_w, max_h, crop)
            dest = source.with_name(f"{source.stem}-{out.width}x{out.height}{source.suffix}")
            out.save(str(dest), format=fmt)
            renditions[name] = SizeRendition(file=str(dest), width=out.width, height=out.height)
            logger.info("Rendered size %s (%sx%s) for %s", name, out.width, out.height, source.name)
    return width, height, renditions


def create_asset(upload_path: Path, original_name: str, mime_type: Optional[str] = None) -> Asset:
    """Move an uploaded file into MEDIA_ROOT/<yyyy>/<mm>/ and register it. Raises ValueError for unsupported files."""
    kind = media_kind_for(original_name)
    if kind is None:
        raise ValueError(f"Unsupported file type: {Path(original_name).suffix}")
    now = datetime.now(timezone.utc)
    directory = app_config.MEDIA_ROOT / f"{now:%Y}" / f"{now:%m}"
    directory.mkdir(parents=True, exist_ok=True)
    dest = _unique_path(directory, _sanitize_filename(original_name))
    shutil.move(str(upload_path), str(dest))

    width = height = None
    sizes: dict[str, SizeRendition] = {}
    if kind is MediaKind.IMAGE:
        try:
            width, height, sizes = _render_sizes(dest)
        except (OSError, UnidentifiedImageError) as e:
            dest.unlink(missing_ok=True)
            raise ValueError(f"Not a readable image: {e}") from e

    asset = Asset(
        asset_id=uuid.uuid4().hex,
        file_path=str(dest),
        media_kind=kind,
        mime_type=mime_type or mimetypes.guess_type(dest.name)[0],
        width=width,
        height=height,
        sizes=sizes,
        created_at=now.isoformat(),
    )
    db.insert_asset(asset.to_dict())
    logger.info("Registered %s asset %s (%s, %d sizes)", kind.value, asset.asset_id, dest.name, len(sizes))
    return asset


def get_asset(asset_id: str) -> Optional[Asset]:
    row = db.get_asset_row(asset_id)
    return Asset.from_row(row) if row else None


def require_asset(asset_id: str) -> Asset:
    asset = get_asset(asset_id)
    if asset is None:
        raise AssetNotFoundError(f"Unknown asset: {asset_id}")
    return asset


def list_assets(limit: int = 100, offset: int = 0, media_kind: Optional[MediaKind] = None) -> list[Asset]:
    rows = db.list_asset_rows(limit=limit, offset=offset, media_kind=media_kind.value if media_kind else None)
    return [Asset.from_row(r) for r in rows]


def delete_asset(asset: Asset) -> bool:
    """Remove the original, its rendered sizes and the registry row. Variants are handled by the service."""
    paths = [Path(asset.file_path)] + [Path(s.file) for s in asset.sizes.values()]
    for p in paths:
        try:
            p.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove %s: %s", p, e)
    return db.delete_asset_row(asset.asset_id)


def get_registered_sizes_with_dimensions(asset: Asset) -> dict[str, tuple[int, int]]:
    """Actual pixel dimensions of every rendition of asset, "full" included."""
    dims: dict[str, tuple[int, int]] = {}
    if asset.width and asset.height:
        dims[FULL_SIZE] = (asset.width, asset.height)
    for name, rendition in asset.sizes.items():
        dims[name] = (rendition.width, rendition.height)
    return dims


def size_source(asset: Asset, size: str) -> Optional[Path]:
    """Source file for a size, or None when that size was never rendered."""
    if size == FULL_SIZE:
        return Path(asset.file_path)
    rendition = asset.sizes.get(size)
    return Path(rendition.file) if rendition else None


def original_url(asset: Asset, size: str = FULL_SIZE) -> str:
    """Public URL of the unconverted rendition for size (the original file when not rendered)."""
    source = size_source(asset, size) or Path(asset.file_path)
    return url_for_path(source)
