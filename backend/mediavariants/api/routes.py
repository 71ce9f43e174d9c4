"""API routes: asset upload, conversion, variant selection, settings and statistics."""
import html
import logging
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import HTMLResponse

from mediavariants import assets, bulk
from mediavariants import config as app_config
from mediavariants.conversion.errors import AssetNotFoundError
from mediavariants.conversion.models import FULL_SIZE, IMAGE_FORMATS, VIDEO_FORMATS, Asset, Format, MediaKind
from mediavariants.conversion.selector import build_srcset
from mediavariants.conversion.service import get_conversion_service
from mediavariants.dispatch import RequestBatch
from mediavariants.settings import get_settings, reset_settings, update_settings

logger = logging.getLogger("mediavariants.api")
router = APIRouter(prefix="/api", tags=["variants"])

ALL_EXTENSIONS = app_config.IMAGE_EXTENSIONS | app_config.VIDEO_EXTENSIONS


def _is_image_ext(ext: str) -> bool:
    return ext.lower() in app_config.IMAGE_EXTENSIONS


def _max_upload_bytes_for_ext(ext: str) -> int:
    return app_config.MAX_IMAGE_SIZE_BYTES if _is_image_ext(ext) else app_config.MAX_VIDEO_SIZE_BYTES


def get_request_batch(background_tasks: BackgroundTasks) -> RequestBatch:
    """One batch per request; flushed after the response has been sent."""
    batch = get_conversion_service().new_request_batch()
    background_tasks.add_task(batch.flush)
    return batch


def _require_asset(asset_id: str) -> Asset:
    try:
        return assets.require_asset(asset_id)
    except AssetNotFoundError:
        raise HTTPException(404, f"Asset not found: {asset_id}")


def _parse_format(value: str) -> Format:
    fmt = Format.parse(value)
    if fmt is None or fmt is Format.ORIGINAL:
        raise HTTPException(400, f"Unknown format: {value}")
    return fmt


def _variants_to_dict(files: dict) -> dict:
    return {fmt.value: v.to_dict() for fmt, v in files.items()}


def _asset_to_dict(asset: Asset) -> dict:
    svc = get_conversion_service()
    state = svc.store.get_state(asset.asset_id)
    return {
        **asset.to_dict(),
        "url": assets.original_url(asset),
        "converted_formats": [f.value for f in svc.store.get_converted_formats(asset.asset_id)],
        "conversion_date": state.last_converted_at,
        "conversion_disabled": state.disabled,
    }


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/formats")
def get_formats():
    settings = get_settings()
    return {
        "image": sorted(app_config.IMAGE_EXTENSIONS),
        "video": sorted(app_config.VIDEO_EXTENSIONS),
        "output_image": [f.value for f in IMAGE_FORMATS],
        "output_video": [f.value for f in VIDEO_FORMATS],
        "enabled_image": [f.value for f in settings.image_formats],
        "enabled_video": [f.value for f in settings.video_formats],
    }


@router.get("/capabilities")
def get_capabilities():
    """Probe encoders now; results are not cached."""
    return get_conversion_service().capabilities()


@router.get("/sizes")
def get_sizes():
    """Registered sizes (name -> [width, height, crop]) in registration order."""
    return {name: list(dims) for name, dims in app_config.REGISTERED_SIZES.items()}


@router.get("/limits")
def get_limits():
    return {
        "max_image_size_mb": app_config.MAX_IMAGE_SIZE_MB,
        "max_image_size_bytes": app_config.MAX_IMAGE_SIZE_BYTES,
        "max_video_size_mb": app_config.MAX_VIDEO_SIZE_MB,
        "max_video_size_bytes": app_config.MAX_VIDEO_SIZE_BYTES,
    }


@router.get("/settings")
def read_settings():
    return get_settings().to_dict()


@router.put("/settings")
def write_settings(options: dict = Body(...)):
    try:
        return update_settings(options).to_dict()
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.delete("/settings")
def clear_settings():
    return reset_settings().to_dict()


@router.post("/assets")
async def upload_asset(
    file: UploadFile = File(...),
    batch: RequestBatch = Depends(get_request_batch),
):
    """Upload an original. Conversion is queued on the request batch and runs after the response."""
    ext = Path(file.filename or "").suffix.lower()
    if ext not in ALL_EXTENSIONS:
        raise HTTPException(400, f"Unsupported format: {ext}")
    max_bytes = _max_upload_bytes_for_ext(ext)
    max_mb = max_bytes // (1024 * 1024)

    dest = app_config.UPLOAD_TMP_DIR / f"{uuid.uuid4()}{ext}"
    try:
        total = 0
        with open(dest, "wb") as f:
            while chunk := await file.read(1024 * 1024):
                total += len(chunk)
                if total > max_bytes:
                    f.close()
                    dest.unlink(missing_ok=True)
                    raise HTTPException(413, f"File too large (max {max_mb} MB for {'image' if _is_image_ext(ext) else 'video'})")
                f.write(chunk)
    except HTTPException:
        raise
    except OSError as e:
        logger.exception("Upload failed: %s", e)
        dest.unlink(missing_ok=True)
        raise HTTPException(500, "Upload failed")

    try:
        asset = assets.create_asset(dest, file.filename or dest.name, file.content_type)
    except ValueError as e:
        dest.unlink(missing_ok=True)
        raise HTTPException(400, str(e))
    batch.add(asset.asset_id)
    return _asset_to_dict(asset)


@router.get("/assets")
def list_assets(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    kind: Optional[MediaKind] = Query(None),
):
    return {"assets": [_asset_to_dict(a) for a in assets.list_assets(limit=limit, offset=offset, media_kind=kind)]}


@router.get("/assets/{asset_id}")
def get_asset(asset_id: str):
    return _asset_to_dict(_require_asset(asset_id))


@router.delete("/assets/{asset_id}")
def delete_asset(asset_id: str):
    _require_asset(asset_id)
    get_conversion_service().delete_asset(asset_id)
    return {"asset_id": asset_id, "deleted": True}


@router.post("/assets/{asset_id}/convert")
def convert_asset(asset_id: str):
    """Run (image) or enqueue (video) a guarded conversion pass."""
    _require_asset(asset_id)
    return get_conversion_service().request_conversion(asset_id)


@router.get("/assets/{asset_id}/variants")
def get_variants(asset_id: str, size: Optional[str] = Query(None)):
    _require_asset(asset_id)
    store = get_conversion_service().store
    if size:
        return {"asset_id": asset_id, "size": size, "variants": _variants_to_dict(store.get_variants(asset_id, size))}
    return {
        "asset_id": asset_id,
        "sizes": {name: _variants_to_dict(files) for name, files in store.get_all_variants(asset_id).items()},
    }


@router.get("/assets/{asset_id}/select")
def select_variant(asset_id: str, size: str = Query(FULL_SIZE)):
    _require_asset(asset_id)
    return {"asset_id": asset_id, "size": size, "url": get_conversion_service().select(asset_id, size)}


@router.get("/assets/{asset_id}/sources")
def get_sources(asset_id: str, size: str = Query(FULL_SIZE)):
    """Fallback chain for hybrid rendering: modern formats in priority order, then the original."""
    asset = _require_asset(asset_id)
    selector = get_conversion_service().selector
    original = assets.original_url(asset, size)
    if asset.media_kind is MediaKind.VIDEO:
        chain = selector.video_sources(asset_id, original, asset.mime_type)
    else:
        chain = selector.select_fallback_chain(asset_id, size, original, asset.mime_type)
    return {"asset_id": asset_id, "size": size, "sources": [{"type": mime, "url": url} for mime, url in chain]}


@router.get("/assets/{asset_id}/srcset")
def get_srcset(asset_id: str):
    _require_asset(asset_id)
    selector = get_conversion_service().selector
    entries = selector.build_responsive_set(asset_id)
    fmt = selector.preferred_format(asset_id)
    return {
        "asset_id": asset_id,
        "format": fmt.value if fmt else None,
        "entries": [{"url": url, "width": width} for url, width in entries],
        "srcset": build_srcset(entries),
    }


@router.get("/assets/{asset_id}/markup", response_class=HTMLResponse)
def get_markup(asset_id: str, size: str = Query(FULL_SIZE), alt: str = Query("")):
    """<picture>/<video> markup in hybrid mode, otherwise a single element with the best URL."""
    asset = _require_asset(asset_id)
    svc = get_conversion_service()
    hybrid = get_settings().hybrid_approach
    original = assets.original_url(asset, size)
    if asset.media_kind is MediaKind.VIDEO:
        return svc.selector.render_video(asset_id, original, hybrid=hybrid)
    if hybrid:
        return svc.selector.render_picture(asset_id, size, original, alt=alt)
    url = svc.select(asset_id, size)
    return f'<img src="{html.escape(url, quote=True)}" alt="{html.escape(alt, quote=True)}">'


@router.put("/assets/{asset_id}/formats/{format_name}")
def set_format_enabled(asset_id: str, format_name: str, enabled: bool = Body(..., embed=True)):
    _require_asset(asset_id)
    fmt = _parse_format(format_name)
    try:
        formats = get_conversion_service().set_format_enabled(asset_id, fmt, enabled)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"asset_id": asset_id, "converted_formats": [f.value for f in formats]}


@router.put("/assets/{asset_id}/conversion")
def set_conversion_disabled(asset_id: str, disabled: bool = Body(..., embed=True)):
    _require_asset(asset_id)
    get_conversion_service().set_conversion_disabled(asset_id, disabled)
    return {"asset_id": asset_id, "conversion_disabled": disabled}


@router.get("/stats")
def get_stats():
    tracker = get_conversion_service().tracker
    return {
        "conversions": tracker.get_conversion_stats(),
        "savings": tracker.get_savings_stats(),
    }


@router.get("/assets/{asset_id}/stats")
def get_asset_stats(asset_id: str):
    _require_asset(asset_id)
    tracker = get_conversion_service().tracker
    return {
        "asset_id": asset_id,
        "summary": tracker.get_asset_stats(asset_id),
        "conversions": tracker.get_asset_conversions(asset_id),
    }


@router.delete("/variants")
def clear_all_variants():
    """Delete every converted file, variant entry and conversion record. Originals are kept."""
    return get_conversion_service().clear_all()


@router.post("/bulk-convert")
def bulk_convert(limit: int = Query(app_config.BULK_BATCH_SIZE, ge=1, le=100)):
    """Convert a batch of never-converted assets and report counts."""
    return bulk.process_batch(limit)


@router.get("/jobs")
def list_jobs():
    return {"jobs": [job.to_dict() for job in get_conversion_service().dispatcher.pending_jobs()]}
