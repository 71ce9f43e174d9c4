"""Bulk conversion of assets that have never been converted."""
import logging
from typing import Optional

from mediavariants import config as app_config
from mediavariants import db
from mediavariants.conversion.errors import AssetNotFoundError
from mediavariants.conversion.service import ConversionService, get_conversion_service

logger = logging.getLogger("mediavariants.bulk")


def get_unconverted_assets(limit: Optional[int] = None) -> list[str]:
    return db.list_unconverted_asset_ids(limit or app_config.BULK_BATCH_SIZE)


def process_batch(limit: Optional[int] = None, service: Optional[ConversionService] = None) -> dict:
    """Convert up to limit unconverted assets inline. Returns {processed, converted, errors}."""
    service = service or get_conversion_service()
    counts = {"processed": 0, "converted": 0, "errors": 0}
    for asset_id in get_unconverted_assets(limit):
        try:
            result = service.run_inline(asset_id)
        except AssetNotFoundError:
            logger.warning("Asset %s disappeared during bulk conversion", asset_id)
            continue
        if result.skipped:
            continue
        counts["processed"] += 1
        if result.success:
            counts["converted"] += 1
        else:
            counts["errors"] += 1
            logger.warning("Bulk conversion failed for asset %s: %s", asset_id, "; ".join(result.errors) or "no variants")
    logger.info(
        "Bulk conversion: processed=%d converted=%d errors=%d",
        counts["processed"], counts["converted"], counts["errors"],
    )
    return counts
