"""Variant service: the entry points the API and background jobs use (guarded dispatch, selection, cleanup)."""
import logging
from pathlib import Path
from typing import Optional

from mediavariants import assets
from mediavariants.conversion.capabilities import CapabilityDetector
from mediavariants.conversion.models import (
    FULL_SIZE,
    Format,
    JobState,
    MediaKind,
    PassResult,
)
from mediavariants.conversion.orchestrator import ConversionOrchestrator
from mediavariants.conversion.selector import VariantSelector
from mediavariants.conversion.store import VariantStore, delete_variant_files, formats_present
from mediavariants.conversion.tracker import ConversionTracker
from mediavariants.dispatch import JobDispatcher, RequestBatch
from mediavariants.settings import get_settings

logger = logging.getLogger("mediavariants.service")

VIDEO_JOB = "convert_video"


class ConversionService:
    """Wires store, tracker, orchestrator, selector and dispatcher together."""

    def __init__(
        self,
        store: Optional[VariantStore] = None,
        tracker: Optional[ConversionTracker] = None,
        detector: Optional[CapabilityDetector] = None,
        orchestrator: Optional[ConversionOrchestrator] = None,
        dispatcher: Optional[JobDispatcher] = None,
    ):
        self.store = store or VariantStore()
        self.tracker = tracker or ConversionTracker()
        self.detector = detector or CapabilityDetector()
        self.orchestrator = orchestrator or ConversionOrchestrator(
            store=self.store,
            tracker=self.tracker,
            detector=self.detector,
        )
        self.selector = VariantSelector(self.store, dimensions=self.size_dimensions)
        self.dispatcher = dispatcher or JobDispatcher()
        self.dispatcher.register(VIDEO_JOB, self._run_video_job)
        logger.info("ConversionService initialized")

    # Host lookups

    @staticmethod
    def size_dimensions(asset_id: str) -> dict:
        asset = assets.get_asset(asset_id)
        return assets.get_registered_sizes_with_dimensions(asset) if asset else {}

    def capabilities(self) -> dict:
        return {name: cap.to_dict() for name, cap in self.detector.probe().items()}

    # Conversion

    def orchestrate(self, asset_id: str, formats: Optional[list[Format]] = None) -> PassResult:
        """Unguarded pass. Prefer run_inline / request_conversion, which hold the job guard."""
        assets.require_asset(asset_id)
        return self.orchestrator.orchestrate(asset_id, formats=formats)

    def run_inline(self, asset_id: str) -> PassResult:
        """Claim the asset, run one pass in this thread, record the job outcome."""
        assets.require_asset(asset_id)
        if not self.store.claim_job(asset_id, JobState.PROCESSING):
            logger.info("Conversion already in flight for asset %s, skipping", asset_id)
            return PassResult(success=False, skipped="in_flight")
        try:
            result = self.orchestrator.orchestrate(asset_id)
        except Exception:
            self.store.set_job_state(asset_id, JobState.FAILED)
            raise
        self.store.set_job_state(asset_id, self._final_state(result))
        return result

    @staticmethod
    def _final_state(result: PassResult) -> JobState:
        if result.success:
            return JobState.COMPLETED
        if result.skipped:
            return JobState.NONE
        return JobState.FAILED

    def request_conversion(self, asset_id: str) -> dict:
        """Guarded dispatch: images convert inline, video is handed to the job dispatcher."""
        asset = assets.require_asset(asset_id)
        if asset.media_kind is MediaKind.IMAGE:
            result = self.run_inline(asset_id)
            status = "skipped" if result.skipped else ("completed" if result.success else "failed")
            return {"asset_id": asset_id, "status": status, "result": result.to_dict()}

        if self.dispatcher.is_pending(VIDEO_JOB, (asset_id,)):
            return {"asset_id": asset_id, "status": "pending"}
        if not self.store.claim_job(asset_id, JobState.QUEUED):
            logger.info("Video conversion already in flight for asset %s", asset_id)
            return {"asset_id": asset_id, "status": "in_flight"}
        job_id = self.dispatcher.enqueue(VIDEO_JOB, (asset_id,))
        if job_id is None:
            self.store.set_job_state(asset_id, JobState.NONE)
            return {"asset_id": asset_id, "status": "pending"}
        return {"asset_id": asset_id, "status": "queued", "job_id": job_id}

    def _run_video_job(self, asset_id: str) -> PassResult:
        self.store.set_job_state(asset_id, JobState.PROCESSING)
        try:
            result = self.orchestrator.orchestrate(asset_id)
        except Exception:
            self.store.set_job_state(asset_id, JobState.FAILED)
            raise
        self.store.set_job_state(asset_id, self._final_state(result))
        logger.info("Video job for asset %s finished: success=%s errors=%d", asset_id, result.success, len(result.errors))
        return result

    def auto_convert(self, asset_id: str) -> Optional[dict]:
        """Deferred conversion after upload, honouring the auto-convert settings."""
        asset = assets.get_asset(asset_id)
        if asset is None:
            logger.warning("Asset %s vanished before deferred conversion", asset_id)
            return None
        settings = get_settings()
        enabled = settings.image_auto_convert if asset.media_kind is MediaKind.IMAGE else settings.video_auto_convert
        if not enabled:
            logger.info("Auto-convert off for %s assets, not converting %s", asset.media_kind.value, asset_id)
            return None
        return self.request_conversion(asset_id)

    def new_request_batch(self) -> RequestBatch:
        return RequestBatch(self.auto_convert)

    # Selection

    def select(self, asset_id: str, size: str = FULL_SIZE) -> str:
        asset = assets.require_asset(asset_id)
        original = assets.original_url(asset, size)
        if asset.media_kind is MediaKind.VIDEO:
            return self.selector.select_video(asset_id, original)
        return self.selector.select(asset_id, size, original)

    # Cleanup

    @staticmethod
    def _protected_paths(asset_id: str) -> list[Path]:
        """The upload and its renditions, which variant cleanup must never remove."""
        asset = assets.get_asset(asset_id)
        if asset is None:
            return []
        return [Path(asset.file_path)] + [Path(r.file) for r in asset.sizes.values()]

    def _delete_variants(self, asset_id: str) -> tuple[int, int]:
        variants = self.store.get_all_variants(asset_id)
        removed = delete_variant_files(variants, protected=self._protected_paths(asset_id))
        records = self.tracker.delete_asset_conversions(asset_id)
        self.store.delete_all(asset_id)
        logger.info("Deleted all variants for asset %s (%d files, %d records)", asset_id, removed, records)
        return removed, records

    def delete_all_variants(self, asset_id: str) -> bool:
        """Remove every variant file, record and metadata entry of the asset."""
        self._delete_variants(asset_id)
        return True

    def clear_all(self) -> dict:
        """Remove every asset's variant files, variant metadata and conversion records. Originals stay."""
        counts = {"assets": 0, "files": 0, "records": 0}
        offset = 0
        while True:
            page = assets.list_assets(limit=100, offset=offset)
            for asset in page:
                removed, records = self._delete_variants(asset.asset_id)
                counts["assets"] += 1
                counts["files"] += removed
                counts["records"] += records
            if len(page) < 100:
                break
            offset += len(page)
        logger.info(
            "Cleared variants of %d asset(s): %d files, %d records",
            counts["assets"], counts["files"], counts["records"],
        )
        return counts

    def delete_asset(self, asset_id: str) -> bool:
        asset = assets.require_asset(asset_id)
        self.delete_all_variants(asset_id)
        return assets.delete_asset(asset)

    def set_format_enabled(self, asset_id: str, fmt: Format, enabled: bool) -> list[Format]:
        """Enable or disable one format for one asset; returns the asset's converted formats afterwards.
        Disabling deletes that format's files, entries and records. Enabling advertises the format again
        when variants exist, otherwise asks for a conversion pass."""
        asset = assets.require_asset(asset_id)
        if fmt.media_kind is not asset.media_kind:
            raise ValueError(f"{fmt.value} does not apply to {asset.media_kind.value} assets")
        formats = self.store.get_converted_formats(asset_id)
        if enabled:
            if fmt in formats_present(self.store.get_all_variants(asset_id)):
                if fmt not in formats:
                    formats.append(fmt)
                    self.store.set_converted_formats(asset_id, formats)
            else:
                self.request_conversion(asset_id)
                formats = self.store.get_converted_formats(asset_id)
            return formats
        variants = self.store.get_all_variants(asset_id)
        delete_variant_files(variants, [fmt], protected=self._protected_paths(asset_id))
        self.store.delete_variants_for_formats(asset_id, [fmt])
        self.tracker.delete_asset_conversions_by_formats(asset_id, [fmt])
        formats = [f for f in formats if f is not fmt]
        self.store.set_converted_formats(asset_id, formats)
        logger.info("Format %s disabled for asset %s", fmt.value, asset_id)
        return formats

    def set_conversion_disabled(self, asset_id: str, disabled: bool) -> None:
        assets.require_asset(asset_id)
        if disabled:
            self.delete_all_variants(asset_id)
            self.store.set_disabled(asset_id, True)
            logger.info("Conversion disabled for asset %s", asset_id)
        else:
            self.store.set_disabled(asset_id, False)
            logger.info("Conversion enabled for asset %s", asset_id)

    def recover_interrupted_jobs(self) -> int:
        """Release job guards whose jobs died with a previous process. Call once at startup,
        before anything is enqueued: the dispatcher keeps its jobs in memory only."""
        count = self.store.reset_interrupted_jobs()
        if count:
            logger.warning("Released %d interrupted conversion job(s)", count)
        return count

    def shutdown(self) -> None:
        """Drop jobs that have not started and wait for running ones. Dropped jobs keep their
        queued guard until the next startup releases it."""
        self.dispatcher.shutdown(wait=True, cancel_futures=True)


# Singleton
_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None:
        _conversion_service = ConversionService()
    return _conversion_service


