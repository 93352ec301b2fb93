"""Bulk conversion over the media library, bounded by the quota and idempotent per asset."""
import logging
import threading
import uuid
from concurrent.futures import wait
from dataclasses import dataclass, field
from typing import Iterable, Optional

from mediaopt import db
from mediaopt.config import ConversionSettings
from mediaopt.conversion.models import ConversionMode, ConversionRequest, JobState, MediaKind, TaskStatus
from mediaopt.conversion.pipeline import plan_request
from mediaopt.conversion.service import ConversionService
from mediaopt.external import ExternalJobClient, JobStore
from mediaopt.library import MediaAsset, MediaLibrary
from mediaopt.quota import QuotaGate
from mediaopt.tracker import ConversionTracker

logger = logging.getLogger("mediaopt.bulk")


@dataclass
class BulkRunResult:
    run_id: str
    status: str = "processing"  # "processing" | "completed" | "failed"
    processed: int = 0
    dispatched: int = 0
    skipped: int = 0
    deferred: dict = field(default_factory=lambda: {MediaKind.IMAGE.value: 0, MediaKind.VIDEO.value: 0})
    failures: list = field(default_factory=list)
    error: Optional[str] = None
    started_at: str = field(default_factory=db.now_iso)
    finished_at: Optional[str] = None

    @property
    def total_deferred(self) -> int:
        return sum(self.deferred.values())

    def fail(self, asset_id: int, code: str, message: str, fmt: Optional[str] = None, size_name: Optional[str] = None) -> None:
        self.failures.append(
            {"attachment_id": asset_id, "code": code, "message": message, "format": fmt, "size_name": size_name}
        )

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "processed": self.processed,
            "dispatched": self.dispatched,
            "skipped": self.skipped,
            "deferred": dict(self.deferred),
            "failures": list(self.failures),
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class BulkScheduler:
    """Walks a batch of asset ids and dispatches each one locally or to the remote service.

    Holds no lock of its own; quota atomicity lives in QuotaGate. When the quota for a kind
    runs out, every remaining asset of that kind in the run is deferred.
    """

    def __init__(
        self,
        settings: ConversionSettings,
        library: MediaLibrary,
        tracker: ConversionTracker,
        quota: QuotaGate,
        service: ConversionService,
        client: Optional[ExternalJobClient] = None,
        store: Optional[JobStore] = None,
    ):
        self.settings = settings
        self.library = library
        self.tracker = tracker
        self.quota = quota
        self.service = service
        self.client = client
        self.store = store or (client.store if client is not None else JobStore())

    def build_request(self, asset: MediaAsset) -> ConversionRequest:
        kind = asset.kind
        formats = self.settings.formats_for(kind.value)
        return ConversionRequest(
            asset_id=asset.attachment_id,
            source_path=asset.file_path,
            mimetype=asset.mimetype,
            requested_formats=formats,
            renditions=asset.renditions,
            quality_options={f: self.settings.options_for(f) for f in formats},
            mode=ConversionMode.HYBRID if self.settings.hybrid else ConversionMode.NATIVE,
        )

    def _use_external(self) -> bool:
        return self.settings.external_enabled and self.client is not None

    def _already_done(self, asset: MediaAsset, request: ConversionRequest, units: list) -> bool:
        if self._use_external():
            job = self.store.get(asset.attachment_id)
            if job is not None and job.state in (JobState.SUBMITTED, JobState.COMPLETED):
                return True
            required = {(f, size) for f in request.requested_formats for size in request.rendition_sizes}
        else:
            required = {(u.format, u.size_name) for u in units}
        return bool(required) and required <= self.tracker.converted_keys(asset.attachment_id)

    def run(self, batch: Iterable[int], result: Optional[BulkRunResult] = None) -> BulkRunResult:
        result = result or BulkRunResult(run_id=str(uuid.uuid4()))
        exhausted: set[MediaKind] = set()
        pending = {}  # future -> asset id
        selector = self.service.pipeline.selector()

        for asset_id in batch:
            result.processed += 1
            try:
                asset = self.library.get(asset_id)
                if asset is None:
                    result.fail(asset_id, "asset_not_found", f"Asset {asset_id} not found")
                    continue
                kind = asset.kind
                if asset.conversion_disabled or kind is None:
                    result.skipped += 1
                    continue
                if kind in exhausted:
                    result.deferred[kind.value] += 1
                    continue
                request = self.build_request(asset)
                units = [] if self._use_external() else plan_request(request, selector)
                if not self._use_external() and not units:
                    logger.info("Nothing to convert locally for asset %s; skipping", asset_id)
                    result.skipped += 1
                    continue
                if self._already_done(asset, request, units):
                    result.skipped += 1
                    continue
                if not self.quota.admit(kind):
                    logger.info("Quota exhausted for %s; deferring the rest of this run's %ss", kind.value, kind.value)
                    exhausted.add(kind)
                    result.deferred[kind.value] += 1
                    continue
                if self._use_external():
                    submitted = self.client.submit_asset(asset)
                    if submitted.success:
                        result.dispatched += 1
                        continue
                    if not self.settings.local_fallback:
                        result.fail(asset_id, submitted.code, submitted.message)
                        continue
                    logger.warning("External submission for asset %s failed (%s); converting locally", asset_id, submitted.code)
                for future in self.service.submit(request).values():
                    pending[future] = asset_id
                result.dispatched += 1
            except Exception as e:
                logger.exception("Bulk processing failed for asset %s: %s", asset_id, e)
                result.fail(asset_id, "internal_error", str(e))

        if pending:
            wait(list(pending))
            for future, asset_id in pending.items():
                if future.cancelled():
                    result.fail(asset_id, "cancelled", "Conversion cancelled before it started")
                    continue
                task = future.result()
                if task.status == TaskStatus.FAILED:
                    result.fail(asset_id, "conversion_failed", task.error or "", task.format, task.size_name)

        result.status = "completed"
        result.finished_at = db.now_iso()
        logger.info(
            "Bulk run %s: %s processed, %s dispatched, %s skipped, %s deferred, %s failures",
            result.run_id, result.processed, result.dispatched, result.skipped, result.total_deferred, len(result.failures),
        )
        return result


_runs: dict[str, BulkRunResult] = {}
_runs_lock = threading.Lock()


def create_run() -> BulkRunResult:
    run = BulkRunResult(run_id=str(uuid.uuid4()))
    with _runs_lock:
        _runs[run.run_id] = run
    return run


def get_run(run_id: str) -> Optional[BulkRunResult]:
    with _runs_lock:
        return _runs.get(run_id)


def set_run_failed(run_id: str, error: str) -> None:
    run = get_run(run_id)
    if run:
        run.status = "failed"
        run.error = error
        run.finished_at = db.now_iso()


_scheduler: Optional[BulkScheduler] = None


def get_scheduler() -> BulkScheduler:
    global _scheduler
    if _scheduler is None:
        from mediaopt.config import get_settings
        from mediaopt.conversion.service import get_conversion_service
        from mediaopt.external import get_external_client
        from mediaopt.library import get_library
        from mediaopt.quota import get_quota_gate
        from mediaopt.tracker import get_tracker

        _scheduler = BulkScheduler(
            get_settings(),
            get_library(),
            get_tracker(),
            get_quota_gate(),
            get_conversion_service(),
            get_external_client(),
        )
    return _scheduler
