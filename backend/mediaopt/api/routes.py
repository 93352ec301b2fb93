"""API routes for uploads, bulk runs, webhooks and conversion stats."""
import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, File, HTTPException, Query, Request, UploadFile

from mediaopt.bulk import BulkScheduler, create_run, get_run, get_scheduler, set_run_failed
from mediaopt.config import (
    IMAGE_EXTENSIONS,
    MAX_IMAGE_SIZE_BYTES,
    MAX_VIDEO_SIZE_BYTES,
    MEDIA_ROOT,
    VIDEO_EXTENSIONS,
    ConversionSettings,
    get_settings,
)
from mediaopt.conversion.capabilities import CapabilityDetector, get_detector
from mediaopt.conversion.models import MediaKind
from mediaopt.conversion.pipeline import plan_request
from mediaopt.conversion.service import ConversionService, get_conversion_service
from mediaopt.external import ExternalJobClient, delete_asset, get_external_client
from mediaopt.library import MediaLibrary, get_library
from mediaopt.quota import QuotaGate, get_quota_gate
from mediaopt.status import status_snapshot
from mediaopt.tracker import ConversionTracker, get_tracker
from mediaopt.webhook import WebhookReconciler, get_reconciler

logger = logging.getLogger("mediaopt.api")
router = APIRouter(prefix="/api", tags=["mediaopt"])

ALL_EXTENSIONS = IMAGE_EXTENSIONS | VIDEO_EXTENSIONS
UPLOAD_DIR = MEDIA_ROOT / "uploads"


def _is_image_ext(ext: str) -> bool:
    return ext.lower() in IMAGE_EXTENSIONS


def _max_upload_bytes_for_ext(ext: str) -> int:
    return MAX_IMAGE_SIZE_BYTES if _is_image_ext(ext) else MAX_VIDEO_SIZE_BYTES


def _guess_mimetype(filename: str, content_type: Optional[str], ext: str) -> str:
    if content_type and content_type.split("/")[0] in ("image", "video"):
        return content_type
    guessed, _ = mimetypes.guess_type(filename)
    if guessed:
        return guessed
    return f"image/{ext.lstrip('.')}" if _is_image_ext(ext) else f"video/{ext.lstrip('.')}"


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/status")
def get_status(
    settings: ConversionSettings = Depends(get_settings),
    detector: CapabilityDetector = Depends(get_detector),
    quota: QuotaGate = Depends(get_quota_gate),
    tracker: ConversionTracker = Depends(get_tracker),
):
    """Capabilities, current quota window and savings in one read-only snapshot."""
    return status_snapshot(settings, detector, quota, tracker)


@router.get("/formats")
def get_formats(detector: CapabilityDetector = Depends(get_detector)):
    matrix = detector.get_matrix()
    return {
        "image": sorted(IMAGE_EXTENSIONS),
        "video": sorted(VIDEO_EXTENSIONS),
        "output_image": list(matrix.supported_formats(MediaKind.IMAGE)),
        "output_video": list(matrix.supported_formats(MediaKind.VIDEO)),
        "support": matrix.format_support(),
    }


@router.get("/quota")
def get_quota(quota: QuotaGate = Depends(get_quota_gate)):
    return quota.progress()


@router.post("/upload")
async def upload_file(
    file: UploadFile = File(...),
    settings: ConversionSettings = Depends(get_settings),
    library: MediaLibrary = Depends(get_library),
    quota: QuotaGate = Depends(get_quota_gate),
    scheduler: BulkScheduler = Depends(get_scheduler),
    svc: ConversionService = Depends(get_conversion_service),
    client: ExternalJobClient = Depends(get_external_client),
):
    """Upload a single file, register it in the library and start conversion."""
    ext = Path(file.filename or "").suffix.lower()
    if ext not in ALL_EXTENSIONS:
        raise HTTPException(400, f"Unsupported format: {ext}")
    max_bytes = _max_upload_bytes_for_ext(ext)
    max_mb = max_bytes // (1024 * 1024)

    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    safe_name = f"{uuid.uuid4().hex[:12]}_{Path(file.filename).name}"
    dest = UPLOAD_DIR / safe_name
    try:
        total = 0
        with open(dest, "wb") as f:
            while chunk := await file.read(1024 * 1024):
                total += len(chunk)
                if total > max_bytes:
                    dest.unlink(missing_ok=True)
                    raise HTTPException(413, f"File too large (max {max_mb} MB for {'image' if _is_image_ext(ext) else 'video'})")
                f.write(chunk)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Upload failed: %s", e)
        if dest.exists():
            dest.unlink(missing_ok=True)
        raise HTTPException(500, "Upload failed")

    mimetype = _guess_mimetype(file.filename, file.content_type, ext)
    response = {"filename": file.filename, "mimetype": mimetype, "input_size": total}
    dispatched = await asyncio.to_thread(_dispatch_upload, dest, mimetype, settings, library, quota, scheduler, svc, client)
    response.update(dispatched)
    return response


def _dispatch_upload(
    path: Path,
    mimetype: str,
    settings: ConversionSettings,
    library: MediaLibrary,
    quota: QuotaGate,
    scheduler: BulkScheduler,
    svc: ConversionService,
    client: ExternalJobClient,
) -> dict:
    """Register, admit and dispatch one upload. Runs in a worker thread: it hits the database and the remote service."""
    asset = library.register(mimetype, path)
    response = {"attachment_id": asset.attachment_id}
    request = scheduler.build_request(asset)
    if not settings.external_enabled and not plan_request(request, svc.pipeline.selector()):
        response.update(status="skipped", task_ids=[])
        return response
    if not quota.admit(asset.kind):
        response.update(status="deferred", message=f"Monthly {asset.kind.value} quota reached")
        return response
    if settings.external_enabled:
        result = client.submit_asset(asset)
        if result.success:
            response.update(status="submitted", external=result.to_dict())
            return response
        response["external"] = result.to_dict()
        if not settings.local_fallback:
            response.update(status="failed")
            return response
    futures = svc.submit(request)
    tasks = [t for t in (svc.get_task_for(key) for key in futures) if t is not None]
    response.update(status="processing" if tasks else "skipped", task_ids=[t.task_id for t in tasks])
    return response


@router.post("/bulk")
async def start_bulk(
    background_tasks: BackgroundTasks,
    attachment_ids: Optional[list[int]] = Body(None, embed=True),
    scheduler: BulkScheduler = Depends(get_scheduler),
    library: MediaLibrary = Depends(get_library),
):
    """Convert a set of assets (default: the whole library) in the background. Returns run_id."""
    batch = attachment_ids if attachment_ids else await asyncio.to_thread(library.list_ids)
    run = create_run()

    def run_bulk():
        try:
            scheduler.run(batch, run)
        except Exception as e:
            logger.exception("Bulk run %s failed: %s", run.run_id, e)
            set_run_failed(run.run_id, str(e))

    async def run_bulk_async():
        await asyncio.to_thread(run_bulk)

    background_tasks.add_task(run_bulk_async)
    return {"run_id": run.run_id, "status": "processing", "total": len(batch), "message": "Bulk conversion started. Poll /api/bulk/{run_id} for status."}


@router.get("/bulk/{run_id}")
def bulk_status(run_id: str):
    run = get_run(run_id)
    if not run:
        raise HTTPException(404, "Bulk run not found")
    return run.to_dict()


@router.post("/webhook")
async def webhook(request: Request, reconciler: WebhookReconciler = Depends(get_reconciler)):
    """Completion callback from the remote processing service."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    return await asyncio.to_thread(reconciler.handle, payload)


@router.get("/conversions/stats")
def conversion_stats(tracker: ConversionTracker = Depends(get_tracker)):
    return tracker.stats()


@router.get("/conversions/{attachment_id}")
def attachment_conversions(
    attachment_id: int,
    tracker: ConversionTracker = Depends(get_tracker),
    library: MediaLibrary = Depends(get_library),
    client: ExternalJobClient = Depends(get_external_client),
):
    asset = library.get(attachment_id)
    if asset is None:
        raise HTTPException(404, "Asset not found")
    job = client.store.get(attachment_id)
    return {
        "asset": asset.to_dict(),
        "stats": tracker.get_attachment_stats(attachment_id),
        "conversions": tracker.get_attachment_conversions(attachment_id),
        "files": library.get_files(attachment_id),
        "job": job.to_dict() if job else None,
    }


@router.delete("/assets/{attachment_id}")
def remove_asset(
    attachment_id: int,
    tracker: ConversionTracker = Depends(get_tracker),
    library: MediaLibrary = Depends(get_library),
    client: ExternalJobClient = Depends(get_external_client),
    svc: ConversionService = Depends(get_conversion_service),
):
    if not delete_asset(attachment_id, library, tracker, client, svc):
        raise HTTPException(404, "Asset not found")
    return {"ok": True}


@router.post("/external/retry-failed")
def retry_failed(
    attachment_id: Optional[int] = Query(None),
    client: ExternalJobClient = Depends(get_external_client),
):
    """Resubmit one failed external job, or all of them."""
    if attachment_id is not None:
        return client.retry_failed_job(attachment_id).to_dict()
    return client.retry_failed_jobs()


@router.get("/task/{task_id}")
def get_task_status(task_id: str, svc: ConversionService = Depends(get_conversion_service)):
    """Get conversion task status."""
    task = svc.get_task(task_id)
    if not task:
        raise HTTPException(404, "Task not found")
    return task.to_dict()
