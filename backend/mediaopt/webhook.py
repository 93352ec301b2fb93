"""Reconcile completion callbacks from the remote processing service."""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from mediaopt import db
from mediaopt.config import ConversionSettings
from mediaopt.conversion.errors import AuthorizationMismatch, WebhookError
from mediaopt.conversion.models import JobState
from mediaopt.external import JobStore
from mediaopt.library import ORIGINAL, MediaLibrary
from mediaopt.locks import KeyedLock, asset_locks
from mediaopt.tracker import ConversionTracker

logger = logging.getLogger("mediaopt.webhook")


@dataclass(frozen=True)
class RenditionFile:
    size_name: str
    format: str
    url: Optional[str]
    filesize: int


@dataclass(frozen=True)
class JobCompletionEvent:
    """Typed view of a callback body. Wire-format checks happen here, before any state changes."""

    account_id: str
    asset_id: int
    files: tuple[RenditionFile, ...] = field(default_factory=tuple)
    cdn_results: dict = field(default_factory=dict)

    @property
    def state(self) -> JobState:
        return JobState.COMPLETED if self.cdn_results else JobState.FAILED

    @classmethod
    def from_payload(cls, payload: Any) -> "JobCompletionEvent":
        if not isinstance(payload, dict):
            raise WebhookError("Request body must be a JSON object", "invalid_payload")
        account_id = str(payload.get("account_id") or "").strip()
        if not account_id:
            raise WebhookError("Missing account_id", "missing_account_id")
        raw_id = payload.get("attachment_id")
        if raw_id is None or str(raw_id).strip() == "":
            raise WebhookError("Missing attachment_id", "missing_attachment_id")
        try:
            asset_id = int(str(raw_id).strip())
        except ValueError as e:
            raise WebhookError(f"Invalid attachment_id: {raw_id!r}", "invalid_attachment_id") from e
        cdn_urls = payload.get("cdn_urls") or {}
        if not isinstance(cdn_urls, dict):
            raise WebhookError("cdn_urls must be an object", "invalid_cdn_urls")

        files = []
        results = {}
        for size_name, formats in cdn_urls.items():
            if not isinstance(formats, dict):
                continue
            for fmt, info in formats.items():
                if not isinstance(info, dict):
                    continue
                try:
                    filesize = int(info.get("filesize") or 0)
                except (TypeError, ValueError):
                    filesize = 0
                url = info.get("url")
                results.setdefault(str(size_name), {})[str(fmt).lower()] = {"url": url, "filesize": filesize}
                files.append(RenditionFile(str(size_name), str(fmt).lower(), url, filesize))
        return cls(account_id=account_id, asset_id=asset_id, files=tuple(files), cdn_results=results)


class WebhookReconciler:
    """Applies callbacks: authorization first, then one transaction per callback under the asset's lock."""

    def __init__(
        self,
        settings: ConversionSettings,
        tracker: ConversionTracker,
        library: MediaLibrary,
        store: Optional[JobStore] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.settings = settings
        self.tracker = tracker
        self.library = library
        self.store = store or JobStore()
        self.locks = locks or asset_locks

    def _authorize(self, payload: Any) -> None:
        received = str(payload.get("account_id") or "").strip() if isinstance(payload, dict) else ""
        if not received:
            raise WebhookError("Missing account_id", "missing_account_id")
        if not self.settings.account_id:
            raise WebhookError("Account ID not configured", "account_id_not_configured", 500)
        if received != self.settings.account_id:
            logger.warning("Webhook rejected: account_id mismatch (received %s)", received)
            raise AuthorizationMismatch()

    def handle(self, payload: Any) -> dict:
        self._authorize(payload)
        event = JobCompletionEvent.from_payload(payload)
        try:
            with self.locks.hold(event.asset_id):
                if self.library.get(event.asset_id) is None:
                    logger.warning("Webhook for unknown or deleted asset %s ignored", event.asset_id)
                    return {"success": True, "attachment_id": event.asset_id, "state": "ignored", "recorded": 0}
                recorded = self._apply(event)
        except SQLAlchemyError as e:
            logger.exception("Webhook for asset %s could not be stored: %s", event.asset_id, e)
            raise WebhookError("Internal error while storing results", "internal_error", 500) from e
        logger.info("Webhook for asset %s applied: %s (%s tracker records)", event.asset_id, event.state.value, recorded)
        return {"success": True, "attachment_id": event.asset_id, "state": event.state.value, "recorded": recorded}

    def _apply(self, event: JobCompletionEvent) -> int:
        recorded = 0
        with db.session() as conn:
            self.store.apply_completion(
                event.asset_id,
                event.account_id,
                event.state,
                event.cdn_results,
                None if event.cdn_results else "Remote service returned no results",
                conn=conn,
            )
            for f in event.files:
                if f.format == ORIGINAL and f.filesize > 0:
                    if self.library.get_file_size(event.asset_id, ORIGINAL, f.size_name, conn=conn) is None:
                        self.library.set_file(event.asset_id, ORIGINAL, f.size_name, f.url, f.filesize, conn=conn)
            for f in event.files:
                if f.format == ORIGINAL:
                    continue
                self.library.set_file(event.asset_id, f.format, f.size_name, f.url, f.filesize, conn=conn)
                if f.filesize <= 0:
                    continue
                original = self.library.get_file_size(event.asset_id, ORIGINAL, f.size_name, conn=conn)
                if original is None:
                    logger.info("No original size on record for asset %s/%s; skipping tracker", event.asset_id, f.size_name)
                    continue
                self.tracker.record(event.asset_id, f.format, f.size_name, original, f.filesize, conn=conn)
                recorded += 1
        if event.state == JobState.FAILED:
            logger.warning("Remote processing failed for asset %s", event.asset_id)
        return recorded


_reconciler: Optional[WebhookReconciler] = None


def get_reconciler() -> WebhookReconciler:
    global _reconciler
    if _reconciler is None:
        from mediaopt.config import get_settings
        from mediaopt.library import get_library
        from mediaopt.tracker import get_tracker

        _reconciler = WebhookReconciler(get_settings(), get_tracker(), get_library())
    return _reconciler
