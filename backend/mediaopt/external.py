"""Two-phase jobs on the remote processing service: submit now, complete later via webhook."""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from PIL import Image
from sqlalchemy import text
from sqlalchemy.engine import Connection

from mediaopt import db
from mediaopt.config import ConversionSettings
from mediaopt.conversion.errors import NetworkFailure
from mediaopt.conversion.models import JobState, MediaKind
from mediaopt.library import MediaAsset, MediaLibrary
from mediaopt.locks import KeyedLock, asset_locks

logger = logging.getLogger("mediaopt.external")

USER_AGENT = "MediaOpt/1.0"


@dataclass
class ExternalJob:
    asset_id: int
    account_id: str
    state: JobState
    submitted_at: datetime
    updated_at: datetime
    cdn_results: dict = field(default_factory=dict)  # size name -> format -> {url, filesize}
    remote_job_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "attachment_id": self.asset_id,
            "account_id": self.account_id,
            "state": self.state.value,
            "submitted_at": db.to_iso(self.submitted_at),
            "updated_at": db.to_iso(self.updated_at),
            "cdn_results": self.cdn_results,
            "remote_job_id": self.remote_job_id,
            "error": self.error,
        }


@dataclass(frozen=True)
class SubmitResult:
    success: bool
    code: str
    message: str = ""
    remote_job_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "code": self.code, "message": self.message, "remote_job_id": self.remote_job_id}


_JOB_COLUMNS = "attachment_id, account_id, state, remote_job_id, cdn_results_json, error, submitted_at, updated_at"


def _row_to_job(row) -> ExternalJob:
    return ExternalJob(
        asset_id=int(row[0]),
        account_id=row[1],
        state=JobState(row[2]),
        remote_job_id=row[3],
        cdn_results=json.loads(row[4]) if row[4] else {},
        error=row[5],
        submitted_at=db.from_iso(row[6]),
        updated_at=db.from_iso(row[7]),
    )


class JobStore:
    """external_jobs table. One row per asset; every write is a single upsert."""

    def get(self, asset_id: int, conn: Optional[Connection] = None) -> Optional[ExternalJob]:
        with db.session(conn) as c:
            row = c.execute(
                text(f"SELECT {_JOB_COLUMNS} FROM external_jobs WHERE attachment_id = :id"),
                {"id": int(asset_id)},
            ).fetchone()
        return _row_to_job(row) if row else None

    def list_by_state(self, state: JobState) -> list[ExternalJob]:
        with db.session() as c:
            rows = c.execute(
                text(f"SELECT {_JOB_COLUMNS} FROM external_jobs WHERE state = :state ORDER BY attachment_id"),
                {"state": JobState(state).value},
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def mark_submitted(
        self, asset_id: int, account_id: str, remote_job_id: Optional[str] = None, conn: Optional[Connection] = None
    ) -> None:
        """A new submission supersedes whatever the asset had before."""
        now = db.now_iso()
        sql = db.upsert_sql(
            "external_jobs",
            ["attachment_id", "account_id", "state", "remote_job_id", "cdn_results_json", "error", "submitted_at", "updated_at"],
            key=["attachment_id"],
            update=["account_id", "state", "remote_job_id", "cdn_results_json", "error", "submitted_at", "updated_at"],
        )
        with db.session(conn) as c:
            c.execute(
                text(sql),
                {
                    "attachment_id": int(asset_id),
                    "account_id": account_id,
                    "state": JobState.SUBMITTED.value,
                    "remote_job_id": remote_job_id,
                    "cdn_results_json": None,
                    "error": None,
                    "submitted_at": now,
                    "updated_at": now,
                },
            )

    def apply_completion(
        self,
        asset_id: int,
        account_id: str,
        state: JobState,
        cdn_results: Optional[dict],
        error: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> None:
        """Write a terminal state. The most recent callback wins, whatever state the row was in."""
        now = db.now_iso()
        sql = db.upsert_sql(
            "external_jobs",
            ["attachment_id", "account_id", "state", "cdn_results_json", "error", "submitted_at", "updated_at"],
            key=["attachment_id"],
            update=["state", "cdn_results_json", "error", "updated_at"],
        )
        with db.session(conn) as c:
            c.execute(
                text(sql),
                {
                    "attachment_id": int(asset_id),
                    "account_id": account_id,
                    "state": JobState(state).value,
                    "cdn_results_json": json.dumps(cdn_results or {}),
                    "error": error,
                    "submitted_at": now,
                    "updated_at": now,
                },
            )

    def delete(self, asset_id: int, conn: Optional[Connection] = None) -> None:
        with db.session(conn) as c:
            c.execute(text("DELETE FROM external_jobs WHERE attachment_id = :id"), {"id": int(asset_id)})


def _rendition_dimensions(path: str) -> Optional[dict]:
    try:
        with Image.open(path) as img:
            return {"width": img.width, "height": img.height}
    except (OSError, ValueError) as e:
        logger.debug("Could not read dimensions of %s: %s", path, e)
        return None


def build_operations(asset: MediaAsset, settings: ConversionSettings) -> list[dict]:
    """One operation per rendition for images, full size only for video."""
    kind = asset.kind
    formats = list(settings.formats_for(kind.value if kind else "image"))
    if kind == MediaKind.VIDEO:
        return [{"formats": formats, "key_name": "full"}]
    operations = [{"formats": formats, "key_name": "full"}]
    for size_name, path in asset.renditions.items():
        if size_name == "full":
            continue
        operation = {"formats": formats, "key_name": size_name}
        dims = _rendition_dimensions(path)
        if dims:
            operation["resize"] = dims
        operations.append(operation)
    return operations


class ExternalJobClient:
    """Submits assets to the remote service and sends best-effort deletes.

    Submission and the matching job-state write happen under the asset's lock so a
    webhook for the same asset cannot interleave with them.
    """

    def __init__(
        self,
        settings: ConversionSettings,
        library: MediaLibrary,
        store: Optional[JobStore] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.settings = settings
        self.library = library
        self.store = store or JobStore()
        self.locks = locks or asset_locks

    def _refusal(self) -> Optional[SubmitResult]:
        if self.settings.external_blocked:
            return SubmitResult(False, "external_operations_blocked", "External operations are currently blocked")
        if not self.settings.account_id:
            return SubmitResult(False, "account_id_required", "Account ID not configured")
        if not self.settings.external_service_url:
            return SubmitResult(False, "service_url_required", "External service URL not configured")
        return None

    def _pull_url(self, asset: MediaAsset) -> Optional[str]:
        url = self.library.original_url(asset)
        cdn = self.settings.cdn_base_url.rstrip("/")
        if cdn and url.startswith(cdn):
            logger.error("Refusing CDN-rewritten source URL for asset %s: %s", asset.attachment_id, url)
            return None
        return url

    def _post(self, url: str, payload: dict) -> dict:
        body = json.dumps(payload).encode("utf-8")
        req = Request(
            url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
        )
        try:
            with urlopen(req, timeout=self.settings.external_timeout) as resp:
                raw = resp.read().decode("utf-8") or "{}"
        except HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace") if e.fp else ""
            try:
                data = json.loads(detail) if detail else {}
            except json.JSONDecodeError:
                data = {}
            if isinstance(data, dict) and data.get("error"):
                return data
            raise NetworkFailure(f"Remote service returned HTTP {e.code}") from e
        except (URLError, TimeoutError, OSError) as e:
            raise NetworkFailure(f"Could not reach remote service: {getattr(e, 'reason', e)}") from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise NetworkFailure("Remote service returned invalid JSON") from e
        return data if isinstance(data, dict) else {}

    def submit(self, asset_id: int, operations: list[dict], mimetype: str) -> SubmitResult:
        refusal = self._refusal()
        if refusal is not None:
            logger.info("Not submitting asset %s: %s", asset_id, refusal.code)
            return refusal
        asset = self.library.get(asset_id)
        if asset is None:
            return SubmitResult(False, "asset_not_found", f"Asset {asset_id} not found")
        pull_url = self._pull_url(asset)
        if pull_url is None:
            return SubmitResult(False, "invalid_source_url", "Source URL is CDN-rewritten")
        payload = {
            "account_id": self.settings.account_id,
            "attachment_id": int(asset_id),
            "pull_file_url": pull_url,
            "webhook_url": self.settings.webhook_url,
            "mimetype": mimetype,
            "operations": operations,
        }
        endpoint = self.settings.external_service_url.rstrip("/") + "/api/v1/jobs"
        with self.locks.hold(int(asset_id)):
            try:
                data = self._post(endpoint, payload)
            except NetworkFailure as e:
                logger.error("Submission for asset %s failed: %s", asset_id, e)
                return SubmitResult(False, e.code, str(e))
            if data.get("error"):
                logger.error("Remote service rejected asset %s: %s", asset_id, data["error"])
                return SubmitResult(False, "remote_error", str(data["error"]))
            remote_job_id = data.get("job_id")
            self.store.mark_submitted(asset_id, self.settings.account_id, remote_job_id)
        logger.info("Submitted asset %s to remote service (%s)", asset_id, data.get("status", "accepted"))
        return SubmitResult(True, "submitted", str(data.get("status", "")), remote_job_id)

    def submit_asset(self, asset: MediaAsset) -> SubmitResult:
        return self.submit(asset.attachment_id, build_operations(asset, self.settings), asset.mimetype)

    def delete(self, asset_id: int) -> bool:
        """Best-effort remote delete. Failures are logged and swallowed."""
        if not self.settings.account_id or not self.settings.external_service_url:
            return False
        url = (
            f"{self.settings.external_service_url.rstrip('/')}/api/v1/attachments/{int(asset_id)}"
            f"?account_id={quote(self.settings.account_id)}"
        )
        req = Request(url, method="DELETE", headers={"User-Agent": USER_AGENT})
        try:
            with urlopen(req, timeout=self.settings.external_timeout) as resp:
                ok = resp.status < 400
        except (URLError, TimeoutError, OSError) as e:
            logger.warning("Remote delete for asset %s failed: %s", asset_id, e)
            return False
        if not ok:
            logger.warning("Remote delete for asset %s returned HTTP %s", asset_id, resp.status)
        return ok

    def job_state(self, asset_id: int) -> Optional[JobState]:
        job = self.store.get(asset_id)
        return job.state if job else None

    def is_job_processing(self, asset_id: int) -> bool:
        return self.job_state(asset_id) == JobState.SUBMITTED

    def retry_failed_job(self, asset_id: int) -> SubmitResult:
        job = self.store.get(asset_id)
        if job is None or job.state != JobState.FAILED:
            return SubmitResult(False, "not_failed", f"Asset {asset_id} has no failed job")
        asset = self.library.get(asset_id)
        if asset is None:
            return SubmitResult(False, "asset_not_found", f"Asset {asset_id} not found")
        return self.submit_asset(asset)

    def retry_failed_jobs(self) -> dict:
        retried, failed = [], []
        for job in self.store.list_by_state(JobState.FAILED):
            result = self.retry_failed_job(job.asset_id)
            (retried if result.success else failed).append(job.asset_id)
        logger.info("Retried %s failed job(s), %s could not be resubmitted", len(retried), len(failed))
        return {"retried": retried, "failed": failed}


def delete_asset(asset_id: int, library: MediaLibrary, tracker, client: ExternalJobClient, service=None) -> bool:
    """Remove an asset locally, then tell the remote service. The remote call never blocks the local delete."""
    if service is not None:
        service.cancel_pending(asset_id)
    with client.locks.hold(int(asset_id)):
        with db.session() as conn:
            tracker.delete_attachment_conversions(asset_id, conn=conn)
            client.store.delete(asset_id, conn=conn)
        removed = library.delete(asset_id)
    if client.delete(asset_id):
        logger.info("Remote artifacts for asset %s deleted", asset_id)
    return removed


_client: Optional[ExternalJobClient] = None


def get_external_client() -> ExternalJobClient:
    global _client
    if _client is None:
        from mediaopt.config import get_settings
        from mediaopt.library import get_library

        _client = ExternalJobClient(get_settings(), get_library())
    return _client
