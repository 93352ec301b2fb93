"""Metered-tier admission control. A single quota_periods row holds the current window."""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import text

from mediaopt import db
from mediaopt.conversion.models import MediaKind

logger = logging.getLogger("mediaopt.quota")

PERIOD_ID = 1

_USED_COLUMN = {MediaKind.IMAGE: "images_used", MediaKind.VIDEO: "videos_used"}
_LIMIT_COLUMN = {MediaKind.IMAGE: "images_limit", MediaKind.VIDEO: "videos_limit"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QuotaPeriod:
    window_start: datetime
    window_end: datetime
    images_used: int
    videos_used: int
    images_limit: int
    videos_limit: int

    def used(self, kind: MediaKind) -> int:
        return self.images_used if kind == MediaKind.IMAGE else self.videos_used

    def limit(self, kind: MediaKind) -> int:
        return self.images_limit if kind == MediaKind.IMAGE else self.videos_limit

    def remaining(self, kind: MediaKind) -> int:
        return max(0, self.limit(kind) - self.used(kind))

    def to_dict(self) -> dict:
        return {
            "window_start": db.to_iso(self.window_start),
            "window_end": db.to_iso(self.window_end),
            "images_used": self.images_used,
            "videos_used": self.videos_used,
            "images_limit": self.images_limit,
            "videos_limit": self.videos_limit,
        }


class QuotaGate:
    """admit() is one conditional UPDATE, so concurrent callers can never be admitted past the limit."""

    def __init__(
        self,
        images_limit: int = 100,
        videos_limit: int = 20,
        window_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.images_limit = int(images_limit)
        self.videos_limit = int(videos_limit)
        self.window_days = int(window_days)
        self.clock = clock or _utcnow
        self._limits_synced = False

    @classmethod
    def from_settings(cls, settings, clock: Optional[Callable[[], datetime]] = None) -> "QuotaGate":
        return cls(settings.images_per_month, settings.videos_per_month, settings.quota_window_days, clock)

    def _ensure_period(self, conn, now: datetime) -> None:
        params = {
            "id": PERIOD_ID,
            "start": db.to_iso(now),
            "end": db.to_iso(now + timedelta(days=self.window_days)),
            "images_limit": self.images_limit,
            "videos_limit": self.videos_limit,
        }
        columns = "(id, window_start, window_end, images_used, videos_used, images_limit, videos_limit)"
        values = "(:id, :start, :end, 0, 0, :images_limit, :videos_limit)"
        if db.is_mysql():
            sql = f"INSERT IGNORE INTO quota_periods {columns} VALUES {values}"
        else:
            sql = f"INSERT INTO quota_periods {columns} VALUES {values} ON CONFLICT (id) DO NOTHING"
        conn.execute(text(sql), params)
        if not self._limits_synced:
            conn.execute(
                text("UPDATE quota_periods SET images_limit = :images_limit, videos_limit = :videos_limit WHERE id = :id"),
                params,
            )
            self._limits_synced = True

    def _rollover(self, conn, now: datetime) -> None:
        """Start a fresh window when the current one has ended. No-op otherwise."""
        result = conn.execute(
            text(
                "UPDATE quota_periods SET window_start = :start, window_end = :end, images_used = 0, videos_used = 0 "
                "WHERE id = :id AND window_end < :now"
            ),
            {
                "id": PERIOD_ID,
                "start": db.to_iso(now),
                "end": db.to_iso(now + timedelta(days=self.window_days)),
                "now": db.to_iso(now),
            },
        )
        if result.rowcount:
            logger.info("Quota window rolled over; new window ends in %s days", self.window_days)

    def admit(self, kind) -> bool:
        kind = MediaKind(kind)
        used, limit = _USED_COLUMN[kind], _LIMIT_COLUMN[kind]
        now = self.clock()
        with db.session() as conn:
            self._ensure_period(conn, now)
            self._rollover(conn, now)
            result = conn.execute(
                text(f"UPDATE quota_periods SET {used} = {used} + 1 WHERE id = :id AND {used} < {limit}"),
                {"id": PERIOD_ID},
            )
        admitted = result.rowcount == 1
        if not admitted:
            logger.info("Quota reached for %s conversions", kind.value)
        return admitted

    def current(self) -> QuotaPeriod:
        now = self.clock()
        with db.session() as conn:
            self._ensure_period(conn, now)
            self._rollover(conn, now)
            row = conn.execute(
                text(
                    "SELECT window_start, window_end, images_used, videos_used, images_limit, videos_limit "
                    "FROM quota_periods WHERE id = :id"
                ),
                {"id": PERIOD_ID},
            ).fetchone()
        return QuotaPeriod(
            window_start=db.from_iso(row[0]),
            window_end=db.from_iso(row[1]),
            images_used=int(row[2]),
            videos_used=int(row[3]),
            images_limit=int(row[4]),
            videos_limit=int(row[5]),
        )

    def days_until_reset(self) -> int:
        remaining = self.current().window_end - self.clock()
        return max(0, math.ceil(remaining.total_seconds() / 86400))

    def progress(self) -> dict:
        """Used / limit / remaining and percentage per kind, plus the next reset date."""
        period = self.current()
        info = {}
        for kind in MediaKind:
            used, limit = period.used(kind), period.limit(kind)
            info[f"{kind.value}s"] = {
                "used": used,
                "limit": limit,
                "remaining": period.remaining(kind),
                "progress": round(min(100.0, used / limit * 100), 1) if limit > 0 else 100.0,
            }
        info["reset_date"] = db.to_iso(period.window_end)
        info["days_until_reset"] = max(0, math.ceil((period.window_end - self.clock()).total_seconds() / 86400))
        return info


_gate: Optional[QuotaGate] = None


def get_quota_gate() -> QuotaGate:
    global _gate
    if _gate is None:
        from mediaopt.config import get_settings

        _gate = QuotaGate.from_settings(get_settings())
    return _gate
