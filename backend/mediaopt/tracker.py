"""Per-asset conversion bookkeeping: one row per (asset, format, rendition size)."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection

from mediaopt import db

logger = logging.getLogger("mediaopt.tracker")

RECENT_DAYS = 30


def _savings_percentage(original: int, converted: int) -> float:
    if not original:
        return 0.0
    return round((1 - converted / original) * 100, 2)


class ConversionTracker:
    """Records size savings and aggregates stats. Later records for the same key supersede earlier ones."""

    def record(
        self,
        asset_id: int,
        fmt: str,
        size_name: str,
        original_bytes: int,
        converted_bytes: int,
        conn: Optional[Connection] = None,
    ) -> None:
        original_bytes = int(original_bytes)
        converted_bytes = int(converted_bytes)
        sql = db.upsert_sql(
            "conversions",
            ["attachment_id", "format", "size_name", "original_size", "converted_size", "size_savings", "converted_at"],
            key=["attachment_id", "format", "size_name"],
            update=["original_size", "converted_size", "size_savings", "converted_at"],
        )
        with db.session(conn) as c:
            c.execute(
                text(sql),
                {
                    "attachment_id": int(asset_id),
                    "format": fmt.lower(),
                    "size_name": size_name,
                    "original_size": original_bytes,
                    "converted_size": converted_bytes,
                    "size_savings": max(0, original_bytes - converted_bytes),
                    "converted_at": db.now_iso(),
                },
            )
        logger.debug("Recorded %s/%s/%s: %s -> %s bytes", asset_id, fmt, size_name, original_bytes, converted_bytes)

    def stats(self) -> dict:
        with db.session() as c:
            row = c.execute(
                text(
                    "SELECT COUNT(*), COALESCE(SUM(original_size), 0), COALESCE(SUM(converted_size), 0), "
                    "COALESCE(SUM(size_savings), 0) FROM conversions"
                )
            ).fetchone()
            by_format_rows = c.execute(
                text(
                    "SELECT format, COUNT(*), COALESCE(SUM(original_size), 0), COALESCE(SUM(converted_size), 0), "
                    "COALESCE(SUM(size_savings), 0) FROM conversions GROUP BY format ORDER BY format"
                )
            ).fetchall()
            since = db.to_iso(datetime.now(timezone.utc) - timedelta(days=RECENT_DAYS))
            recent = c.execute(
                text("SELECT COUNT(*), COALESCE(SUM(size_savings), 0) FROM conversions WHERE converted_at >= :since"),
                {"since": since},
            ).fetchone()
        total, original, converted, savings = (int(v) for v in row)
        by_format = {}
        for fmt, count, f_original, f_converted, f_savings in by_format_rows:
            by_format[fmt] = {
                "count": int(count),
                "original_bytes": int(f_original),
                "converted_bytes": int(f_converted),
                "savings_bytes": int(f_savings),
                "savings_percentage": _savings_percentage(int(f_original), int(f_converted)),
            }
        return {
            "total_conversions": total,
            "total_original_bytes": original,
            "total_converted_bytes": converted,
            "total_savings_bytes": savings,
            "savings_percentage": _savings_percentage(original, converted),
            "by_format": by_format,
            "recent": {"days": RECENT_DAYS, "conversions": int(recent[0]), "savings_bytes": int(recent[1])},
        }

    def get_attachment_conversions(self, asset_id: int) -> list[dict]:
        with db.session() as c:
            rows = c.execute(
                text(
                    "SELECT format, size_name, original_size, converted_size, size_savings, converted_at "
                    "FROM conversions WHERE attachment_id = :id ORDER BY format, size_name"
                ),
                {"id": int(asset_id)},
            ).fetchall()
        return [
            {
                "format": r[0],
                "size_name": r[1],
                "original_size": int(r[2]),
                "converted_size": int(r[3]),
                "size_savings": int(r[4]),
                "savings_percentage": _savings_percentage(int(r[2]), int(r[3])),
                "converted_at": r[5],
            }
            for r in rows
        ]

    def get_attachment_stats(self, asset_id: int) -> dict:
        conversions = self.get_attachment_conversions(asset_id)
        original = sum(c["original_size"] for c in conversions)
        converted = sum(c["converted_size"] for c in conversions)
        return {
            "attachment_id": int(asset_id),
            "total_conversions": len(conversions),
            "formats": sorted({c["format"] for c in conversions}),
            "total_original_bytes": original,
            "total_converted_bytes": converted,
            "total_savings_bytes": sum(c["size_savings"] for c in conversions),
            "savings_percentage": _savings_percentage(original, converted),
        }

    def has_conversion(self, asset_id: int, fmt: str, size_name: Optional[str] = None) -> bool:
        sql = "SELECT 1 FROM conversions WHERE attachment_id = :id AND format = :format"
        params = {"id": int(asset_id), "format": fmt.lower()}
        if size_name is not None:
            sql += " AND size_name = :size_name"
            params["size_name"] = size_name
        with db.session() as c:
            return c.execute(text(sql + " LIMIT 1"), params).fetchone() is not None

    def get_converted_types(self, asset_id: int) -> list[str]:
        with db.session() as c:
            rows = c.execute(
                text("SELECT DISTINCT format FROM conversions WHERE attachment_id = :id ORDER BY format"),
                {"id": int(asset_id)},
            ).fetchall()
        return [r[0] for r in rows]

    def converted_keys(self, asset_id: int) -> set[tuple[str, str]]:
        """(format, size_name) pairs already recorded for an asset."""
        with db.session() as c:
            rows = c.execute(
                text("SELECT format, size_name FROM conversions WHERE attachment_id = :id"),
                {"id": int(asset_id)},
            ).fetchall()
        return {(r[0], r[1]) for r in rows}

    def total_savings_bytes(self) -> int:
        with db.session() as c:
            return int(c.execute(text("SELECT COALESCE(SUM(size_savings), 0) FROM conversions")).scalar())

    def delete_attachment_conversions(self, asset_id: int, conn: Optional[Connection] = None) -> int:
        with db.session(conn) as c:
            result = c.execute(text("DELETE FROM conversions WHERE attachment_id = :id"), {"id": int(asset_id)})
        return result.rowcount

    def delete_attachment_conversions_by_formats(
        self, asset_id: int, formats: Iterable[str], conn: Optional[Connection] = None
    ) -> int:
        formats = [f.lower() for f in formats]
        if not formats:
            return 0
        placeholders = ", ".join(f":f{i}" for i in range(len(formats)))
        params = {"id": int(asset_id), **{f"f{i}": f for i, f in enumerate(formats)}}
        with db.session(conn) as c:
            result = c.execute(
                text(f"DELETE FROM conversions WHERE attachment_id = :id AND format IN ({placeholders})"),
                params,
            )
        return result.rowcount


_tracker: Optional[ConversionTracker] = None


def get_tracker() -> ConversionTracker:
    global _tracker
    if _tracker is None:
        _tracker = ConversionTracker()
    return _tracker
