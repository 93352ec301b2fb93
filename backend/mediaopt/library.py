"""Media library registry: assets, their renditions, and where each converted file lives."""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection

from mediaopt import config, db
from mediaopt.conversion.models import FORMAT_EXTENSIONS, MediaKind, kind_for_mimetype

logger = logging.getLogger("mediaopt.library")

# Pseudo-format holding each rendition's unconverted byte size
ORIGINAL = "original"


@dataclass
class MediaAsset:
    attachment_id: int
    mimetype: str
    file_path: str
    source_url: Optional[str] = None
    renditions: dict[str, str] = field(default_factory=dict)  # size name -> file path, "full" included
    conversion_disabled: bool = False
    created_at: Optional[str] = None

    @property
    def kind(self) -> Optional[MediaKind]:
        return kind_for_mimetype(self.mimetype)

    def to_dict(self) -> dict:
        return {
            "attachment_id": self.attachment_id,
            "mimetype": self.mimetype,
            "file_path": self.file_path,
            "source_url": self.source_url,
            "renditions": dict(self.renditions),
            "conversion_disabled": self.conversion_disabled,
            "created_at": self.created_at,
        }


def _row_to_asset(row) -> MediaAsset:
    renditions = json.loads(row[4]) if row[4] else {}
    renditions.setdefault("full", row[2])
    return MediaAsset(
        attachment_id=int(row[0]),
        mimetype=row[1],
        file_path=row[2],
        source_url=row[3],
        renditions=renditions,
        conversion_disabled=bool(row[5]),
        created_at=row[6],
    )


class MediaLibrary:
    def __init__(self, media_root: Optional[Path] = None, media_base_url: Optional[str] = None):
        self.media_root = Path(media_root or config.MEDIA_ROOT)
        self.media_base_url = (media_base_url if media_base_url is not None else config.MEDIA_BASE_URL).rstrip("/")

    def register(
        self,
        mimetype: str,
        file_path,
        renditions: Optional[dict] = None,
        source_url: Optional[str] = None,
        attachment_id: Optional[int] = None,
    ) -> MediaAsset:
        """Add (or replace) an asset and record the original size of every rendition on disk."""
        renditions = {k: str(v) for k, v in (renditions or {}).items()}
        renditions.setdefault("full", str(file_path))
        with db.session() as conn:
            if attachment_id is None:
                attachment_id = int(conn.execute(text("SELECT COALESCE(MAX(attachment_id), 0) + 1 FROM assets")).scalar())
            conn.execute(
                text(
                    db.upsert_sql(
                        "assets",
                        ["attachment_id", "mimetype", "file_path", "source_url", "renditions_json", "conversion_disabled", "created_at"],
                        key=["attachment_id"],
                        update=["mimetype", "file_path", "source_url", "renditions_json"],
                    )
                ),
                {
                    "attachment_id": int(attachment_id),
                    "mimetype": mimetype,
                    "file_path": str(file_path),
                    "source_url": source_url,
                    "renditions_json": json.dumps(renditions),
                    "conversion_disabled": 0,
                    "created_at": db.now_iso(),
                },
            )
            for size_name, path in renditions.items():
                p = Path(path)
                if p.is_file():
                    self.set_file(attachment_id, ORIGINAL, size_name, str(p), p.stat().st_size, conn=conn)
        logger.info("Registered asset %s (%s, %s renditions)", attachment_id, mimetype, len(renditions))
        return self.get(attachment_id)

    def get(self, attachment_id: int) -> Optional[MediaAsset]:
        with db.session() as conn:
            row = conn.execute(
                text(
                    "SELECT attachment_id, mimetype, file_path, source_url, renditions_json, conversion_disabled, created_at "
                    "FROM assets WHERE attachment_id = :id"
                ),
                {"id": int(attachment_id)},
            ).fetchone()
        return _row_to_asset(row) if row else None

    def list_ids(self, kind: Optional[MediaKind] = None) -> list[int]:
        sql = "SELECT attachment_id FROM assets"
        params = {}
        if kind is not None:
            sql += " WHERE mimetype LIKE :prefix"
            params["prefix"] = f"{MediaKind(kind).value}/%"
        with db.session() as conn:
            rows = conn.execute(text(sql + " ORDER BY attachment_id"), params).fetchall()
        return [int(r[0]) for r in rows]

    def set_conversion_disabled(self, attachment_id: int, disabled: bool = True) -> None:
        with db.session() as conn:
            conn.execute(
                text("UPDATE assets SET conversion_disabled = :d WHERE attachment_id = :id"),
                {"d": 1 if disabled else 0, "id": int(attachment_id)},
            )

    def set_file(
        self,
        attachment_id: int,
        fmt: str,
        size_name: str,
        location: Optional[str],
        filesize: int,
        conn: Optional[Connection] = None,
    ) -> None:
        sql = db.upsert_sql(
            "asset_files",
            ["attachment_id", "format", "size_name", "location", "filesize", "updated_at"],
            key=["attachment_id", "format", "size_name"],
            update=["location", "filesize", "updated_at"],
        )
        with db.session(conn) as c:
            c.execute(
                text(sql),
                {
                    "attachment_id": int(attachment_id),
                    "format": fmt.lower(),
                    "size_name": size_name,
                    "location": location,
                    "filesize": int(filesize or 0),
                    "updated_at": db.now_iso(),
                },
            )

    def get_file_size(self, attachment_id: int, fmt: str, size_name: str, conn: Optional[Connection] = None) -> Optional[int]:
        """Recorded byte size, or None when nothing (or zero bytes) is on record."""
        with db.session(conn) as c:
            value = c.execute(
                text(
                    "SELECT filesize FROM asset_files WHERE attachment_id = :id AND format = :format AND size_name = :size"
                ),
                {"id": int(attachment_id), "format": fmt.lower(), "size": size_name},
            ).scalar()
        if value is None or int(value) <= 0:
            return None
        return int(value)

    def get_files(self, attachment_id: int) -> dict:
        """size name -> format -> {location, filesize}."""
        with db.session() as c:
            rows = c.execute(
                text("SELECT size_name, format, location, filesize FROM asset_files WHERE attachment_id = :id"),
                {"id": int(attachment_id)},
            ).fetchall()
        files: dict = {}
        for size_name, fmt, location, filesize in rows:
            files.setdefault(size_name, {})[fmt] = {"location": location, "filesize": int(filesize)}
        return files

    def original_url(self, asset: MediaAsset) -> str:
        """Stable pull URL for the unmodified source, built from the library base URL, never a CDN one."""
        if asset.source_url:
            return asset.source_url
        path = Path(asset.file_path)
        try:
            relative = path.resolve().relative_to(self.media_root.resolve()).as_posix()
        except ValueError:
            relative = path.name
        return f"{self.media_base_url}/{relative}"

    def delete(self, attachment_id: int, remove_files: bool = True, conn: Optional[Connection] = None) -> bool:
        """Drop the asset row, its file rows and (optionally) converted artifacts on disk."""
        asset = self.get(attachment_id)
        if asset is None:
            return False
        if remove_files:
            for path in asset.renditions.values():
                source = Path(path)
                for ext in FORMAT_EXTENSIONS.values():
                    artifact = source.with_name(source.stem + ext)
                    if artifact != source and artifact.exists():
                        try:
                            artifact.unlink()
                        except OSError as e:
                            logger.warning("Could not remove %s: %s", artifact, e)
        with db.session(conn) as c:
            c.execute(text("DELETE FROM asset_files WHERE attachment_id = :id"), {"id": int(attachment_id)})
            c.execute(text("DELETE FROM assets WHERE attachment_id = :id"), {"id": int(attachment_id)})
        logger.info("Deleted asset %s", attachment_id)
        return True


_library: Optional[MediaLibrary] = None


def get_library() -> MediaLibrary:
    global _library
    if _library is None:
        _library = MediaLibrary()
    return _library
