"""Conversion records and savings statistics (conversions table)."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import text

from mediavariants import db
from mediavariants.conversion.models import FULL_SIZE, Format

logger = logging.getLogger("mediavariants.tracker")

RECENT_DAYS = 30


def _savings_percentage(total_original: int, total_savings: int) -> float:
    if total_original <= 0:
        return 0
    return round(total_savings / total_original * 100, 2)


def _summary(count, total_original, total_converted, total_savings) -> dict:
    total_original = int(total_original or 0)
    total_savings = int(total_savings or 0)
    return {
        "count": int(count or 0),
        "total_original_bytes": total_original,
        "total_converted_bytes": int(total_converted or 0),
        "total_savings_bytes": total_savings,
        "savings_percentage": _savings_percentage(total_original, total_savings),
    }


class ConversionTracker:
    """One record per (asset, format, size); re-converting replaces the record."""

    def record_conversion(
        self,
        asset_id: str,
        fmt: Format,
        original_bytes: int = 0,
        converted_bytes: int = 0,
        size_name: str = FULL_SIZE,
    ) -> None:
        original_bytes = int(original_bytes or 0)
        converted_bytes = int(converted_bytes or 0)
        params = {
            "asset_id": asset_id,
            "file_type": Format(fmt).value,
            "size_name": size_name or FULL_SIZE,
            "original_size": original_bytes,
            "converted_size": converted_bytes,
            "size_savings": max(0, original_bytes - converted_bytes),
            "now": db.now_iso(),
        }
        with db.session() as conn:
            if db.is_sqlite():
                conn.execute(
                    text("""
                        INSERT INTO conversions (asset_id, file_type, size_name, original_size, converted_size, size_savings, created_at)
                        VALUES (:asset_id, :file_type, :size_name, :original_size, :converted_size, :size_savings, :now)
                        ON CONFLICT (asset_id, file_type, size_name) DO UPDATE SET
                            original_size = excluded.original_size,
                            converted_size = excluded.converted_size,
                            size_savings = excluded.size_savings,
                            created_at = excluded.created_at
                    """),
                    params,
                )
            else:
                conn.execute(
                    text("""
                        INSERT INTO conversions (asset_id, file_type, size_name, original_size, converted_size, size_savings, created_at)
                        VALUES (:asset_id, :file_type, :size_name, :original_size, :converted_size, :size_savings, :now)
                        ON DUPLICATE KEY UPDATE original_size = :original_size, converted_size = :converted_size,
                            size_savings = :size_savings, created_at = :now
                    """),
                    params,
                )
        logger.debug(
            "Recorded %s/%s for asset %s: %s -> %s bytes",
            params["size_name"], params["file_type"], asset_id, original_bytes, converted_bytes,
        )

    def get_asset_conversions(self, asset_id: str) -> list[dict]:
        with db.get_engine().connect() as conn:
            rows = conn.execute(
                text("""
                    SELECT file_type, size_name, original_size, converted_size, size_savings, created_at
                    FROM conversions WHERE asset_id = :id ORDER BY created_at DESC, file_type, size_name
                """),
                {"id": asset_id},
            ).fetchall()
        return [
            {
                "file_type": r[0],
                "size_name": r[1],
                "original_size": r[2],
                "converted_size": r[3],
                "size_savings": r[4],
                "created_at": r[5],
            }
            for r in rows
        ]

    def has_conversion(self, asset_id: str, fmt: Format) -> bool:
        with db.get_engine().connect() as conn:
            row = conn.execute(
                text("SELECT COUNT(*) FROM conversions WHERE asset_id = :id AND file_type = :t"),
                {"id": asset_id, "t": Format(fmt).value},
            ).fetchone()
        return bool(row and row[0])

    def get_converted_types(self, asset_id: str) -> list[str]:
        with db.get_engine().connect() as conn:
            rows = conn.execute(
                text("SELECT DISTINCT file_type FROM conversions WHERE asset_id = :id ORDER BY file_type"),
                {"id": asset_id},
            ).fetchall()
        return [r[0] for r in rows]

    def delete_asset_conversions(self, asset_id: str) -> int:
        with db.session() as conn:
            result = conn.execute(text("DELETE FROM conversions WHERE asset_id = :id"), {"id": asset_id})
        return result.rowcount

    def delete_asset_conversions_by_formats(self, asset_id: str, formats: Iterable[Format]) -> int:
        values = [Format(f).value for f in formats]
        if not values:
            return 0
        params = {"id": asset_id}
        names = []
        for i, value in enumerate(values):
            params[f"f{i}"] = value
            names.append(f":f{i}")
        with db.session() as conn:
            result = conn.execute(
                text(f"DELETE FROM conversions WHERE asset_id = :id AND file_type IN ({', '.join(names)})"),
                params,
            )
        if result.rowcount:
            logger.info("Deleted %d conversion records for asset %s (%s)", result.rowcount, asset_id, ", ".join(values))
        return result.rowcount

    def get_conversion_stats(self) -> dict:
        with db.get_engine().connect() as conn:
            total = conn.execute(text("SELECT COUNT(*) FROM conversions")).fetchone()
            rows = conn.execute(
                text("SELECT file_type, COUNT(*) FROM conversions GROUP BY file_type ORDER BY file_type")
            ).fetchall()
        return {
            "total_conversions": int(total[0]) if total else 0,
            "by_type": {r[0]: int(r[1]) for r in rows},
        }

    def get_savings_stats(self, now: Optional[datetime] = None) -> dict:
        since = ((now or datetime.now(timezone.utc)) - timedelta(days=RECENT_DAYS)).isoformat()
        with db.get_engine().connect() as conn:
            totals = conn.execute(
                text("""
                    SELECT COUNT(*), COALESCE(SUM(original_size), 0), COALESCE(SUM(converted_size), 0), COALESCE(SUM(size_savings), 0)
                    FROM conversions
                """)
            ).fetchone()
            by_type = conn.execute(
                text("""
                    SELECT file_type, COUNT(*), SUM(original_size), SUM(converted_size), SUM(size_savings)
                    FROM conversions GROUP BY file_type ORDER BY file_type
                """)
            ).fetchall()
            recent = conn.execute(
                text("""
                    SELECT COUNT(*), COALESCE(SUM(original_size), 0), COALESCE(SUM(converted_size), 0), COALESCE(SUM(size_savings), 0)
                    FROM conversions WHERE created_at >= :since
                """),
                {"since": since},
            ).fetchone()
        overall = _summary(*totals)
        return {
            "total_savings_bytes": overall["total_savings_bytes"],
            "total_original_bytes": overall["total_original_bytes"],
            "total_converted_bytes": overall["total_converted_bytes"],
            "total_savings_percentage": overall["savings_percentage"],
            "by_type": {r[0]: _summary(r[1], r[2], r[3], r[4]) for r in by_type},
            "recent": _summary(*recent),
        }

    def get_asset_stats(self, asset_id: str) -> dict:
        with db.get_engine().connect() as conn:
            row = conn.execute(
                text("""
                    SELECT COUNT(*), COALESCE(SUM(original_size), 0), COALESCE(SUM(converted_size), 0), COALESCE(SUM(size_savings), 0)
                    FROM conversions WHERE asset_id = :id
                """),
                {"id": asset_id},
            ).fetchone()
        return _summary(*row)
