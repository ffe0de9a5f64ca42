"""Backup run history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import desc, insert, select
from sqlalchemy.engine import Engine

from rankwatch.db.tables import backup_runs
from rankwatch.utils.dates import as_utc

SOURCE_MANUAL = "manual"
SOURCE_SCHEDULER = "scheduler"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass(slots=True)
class BackupRun:
    source: str
    status: str
    started_at: datetime
    finished_at: datetime
    triggered_by: str | None = None
    timeframe_days: int = 0
    format: str = "json"
    chat_targets: list[str] = field(default_factory=list)
    total_collections: int = 0
    total_records: int = 0
    total_files: int = 0
    summary: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    id: int | None = None


class BackupRunStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert(self, run: BackupRun) -> BackupRun:
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(backup_runs).values(
                    source=run.source,
                    status=run.status,
                    triggered_by=run.triggered_by,
                    started_at=as_utc(run.started_at),
                    finished_at=as_utc(run.finished_at),
                    timeframe_days=run.timeframe_days,
                    format=run.format,
                    chat_targets=list(run.chat_targets),
                    total_collections=run.total_collections,
                    total_records=run.total_records,
                    total_files=run.total_files,
                    summary=run.summary,
                    error=run.error or "",
                )
            )
        run.id = int(result.inserted_primary_key[0])
        return run

    def list_recent(self, limit: int = 20) -> list[BackupRun]:
        query = select(backup_runs).order_by(desc(backup_runs.c.started_at), desc(backup_runs.c.id)).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [
            BackupRun(
                id=row["id"],
                source=row["source"],
                status=row["status"],
                triggered_by=row["triggered_by"],
                started_at=as_utc(row["started_at"]),
                finished_at=as_utc(row["finished_at"]),
                timeframe_days=row["timeframe_days"],
                format=row["format"],
                chat_targets=list(row["chat_targets"] or []),
                total_collections=row["total_collections"],
                total_records=row["total_records"],
                total_files=row["total_files"],
                summary=dict(row["summary"] or {}),
                error=row["error"] or "",
            )
            for row in rows
        ]
