"""Export the data store to Telegram in bounded-size files."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from rankwatch.db.tables import backup_runs, brands, check_runs, tracked_domains
from rankwatch.errors import BackupAbortedError, BackupDeliveryError
from rankwatch.notify.render import render_notice
from rankwatch.notify.telegram import TelegramChannel
from rankwatch.utils.dates import as_utc, format_local, format_stamp, utc_now

logger = logging.getLogger(__name__)

MAX_ROWS_PER_FILE = int(os.environ.get("BACKUP_MAX_ROWS_PER_FILE", 500))

# Ordered; credentials are deliberately absent.
COLLECTIONS = {
    "brands": (brands, None),
    "tracked_domains": (tracked_domains, None),
    "check_runs": (check_runs, check_runs.c.checked_at),
    "backup_runs": (backup_runs, None),
}


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


class BackupSource:
    """Read access to the exportable tables, keyset-paginated on ``id``."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def collections(self) -> list[str]:
        return list(COLLECTIONS)

    def _filtered(self, query, collection: str, since: datetime | None):
        table, time_column = COLLECTIONS[collection]
        if since is not None and time_column is not None:
            query = query.where(time_column >= as_utc(since))
        return query

    def count_documents(self, collection: str, since: datetime | None = None) -> int:
        table, _ = COLLECTIONS[collection]
        query = self._filtered(select(func.count()).select_from(table), collection, since)
        with self.engine.connect() as conn:
            return int(conn.execute(query).scalar_one())

    def find_batch(
        self,
        collection: str,
        since: datetime | None = None,
        after_key: int | None = None,
        limit: int = MAX_ROWS_PER_FILE,
    ) -> list[dict[str, Any]]:
        table, _ = COLLECTIONS[collection]
        query = self._filtered(select(table), collection, since)
        if after_key is not None:
            query = query.where(table.c.id > after_key)
        query = query.order_by(table.c.id).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [{key: _json_value(value) for key, value in row.items()} for row in rows]


def serialize_rows(rows: list[dict[str, Any]], fmt: str) -> str:
    if fmt == "ndjson":
        return "".join(json.dumps(row, ensure_ascii=False) + "\n" for row in rows)
    return json.dumps(rows, indent=2, ensure_ascii=False)


def make_file_name(stamp: str, collection: str, part: int, fmt: str) -> str:
    ext = "ndjson" if fmt == "ndjson" else "json"
    return f"backup_{stamp}_{collection}_p{part}.{ext}"


@dataclass(slots=True)
class ExportProgress:
    started_at: datetime
    finished_at: datetime | None = None
    current_collection: str | None = None
    total_collections: int = 0
    total_records: int = 0
    total_files: int = 0
    completed: list[str] = field(default_factory=list)
    collections: dict[str, dict[str, int]] = field(default_factory=dict)
    delivery_failures: dict[str, int] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "collections": {name: dict(item) for name, item in self.collections.items()},
            "delivery_failures": dict(self.delivery_failures),
            "failed_at": self.current_collection if self.finished_at is None else None,
        }


async def _deliver(
    targets: list[str],
    send: Callable[[str], Awaitable[None]],
    progress: ExportProgress,
    what: str,
) -> None:
    outcomes = await asyncio.gather(*(send(target) for target in targets), return_exceptions=True)
    failures = {
        target: str(outcome) or outcome.__class__.__name__
        for target, outcome in zip(targets, outcomes)
        if isinstance(outcome, Exception)
    }
    for target, reason in failures.items():
        logger.warning("Delivery of %s to %s failed: %s", what, target, reason)
        progress.delivery_failures[target] = progress.delivery_failures.get(target, 0) + 1
    if failures and len(failures) == len(targets):
        raise BackupDeliveryError(f"{what} reached no target: {next(iter(failures.values()))}", failures=failures)


async def run_backup(
    source: BackupSource,
    channel: TelegramChannel,
    targets: list[str],
    *,
    run_source: str,
    fmt: str = "json",
    timeframe_days: int = 1,
    max_rows: int = MAX_ROWS_PER_FILE,
    started_at: datetime | None = None,
) -> ExportProgress:
    """Send every collection to every target, one batch at a time.

    Raises ``BackupAbortedError`` carrying the progress made so far; a failure
    notice has already been attempted by then.
    """
    loop = asyncio.get_running_loop()
    progress = ExportProgress(started_at=started_at or utc_now())
    stamp = format_stamp(progress.started_at)
    since = progress.started_at - timedelta(days=timeframe_days) if timeframe_days > 0 else None
    names = source.collections()

    try:
        header = render_notice(
            "backup_started",
            {
                "source": run_source,
                "started_at": format_local(progress.started_at),
                "format": fmt,
                "timeframe_days": timeframe_days,
            },
        )
        await _deliver(targets, lambda target: channel.send_text(target, header), progress, "header")

        for name in names:
            progress.current_collection = name
            total = await loop.run_in_executor(None, source.count_documents, name, since)
            progress.total_collections += 1
            stats = progress.collections.setdefault(name, {"records": total, "files": 0})
            part, after_key = 1, None
            while total:
                rows = await loop.run_in_executor(None, source.find_batch, name, since, after_key, max_rows)
                if not rows:
                    break
                after_key = rows[-1]["id"]
                filename = make_file_name(stamp, name, part, fmt)
                content = serialize_rows(rows, fmt)
                caption = f"{name} part {part} ({len(rows)} rows)"
                await _deliver(
                    targets,
                    lambda target: channel.send_document(target, filename, content, caption),
                    progress,
                    filename,
                )
                stats["files"] += 1
                progress.total_files += 1
                progress.total_records += len(rows)
                part += 1
            progress.completed.append(f"{name} - done ({stats['records']} rows, {stats['files']} files)")
            logger.info("Backed up %s: %s rows in %s files", name, stats["records"], stats["files"])

        finished_at = utc_now()
        footer = render_notice(
            "backup_finished",
            {
                "total_collections": progress.total_collections,
                "total_records": progress.total_records,
                "total_files": progress.total_files,
                "duration_seconds": max(1, round((finished_at - progress.started_at).total_seconds())),
                "completed": progress.completed,
                "delivery_failures": sorted(progress.delivery_failures),
            },
        )
        await _deliver(targets, lambda target: channel.send_text(target, footer), progress, "footer")
        progress.finished_at = finished_at
        progress.current_collection = None
        return progress
    except Exception as exc:
        await _send_failure_notice(channel, targets, progress, len(names), exc)
        raise BackupAbortedError(exc, progress) from exc


async def _send_failure_notice(
    channel: TelegramChannel,
    targets: list[str],
    progress: ExportProgress,
    collection_count: int,
    error: BaseException,
) -> None:
    text = render_notice(
        "backup_failed",
        {
            "failed_at": progress.current_collection,
            "completed": progress.completed,
            "total_collections": collection_count,
            "total_records": progress.total_records,
            "total_files": progress.total_files,
            "error": str(error),
        },
    )
    outcomes = await asyncio.gather(
        *(channel.send_text(target, text) for target in targets), return_exceptions=True
    )
    for target, outcome in zip(targets, outcomes):
        if isinstance(outcome, Exception):
            logger.warning("Failure notice to %s not delivered: %s", target, outcome)
