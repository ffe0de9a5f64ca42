"""Persisted per-brand check results."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import desc, insert, select
from sqlalchemy.engine import Engine

from rankwatch.db.tables import brands, check_runs
from rankwatch.utils.dates import as_utc

TRIGGER_AUTO = "auto"
TRIGGER_MANUAL = "manual"


@dataclass(slots=True)
class ResultEntry:
    rank: int
    title: str
    link: str
    host: str
    match_type: str
    badge: str
    matched_domain_id: int | None = None
    matched_brand_id: int | None = None


@dataclass(slots=True)
class CheckRun:
    brand_id: int
    checked_at: datetime
    trigger: str
    query: str
    best_own_rank: int | None = None
    own_count: int = 0
    unknown_count: int = 0
    results: list[ResultEntry] = field(default_factory=list)
    key_id: int | None = None
    key_name: str | None = None
    ok: bool = True
    failure_reason: str | None = None
    id: int | None = None
    brand_code: str = ""


def _run_from_row(row) -> CheckRun:
    return CheckRun(
        id=row["id"],
        brand_id=row["brand_id"],
        checked_at=as_utc(row["checked_at"]),
        trigger=row["trigger"],
        query=row["query"] or "",
        best_own_rank=row["best_own_rank"],
        own_count=row["own_count"] or 0,
        unknown_count=row["unknown_count"] or 0,
        results=[ResultEntry(**item) for item in row["results"] or []],
        key_id=row["key_id"],
        key_name=row["key_name"],
        ok=bool(row["ok"]),
        failure_reason=row["failure_reason"],
        brand_code=row["brand_code"] or "",
    )


class CheckRunStore:
    """Append-only store; runs are never updated once written."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert(self, run: CheckRun) -> CheckRun:
        values: dict[str, Any] = {
            "brand_id": run.brand_id,
            "checked_at": as_utc(run.checked_at),
            "trigger": run.trigger,
            "query": run.query,
            "best_own_rank": run.best_own_rank,
            "own_count": run.own_count,
            "unknown_count": run.unknown_count,
            "results": [asdict(item) for item in run.results],
            "key_id": run.key_id,
            "key_name": run.key_name,
            "ok": run.ok,
            "failure_reason": run.failure_reason,
        }
        with self.engine.begin() as conn:
            result = conn.execute(insert(check_runs).values(**values))
        run.id = int(result.inserted_primary_key[0])
        return run

    def _select(self):
        return select(check_runs, brands.c.code.label("brand_code")).select_from(
            check_runs.outerjoin(brands, brands.c.id == check_runs.c.brand_id)
        )

    def latest(self) -> CheckRun | None:
        query = self._select().order_by(desc(check_runs.c.checked_at), desc(check_runs.c.id)).limit(1)
        with self.engine.connect() as conn:
            row = conn.execute(query).mappings().first()
        return _run_from_row(row) if row else None

    def list_recent(self, limit: int = 20) -> list[CheckRun]:
        query = self._select().order_by(desc(check_runs.c.checked_at), desc(check_runs.c.id)).limit(limit)
        with self.engine.connect() as conn:
            return [_run_from_row(row) for row in conn.execute(query).mappings()]

    def recent_auto_runs(self, since: datetime) -> list[CheckRun]:
        query = (
            self._select()
            .where(check_runs.c.trigger == TRIGGER_AUTO, check_runs.c.checked_at >= as_utc(since))
            .order_by(check_runs.c.checked_at)
        )
        with self.engine.connect() as conn:
            return [_run_from_row(row) for row in conn.execute(query).mappings()]
