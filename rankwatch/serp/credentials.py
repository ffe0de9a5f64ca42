"""SERP API credential store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Engine

from rankwatch.db.tables import api_credentials, check_runs, key_rotation
from rankwatch.utils.dates import as_utc, utc_now


@dataclass(slots=True)
class ApiCredential:
    id: int
    name: str
    secret: str
    is_active: bool = True
    baseline_remaining: int | None = None
    baseline_captured_at: datetime | None = None
    last_used_at: datetime | None = None
    exhausted_at: datetime | None = None
    last_error: str = ""
    request_count_lifetime: int = 0
    request_count_this_month: int = 0
    deleted_at: datetime | None = None

    @property
    def masked_secret(self) -> str:
        if len(self.secret) > 6:
            return f"{self.secret[:3]}***{self.secret[-3:]}"
        return "***"


def _credential_from_row(row: Mapping[str, Any]) -> ApiCredential:
    return ApiCredential(
        id=row["id"],
        name=row["name"],
        secret=row["secret"],
        is_active=bool(row["is_active"]),
        baseline_remaining=row["baseline_remaining"],
        baseline_captured_at=as_utc(row["baseline_captured_at"]),
        last_used_at=as_utc(row["last_used_at"]),
        exhausted_at=as_utc(row["exhausted_at"]),
        last_error=row["last_error"] or "",
        request_count_lifetime=row["request_count"] or 0,
        deleted_at=as_utc(row["deleted_at"]),
    )


class CredentialStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list(self, *, include_deleted: bool = False) -> list[ApiCredential]:
        query = select(api_credentials).order_by(api_credentials.c.id)
        if not include_deleted:
            query = query.where(api_credentials.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            return [_credential_from_row(row) for row in conn.execute(query).mappings()]

    def get(self, credential_id: int) -> ApiCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(api_credentials).where(api_credentials.c.id == credential_id)
            ).mappings().first()
        return _credential_from_row(row) if row else None

    def insert(self, name: str, secret: str, *, is_active: bool = True) -> ApiCredential:
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(api_credentials).values(
                    name=name,
                    secret=secret,
                    is_active=is_active,
                    last_error="",
                    request_count=0,
                    created_at=utc_now(),
                )
            )
            credential_id = int(result.inserted_primary_key[0])
        return self.get(credential_id)

    def update(self, credential_id: int, **values: Any) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                api_credentials.update().where(api_credentials.c.id == credential_id).values(**values)
            )

    def record_attempt(
        self,
        credential_id: int,
        *,
        used_at: datetime,
        last_error: str,
        exhausted_at: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "last_used_at": used_at,
            "last_error": last_error,
            "request_count": api_credentials.c.request_count + 1,
        }
        if exhausted_at is not None:
            values["exhausted_at"] = exhausted_at
        self.update(credential_id, **values)

    def load_cursor(self) -> int:
        with self.engine.connect() as conn:
            value = conn.execute(
                select(key_rotation.c.cursor).where(key_rotation.c.id == 1)
            ).scalar_one_or_none()
        return int(value or 0)

    def save_cursor(self, cursor: int) -> None:
        with self.engine.begin() as conn:
            updated = conn.execute(
                key_rotation.update().where(key_rotation.c.id == 1).values(cursor=cursor)
            )
            if not updated.rowcount:
                conn.execute(insert(key_rotation).values(id=1, cursor=cursor))

    def monthly_request_counts(self, since: datetime) -> dict[int, int]:
        query = (
            select(check_runs.c.key_id, func.count().label("total"))
            .where(check_runs.c.key_id.is_not(None), check_runs.c.checked_at >= as_utc(since))
            .group_by(check_runs.c.key_id)
        )
        with self.engine.connect() as conn:
            return {row.key_id: int(row.total) for row in conn.execute(query)}
