"""Table definitions shared by the stores, the migration and the tests."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB

metadata = MetaData()

JSONType = JSON().with_variant(JSONB(), "postgresql")
Timestamp = DateTime(timezone=True)

brands = Table(
    "brands",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("name", Text, nullable=False),
    Column("query", Text),
    Column("gl", String(8)),
    Column("hl", String(8)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", Timestamp),
)

tracked_domains = Table(
    "tracked_domains",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("brand_id", Integer, ForeignKey("brands.id"), nullable=False),
    Column("domain", Text, nullable=False),
    Column("host_key", Text),
    Column("root_key", Text),
    Column("tokens", JSONType),
    Column("created_at", Timestamp),
)

api_credentials = Table(
    "api_credentials",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False),
    Column("secret", Text, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("baseline_remaining", Integer),
    Column("baseline_captured_at", Timestamp),
    Column("last_used_at", Timestamp),
    Column("exhausted_at", Timestamp),
    Column("last_error", Text, nullable=False, default=""),
    Column("request_count", Integer, nullable=False, default=0),
    Column("created_at", Timestamp),
    Column("deleted_at", Timestamp),
)

key_rotation = Table(
    "key_rotation",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("cursor", Integer, nullable=False, default=0),
)

schedule_settings = Table(
    "schedule_settings",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("version", Integer, nullable=False, default=1),
    Column("auto_check_enabled", Boolean, nullable=False, default=False),
    Column("interval_minutes", Integer, nullable=False, default=60),
    Column("next_auto_check_at", Timestamp),
    Column("last_auto_check_at", Timestamp),
    Column("auto_check_started_by", Text),
    Column("last_run_summary", JSONType),
    Column("last_run_failures", JSONType),
    Column("backup_enabled", Boolean, nullable=False, default=False),
    Column("backup_frequency", String(16), nullable=False, default="daily"),
    Column("backup_time_of_day", String(5), nullable=False, default="00:00"),
    Column("backup_format", String(8), nullable=False, default="json"),
    Column("backup_bot_token", Text, nullable=False, default=""),
    Column("backup_chat_targets", JSONType),
    Column("backup_started_by", Text),
    Column("twice_weekly_next_gap", Integer, nullable=False, default=3),
    Column("next_backup_at", Timestamp),
    Column("last_backup_at", Timestamp),
    Column("last_backup_status", String(8), nullable=False, default="idle"),
    Column("last_backup_error", Text, nullable=False, default=""),
    Column("updated_at", Timestamp),
)

check_runs = Table(
    "check_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("brand_id", Integer, ForeignKey("brands.id"), nullable=False),
    Column("checked_at", Timestamp, nullable=False),
    Column("trigger", String(8), nullable=False),
    Column("query", Text),
    Column("best_own_rank", Integer),
    Column("own_count", Integer, nullable=False, default=0),
    Column("unknown_count", Integer, nullable=False, default=0),
    Column("results", JSONType),
    Column("key_id", Integer, ForeignKey("api_credentials.id")),
    Column("key_name", Text),
    Column("ok", Boolean, nullable=False, default=True),
    Column("failure_reason", Text),
)
Index("ix_check_runs_key_checked", check_runs.c.key_id, check_runs.c.checked_at)
Index("ix_check_runs_brand_checked", check_runs.c.brand_id, check_runs.c.checked_at)

backup_runs = Table(
    "backup_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("source", String(16), nullable=False),
    Column("status", String(8), nullable=False),
    Column("triggered_by", Text),
    Column("started_at", Timestamp, nullable=False),
    Column("finished_at", Timestamp, nullable=False),
    Column("timeframe_days", Integer, nullable=False, default=0),
    Column("format", String(8), nullable=False, default="json"),
    Column("chat_targets", JSONType),
    Column("total_collections", Integer, nullable=False, default=0),
    Column("total_records", Integer, nullable=False, default=0),
    Column("total_files", Integer, nullable=False, default=0),
    Column("summary", JSONType),
    Column("error", Text, nullable=False, default=""),
)
Index("ix_backup_runs_started", backup_runs.c.started_at)
