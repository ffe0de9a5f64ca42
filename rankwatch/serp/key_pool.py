"""Round-robin rotation over SERP API credentials."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime

from rankwatch.errors import ConfigurationError, NoActiveKeyError
from rankwatch.serp.credentials import ApiCredential, CredentialStore
from rankwatch.utils.dates import month_start_utc, utc_now

logger = logging.getLogger(__name__)

MONTHLY_LIMIT = int(os.environ.get("SERP_MONTHLY_LIMIT", 2500))


@dataclass(slots=True)
class KeyUsage:
    credential: ApiCredential
    monthly_limit: int
    requests_this_month: int
    requests_lifetime: int
    remaining_estimated: int


@dataclass(slots=True)
class RotationStatus:
    active_count: int
    cursor: int
    rotation_key: ApiCredential | None
    last_used_key: ApiCredential | None


def parse_env_keys(raw_value: str | None) -> list[tuple[str, str]]:
    if not raw_value:
        return []
    keys = [value.strip() for value in raw_value.split(",") if value.strip()]
    return [(f"ENV Key {index}", key) for index, key in enumerate(keys, start=1)]


class ApiKeyRotationPool:
    """Hands out active credentials in turn and records what happened to each.

    The cursor is persisted so rotation continues across restarts. Selection is
    plain round-robin over the active keys; an exhausted key stays in rotation
    until an operator deactivates it.
    """

    def __init__(self, store: CredentialStore, *, monthly_limit: int | None = None) -> None:
        self.store = store
        self.monthly_limit = monthly_limit if monthly_limit is not None else MONTHLY_LIMIT

    def active_credentials(self) -> list[ApiCredential]:
        return [item for item in self.store.list() if item.is_active]

    def active_count(self) -> int:
        return len(self.active_credentials())

    def next_key(self) -> ApiCredential:
        active = self.active_credentials()
        if not active:
            raise NoActiveKeyError("No active SERP API key configured")
        cursor = self.store.load_cursor()
        credential = active[cursor % len(active)]
        self.store.save_cursor(cursor + 1)
        return credential

    def record_usage(
        self,
        credential: ApiCredential,
        *,
        ok: bool,
        error: str | None = None,
        quota_exhausted: bool = False,
        at: datetime | None = None,
    ) -> None:
        used_at = at or utc_now()
        message = "" if ok else (error or "Unknown error")
        if quota_exhausted:
            logger.warning("SERP key %s exhausted: %s", credential.name, message)
        self.store.record_attempt(
            credential.id,
            used_at=used_at,
            last_error=message,
            exhausted_at=used_at if quota_exhausted else None,
        )

    def usage_summary(self, now: datetime | None = None) -> list[KeyUsage]:
        now = now or utc_now()
        monthly = self.store.monthly_request_counts(month_start_utc(now))
        summary = []
        for credential in self.store.list():
            credential.request_count_this_month = monthly.get(credential.id, 0)
            lifetime = credential.request_count_lifetime
            summary.append(
                KeyUsage(
                    credential=credential,
                    monthly_limit=self.monthly_limit,
                    requests_this_month=credential.request_count_this_month,
                    requests_lifetime=lifetime,
                    remaining_estimated=max(self.monthly_limit - lifetime, 0),
                )
            )
        return summary

    def rotation_status(self) -> RotationStatus:
        credentials = self.store.list()
        active = [item for item in credentials if item.is_active]
        cursor = self.store.load_cursor()
        used = [item for item in credentials if item.last_used_at]
        return RotationStatus(
            active_count=len(active),
            cursor=cursor,
            rotation_key=active[cursor % len(active)] if active else None,
            last_used_key=max(used, key=lambda item: item.last_used_at) if used else None,
        )

    # Operator actions

    def add_credential(self, name: str, secret: str, *, is_active: bool = True) -> ApiCredential:
        name, secret = (name or "").strip(), (secret or "").strip()
        if not name or not secret:
            raise ConfigurationError("name and key are required", field="key")
        return self.store.insert(name, secret, is_active=is_active)

    def update_credential(
        self,
        credential_id: int,
        *,
        name: str | None = None,
        secret: str | None = None,
        is_active: bool | None = None,
    ) -> ApiCredential:
        credential = self.store.get(credential_id)
        if credential is None or credential.deleted_at is not None:
            raise ConfigurationError("API key not found", field="key_id")
        values: dict[str, object] = {}
        if name and name.strip():
            values["name"] = name.strip()
        if secret and secret.strip():
            values["secret"] = secret.strip()
        if is_active is not None:
            values["is_active"] = is_active
        if values:
            self.store.update(credential_id, **values)
        return self.store.get(credential_id)

    def remove_credential(self, credential_id: int) -> None:
        credential = self.store.get(credential_id)
        if credential is None or credential.deleted_at is not None:
            raise ConfigurationError("API key not found", field="key_id")
        self.store.update(credential_id, is_active=False, deleted_at=utc_now())

    def seed_from_env(self, raw_value: str | None = None) -> int:
        if self.store.list(include_deleted=True):
            return 0
        pairs = parse_env_keys(raw_value if raw_value is not None else os.environ.get("SERP_API_KEYS"))
        for name, secret in pairs:
            self.store.insert(name, secret)
        if pairs:
            logger.info("Seeded %s SERP API keys from environment", len(pairs))
        return len(pairs)

    def apply_baseline(self, remaining: int | None, key_name: str = "") -> ApiCredential | None:
        if remaining is None or remaining < 0:
            return None
        credentials = self.store.list()
        if not credentials:
            return None
        target = next((item for item in credentials if item.name == key_name), credentials[0])
        if target.baseline_captured_at is not None:
            return target
        self.store.update(target.id, baseline_remaining=remaining, baseline_captured_at=utc_now())
        return self.store.get(target.id)
