"""Check one brand against the SERP and record the outcome."""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime

from rankwatch.catalog.models import Brand
from rankwatch.checks.runs import CheckRun, CheckRunStore, ResultEntry
from rankwatch.errors import NoActiveKeyError, QuotaExhaustedError, SerpQueryError
from rankwatch.matching.lookup import BADGE_OWN, DomainLookup, classify_link
from rankwatch.serp.client import DEFAULT_GL, DEFAULT_HL, Locale, SerpClient, SerpResult
from rankwatch.serp.credentials import ApiCredential
from rankwatch.serp.key_pool import ApiKeyRotationPool
from rankwatch.utils.dates import utc_now

logger = logging.getLogger(__name__)


def classify_results(results: list[SerpResult], lookup: DomainLookup) -> list[ResultEntry]:
    entries = []
    for result in results:
        host, match = classify_link(result.link, lookup)
        entries.append(
            ResultEntry(
                rank=result.rank,
                title=result.title,
                link=result.link,
                host=host,
                match_type=match.match_type,
                badge=match.badge,
                matched_domain_id=match.domain.id if match.domain else None,
                matched_brand_id=match.domain.brand_id if match.domain else None,
            )
        )
    return entries


def build_run(
    brand: Brand,
    trigger: str,
    checked_at: datetime,
    *,
    credential: ApiCredential | None,
    entries: list[ResultEntry] | None = None,
    failure: str | None = None,
) -> CheckRun:
    entries = entries or []
    own_ranks = [entry.rank for entry in entries if entry.badge == BADGE_OWN]
    return CheckRun(
        brand_id=brand.id,
        brand_code=brand.code,
        checked_at=checked_at,
        trigger=trigger,
        query=brand.query_text,
        best_own_rank=min(own_ranks) if own_ranks else None,
        own_count=len(own_ranks),
        unknown_count=len(entries) - len(own_ranks),
        results=entries,
        key_id=credential.id if credential else None,
        key_name=credential.name if credential else None,
        ok=failure is None,
        failure_reason=failure,
    )


async def check_brand(
    brand: Brand,
    lookup: DomainLookup,
    *,
    pool: ApiKeyRotationPool,
    client: SerpClient,
    runs: CheckRunStore,
    trigger: str,
) -> CheckRun:
    """Query the SERP for ``brand`` and persist a CheckRun, ok or failed.

    A key that reports quota exhaustion is marked and the brand is retried with
    the next key, at most once per active key. Any other upstream error fails
    the brand.
    """
    loop = asyncio.get_running_loop()
    locale = Locale(gl=brand.gl or DEFAULT_GL, hl=brand.hl or DEFAULT_HL)
    attempts = max(await loop.run_in_executor(None, pool.active_count), 1)

    credential: ApiCredential | None = None
    results: list[SerpResult] | None = None
    failure: str | None = None
    for _ in range(attempts):
        try:
            credential = await loop.run_in_executor(None, pool.next_key)
        except NoActiveKeyError as exc:
            failure = str(exc)
            break
        try:
            results = await client.query(credential, brand.query_text, locale)
        except QuotaExhaustedError as exc:
            failure = str(exc)
            await loop.run_in_executor(
                None,
                functools.partial(
                    pool.record_usage, credential, ok=False, error=failure, quota_exhausted=True
                ),
            )
            continue
        except SerpQueryError as exc:
            failure = str(exc)
            await loop.run_in_executor(
                None, functools.partial(pool.record_usage, credential, ok=False, error=failure)
            )
            break
        failure = None
        await loop.run_in_executor(None, functools.partial(pool.record_usage, credential, ok=True))
        break

    checked_at = utc_now()
    if failure is not None:
        logger.warning("Check failed for %s: %s", brand.code, failure)
        run = build_run(brand, trigger, checked_at, credential=credential, failure=failure)
    else:
        entries = classify_results(results or [], lookup)
        run = build_run(brand, trigger, checked_at, credential=credential, entries=entries)
        logger.info(
            "Checked %s: best own rank %s, %s own, %s unknown",
            brand.code,
            run.best_own_rank,
            run.own_count,
            run.unknown_count,
        )
    return await loop.run_in_executor(None, runs.insert, run)
