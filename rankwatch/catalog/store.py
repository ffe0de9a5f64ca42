"""Brand and tracked-domain store."""

from __future__ import annotations

import logging

from sqlalchemy import insert, select
from sqlalchemy.engine import Engine

from rankwatch.catalog.models import Brand, TrackedDomain
from rankwatch.db.tables import brands, tracked_domains
from rankwatch.matching.keys import build_domain_keys
from rankwatch.utils.dates import utc_now

logger = logging.getLogger(__name__)


class CatalogStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_brands(self, *, active_only: bool = False) -> list[Brand]:
        query = select(brands).order_by(brands.c.id)
        if active_only:
            query = query.where(brands.c.is_active.is_(True))
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [
            Brand(
                id=row["id"],
                code=row["code"],
                name=row["name"],
                query=row["query"],
                gl=row["gl"],
                hl=row["hl"],
                is_active=bool(row["is_active"]),
            )
            for row in rows
        ]

    def list_tracked_domains(self) -> list[TrackedDomain]:
        query = (
            select(tracked_domains, brands.c.code.label("brand_code"))
            .select_from(tracked_domains.outerjoin(brands, brands.c.id == tracked_domains.c.brand_id))
            .order_by(tracked_domains.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [
            TrackedDomain(
                id=row["id"],
                brand_id=row["brand_id"],
                raw_domain=row["domain"],
                host_key=row["host_key"] or "",
                root_key=row["root_key"] or "",
                tokens=set(row["tokens"] or []),
                brand_code=row["brand_code"] or "",
            )
            for row in rows
        ]

    def upsert_brand(self, brand: Brand) -> int:
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(brands.c.id).where(brands.c.code == brand.code)
            ).scalar_one_or_none()
            values = {
                "name": brand.name,
                "query": brand.query,
                "gl": brand.gl,
                "hl": brand.hl,
                "is_active": brand.is_active,
            }
            if existing:
                conn.execute(brands.update().where(brands.c.id == existing).values(**values))
                return existing
            result = conn.execute(
                insert(brands).values(code=brand.code, created_at=utc_now(), **values)
            )
            return int(result.inserted_primary_key[0])

    def add_domain(self, brand_id: int, brand_code: str, raw_domain: str) -> int | None:
        keys = build_domain_keys(raw_domain, brand_code)
        if not keys.host_key:
            logger.warning("Skipping unmatchable domain %r for %s", raw_domain, brand_code)
            return None
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(tracked_domains.c.id).where(
                    tracked_domains.c.brand_id == brand_id,
                    tracked_domains.c.host_key == keys.host_key,
                )
            ).scalar_one_or_none()
            if existing:
                return existing
            result = conn.execute(
                insert(tracked_domains).values(
                    brand_id=brand_id,
                    domain=raw_domain,
                    host_key=keys.host_key,
                    root_key=keys.root_key,
                    tokens=sorted(keys.tokens),
                    created_at=utc_now(),
                )
            )
            return int(result.inserted_primary_key[0])
