"""Seed the database with brands, tracked domains and API keys."""

from __future__ import annotations

from dotenv import load_dotenv

from rankwatch.catalog import load_catalog
from rankwatch.catalog.store import CatalogStore
from rankwatch.db.migrate import run_migrations
from rankwatch.db.session import create_engine_from_env
from rankwatch.serp.credentials import CredentialStore
from rankwatch.serp.key_pool import ApiKeyRotationPool


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    run_migrations(engine)
    catalog = CatalogStore(engine)
    domain_count = 0
    seeds = load_catalog()
    for seed in seeds:
        brand_id = catalog.upsert_brand(seed.brand)
        for raw_domain in seed.domains:
            if catalog.add_domain(brand_id, seed.brand.code, raw_domain):
                domain_count += 1
    keys = ApiKeyRotationPool(CredentialStore(engine)).seed_from_env()
    print(f"Seed complete: {len(seeds)} brands, {domain_count} domains, {keys} new API keys")


if __name__ == "__main__":
    main()
