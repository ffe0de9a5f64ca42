"""Catalog helpers."""

from __future__ import annotations

import pathlib
from dataclasses import dataclass

import yaml

from rankwatch.catalog.models import Brand

BRANDS_PATH = pathlib.Path(__file__).with_name("brands.yml")


@dataclass(slots=True)
class BrandSeed:
    brand: Brand
    domains: list[str]


def load_catalog(path: pathlib.Path = BRANDS_PATH, limit: int | None = None) -> list[BrandSeed]:
    data = yaml.safe_load(path.read_text()) or []
    seeds = []
    for item in data:
        domains = [str(d).strip() for d in item.pop("domains", []) or [] if str(d).strip()]
        seeds.append(BrandSeed(brand=Brand(id=None, **item), domains=domains))
    if limit:
        return seeds[:limit]
    return seeds
