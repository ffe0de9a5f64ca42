"""Catalog data models."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class Brand:
    id: int | None
    code: str
    name: str
    query: str | None = None
    gl: str | None = None
    hl: str | None = None
    is_active: bool = True

    @property
    def query_text(self) -> str:
        return (self.query or self.name).strip()


@dataclass(slots=True)
class TrackedDomain:
    id: int | None
    brand_id: int
    raw_domain: str
    host_key: str = ""
    root_key: str = ""
    tokens: set[str] = field(default_factory=set)
    is_alias_token: bool = False
    brand_code: str = ""
